"""Scoped acquisition and escalating, idempotent release of mounts.

Every mount the installer makes goes through ``MountManager`` so there is a
single registry of live handles. Release never raises: a mount that stays
busy after the whole ladder is logged as a warning and the handle is still
marked released, since the condition usually clears on the next boot or a
later repair run.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence, Tuple

from ..errors import MountFailed, ResourceBusy
from .command import CommandError
from .fallback import Strategy, retry_with_backoff, run_chain

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

CHROOT_BIND_SOURCES = ("/dev", "/dev/pts", "/proc", "/sys")

# Signals sent to processes holding a mount, weakest first.
HOLDER_SIGNALS = ("TERM", "KILL")

_PID_RE = re.compile(r"^(\d+)[a-zA-Z]*$")


class MountKind(str, Enum):
    FILESYSTEM = "filesystem"
    BIND = "bind"
    ZFS = "zfs"


class HandleState(str, Enum):
    UNACQUIRED = "unacquired"
    ACQUIRED = "acquired"
    RELEASING = "releasing"
    RELEASED = "released"


@dataclass(eq=False)
class MountHandle:
    source: str
    target: str
    kind: MountKind
    fstype: Optional[str] = None
    options: Tuple[str, ...] = ()
    state: HandleState = HandleState.UNACQUIRED
    released_by: Optional[str] = None
    busy: bool = False

    @property
    def acquired(self) -> bool:
        return self.state in (HandleState.ACQUIRED, HandleState.RELEASING)

    def describe(self) -> str:
        return f"{self.source} -> {self.target} ({self.kind.value})"


class MountManager:
    def __init__(self, ctx: "ProvisionContext"):
        self._ctx = ctx
        self._handles: List[MountHandle] = []
        self.busy: List[MountHandle] = []

    @property
    def handles(self) -> List[MountHandle]:
        return list(self._handles)

    def find(self, target: str) -> Optional[MountHandle]:
        for h in self._handles:
            if h.target == target:
                return h
        return None

    def is_mounted(self, target: str) -> bool:
        return self._ctx.query(["mountpoint", "-q", target]).ok

    def acquire(
        self,
        source: str,
        target: str,
        kind: MountKind = MountKind.FILESYSTEM,
        *,
        fstype: Optional[str] = None,
        options: Sequence[str] = (),
    ) -> MountHandle:
        handle = MountHandle(source=source, target=target, kind=kind, fstype=fstype, options=tuple(options))

        if not self._ctx.dry_run:
            try:
                Path(target).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MountFailed(f"Cannot create mount point {target}: {e}") from e

        try:
            self._ctx.run(self._mount_argv(handle))
        except CommandError as e:
            raise MountFailed(f"Failed to mount {handle.describe()}: {e}") from e

        return self._register(handle)

    def adopt(self, source: str, target: str, kind: MountKind = MountKind.FILESYSTEM) -> MountHandle:
        """Take ownership of a mount made by another tool (e.g. ``zfs mount``)."""

        return self._register(MountHandle(source=source, target=target, kind=kind))

    def release(self, handle: MountHandle) -> bool:
        """Release ``handle``. Returns False if the target stayed busy."""

        if not handle.acquired:
            logger.debug("Release of %s is a no-op (state=%s)", handle.target, handle.state.value)
            return not handle.busy

        handle.state = HandleState.RELEASING
        logger.info("Releasing %s", handle.describe())

        if self._ctx.dry_run:
            self._ctx.run(["umount", handle.target], check=False)
            self._finish(handle, "graceful")
            return True

        chain = run_chain(
            [
                Strategy("graceful", lambda: self._graceful(handle)),
                Strategy("terminate-holders", lambda: self._terminate_holders(handle)),
                Strategy("lazy", lambda: self._unmount(handle, "-l")),
                Strategy("force", lambda: self._unmount(handle, "-f")),
            ],
            label=f"release {handle.target}",
        )

        self._finish(handle, chain.winner)
        if chain.succeeded:
            return True

        handle.busy = True
        self.busy.append(handle)
        busy = ResourceBusy(f"{handle.target} is still busy after {', '.join(chain.tried)}")
        logger.warning("%s; leaving it for the next boot or a repair run", busy)
        return False

    def release_all(self) -> List[MountHandle]:
        """Release every live handle, newest first. Returns the busy ones."""

        busy = []
        for h in reversed(list(self._handles)):
            if not self.release(h):
                busy.append(h)
        return busy

    @contextmanager
    def scope(
        self,
        source: str,
        target: str,
        kind: MountKind = MountKind.FILESYSTEM,
        *,
        fstype: Optional[str] = None,
        options: Sequence[str] = (),
    ) -> Iterator[MountHandle]:
        handle = self.acquire(source, target, kind, fstype=fstype, options=options)
        try:
            yield handle
        finally:
            self.release(handle)

    @contextmanager
    def chroot_binds(self, target_root: str) -> Iterator[List[MountHandle]]:
        """Bind the pseudo filesystems chroot tooling needs (apt, grub, initramfs)."""

        root = target_root.rstrip("/")
        handles: List[MountHandle] = []
        try:
            for src in CHROOT_BIND_SOURCES:
                handles.append(self.acquire(src, f"{root}{src}", MountKind.BIND))
            yield handles
        finally:
            for h in reversed(handles):
                self.release(h)

    def _register(self, handle: MountHandle) -> MountHandle:
        handle.state = HandleState.ACQUIRED
        self._handles.append(handle)
        logger.info("Acquired %s", handle.describe())
        return handle

    def _finish(self, handle: MountHandle, strategy: Optional[str]) -> None:
        handle.state = HandleState.RELEASED
        handle.released_by = strategy
        if handle in self._handles:
            self._handles.remove(handle)

    def _mount_argv(self, handle: MountHandle) -> List[str]:
        argv = ["mount"]
        if handle.kind == MountKind.BIND:
            argv.append("--bind")
        elif handle.kind == MountKind.ZFS:
            argv += ["-t", "zfs"]
        elif handle.fstype:
            argv += ["-t", handle.fstype]
        if handle.options:
            argv += ["-o", ",".join(handle.options)]
        return [*argv, handle.source, handle.target]

    def _graceful(self, handle: MountHandle) -> bool:
        if not self.is_mounted(handle.target):
            return True
        retry_with_backoff(
            lambda: self._ctx.run(["umount", handle.target]),
            attempts=3,
            delay=1.0,
            exceptions=(CommandError,),
            sleep=self._ctx.sleep,
            label=f"umount {handle.target}",
        )
        return not self.is_mounted(handle.target)

    def _holders(self, target: str) -> List[str]:
        r = self._ctx.run(["fuser", "-m", target], check=False)
        pids = []
        for token in r.stdout.split():
            m = _PID_RE.match(token.strip())
            if m and m.group(1) not in pids:
                pids.append(m.group(1))
        return pids

    def _terminate_holders(self, handle: MountHandle) -> bool:
        if not self.is_mounted(handle.target):
            return True

        wait = 2.0
        for sig in HOLDER_SIGNALS:
            pids = self._holders(handle.target)
            if pids:
                logger.warning("Sending SIG%s to holders of %s: %s", sig, handle.target, " ".join(pids))
                self._ctx.run(["kill", f"-{sig}", *pids], check=False)
                self._ctx.sleep(wait)
                wait *= 2
            if self._unmount(handle, None):
                return True
        return False

    def _unmount(self, handle: MountHandle, flag: Optional[str]) -> bool:
        if not self.is_mounted(handle.target):
            return True
        argv = ["umount", flag, handle.target] if flag else ["umount", handle.target]
        self._ctx.run(argv, check=False)
        return not self.is_mounted(handle.target)
