"""ZFS driver and tooling availability.

``ModuleResolver.resolve`` walks a fixed cascade and stops at the first
source that yields a working ``zfs version``:

1. the driver is already loaded and the commands work,
2. a fresh ``modprobe`` (whole stack if the meta module refuses),
3. tooling staged from a donor root (binaries, libraries, modules, udev rules),
4. for a target root only, a straight copy of the host binaries.

Each step runs at most once per call.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

from ..errors import ToolUnavailable
from .chroot import chroot_cmd
from .fallback import AttemptRecord, Strategy, run_chain
from .fsutil import copy_file, copy_tree

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

ZFS_MODULE_STACK = ("spl", "zavl", "znvpair", "zunicode", "zcommon", "icp", "zlua", "zzstd", "zfs")
ZFS_BINARIES = ("zfs", "zpool", "zdb", "mount.zfs")

DONOR_BINARY_DIRS = ("sbin", "usr/sbin", "bin", "usr/bin")
DONOR_LIB_DIRS = ("lib/x86_64-linux-gnu", "usr/lib/x86_64-linux-gnu", "lib", "usr/lib")
DONOR_LIB_PATTERNS = ("libzfs*.so*", "libzpool*.so*", "libnvpair*.so*", "libuutil*.so*", "libzutil*.so*")
DONOR_UDEV_DIRS = ("lib/udev/rules.d", "usr/lib/udev/rules.d")
DONOR_UDEV_PATTERNS = ("*zfs*", "*zvol*")

TARGET_LIB_DIR = "lib/x86_64-linux-gnu"


class ToolSource(str, Enum):
    LOADED = "loaded"
    FRESH_LOAD = "fresh_load"
    DONOR = "donor"
    HOST_COPY = "host_copy"


@dataclass(frozen=True)
class Resolution:
    source: ToolSource
    target_root: Optional[str] = None
    attempts: Tuple[AttemptRecord, ...] = ()


@dataclass
class StagedTools:
    root: str
    kernel_release: str = ""
    binaries: List[str] = field(default_factory=list)
    libraries: List[str] = field(default_factory=list)
    modules: List[str] = field(default_factory=list)
    udev_rules: List[str] = field(default_factory=list)

    @property
    def sbin(self) -> str:
        return str(Path(self.root) / "sbin")

    @property
    def lib(self) -> str:
        return str(Path(self.root) / "lib")


class ModuleResolver:
    def __init__(self, ctx: "ProvisionContext"):
        self.ctx = ctx
        self.cfg = ctx.config
        self.staged: Optional[StagedTools] = None

    def module_loaded(self) -> bool:
        r = self.ctx.query(["lsmod"])
        return any(line.split(" ", 1)[0] == "zfs" for line in r.stdout.splitlines())

    def tools_work(self, target_root: Optional[str] = None) -> bool:
        if target_root:
            return chroot_cmd(self.ctx, target_root, ["zfs", "version"], check=False).ok
        return self.ctx.succeeds(["zfs", "version"])

    def resolve(self, target_root: Optional[str] = None) -> Resolution:
        where = target_root or "host"
        strategies = [
            Strategy(ToolSource.LOADED.value, lambda: self.module_loaded() and self.tools_work(target_root)),
            Strategy(ToolSource.FRESH_LOAD.value, lambda: self._fresh_load(target_root)),
            Strategy(ToolSource.DONOR.value, lambda: self._from_donor(target_root)),
        ]
        if target_root:
            strategies.append(Strategy(ToolSource.HOST_COPY.value, lambda: self._host_copy(target_root)))

        chain = run_chain(strategies, label=f"zfs tooling ({where})")
        if not chain.succeeded:
            raise ToolUnavailable(f"ZFS tooling unavailable for {where} after {', '.join(chain.tried)}")

        logger.info("ZFS tooling for %s available via %s", where, chain.winner)
        return Resolution(source=ToolSource(chain.winner), target_root=target_root, attempts=tuple(chain.attempts))

    def stage_from_donor(self) -> StagedTools:
        """Copy ZFS binaries, libraries, modules and udev rules out of the donor root."""

        if self.staged is not None:
            return self.staged

        donor = Path(self.cfg.donor_root)
        stage = Path(self.cfg.staging_dir)
        release = self.ctx.query(["uname", "-r"]).stdout.strip()
        staged = StagedTools(root=str(stage), kernel_release=release)

        if self.ctx.dry_run:
            logger.info("Would stage ZFS tooling from %s into %s", str(donor), str(stage))
            self.staged = staged
            return staged

        for sub in ("sbin", "lib", "modules", "udev"):
            (stage / sub).mkdir(parents=True, exist_ok=True)

        for name in ZFS_BINARIES:
            for d in DONOR_BINARY_DIRS:
                src = donor / d / name
                if src.is_file():
                    shutil.copy2(src, stage / "sbin" / name)
                    staged.binaries.append(name)
                    break

        for d in DONOR_LIB_DIRS:
            base = donor / d
            if not base.is_dir():
                continue
            for pattern in DONOR_LIB_PATTERNS:
                for src in sorted(base.glob(pattern)):
                    if src.name not in staged.libraries:
                        shutil.copy2(src, stage / "lib" / src.name, follow_symlinks=False)
                        staged.libraries.append(src.name)

        mod_root = donor / "lib/modules" / release
        if release and mod_root.is_dir():
            for name in ZFS_MODULE_STACK:
                for src in sorted(mod_root.rglob(f"{name}.ko*")):
                    rel = src.relative_to(donor / "lib/modules")
                    out = stage / "modules" / rel
                    out.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, out)
                    staged.modules.append(str(rel))

        for d in DONOR_UDEV_DIRS:
            base = donor / d
            if not base.is_dir():
                continue
            for pattern in DONOR_UDEV_PATTERNS:
                for src in sorted(base.glob(pattern)):
                    if src.name not in staged.udev_rules:
                        shutil.copy2(src, stage / "udev" / src.name)
                        staged.udev_rules.append(src.name)

        if not staged.binaries:
            raise ToolUnavailable(f"No ZFS binaries found under donor root {donor}")

        logger.info(
            "Staged %d binaries, %d libraries, %d modules, %d udev rules in %s",
            len(staged.binaries),
            len(staged.libraries),
            len(staged.modules),
            len(staged.udev_rules),
            str(stage),
        )
        self.staged = staged
        return staged

    def install_staged(self, target_root: Optional[str] = None) -> None:
        staged = self.stage_from_donor()
        if target_root is None:
            self._expose_on_host(staged)
        else:
            self._install_into_target(staged, target_root)

    def _fresh_load(self, target_root: Optional[str]) -> bool:
        if not self.ctx.succeeds(["modprobe", "zfs"]):
            logger.warning("modprobe zfs failed; loading the module stack one by one")
            for name in ZFS_MODULE_STACK:
                self.ctx.run(["modprobe", name], check=False)
        return self.tools_work(target_root)

    def _from_donor(self, target_root: Optional[str]) -> bool:
        self.install_staged(target_root)
        return self.tools_work(target_root)

    def _host_copy(self, target_root: str) -> bool:
        copied = 0
        for name in ZFS_BINARIES:
            src = self.ctx.which(name)
            if not src:
                continue
            copy_file(src, str(Path(target_root) / "sbin" / name), mode=0o755, dry_run=self.ctx.dry_run)
            copied += 1
        if not copied:
            logger.warning("No host ZFS binaries to copy into %s", target_root)
            return False
        return self.tools_work(target_root)

    def _expose_on_host(self, staged: StagedTools) -> None:
        if staged.sbin not in self.ctx.tool_paths:
            self.ctx.tool_paths.insert(0, staged.sbin)
        if staged.lib not in self.ctx.library_paths:
            self.ctx.library_paths.insert(0, staged.lib)

        for name in ZFS_MODULE_STACK:
            for rel in staged.modules:
                if Path(rel).name.split(".ko", 1)[0] == name:
                    self.ctx.run(["insmod", str(Path(staged.root) / "modules" / rel)], check=False)

    def _install_into_target(self, staged: StagedTools, target_root: str) -> None:
        root = Path(target_root)
        stage = Path(staged.root)
        dry = self.ctx.dry_run
        for src, dst in (
            (stage / "sbin", root / "sbin"),
            (stage / "lib", root / TARGET_LIB_DIR),
            (stage / "modules", root / "lib/modules"),
            (stage / "udev", root / "lib/udev/rules.d"),
        ):
            if src.is_dir():
                copy_tree(str(src), str(dst), dry_run=dry)

        if not chroot_cmd(self.ctx, target_root, ["ldconfig"], check=False).ok:
            logger.warning("ldconfig failed in %s", target_root)
        argv = ["depmod", "-a"]
        if staged.kernel_release:
            argv.append(staged.kernel_release)
        if not chroot_cmd(self.ctx, target_root, argv, check=False).ok:
            logger.warning("depmod failed in %s", target_root)
