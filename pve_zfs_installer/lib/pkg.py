from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional, Sequence, Tuple

from .chroot import chroot_cmd
from .command import CmdResult
from .fsutil import write_text

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

# Host tools the installer shells out to, mapped to the Debian package that
# ships them.
HOST_PREREQUISITES = {
    "debootstrap": "debootstrap",
    "sgdisk": "gdisk",
    "wipefs": "util-linux",
    "fuser": "psmisc",
    "wget": "wget",
    "mdadm": "mdadm",
    "vgchange": "lvm2",
}

SOURCES_LIST_NAME = "pve-install.list"


def debootstrap_rootfs(
    ctx: "ProvisionContext",
    *,
    target_root: str,
    suite: str = "bookworm",
    mirror: str = "http://deb.debian.org/debian",
    arch: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CmdResult:
    argv = ["debootstrap"]
    if arch:
        argv += ["--arch", arch]
    argv += [suite, target_root, mirror]
    return ctx.run(argv, timeout=timeout)


def apt_update(ctx: "ProvisionContext", target_root: str, *, timeout: Optional[float] = None) -> CmdResult:
    return chroot_cmd(ctx, target_root, ["apt-get", "update"], timeout=timeout)


def apt_install(
    ctx: "ProvisionContext",
    target_root: str,
    packages: Sequence[str],
    *,
    with_recommends: bool = True,
    timeout: Optional[float] = None,
) -> Optional[CmdResult]:
    if not packages:
        return None
    argv = [
        "apt-get",
        "install",
        "-y",
    ]
    if not with_recommends:
        argv.append("--no-install-recommends")
    return chroot_cmd(ctx, target_root, [*argv, *packages], timeout=timeout)


def apt_remove(ctx: "ProvisionContext", target_root: str, packages: Sequence[str]) -> bool:
    r = chroot_cmd(ctx, target_root, ["apt-get", "remove", "-y", *packages], check=False)
    return r.ok


def failure_markers_in(output: str, markers: Iterable[str]) -> List[str]:
    """Return the markers found in package-manager output."""

    return [m for m in markers if m and m in output]


def write_apt_sources(
    target_root: str,
    lines: Sequence[str],
    *,
    name: str = SOURCES_LIST_NAME,
    dry_run: bool = False,
) -> str:
    p = Path(target_root) / "etc/apt/sources.list.d" / name
    write_text(str(p), "".join(f"{line}\n" for line in lines), dry_run=dry_run)
    logger.info("Configured %d apt source(s) in %s", len(lines), str(p))
    return str(p)


def fetch_apt_keys(ctx: "ProvisionContext", target_root: str, keys: Sequence[Tuple[str, str]]) -> None:
    root = target_root.rstrip("/")
    for url, dest in keys:
        out = f"{root}{dest}"
        if not ctx.dry_run:
            Path(out).parent.mkdir(parents=True, exist_ok=True)
        ctx.run(["wget", "-q", "-O", out, url])


def ensure_host_packages(
    ctx: "ProvisionContext",
    tools: Mapping[str, str] = HOST_PREREQUISITES,
    *,
    timeout: Optional[float] = None,
) -> List[str]:
    """Install the packages for any missing host tool. Returns the packages installed."""

    missing = []
    for tool, package in tools.items():
        if ctx.which(tool) is None and package not in missing:
            missing.append(package)
    if not missing:
        return []

    logger.info("Installing missing host packages: %s", " ".join(missing))
    env = {"DEBIAN_FRONTEND": "noninteractive"}
    ctx.run(["apt-get", "update"], env=env, timeout=timeout)
    ctx.run(["apt-get", "install", "-y", *missing], env=env, timeout=timeout)
    return missing
