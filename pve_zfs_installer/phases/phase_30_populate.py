from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import PackageInstallFailed, ToolUnavailable
from ..lib.chroot import chroot_cmd
from ..lib.command import CommandError
from ..lib.env import PATHS
from ..lib.fsutil import copy_file
from ..lib.pkg import (
    apt_install,
    apt_remove,
    apt_update,
    debootstrap_rootfs,
    failure_markers_in,
    fetch_apt_keys,
    write_apt_sources,
)
from ..lib.pool import mount_root_dataset
from ..lib.sysconfig import (
    FALLBACK_ADDRESS,
    configure_locale,
    generate_host_keys,
    host_names,
    primary_address,
    set_root_password,
    set_timezone,
    write_identity,
)
from ..orchestrator import PhaseOutcome
from .phase_10_prepare import prepared_resolver

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext
    from ..orchestrator import InstallationState

logger = logging.getLogger(__name__)

ZFS_TARGET_PACKAGES = ("zfsutils-linux", "zfs-initramfs")
ZFS_SERVICES = ("zfs-import-cache", "zfs-mount", "zfs.target")


@dataclass
class PopulateResult:
    root_mount: str
    failure_markers: List[str] = field(default_factory=list)
    tool_source: Optional[str] = None
    services_enabled: List[str] = field(default_factory=list)
    hostname: Optional[str] = None
    locale: Optional[str] = None
    host_keys: bool = False
    root_password_set: bool = False

    def summary(self) -> Dict[str, object]:
        return {
            "root_mount": self.root_mount,
            "failure_markers": list(self.failure_markers),
            "tool_source": self.tool_source,
            "services_enabled": list(self.services_enabled),
            "hostname": self.hostname,
            "locale": self.locale,
            "host_keys": self.host_keys,
            "root_password_set": self.root_password_set,
        }


class PopulatePhase:
    name = "populate"
    critical = False

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        cfg = ctx.config
        target_root = cfg.target_root
        notes: List[str] = []

        handle = mount_root_dataset(ctx, dataset=cfg.root_dataset_path, target_root=target_root)
        result = PopulateResult(root_mount=handle.target)

        debootstrap_rootfs(
            ctx,
            target_root=target_root,
            suite=cfg.suite,
            mirror=cfg.mirror,
            arch=cfg.arch,
            timeout=cfg.debootstrap_timeout,
        )

        with ctx.mounts.chroot_binds(target_root):
            self._copy_host_files(ctx, target_root, notes)

            write_apt_sources(target_root, cfg.apt_sources, dry_run=ctx.dry_run)
            fetch_apt_keys(ctx, target_root, cfg.apt_keys)
            apt_update(ctx, target_root, timeout=cfg.package_timeout)

            result.failure_markers = self._install_packages(ctx, target_root)
            result.tool_source = self._ensure_zfs_tools(ctx, state, target_root, notes)
            result.services_enabled = self._enable_services(ctx, target_root, notes)

            if not apt_remove(ctx, target_root, ["os-prober"]):
                notes.append("could not remove os-prober")

            self._configure_system(ctx, target_root, result, notes)

        logger.info("Target populated at %s", target_root)

        if result.failure_markers:
            notes += [f"package manager reported: {m}" for m in result.failure_markers]
            return PhaseOutcome.degraded(
                PackageInstallFailed(f"Package installation unhealthy: {'; '.join(result.failure_markers)}"),
                result,
                notes,
            )
        if result.tool_source is None:
            return PhaseOutcome.degraded(
                ToolUnavailable(f"ZFS tools are not usable inside {target_root}"), result, notes
            )
        return PhaseOutcome.ok(result, notes)

    def _copy_host_files(self, ctx: "ProvisionContext", target_root: str, notes: List[str]) -> None:
        ctx.run(["zpool", "set", f"cachefile={PATHS.zpool_cache}", ctx.config.pool_name], check=False)
        for src, dest in ((PATHS.resolv_conf, "/etc/resolv.conf"), (PATHS.zpool_cache, "/etc/zfs/zpool.cache")):
            if not Path(src).exists():
                notes.append(f"{src} not present on host; not copied")
                continue
            copy_file(src, f"{target_root.rstrip('/')}{dest}", dry_run=ctx.dry_run)

    def _install_packages(self, ctx: "ProvisionContext", target_root: str) -> List[str]:
        cfg = ctx.config
        try:
            r = apt_install(ctx, target_root, cfg.packages, timeout=cfg.package_timeout)
            output = r.output if r is not None else ""
            failed_rc = None
        except CommandError as e:
            output = e.result.output
            failed_rc = e.result.returncode

        markers = failure_markers_in(output, cfg.failure_markers)
        if failed_rc is not None and not markers:
            markers.append(f"apt-get install exited with {failed_rc}")
        return markers

    def _ensure_zfs_tools(
        self, ctx: "ProvisionContext", state: "InstallationState", target_root: str, notes: List[str]
    ) -> Optional[str]:
        resolver = prepared_resolver(ctx, state)
        try:
            apt_install(ctx, target_root, ZFS_TARGET_PACKAGES, timeout=ctx.config.package_timeout)
            if resolver.tools_work(target_root):
                return "package"
        except CommandError as e:
            logger.warning("Installing %s failed: %s", " ".join(ZFS_TARGET_PACKAGES), e)

        try:
            return resolver.resolve(target_root).source.value
        except ToolUnavailable as e:
            notes.append(str(e))
            return None

    def _enable_services(self, ctx: "ProvisionContext", target_root: str, notes: List[str]) -> List[str]:
        enabled = []
        for unit in ZFS_SERVICES:
            if chroot_cmd(ctx, target_root, ["systemctl", "enable", unit], check=False).ok:
                enabled.append(unit)
            else:
                notes.append(f"could not enable {unit}")
        return enabled

    def _configure_system(
        self, ctx: "ProvisionContext", target_root: str, result: PopulateResult, notes: List[str]
    ) -> None:
        cfg = ctx.config

        short, fqdn = host_names(cfg.hostname, cfg.domain)
        address = primary_address(ctx)
        if address is None:
            notes.append(f"no routable address found; {fqdn} mapped to {FALLBACK_ADDRESS}")
            address = FALLBACK_ADDRESS
        write_identity(target_root, short, fqdn, address, dry_run=ctx.dry_run)
        result.hostname = fqdn

        if not set_timezone(ctx, target_root, cfg.timezone):
            notes.append(f"could not set timezone {cfg.timezone}")

        result.locale = configure_locale(ctx, target_root, cfg.locale)
        if result.locale != cfg.locale:
            notes.append(f"locale {cfg.locale} could not be generated; using C")

        if cfg.root_password:
            result.root_password_set = set_root_password(ctx, target_root, cfg.root_password)
            if not result.root_password_set:
                notes.append("could not set the root password")
        else:
            notes.append("root password not set; run 'passwd' in the target before relying on console login")

        result.host_keys = generate_host_keys(ctx, target_root)
        if not result.host_keys:
            notes.append("could not generate SSH host keys")
        logger.info("Configured %s (%s, locale %s)", fqdn, address, result.locale)
