from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, List, Optional

from ..errors import BootloaderFailed, BootloaderPartial
from ..lib.block import is_block_device
from ..lib.bootloader import BootloaderInstaller, BootTarget
from ..lib.command import CommandError
from ..lib.pkg import apt_install
from ..lib.pool import mount_root_dataset, pool_member_disks
from ..orchestrator import PhaseOutcome
from .phase_10_prepare import prepared_firmware
from .phase_20_storage import StorageResult

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext
    from ..orchestrator import InstallationState

logger = logging.getLogger(__name__)

GRUB_PACKAGES = {
    "uefi": ("grub-efi-amd64", "efibootmgr"),
    "legacy": ("grub-pc",),
}


def boot_devices(ctx: "ProvisionContext", state: "InstallationState") -> List[str]:
    """Disks to make bootable: the planned devices, or the pool's members."""

    storage: Optional[StorageResult] = state.result_of("storage")
    if storage is not None:
        return storage.boot_devices
    return pool_member_disks(ctx, ctx.config.pool_name)


class BootloaderPhase:
    name = "bootloader"
    critical = False

    def __init__(self, *, is_block: Optional[Callable[[str], bool]] = None):
        self.is_block = is_block

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        cfg = ctx.config
        notes: List[str] = []

        firmware = prepared_firmware(ctx, state)
        targets = [BootTarget(device=d, firmware=firmware) for d in boot_devices(ctx, state)]
        if not targets:
            raise BootloaderFailed(f"No boot devices found for pool {cfg.pool_name}")
        logger.info("Boot targets (%s): %s", firmware, " ".join(t.device for t in targets))

        mount_root_dataset(ctx, dataset=cfg.root_dataset_path, target_root=cfg.target_root)
        installer = BootloaderInstaller(
            ctx,
            target_root=cfg.target_root,
            root_dataset_path=cfg.root_dataset_path,
            is_block=self.is_block or is_block_device,
        )

        with ctx.mounts.chroot_binds(cfg.target_root):
            try:
                apt_install(ctx, cfg.target_root, GRUB_PACKAGES[firmware], timeout=cfg.package_timeout)
            except CommandError as e:
                notes.append(f"could not install {' '.join(GRUB_PACKAGES[firmware])}: {e.result.returncode}")
            result = installer.install(targets)

        notes += result.notes
        if not result.succeeded:
            return PhaseOutcome.degraded(
                BootloaderFailed(f"Bootloader installation failed on every target ({len(result.outcomes)})"),
                result,
                notes,
            )
        if result.partial:
            return PhaseOutcome.degraded(
                BootloaderPartial(f"Bootloader missing on {', '.join(result.failed_devices)}"),
                result,
                notes,
            )
        if result.config is None:
            return PhaseOutcome.degraded(BootloaderFailed("No grub.cfg could be generated"), result, notes)
        return PhaseOutcome.ok(result, notes)
