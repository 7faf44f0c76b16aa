"""Bootloader installation for a ZFS root.

Assumes the target root is mounted with the chroot binds in place. Each
boot device is handled independently: a device failing its whole ladder
does not stop the next one, and the result reports per-device outcomes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import BootloaderFailed, MountFailed
from .block import find_vfat_partitions, is_block_device
from .chroot import chroot_cmd
from .fallback import Strategy, run_chain
from .fsutil import write_text

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

BOOTLOADER_ID = "proxmox"
ESP_DIR = "boot/efi"
GRUB_CFG = "/boot/grub/grub.cfg"

# grub-install resolves vdevs by path instead of by GUID with this set.
LEGACY_ENV = {"ZPOOL_VDEV_NAME_PATH": "1"}

LEGACY_LADDER: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("zfs-modules", ("--target=i386-pc", "--modules=zfs part_gpt part_msdos", "--recheck")),
    ("skip-fs-probe", ("--target=i386-pc", "--skip-fs-probe", "--force")),
    ("allow-floppy", ("--target=i386-pc", "--allow-floppy", "--force")),
    ("bare-force", ("--force",)),
)

_VERSION_SPLIT = re.compile(r"(\d+)")


@dataclass(frozen=True)
class BootTarget:
    device: str
    firmware: str  # uefi|legacy


@dataclass(frozen=True)
class TargetOutcome:
    device: str
    ok: bool
    strategy: Optional[str] = None
    attempts: Tuple[str, ...] = ()
    verified: Optional[bool] = None
    note: Optional[str] = None


@dataclass
class BootloaderResult:
    outcomes: List[TargetOutcome] = field(default_factory=list)
    initramfs: Optional[str] = None
    config: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return any(o.ok for o in self.outcomes)

    @property
    def partial(self) -> bool:
        return self.succeeded and not all(o.ok for o in self.outcomes)

    @property
    def status(self) -> str:
        return "succeeded" if self.succeeded else "failed"

    @property
    def failed_devices(self) -> List[str]:
        return [o.device for o in self.outcomes if not o.ok]

    def summary(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "partial": self.partial,
            "initramfs": self.initramfs,
            "config": self.config,
            "targets": [
                {"device": o.device, "ok": o.ok, "strategy": o.strategy, "verified": o.verified, "note": o.note}
                for o in self.outcomes
            ],
            "notes": list(self.notes),
        }


def find_efi_partition(ctx: "ProvisionContext", configured: Optional[str] = None) -> Optional[str]:
    if configured:
        return configured
    candidates = find_vfat_partitions(ctx)
    return candidates[0] if candidates else None


def _version_key(v: str) -> List[object]:
    return [int(x) if x.isdigit() else x for x in _VERSION_SPLIT.split(v)]


class BootloaderInstaller:
    def __init__(
        self,
        ctx: "ProvisionContext",
        *,
        target_root: str,
        root_dataset_path: str,
        is_block: Callable[[str], bool] = is_block_device,
    ):
        self.ctx = ctx
        self.cfg = ctx.config
        self.target_root = target_root.rstrip("/") or "/"
        self.root_dataset_path = root_dataset_path
        self.is_block = is_block

    @property
    def kernel_cmdline(self) -> str:
        return f"root=ZFS={self.root_dataset_path} boot=zfs"

    def _chroot(self, argv: Sequence[str], *, env: Optional[Dict[str, str]] = None, timeout: Optional[float] = None):
        return chroot_cmd(self.ctx, self.target_root, argv, check=False, env=env, timeout=timeout)

    def regenerate_initramfs(self) -> Optional[str]:
        t = self.cfg.initramfs_timeout
        chain = run_chain(
            [
                Strategy("all-kernels", lambda: self._chroot(["update-initramfs", "-u", "-k", "all"], timeout=t).ok),
                Strategy("current-kernel", lambda: self._chroot(["update-initramfs", "-u"], timeout=t).ok),
            ],
            label="initramfs",
        )
        return chain.winner

    def write_grub_defaults(self) -> str:
        path = Path(self.target_root) / "etc/default/grub"
        setting = f'GRUB_CMDLINE_LINUX="{self.kernel_cmdline}"'

        lines: List[str] = []
        if path.exists():
            lines = path.read_text(encoding="utf-8").splitlines()
        if not lines:
            lines = [
                "GRUB_DEFAULT=0",
                "GRUB_TIMEOUT=5",
                'GRUB_DISTRIBUTOR="Proxmox VE"',
                'GRUB_CMDLINE_LINUX_DEFAULT="quiet"',
            ]

        out = [line for line in lines if not line.startswith("GRUB_CMDLINE_LINUX=")]
        out.append(setting)
        write_text(str(path), "\n".join(out) + "\n", dry_run=self.ctx.dry_run)
        return str(path)

    def find_kernel(self) -> Optional[str]:
        """Newest kernel version in the target's /boot that has a matching initrd."""

        boot = Path(self.target_root) / "boot"
        versions = []
        for k in boot.glob("vmlinuz-*"):
            version = k.name[len("vmlinuz-"):]
            if (boot / f"initrd.img-{version}").exists():
                versions.append(version)
        if not versions:
            return None
        return sorted(versions, key=_version_key)[-1]

    def manual_grub_cfg(self, version: str) -> str:
        pool = self.root_dataset_path.split("/", 1)[0]
        rel = self.root_dataset_path.split("/", 1)[1] if "/" in self.root_dataset_path else ""
        prefix = f"/{rel}@" if rel else "/@"
        entries = []
        for title, extra in (("Proxmox VE", ""), ("Proxmox VE (recovery mode)", " single")):
            entries.append(
                f"menuentry '{title}' {{\n"
                f"    insmod zfs\n"
                f"    search --no-floppy --label --set=root {pool}\n"
                f"    linux {prefix}/boot/vmlinuz-{version} {self.kernel_cmdline} ro{extra}\n"
                f"    initrd {prefix}/boot/initrd.img-{version}\n"
                f"}}\n"
            )
        return "set default=0\nset timeout=5\ninsmod part_gpt\ninsmod part_msdos\n\n" + "\n".join(entries)

    def _write_manual_cfg(self) -> bool:
        version = self.find_kernel()
        if version is None:
            raise BootloaderFailed(f"No kernel with initrd found in {self.target_root}/boot")
        write_text(f"{self.target_root}{GRUB_CFG}", self.manual_grub_cfg(version), dry_run=self.ctx.dry_run)
        logger.warning("Wrote fallback grub.cfg for kernel %s", version)
        return True

    def generate_boot_config(self) -> str:
        chain = run_chain(
            [
                Strategy("grub-mkconfig", lambda: self._chroot(["grub-mkconfig", "-o", GRUB_CFG]).ok),
                Strategy("manual", self._write_manual_cfg),
            ],
            label="grub.cfg",
        )
        if not chain.succeeded:
            raise BootloaderFailed("Unable to generate grub.cfg")
        return chain.winner or "grub-mkconfig"

    def install_uefi(self) -> TargetOutcome:
        esp = find_efi_partition(self.ctx, self.cfg.efi_partition)
        if esp is None:
            return TargetOutcome(device="efi", ok=False, note="no EFI system partition found")

        try:
            handle = self.ctx.mounts.acquire(esp, f"{self.target_root}/{ESP_DIR}", fstype="vfat")
        except MountFailed as e:
            logger.error("%s", e)
            return TargetOutcome(device=esp, ok=False, note=str(e))

        try:
            ok = self._chroot(
                [
                    "grub-install",
                    "--target=x86_64-efi",
                    f"--efi-directory=/{ESP_DIR}",
                    f"--bootloader-id={BOOTLOADER_ID}",
                    "--recheck",
                ]
            ).ok
            attempts = ["efi"]
            if ok:
                attempts.append("efi-removable")
                removable = self._chroot(
                    ["grub-install", "--target=x86_64-efi", f"--efi-directory=/{ESP_DIR}", "--removable"]
                )
                if not removable.ok:
                    logger.warning("Removable EFI fallback entry could not be installed")
            verified = self.verify_efi() if ok else None
        finally:
            self.ctx.mounts.release(handle)

        return TargetOutcome(device=esp, ok=ok, strategy="efi" if ok else None, attempts=tuple(attempts), verified=verified)

    def install_legacy(self, device: str) -> TargetOutcome:
        if not self.ctx.dry_run and not self.is_block(device):
            logger.warning("%s is not a block device; skipping", device)
            return TargetOutcome(device=device, ok=False, note="not a block device")

        def attempt(args: Tuple[str, ...]) -> Callable[[], bool]:
            return lambda: self._chroot(["grub-install", *args, device], env=LEGACY_ENV).ok

        chain = run_chain(
            [Strategy(name, attempt(args)) for name, args in LEGACY_LADDER],
            label=f"grub-install {device}",
        )
        verified = self.verify_legacy(device) if chain.succeeded else None
        return TargetOutcome(
            device=device,
            ok=chain.succeeded,
            strategy=chain.winner,
            attempts=tuple(chain.tried),
            verified=verified,
        )

    def verify_legacy(self, device: str) -> Optional[bool]:
        """Look for the GRUB signature in the first sector. None if unreadable."""

        if self.ctx.dry_run:
            return None
        try:
            with open(device, "rb") as f:
                return b"GRUB" in f.read(512)
        except OSError as e:
            logger.warning("Unable to read boot sector of %s: %s", device, e)
            return None

    def verify_efi(self) -> Optional[bool]:
        if self.ctx.dry_run:
            return None
        esp = Path(self.target_root) / ESP_DIR
        return any(p.suffix.lower() == ".efi" for p in esp.rglob("*"))

    def install(self, targets: Sequence[BootTarget]) -> BootloaderResult:
        result = BootloaderResult()

        result.initramfs = self.regenerate_initramfs()
        if result.initramfs is None:
            result.notes.append("initramfs regeneration failed")

        self.write_grub_defaults()
        try:
            result.config = self.generate_boot_config()
        except BootloaderFailed as e:
            result.notes.append(str(e))
            logger.error("%s", e)

        if any(t.firmware == "uefi" for t in targets):
            result.outcomes.append(self.install_uefi())
        for t in targets:
            if t.firmware == "legacy":
                result.outcomes.append(self.install_legacy(t.device))

        for o in result.outcomes:
            if o.ok and o.verified is False:
                result.notes.append(f"{o.device}: no bootloader signature found after install")
            elif not o.ok:
                result.notes.append(f"{o.device}: bootloader installation failed")

        logger.info(
            "Bootloader %s (%d/%d targets)",
            result.status,
            sum(1 for o in result.outcomes if o.ok),
            len(result.outcomes),
        )
        return result
