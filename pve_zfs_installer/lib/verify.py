from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List

from .bootloader import GRUB_CFG

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

# Missing any of these means the hypervisor is not installed.
REQUIRED_FILES = ("usr/bin/pvesh",)
EXPECTED_PATHS = ("usr/share/proxmox-ve", "usr/bin/qm", "usr/bin/pct")


@dataclass
class VerifyReport:
    problems: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def summary(self) -> Dict[str, object]:
        return {"ok": self.ok, "problems": list(self.problems), "warnings": list(self.warnings)}


def verify_installation(ctx: "ProvisionContext", target_root: str) -> VerifyReport:
    """Check that the pool, root dataset, hypervisor and boot files are in place."""

    cfg = ctx.config
    root = Path(target_root)
    report = VerifyReport()

    if not ctx.query(["zpool", "list", "-H", "-o", "name", cfg.pool_name]).ok:
        report.problems.append(f"pool {cfg.pool_name} is not imported")
    if not ctx.query(["zfs", "list", "-H", "-o", "name", cfg.root_dataset_path]).ok:
        report.problems.append(f"root dataset {cfg.root_dataset_path} not found")

    for rel in REQUIRED_FILES:
        if not (root / rel).exists():
            report.problems.append(f"/{rel} missing; Proxmox VE is not installed")
    for rel in EXPECTED_PATHS:
        if not (root / rel).exists():
            report.warnings.append(f"/{rel} missing")

    boot = root / "boot"
    if not list(boot.glob("vmlinuz-*")):
        report.warnings.append("no kernel image in /boot")
    if not list(boot.glob("initrd.img-*")):
        report.warnings.append("no initramfs image in /boot")
    if not (root / GRUB_CFG.lstrip("/")).exists():
        report.warnings.append(f"{GRUB_CFG} missing")

    for msg in report.problems:
        logger.error("Verification: %s", msg)
    for msg in report.warnings:
        logger.warning("Verification: %s", msg)
    if report.ok:
        logger.info("Installation in %s verified", target_root)
    return report
