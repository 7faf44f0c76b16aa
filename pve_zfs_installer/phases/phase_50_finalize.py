from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import ResourceBusy, VerificationFailed
from ..lib.env import PATHS
from ..lib.fsutil import copy_file
from ..lib.pool import export_pool, reset_root_mountpoint
from ..lib.verify import VerifyReport, verify_installation
from ..orchestrator import PhaseOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext
    from ..orchestrator import InstallationState

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    ssh_keys_copied: bool = False
    busy_mounts: List[str] = field(default_factory=list)
    exported_by: Optional[str] = None
    verification: Optional[VerifyReport] = None

    def summary(self) -> Dict[str, object]:
        return {
            "ssh_keys_copied": self.ssh_keys_copied,
            "busy_mounts": list(self.busy_mounts),
            "exported_by": self.exported_by,
            "verification": self.verification.summary() if self.verification else None,
        }


class FinalizePhase:
    name = "finalize"
    critical = False

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        cfg = ctx.config
        notes: List[str] = []
        result = FinalizeResult()

        if cfg.preserve_ssh_keys:
            result.ssh_keys_copied = self._preserve_ssh_keys(ctx, notes)

        result.verification = self._verify(ctx, notes)

        busy = ctx.mounts.release_all()
        result.busy_mounts = [h.target for h in busy]
        for target in result.busy_mounts:
            notes.append(f"{target} stayed busy after unmount attempts")

        if not reset_root_mountpoint(ctx, cfg.root_dataset_path):
            notes.append(f"could not reset mountpoint of {cfg.root_dataset_path} to /")

        chain = export_pool(ctx, cfg.pool_name)
        result.exported_by = chain.winner
        if not chain.succeeded:
            return PhaseOutcome.degraded(
                ResourceBusy(
                    f"Pool {cfg.pool_name} could not be exported",
                    remediation=f"Run 'zpool export {cfg.pool_name}' before rebooting.",
                ),
                result,
                notes,
            )

        if result.verification is not None and not result.verification.ok:
            return PhaseOutcome.degraded(
                VerificationFailed(f"Installation incomplete: {'; '.join(result.verification.problems)}"),
                result,
                notes,
            )

        logger.info("Pool %s exported (%s); the system is ready to reboot", cfg.pool_name, chain.winner)
        return PhaseOutcome.ok(result, notes)

    def _preserve_ssh_keys(self, ctx: "ProvisionContext", notes: List[str]) -> bool:
        target_root = ctx.config.target_root
        if ctx.mounts.find(target_root) is None:
            notes.append("target root not mounted; SSH keys not copied")
            return False

        src = PATHS.rescue_authorized_keys
        if not Path(src).exists():
            notes.append(f"{src} not found; SSH keys not copied")
            return False

        copy_file(src, f"{target_root.rstrip('/')}/root/.ssh/authorized_keys", mode=0o600, dry_run=ctx.dry_run)
        return True

    def _verify(self, ctx: "ProvisionContext", notes: List[str]) -> Optional[VerifyReport]:
        target_root = ctx.config.target_root
        if ctx.dry_run:
            return None
        if ctx.mounts.find(target_root) is None:
            notes.append("target root not mounted; installation not verified")
            return None

        report = verify_installation(ctx, target_root)
        notes += [f"verification: {m}" for m in report.problems + report.warnings]
        return report
