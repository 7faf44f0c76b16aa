from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import InstallerError, ToolUnavailable
from ..lib.firmware import detect_firmware
from ..lib.modules import ModuleResolver, Resolution
from ..lib.pkg import ensure_host_packages
from ..orchestrator import PhaseOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext
    from ..orchestrator import InstallationState

logger = logging.getLogger(__name__)


@dataclass
class PrepareResult:
    resolver: ModuleResolver
    resolution: Resolution
    firmware: str
    host_packages: List[str] = field(default_factory=list)
    staged: bool = False

    def summary(self) -> Dict[str, object]:
        return {
            "tool_source": self.resolution.source.value,
            "firmware": self.firmware,
            "host_packages": list(self.host_packages),
            "donor_staged": self.staged,
        }


class PreparePhase:
    name = "prepare"
    critical = True

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        cfg = ctx.config
        notes: List[str] = []

        if not ctx.dry_run and ctx.geteuid() != 0:
            raise InstallerError("The installer must run as root", remediation="Re-run as root (or with --dry-run).")

        resolver = ModuleResolver(ctx)
        resolution = resolver.resolve()

        staged = False
        try:
            resolver.stage_from_donor()
            staged = True
        except (ToolUnavailable, OSError) as e:
            # Only needed if the target cannot get ZFS tools from its own packages.
            notes.append(f"donor staging unavailable: {e}")
            logger.warning("Donor staging unavailable: %s", e)

        host_packages = ensure_host_packages(ctx, timeout=cfg.package_timeout)

        firmware = detect_firmware(cfg.firmware)
        logger.info("Firmware: %s (configured=%s)", firmware, cfg.firmware)

        return PhaseOutcome.ok(
            PrepareResult(
                resolver=resolver,
                resolution=resolution,
                firmware=firmware,
                host_packages=host_packages,
                staged=staged,
            ),
            notes,
        )


def prepared_resolver(ctx: "ProvisionContext", state: "InstallationState") -> ModuleResolver:
    prep: Optional[PrepareResult] = state.result_of(PreparePhase.name)
    if prep is not None:
        return prep.resolver
    return ModuleResolver(ctx)


def prepared_firmware(ctx: "ProvisionContext", state: "InstallationState") -> str:
    prep: Optional[PrepareResult] = state.result_of(PreparePhase.name)
    if prep is not None:
        return prep.firmware
    return detect_firmware(ctx.config.firmware)
