from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from .config import InstallerConfig, load_config
from .context import ProvisionContext, prompt_yes
from .errors import ConfigError
from .lib.env import PATHS
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .orchestrator import EXIT_FATAL, InstallationState, PhaseRunner, PhaseStatus, run_phases
from .phases import (
    BootloaderPhase,
    FinalizePhase,
    ImportPoolPhase,
    PopulatePhase,
    PreparePhase,
    StoragePhase,
)
from .state_store import save_report

logger = logging.getLogger(__name__)

DEFAULT_REPORT_PATH = PATHS.report_default
REPAIR_HINT = "Run 'pve-zfs-installer repair-bootloader' before rebooting."


def install_phases() -> List[PhaseRunner]:
    return [
        PreparePhase(),
        StoragePhase(),
        PopulatePhase(),
        BootloaderPhase(),
        FinalizePhase(),
    ]


def repair_phases() -> List[PhaseRunner]:
    return [
        PreparePhase(),
        ImportPoolPhase(),
        BootloaderPhase(),
        FinalizePhase(),
    ]


def run_provisioning(config: InstallerConfig, ctx: Optional[ProvisionContext] = None) -> InstallationState:
    """Build the pool and provision the target from scratch."""

    ctx = ctx or ProvisionContext(config=config)
    logger.info(
        "Provisioning pool=%s target=%s idempotency=%s dry_run=%s",
        config.pool_name,
        config.target_root,
        config.idempotency.value,
        config.dry_run,
    )
    return run_phases(ctx, install_phases())


def run_repair(config: InstallerConfig, ctx: Optional[ProvisionContext] = None) -> InstallationState:
    """Re-import an existing pool and reinstall the bootloader."""

    ctx = ctx or ProvisionContext(config=config)
    logger.info("Repairing bootloader for pool=%s target=%s", config.pool_name, config.target_root)
    return run_phases(ctx, repair_phases())


def report_outcome(state: InstallationState) -> None:
    if state.aborted_at is not None:
        phase = state.phase(state.aborted_at)
        logger.error("Installation aborted in phase %s: %s", phase.name, phase.error)
        if phase.remediation:
            logger.error("Remediation: %s", phase.remediation)
        return

    if state.overall_degraded:
        for phase in state.phases:
            if phase.status == PhaseStatus.DEGRADED:
                logger.warning("Phase %s degraded: %s", phase.name, phase.error or "; ".join(phase.notes))
                if phase.remediation:
                    logger.warning("Remediation: %s", phase.remediation)
        logger.warning("The system may not boot as installed. %s", REPAIR_HINT)
        return

    logger.info("Installation completed successfully")


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="pve-zfs-installer")
    p.add_argument(
        "command",
        nargs="?",
        default="install",
        choices=["install", "repair-bootloader"],
        help="install (default) or repair-bootloader",
    )
    p.add_argument("--config", default=None, help="Path to installer configuration (json|yaml)")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")
    p.add_argument("--report", default=DEFAULT_REPORT_PATH, help="Path to the run report (json|yaml)")
    p.add_argument("--dry-run", action="store_true", help="Log commands without executing them")
    p.add_argument("--yes", action="store_true", help="Answer yes when asked to replace an existing pool")
    p.add_argument("--verbose", action="store_true", help="Show command output on the console")

    args = p.parse_args(argv)

    actual_log_path = configure_logging(log_path=args.log, verbose=args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        logger.error("Remediation: %s", e.remediation)
        return EXIT_FATAL

    if args.dry_run:
        config = config.replace(dry_run=True)

    ctx = ProvisionContext(config=config, confirm=(lambda question: True) if args.yes else prompt_yes)

    if args.command == "repair-bootloader":
        state = run_repair(config, ctx)
    else:
        state = run_provisioning(config, ctx)

    report_outcome(state)

    report = state.to_dict()
    report["command"] = args.command
    report["log_path"] = actual_log_path
    try:
        save_report(args.report, report)
    except (OSError, RuntimeError) as e:
        logger.warning("Could not write run report to %s: %s", args.report, e)

    return state.exit_code
