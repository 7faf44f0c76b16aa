from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence

from .errors import InstallerError

if TYPE_CHECKING:  # pragma: no cover
    from .context import ProvisionContext

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_FATAL = 2


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class PhaseOutcome:
    """What a phase hands back to the orchestrator."""

    status: PhaseStatus = PhaseStatus.SUCCEEDED
    result: Any = None
    notes: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, result: Any = None, notes: Optional[List[str]] = None) -> "PhaseOutcome":
        return cls(status=PhaseStatus.SUCCEEDED, result=result, notes=list(notes or []))

    @classmethod
    def degraded(
        cls, error: InstallerError, result: Any = None, notes: Optional[List[str]] = None
    ) -> "PhaseOutcome":
        return cls(status=PhaseStatus.DEGRADED, result=result, notes=list(notes or []), error=error)


class PhaseRunner(Protocol):
    """A single provisioning phase."""

    name: str
    critical: bool

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        ...


@dataclass
class Phase:
    name: str
    critical: bool
    status: PhaseStatus = PhaseStatus.PENDING
    notes: List[str] = field(default_factory=list)
    error: Optional[str] = None
    remediation: Optional[str] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        summary = getattr(self.result, "summary", None)
        return {
            "name": self.name,
            "critical": self.critical,
            "status": self.status.value,
            "notes": list(self.notes),
            "error": self.error,
            "remediation": self.remediation,
            "result": summary() if callable(summary) else None,
        }


@dataclass
class InstallationState:
    phases: List[Phase]
    overall_degraded: bool = False
    aborted_at: Optional[str] = None
    busy_mounts: List[str] = field(default_factory=list)

    def phase(self, name: str) -> Phase:
        for p in self.phases:
            if p.name == name:
                return p
        raise KeyError(name)

    def result_of(self, name: str) -> Any:
        """Result of an earlier phase, or None if it is absent or produced none."""

        for p in self.phases:
            if p.name == name:
                return p.result
        return None

    @property
    def exit_code(self) -> int:
        if self.aborted_at is not None:
            return EXIT_FATAL
        if self.overall_degraded:
            return EXIT_DEGRADED
        return EXIT_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "overall_degraded": self.overall_degraded,
            "aborted_at": self.aborted_at,
            "busy_mounts": list(self.busy_mounts),
            "phases": [p.to_dict() for p in self.phases],
        }


def _record(phase: Phase, outcome: PhaseOutcome) -> None:
    phase.status = outcome.status
    phase.result = outcome.result
    phase.notes.extend(outcome.notes)
    if outcome.error is not None:
        phase.error = str(outcome.error)
        phase.remediation = getattr(outcome.error, "remediation", None)


def run_phases(ctx: "ProvisionContext", runners: Sequence[PhaseRunner]) -> InstallationState:
    """Run phases in order.

    A failed critical phase aborts the run and leaves later phases pending.
    A failed non-critical phase is recorded as degraded and the run goes on.
    Registered mounts are released on every exit path.
    """

    state = InstallationState(phases=[Phase(name=r.name, critical=r.critical) for r in runners])

    try:
        for runner, phase in zip(runners, state.phases):
            phase.status = PhaseStatus.RUNNING
            logger.info("Running phase %s", phase.name)

            try:
                outcome = runner.run(ctx, state)
            except InstallerError as e:
                logger.error("Phase %s failed: %s", phase.name, e)
                outcome = PhaseOutcome(status=PhaseStatus.FAILED, error=e)
            except Exception as e:
                logger.exception("Phase %s failed unexpectedly", phase.name)
                outcome = PhaseOutcome(status=PhaseStatus.FAILED, error=e)

            _record(phase, outcome)

            if phase.status == PhaseStatus.FAILED:
                if phase.critical:
                    state.aborted_at = phase.name
                    logger.error("Aborting: critical phase %s failed", phase.name)
                    break
                phase.status = PhaseStatus.DEGRADED

            if phase.status == PhaseStatus.DEGRADED:
                state.overall_degraded = True
                logger.warning("Phase %s degraded: %s", phase.name, phase.error or "; ".join(phase.notes))
            else:
                logger.info("Phase %s succeeded", phase.name)
    finally:
        busy = ctx.mounts.release_all()
        state.busy_mounts.extend(h.target for h in busy)

    return state
