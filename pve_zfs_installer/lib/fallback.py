from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from ..errors import InstallerError
from .command import CommandError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exceptions that mean "this attempt failed, try the next one".
ATTEMPT_ERRORS: Tuple[Type[BaseException], ...] = (CommandError, InstallerError, OSError)


@dataclass(frozen=True)
class Strategy:
    """One rung of a fallback ladder.

    ``attempt`` returns True on success. Returning False or raising one of
    ``ATTEMPT_ERRORS`` both count as a failed attempt.
    """

    name: str
    attempt: Callable[[], bool]


@dataclass(frozen=True)
class AttemptRecord:
    name: str
    ok: bool
    error: Optional[str] = None


@dataclass
class ChainResult:
    label: str
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return any(a.ok for a in self.attempts)

    @property
    def winner(self) -> Optional[str]:
        for a in self.attempts:
            if a.ok:
                return a.name
        return None

    @property
    def tried(self) -> List[str]:
        return [a.name for a in self.attempts]


def run_chain(strategies: Sequence[Strategy], *, label: str) -> ChainResult:
    """Try strategies in order, stopping at the first success."""

    result = ChainResult(label=label)
    for s in strategies:
        try:
            ok = bool(s.attempt())
            err = None
        except ATTEMPT_ERRORS as e:
            ok = False
            err = str(e)
            logger.warning("%s: strategy %s raised: %s", label, s.name, e)

        result.attempts.append(AttemptRecord(name=s.name, ok=ok, error=err))
        if ok:
            logger.info("%s: strategy %s succeeded", label, s.name)
            return result
        logger.info("%s: strategy %s failed", label, s.name)

    logger.warning("%s: all strategies failed (%s)", label, ", ".join(result.tried))
    return result


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    exceptions: Iterable[Type[BaseException]] = ATTEMPT_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``operation`` until it returns, sleeping between failed attempts.

    The last exception is re-raised once ``attempts`` are used up.
    """

    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    exc_types = tuple(exceptions)
    wait = delay
    for i in range(attempts):
        try:
            return operation()
        except exc_types as e:
            if i == attempts - 1:
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label,
                i + 1,
                attempts,
                e,
                wait,
            )
            sleep(wait)
            wait = min(wait * backoff, max_delay)

    raise AssertionError("unreachable")  # pragma: no cover
