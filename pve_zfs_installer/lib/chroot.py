from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Mapping, Optional, Sequence

from .command import CmdResult

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

CHROOT_ENV = {"LANG": "C", "LC_ALL": "C", "DEBIAN_FRONTEND": "noninteractive"}


def chroot_cmd(
    ctx: "ProvisionContext",
    target_root: str,
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
) -> CmdResult:
    """Run a command inside target root."""

    merged = dict(CHROOT_ENV)
    merged.update(env or {})
    return ctx.run(
        ["chroot", target_root, *argv], check=check, env=merged, timeout=timeout, input_text=input_text
    )
