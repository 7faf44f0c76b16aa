from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .config import InstallerConfig
from .lib.command import CmdResult, Runner, run_cmd
from .lib.mounts import MountManager

logger = logging.getLogger(__name__)


def prompt_yes(question: str) -> bool:
    """Block on the operator; only a typed 'yes' confirms."""

    try:
        answer = input(f"{question} (type 'yes' to confirm): ")
    except EOFError:
        return False
    return answer.strip().lower() == "yes"


@dataclass
class ProvisionContext:
    """Everything a component needs, passed explicitly.

    ``mounts`` is the live mount-handle registry for the run. ``tool_paths``
    and ``library_paths`` are extended when the module resolver stages
    tooling outside the default search paths.
    """

    config: InstallerConfig
    runner: Runner = run_cmd
    sleep: Callable[[float], None] = time.sleep
    confirm: Callable[[str], bool] = prompt_yes
    which: Callable[[str], Optional[str]] = shutil.which
    geteuid: Callable[[], int] = os.geteuid
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("pve_zfs_installer"))
    tool_paths: List[str] = field(default_factory=list)
    library_paths: List[str] = field(default_factory=list)
    mounts: MountManager = field(init=False)

    def __post_init__(self) -> None:
        self.mounts = MountManager(self)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def tool_env(self) -> Dict[str, str]:
        env: Dict[str, str] = {}
        if self.tool_paths:
            env["PATH"] = os.pathsep.join([*self.tool_paths, os.environ.get("PATH", "")])
        if self.library_paths:
            env["LD_LIBRARY_PATH"] = os.pathsep.join(
                [*self.library_paths, os.environ.get("LD_LIBRARY_PATH", "")]
            ).rstrip(os.pathsep)
        return env

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CmdResult:
        merged = self.tool_env()
        merged.update(env or {})
        return self.runner(
            argv,
            check=check,
            env=merged or None,
            cwd=cwd,
            input_text=input_text,
            timeout=timeout if timeout is not None else self.config.tool_timeout,
            dry_run=self.dry_run,
        )

    def succeeds(self, argv: Sequence[str], *, timeout: Optional[float] = None) -> bool:
        """Run ``argv`` without raising; True when it exited 0 in time."""

        return self.run(argv, check=False, timeout=timeout).ok

    def query(self, argv: Sequence[str], *, timeout: Optional[float] = None) -> CmdResult:
        """Run a read-only probe. Probes execute even in dry-run mode."""

        return self.runner(
            argv,
            check=False,
            env=self.tool_env() or None,
            cwd=None,
            input_text=None,
            timeout=timeout if timeout is not None else self.config.tool_timeout,
            dry_run=False,
        )
