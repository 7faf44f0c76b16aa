from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict

from ..lib.pool import import_pool, mount_root_dataset
from ..orchestrator import PhaseOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext
    from ..orchestrator import InstallationState

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    imported_by: str
    root_mount: str

    def summary(self) -> Dict[str, object]:
        return {"imported_by": self.imported_by, "root_mount": self.root_mount}


class ImportPoolPhase:
    """Bring an existing installation back: import the pool, mount its root."""

    name = "import"
    critical = True

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        cfg = ctx.config
        how = import_pool(ctx, cfg.pool_name)
        logger.info("Pool %s available (%s)", cfg.pool_name, how)
        handle = mount_root_dataset(ctx, dataset=cfg.root_dataset_path, target_root=cfg.target_root)
        return PhaseOutcome.ok(ImportResult(imported_by=how, root_mount=handle.target))
