from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List

from ..lib.inventory import Device, eligible_devices, scan_devices
from ..lib.pool import PoolBuilder, PoolBuildResult
from ..lib.topology import describe_plan, plan_pool
from ..orchestrator import PhaseOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext
    from ..orchestrator import InstallationState

logger = logging.getLogger(__name__)


@dataclass
class StorageResult:
    devices: List[Device]
    build: PoolBuildResult

    @property
    def boot_devices(self) -> List[str]:
        return self.build.plan.devices

    def summary(self) -> Dict[str, object]:
        return {
            "devices": [
                {"path": d.path, "capacity_bytes": d.capacity_bytes, "excluded": d.excluded} for d in self.devices
            ],
            **self.build.summary(),
        }


class StoragePhase:
    name = "storage"
    critical = True

    def run(self, ctx: "ProvisionContext", state: "InstallationState") -> PhaseOutcome:
        cfg = ctx.config

        devices = scan_devices(ctx, exclude=cfg.exclude_devices)
        plan = plan_pool(
            eligible_devices(devices),
            name=cfg.pool_name,
            min_mirror_size=cfg.min_mirror_size,
            auto_mirror=cfg.auto_mirror,
            properties=cfg.pool_properties,
            dataset_properties=cfg.dataset_properties,
        )
        for line in describe_plan(plan):
            logger.info("%s", line)

        builder = PoolBuilder(ctx)
        build = builder.build(plan)
        builder.create_datasets(build)

        return PhaseOutcome.ok(StorageResult(devices=devices, build=build), build.warnings)
