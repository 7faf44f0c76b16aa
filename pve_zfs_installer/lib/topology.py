"""Storage topology planning.

Devices are bucketed by *exact* byte capacity (never a tolerance band) and
each bucket is laid out as 2-way mirrors when mirroring is allowed, with a
leftover device becoming a single-disk vdev in the same pool. Planning is a
pure function of its input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import NoEligibleDevices
from .inventory import Device

logger = logging.getLogger(__name__)


class VdevKind(str, Enum):
    MIRROR = "mirror"
    SINGLE = "single"


_MEMBER_COUNT = {VdevKind.MIRROR: 2, VdevKind.SINGLE: 1}


@dataclass(frozen=True)
class CapacityGroup:
    capacity: int
    devices: Tuple[Device, ...]


@dataclass(frozen=True)
class VdevPlan:
    kind: VdevKind
    members: Tuple[str, ...]

    def __post_init__(self) -> None:
        want = _MEMBER_COUNT[self.kind]
        if len(self.members) != want:
            raise ValueError(f"{self.kind.value} vdev needs {want} member(s), got {len(self.members)}")

    def zpool_args(self) -> List[str]:
        if self.kind == VdevKind.MIRROR:
            return ["mirror", *self.members]
        return list(self.members)


@dataclass(frozen=True)
class PoolPlan:
    name: str
    vdevs: Tuple[VdevPlan, ...]
    properties: Dict[str, str] = field(default_factory=dict)
    dataset_properties: Dict[str, str] = field(default_factory=dict)

    @property
    def devices(self) -> List[str]:
        return [m for v in self.vdevs for m in v.members]

    @property
    def mirror_count(self) -> int:
        return sum(1 for v in self.vdevs if v.kind == VdevKind.MIRROR)

    @property
    def single_count(self) -> int:
        return sum(1 for v in self.vdevs if v.kind == VdevKind.SINGLE)

    def summary(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "mirrors": self.mirror_count,
            "singles": self.single_count,
            "vdevs": [{"kind": v.kind.value, "members": list(v.members)} for v in self.vdevs],
        }


def group_by_capacity(devices: Iterable[Device]) -> List[CapacityGroup]:
    """Bucket devices by exact capacity, ordered by first appearance."""

    buckets: Dict[int, List[Device]] = {}
    for d in devices:
        buckets.setdefault(d.capacity_bytes, []).append(d)
    return [CapacityGroup(capacity=c, devices=tuple(ds)) for c, ds in buckets.items()]


def plan_vdevs(group: CapacityGroup, *, min_mirror_size: int, auto_mirror: bool) -> List[VdevPlan]:
    paths = [d.path for d in group.devices]
    if not auto_mirror or group.capacity < min_mirror_size:
        return [VdevPlan(VdevKind.SINGLE, (p,)) for p in paths]

    vdevs = [VdevPlan(VdevKind.MIRROR, (paths[i], paths[i + 1])) for i in range(0, len(paths) - 1, 2)]
    if len(paths) % 2:
        vdevs.append(VdevPlan(VdevKind.SINGLE, (paths[-1],)))
    return vdevs


def plan_pool(
    devices: Sequence[Device],
    *,
    name: str,
    min_mirror_size: int,
    auto_mirror: bool = True,
    properties: Optional[Dict[str, str]] = None,
    dataset_properties: Optional[Dict[str, str]] = None,
) -> PoolPlan:
    eligible = [d for d in devices if not d.excluded]
    if not eligible:
        raise NoEligibleDevices("No eligible block devices found for the pool")

    vdevs: List[VdevPlan] = []
    for group in group_by_capacity(eligible):
        group_vdevs = plan_vdevs(group, min_mirror_size=min_mirror_size, auto_mirror=auto_mirror)
        logger.info(
            "Capacity group %d bytes: %d device(s) -> %s",
            group.capacity,
            len(group.devices),
            ", ".join(v.kind.value for v in group_vdevs),
        )
        vdevs.extend(group_vdevs)

    return PoolPlan(
        name=name,
        vdevs=tuple(vdevs),
        properties=dict(properties or {}),
        dataset_properties=dict(dataset_properties or {}),
    )


def describe_plan(plan: PoolPlan) -> List[str]:
    lines = [
        f"Pool {plan.name}: {len(plan.vdevs)} vdev(s), {plan.mirror_count} mirror(s), {plan.single_count} single(s)",
    ]
    for i, v in enumerate(plan.vdevs):
        lines.append(f"  vdev {i}: {v.kind.value} {' '.join(v.members)}")
    return lines
