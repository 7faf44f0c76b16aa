from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Tuple

from ..config import IdempotencyPolicy
from ..errors import MountFailed, PoolBuildFailed
from .block import base_disk
from .command import CommandError
from .fallback import ChainResult, Strategy, run_chain
from .mounts import MountHandle, MountKind
from .topology import PoolPlan

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

# Zeroed at both ends of a disk to kill stale labels and partition tables.
WIPE_ZERO_MIB = 100
MIB = 1024**2


@dataclass
class PoolBuildResult:
    plan: PoolPlan
    forced: bool = False
    wiped: List[str] = field(default_factory=list)
    added: int = 0
    datasets: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        return {
            "pool": self.plan.summary(),
            "forced": self.forced,
            "wiped": list(self.wiped),
            "datasets": list(self.datasets),
            "warnings": list(self.warnings),
        }


class PoolBuilder:
    """Creates exactly one pool from a ``PoolPlan``.

    The first vdev creates the pool and every later vdev is added to it.
    An existing pool is handled by the idempotency policy before anything is
    touched.
    """

    def __init__(self, ctx: "ProvisionContext"):
        self.ctx = ctx
        self.cfg = ctx.config

    def pool_exists(self, name: str) -> bool:
        return self.ctx.query(["zpool", "list", "-H", "-o", "name", name]).ok

    def list_datasets(self, name: str) -> List[str]:
        r = self.ctx.query(["zfs", "list", "-H", "-o", "name", "-r", name])
        if not r.ok:
            return []
        return [line.strip() for line in r.stdout.splitlines() if line.strip()]

    def list_zfs_mounts(self, name: str) -> List[str]:
        r = self.ctx.query(["findmnt", "-rn", "-t", "zfs", "-o", "SOURCE,TARGET"])
        targets = []
        for line in r.stdout.splitlines():
            cols = line.split()
            if len(cols) == 2 and (cols[0] == name or cols[0].startswith(f"{name}/")):
                targets.append(cols[1])
        return targets

    def resolve_conflict(self, name: str, policy: IdempotencyPolicy, devices: List[str]) -> bool:
        """Apply the idempotency policy. Returns True when the force path is taken."""

        if policy == IdempotencyPolicy.FORCE:
            if self.pool_exists(name):
                logger.warning("Pool %s exists; tearing it down (idempotency=force)", name)
                self.teardown(name)
            return True

        if not self.pool_exists(name):
            return False

        if policy == IdempotencyPolicy.FAIL:
            raise PoolBuildFailed(
                f"Pool {name} already exists (idempotency=fail)",
                remediation="Export or destroy the pool, or re-run with idempotency=force.",
            )

        question = f"Pool {name} already exists. Destroy it and wipe {' '.join(devices)}?"
        if not self.ctx.confirm(question):
            raise PoolBuildFailed(f"Operator declined to replace existing pool {name}")
        self.teardown(name)
        return True

    def teardown(self, name: str) -> ChainResult:
        for ds in reversed(self.list_datasets(name)):
            self.ctx.run(["zfs", "unmount", "-f", ds], check=False)

        for target in reversed(self.list_zfs_mounts(name)):
            if not self.ctx.succeeds(["umount", "-f", target]):
                self.ctx.run(["umount", "-l", target], check=False)

        chain = run_chain(
            [
                Strategy("export", lambda: self.ctx.succeeds(["zpool", "export", name])),
                Strategy("destroy", lambda: self.ctx.succeeds(["zpool", "destroy", "-f", name])),
            ],
            label=f"teardown pool {name}",
        )
        if not chain.succeeded:
            raise PoolBuildFailed(f"Unable to export or destroy existing pool {name}")
        return chain

    def wipe_device(self, dev: str) -> None:
        """Best-effort wipe of every signature the pool could trip over."""

        t = self.cfg.wipe_timeout
        logger.info("Wiping %s", dev)

        for part in self._mounted_partitions(dev):
            self.ctx.run(["umount", "-f", part], check=False, timeout=t)

        steps: List[List[str]] = [
            ["vgchange", "-an"],
            ["mdadm", "--stop", "--scan"],
            ["zpool", "labelclear", "-f", dev],
            ["wipefs", "-a", dev],
            ["dd", "if=/dev/zero", f"of={dev}", "bs=1M", f"count={WIPE_ZERO_MIB}", "conv=fsync"],
        ]
        size = self._size_mib(dev)
        if size > WIPE_ZERO_MIB:
            steps.append(
                [
                    "dd",
                    "if=/dev/zero",
                    f"of={dev}",
                    "bs=1M",
                    f"count={WIPE_ZERO_MIB}",
                    f"seek={size - WIPE_ZERO_MIB}",
                    "conv=fsync",
                ]
            )
        steps += [
            ["sgdisk", "--zap-all", dev],
            ["zpool", "labelclear", "-f", dev],
        ]

        for argv in steps:
            r = self.ctx.run(argv, check=False, timeout=t)
            if not r.ok:
                logger.warning("Wipe step failed on %s (continuing): %s", dev, " ".join(argv))

    def build(self, plan: PoolPlan, policy: Optional[IdempotencyPolicy] = None) -> PoolBuildResult:
        policy = policy or self.cfg.idempotency
        if not plan.vdevs:
            raise PoolBuildFailed(f"Pool plan for {plan.name} has no vdevs")

        result = PoolBuildResult(plan=plan)
        result.forced = self.resolve_conflict(plan.name, policy, plan.devices)

        if result.forced:
            for dev in plan.devices:
                self.wipe_device(dev)
                result.wiped.append(dev)
            self.ctx.run(["udevadm", "settle"], check=False)
            self.ctx.sleep(self.cfg.settle_delay)

        first, rest = plan.vdevs[0], plan.vdevs[1:]
        argv = ["zpool", "create"]
        if result.forced:
            argv.append("-f")
        for k, v in plan.properties.items():
            argv += ["-o", f"{k}={v}"]
        argv += [plan.name, *first.zpool_args()]
        try:
            self.ctx.run(argv)
        except CommandError as e:
            raise PoolBuildFailed(f"zpool create failed for {plan.name}: {e}") from e
        logger.info("Created pool %s with %s vdev", plan.name, first.kind.value)

        for v in rest:
            try:
                self.ctx.run(["zpool", "add", "-f", plan.name, *v.zpool_args()])
            except CommandError as e:
                raise PoolBuildFailed(f"zpool add failed for {plan.name} ({' '.join(v.members)}): {e}") from e
            result.added += 1
            logger.info("Added %s vdev %s to %s", v.kind.value, " ".join(v.members), plan.name)

        result.warnings += self.apply_dataset_properties(plan.name, plan.dataset_properties)
        return result

    def apply_dataset_properties(self, target: str, props: Mapping[str, str]) -> List[str]:
        """Set dataset properties. Failures are returned as warnings."""

        warnings = []
        for k, v in props.items():
            r = self.ctx.run(["zfs", "set", f"{k}={v}", target], check=False)
            if not r.ok:
                msg = f"Could not set {k}={v} on {target}"
                logger.warning("%s: %s", msg, r.stderr.strip())
                warnings.append(msg)
        return warnings

    def dataset_layout(self, pool: str) -> List[Tuple[str, Dict[str, str]]]:
        parts = self.cfg.root_dataset.split("/")
        layout: List[Tuple[str, Dict[str, str]]] = []
        for i in range(1, len(parts)):
            layout.append((f"{pool}/{'/'.join(parts[:i])}", {"canmount": "off", "mountpoint": "none"}))
        layout.append((f"{pool}/{self.cfg.root_dataset}", {"canmount": "noauto", "mountpoint": "/"}))
        layout.append((f"{pool}/data", {}))
        return layout

    def create_datasets(self, result: PoolBuildResult) -> List[str]:
        pool = result.plan.name
        existing = set(self.list_datasets(pool))
        for ds, props in self.dataset_layout(pool):
            if ds in existing:
                logger.info("Dataset %s already exists", ds)
                result.datasets.append(ds)
                continue
            argv = ["zfs", "create"]
            for k, v in props.items():
                argv += ["-o", f"{k}={v}"]
            try:
                self.ctx.run([*argv, ds])
            except CommandError as e:
                raise PoolBuildFailed(f"Failed to create dataset {ds}: {e}") from e
            result.datasets.append(ds)

        result.warnings += self.apply_dataset_properties(f"{pool}/data", result.plan.dataset_properties)
        return result.datasets

    def _mounted_partitions(self, dev: str) -> List[str]:
        r = self.ctx.query(["lsblk", "-rpno", "NAME,MOUNTPOINT", dev])
        parts = []
        for line in r.stdout.splitlines():
            cols = line.split(maxsplit=1)
            if len(cols) == 2 and cols[1].strip():
                parts.append(cols[0])
        return parts

    def _size_mib(self, dev: str) -> int:
        r = self.ctx.query(["blockdev", "--getsize64", dev])
        try:
            return int(r.stdout.strip()) // MIB
        except ValueError:
            return 0


def import_pool(ctx: "ProvisionContext", name: str) -> str:
    """Make sure ``name`` is imported. Returns how it got there."""

    if ctx.query(["zpool", "list", "-H", "-o", "name", name]).ok:
        return "already-imported"

    chain = run_chain(
        [
            Strategy("import", lambda: ctx.succeeds(["zpool", "import", "-N", "-f", name])),
            Strategy("import-scan", lambda: ctx.succeeds(["zpool", "import", "-N", "-d", "/dev", "-f", name])),
        ],
        label=f"import pool {name}",
    )
    if not chain.succeeded:
        raise PoolBuildFailed(
            f"Unable to import pool {name}",
            remediation="Check 'zpool import' output for the pool and its devices.",
        )
    return chain.winner or "import"


def mount_root_dataset(ctx: "ProvisionContext", *, dataset: str, target_root: str) -> MountHandle:
    """Mount the root dataset at ``target_root`` and register the handle."""

    mounts = ctx.mounts
    existing = mounts.find(target_root)
    if existing is not None:
        return existing
    if mounts.is_mounted(target_root):
        logger.warning("%s is already mounted; adopting it", target_root)
        return mounts.adopt(dataset, target_root, MountKind.ZFS)

    if not ctx.dry_run:
        Path(target_root).mkdir(parents=True, exist_ok=True)
    ctx.run(["zfs", "set", f"mountpoint={target_root}", dataset], check=False)

    def legacy() -> bool:
        return ctx.succeeds(["zfs", "set", "mountpoint=legacy", dataset]) and ctx.succeeds(
            ["mount", "-t", "zfs", dataset, target_root]
        )

    chain = run_chain(
        [
            Strategy("zfs-mount", lambda: ctx.succeeds(["zfs", "mount", dataset])),
            Strategy("mount-zfsutil", lambda: ctx.succeeds(["mount", "-t", "zfs", "-o", "zfsutil", dataset, target_root])),
            Strategy("legacy", legacy),
        ],
        label=f"mount {dataset}",
    )
    if not chain.succeeded:
        raise MountFailed(f"Unable to mount {dataset} at {target_root} ({', '.join(chain.tried)})")
    return mounts.adopt(dataset, target_root, MountKind.ZFS)


def reset_root_mountpoint(ctx: "ProvisionContext", dataset: str) -> bool:
    return ctx.succeeds(["zfs", "set", "mountpoint=/", dataset])


def export_pool(ctx: "ProvisionContext", name: str) -> ChainResult:
    return run_chain(
        [
            Strategy("export", lambda: ctx.succeeds(["zpool", "export", name])),
            Strategy("export-force", lambda: ctx.succeeds(["zpool", "export", "-f", name])),
        ],
        label=f"export pool {name}",
    )


def pool_member_disks(ctx: "ProvisionContext", name: str) -> List[str]:
    """Whole disks backing ``name``, from ``zpool status -P``."""

    r = ctx.query(["zpool", "status", "-P", name])
    disks: List[str] = []
    for line in r.stdout.splitlines():
        token = line.strip().split(" ", 1)[0]
        if token.startswith("/dev/"):
            disk = base_disk(token)
            if disk not in disks:
                disks.append(disk)
    return disks
