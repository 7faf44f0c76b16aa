from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Sequence

from ..errors import DeviceDiscoveryError

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

# Whole disks only: SATA/SAS, NVMe namespaces, virtio.
DISK_NAME_RE = re.compile(r"^(sd|nvme|vd)")


@dataclass(frozen=True)
class Device:
    path: str
    capacity_bytes: int
    excluded: bool = False

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


def _is_excluded(path: str, exclude: Iterable[str]) -> bool:
    name = path.rsplit("/", 1)[-1]
    for e in exclude:
        e = e.strip()
        if not e:
            continue
        if e == path or e == name or e.rsplit("/", 1)[-1] == name:
            return True
        # /dev/disk/by-id and friends are symlinks to the kernel name.
        if e.startswith("/") and os.path.realpath(e) == path:
            return True
    return False


def _device_size(ctx: "ProvisionContext", path: str) -> int:
    r = ctx.query(["blockdev", "--getsize64", path])
    try:
        return int(r.stdout.strip())
    except ValueError:
        raise DeviceDiscoveryError(f"Unable to determine size of {path}") from None


def scan_devices(ctx: "ProvisionContext", *, exclude: Sequence[str] = ()) -> List[Device]:
    """Enumerate whole-disk block devices in discovery order.

    Every disk is returned; ``excluded`` marks the ones matched by ``exclude``
    (a full path or a bare name like ``sdc``).
    """

    r = ctx.query(["lsblk", "-J", "-b", "-d", "-o", "NAME,SIZE,TYPE"])
    if not r.ok:
        raise DeviceDiscoveryError(f"lsblk failed ({r.returncode}): {r.stderr.strip()}")

    try:
        payload = json.loads(r.stdout or "{}")
    except json.JSONDecodeError as e:
        raise DeviceDiscoveryError(f"Unparseable lsblk output: {e}") from e

    devices: List[Device] = []
    for bd in payload.get("blockdevices") or []:
        name = str(bd.get("name") or "")
        if bd.get("type") != "disk" or not DISK_NAME_RE.match(name):
            continue
        path = name if name.startswith("/") else f"/dev/{name}"
        size = bd.get("size")
        try:
            capacity = int(size)
        except (TypeError, ValueError):
            capacity = 0
        if capacity <= 0:
            capacity = _device_size(ctx, path)

        dev = Device(path=path, capacity_bytes=capacity, excluded=_is_excluded(path, exclude))
        logger.info(
            "Found %s (%d bytes)%s", dev.path, dev.capacity_bytes, " [excluded]" if dev.excluded else ""
        )
        devices.append(dev)

    return devices


def eligible_devices(devices: Iterable[Device]) -> List[Device]:
    return [d for d in devices if not d.excluded]
