from __future__ import annotations

import logging
import os
import re
import stat
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

_NVME_PART_RE = re.compile(r"^(.*nvme\d+n\d+)p\d+$")
_SD_PART_RE = re.compile(r"^(.*/(?:sd|vd)[a-z]+)\d+$")
_BYID_PART_RE = re.compile(r"^(/dev/disk/by-[^/]+/.+)-part\d+$")


def base_disk(dev: str) -> str:
    """Map a partition path to the disk that carries it.

    ``/dev/nvme0n1p3`` -> ``/dev/nvme0n1``, ``/dev/sda2`` -> ``/dev/sda``.
    Anything else is returned unchanged.
    """

    for rx in (_BYID_PART_RE, _NVME_PART_RE, _SD_PART_RE):
        m = rx.match(dev)
        if m:
            return m.group(1)
    return dev


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def find_vfat_partitions(ctx: "ProvisionContext") -> List[str]:
    """Return partitions carrying a vfat filesystem (ESP candidates)."""

    r = ctx.query(["lsblk", "-rpno", "NAME,FSTYPE,TYPE"])
    found = []
    for line in r.stdout.splitlines():
        cols = line.split()
        if len(cols) == 3 and cols[1] == "vfat" and cols[2] == "part":
            found.append(cols[0])
    return found
