from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    target_root: str = "/mnt/proxmox"
    staging_dir: str = "/tmp/zfs-rescue"
    log_default: str = "/var/log/pve-zfs-installer.log"
    report_default: str = "/var/lib/pve-zfs-installer/report.json"
    efi_indicator: str = "/sys/firmware/efi"
    zpool_cache: str = "/etc/zfs/zpool.cache"
    resolv_conf: str = "/etc/resolv.conf"
    rescue_authorized_keys: str = "/root/.ssh/authorized_keys"


PATHS = Paths()
