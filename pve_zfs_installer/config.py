from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigError
from .lib.env import PATHS

logger = logging.getLogger(__name__)

GIB = 1024**3

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGTP]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4, "P": 1024**5}


class IdempotencyPolicy(str, Enum):
    """What to do when the target pool already exists."""

    FAIL = "fail"
    PROMPT = "prompt"
    FORCE = "force"


FIRMWARE_CHOICES = {"auto", "uefi", "legacy"}
ON_OFF = {"on", "off"}
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")

DEFAULT_PACKAGES = (
    "proxmox-ve",
    "pve-manager",
    "pve-qemu-kvm",
    "pve-container",
    "pve-firmware",
    "postfix",
    "open-iscsi",
    "chrony",
)

DEFAULT_APT_SOURCES = (
    "deb [arch=amd64] http://download.proxmox.com/debian/pve bookworm pve-no-subscription",
)

DEFAULT_APT_KEYS = (
    (
        "https://enterprise.proxmox.com/debian/proxmox-release-bookworm.gpg",
        "/etc/apt/trusted.gpg.d/proxmox-release-bookworm.gpg",
    ),
)

# Substrings in package-manager output that mean the run is not healthy
# even when the exit status says otherwise.
DEFAULT_FAILURE_MARKERS = (
    "E: Unable to locate package",
    "dpkg: error processing",
    "Errors were encountered while processing",
    "E: Sub-process /usr/bin/dpkg returned an error code",
)


def parse_size(value: Any) -> int:
    """Parse ``100G``/``1.5T``/``4096`` into bytes (binary units)."""

    if isinstance(value, bool):
        raise ConfigError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ConfigError(f"Size must be >= 0, got {value}")
        return value
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ConfigError(f"Invalid size: {value!r}")
    number, unit = m.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper()])


@dataclass(frozen=True)
class InstallerConfig:
    """Immutable configuration surface, read once at start."""

    pool_name: str = "rpool"
    min_mirror_size: int = 100 * GIB
    auto_mirror: bool = True
    exclude_devices: Tuple[str, ...] = ()
    compression: str = "lz4"
    atime: str = "off"
    relatime: str = "on"
    firmware: str = "auto"
    idempotency: IdempotencyPolicy = IdempotencyPolicy.PROMPT

    target_root: str = PATHS.target_root
    root_dataset: str = "ROOT/pve-1"
    efi_partition: Optional[str] = None

    suite: str = "bookworm"
    mirror: str = "http://deb.debian.org/debian"
    arch: str = "amd64"
    packages: Tuple[str, ...] = DEFAULT_PACKAGES
    apt_sources: Tuple[str, ...] = DEFAULT_APT_SOURCES
    apt_keys: Tuple[Tuple[str, str], ...] = DEFAULT_APT_KEYS
    failure_markers: Tuple[str, ...] = DEFAULT_FAILURE_MARKERS

    hostname: Optional[str] = None
    domain: str = "localdomain"
    timezone: str = "UTC"
    locale: str = "en_US.UTF-8"
    # Plain text, or a crypt(3) hash starting with "$".
    root_password: Optional[str] = field(default=None, repr=False)

    staging_dir: str = PATHS.staging_dir
    donor_root: str = "/"

    tool_timeout: float = 60.0
    initramfs_timeout: float = 300.0
    wipe_timeout: float = 600.0
    debootstrap_timeout: float = 3600.0
    package_timeout: float = 3600.0
    settle_delay: float = 2.0

    preserve_ssh_keys: bool = True
    dry_run: bool = False

    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.pool_name or "/" in self.pool_name:
            raise ConfigError(f"pool_name must be a bare pool name, got {self.pool_name!r}")
        if self.firmware not in FIRMWARE_CHOICES:
            raise ConfigError(
                f"firmware must be one of {', '.join(sorted(FIRMWARE_CHOICES))}, got {self.firmware!r}"
            )
        if not self.root_dataset or self.root_dataset.startswith("/"):
            raise ConfigError(f"root_dataset must be relative to the pool, got {self.root_dataset!r}")
        if not str(self.target_root).startswith("/"):
            raise ConfigError(f"target_root must be absolute, got {self.target_root!r}")
        for name in ("tool_timeout", "initramfs_timeout", "wipe_timeout", "debootstrap_timeout", "package_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.settle_delay < 0:
            raise ConfigError("settle_delay must be >= 0")
        for name in ("atime", "relatime"):
            if getattr(self, name) not in ON_OFF:
                raise ConfigError(f"{name} must be on or off, got {getattr(self, name)!r}")
        if not self.compression:
            raise ConfigError("compression must not be empty")
        if self.hostname is not None and not _HOSTNAME_RE.match(self.hostname):
            raise ConfigError(f"hostname is not a valid host name: {self.hostname!r}")
        if not _HOSTNAME_RE.match(self.domain):
            raise ConfigError(f"domain is not a valid domain name: {self.domain!r}")
        if not self.timezone or self.timezone.startswith("/") or ".." in self.timezone:
            raise ConfigError(f"timezone must be a zoneinfo name like Europe/Berlin, got {self.timezone!r}")
        if not self.locale or " " in self.locale:
            raise ConfigError(f"locale must be a locale name like en_US.UTF-8, got {self.locale!r}")

    @property
    def root_dataset_path(self) -> str:
        return f"{self.pool_name}/{self.root_dataset}"

    @property
    def pool_properties(self) -> Dict[str, str]:
        # compatibility=grub2 keeps the pool readable by GRUB.
        return {"compatibility": "grub2", "ashift": "12"}

    @property
    def dataset_properties(self) -> Dict[str, str]:
        props = {"compression": self.compression, "atime": self.atime}
        # relatime only matters while atime is on.
        if self.atime == "on":
            props["relatime"] = self.relatime
        return props

    def replace(self, **changes: Any) -> "InstallerConfig":
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update(changes)
        return InstallerConfig(**data)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "InstallerConfig":
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Configuration must be a mapping/object, got {type(raw).__name__}")

        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}

        for key, value in raw.items():
            k = str(key).replace("-", "_")
            if k not in known:
                extra[k] = value
                continue
            kwargs[k] = value

        if "min_mirror_size" in kwargs:
            kwargs["min_mirror_size"] = parse_size(kwargs["min_mirror_size"])
        if "idempotency" in kwargs:
            try:
                kwargs["idempotency"] = IdempotencyPolicy(str(kwargs["idempotency"]).lower())
            except ValueError:
                raise ConfigError(
                    f"idempotency must be one of fail|prompt|force, got {kwargs['idempotency']!r}"
                ) from None
        for key in ("exclude_devices", "packages", "apt_sources", "failure_markers"):
            if key in kwargs:
                kwargs[key] = _as_str_tuple(key, kwargs[key])
        if "apt_keys" in kwargs:
            kwargs["apt_keys"] = _as_key_pairs(kwargs["apt_keys"])
        for key in ("auto_mirror", "preserve_ssh_keys", "dry_run"):
            if key in kwargs:
                kwargs[key] = _as_bool(key, kwargs[key])
        for key in ("tool_timeout", "initramfs_timeout", "wipe_timeout", "debootstrap_timeout", "package_timeout", "settle_delay"):
            if key in kwargs:
                try:
                    kwargs[key] = float(kwargs[key])
                except (TypeError, ValueError):
                    raise ConfigError(f"{key} must be a number, got {kwargs[key]!r}") from None
        if kwargs.get("firmware") is not None:
            kwargs["firmware"] = str(kwargs["firmware"]).lower()
        for key in ("hostname", "domain", "timezone", "locale", "root_password"):
            if kwargs.get(key) is not None:
                kwargs[key] = str(kwargs[key]).strip()
        for key in ("compression", "atime", "relatime"):
            if key in kwargs:
                kwargs[key] = _as_property(kwargs[key])

        if extra:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(extra)))

        return cls(**kwargs, extra=extra)


def _as_str_tuple(key: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(v for v in value.split() if v)
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    raise ConfigError(f"{key} must be a list of strings, got {type(value).__name__}")


def _as_key_pairs(value: Any) -> Tuple[Tuple[str, str], ...]:
    pairs = []
    for item in value or []:
        if isinstance(item, Mapping) and "url" in item and "dest" in item:
            pairs.append((str(item["url"]), str(item["dest"])))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            pairs.append((str(item[0]), str(item[1])))
        else:
            raise ConfigError(f"apt_keys entries need url and dest, got {item!r}")
    return tuple(pairs)


def _as_property(value: Any) -> str:
    # YAML reads bare on/off as booleans.
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value).strip().lower()


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in {"yes", "true", "1", "on"}:
        return True
    if s in {"no", "false", "0", "off"}:
        return False
    raise ConfigError(f"{key} must be a boolean (yes/no), got {value!r}")


def load_config(path: Optional[str]) -> InstallerConfig:
    """Load configuration from YAML or JSON (by suffix). ``None`` means defaults."""

    if path is None:
        return InstallerConfig()

    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    text = p.read_text(encoding="utf-8")
    suffix = p.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ConfigError("PyYAML is required to read YAML configuration") from e
        try:
            raw = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    else:
        try:
            raw = json.loads(text or "{}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    cfg = InstallerConfig.from_mapping(raw)
    logger.info("Configuration loaded from %s (pool=%s, idempotency=%s)", path, cfg.pool_name, cfg.idempotency.value)
    return cfg
