from __future__ import annotations

from pathlib import Path

from .env import PATHS


def detect_firmware(override: str = "auto", *, efi_indicator: str = PATHS.efi_indicator) -> str:
    """Detect firmware type for the *currently running* environment.

    Returns: 'uefi' or 'legacy'.

    Note: an explicit override from the configuration wins over the probe.
    """

    if override in ("uefi", "legacy"):
        return override
    if Path(efi_indicator).exists():
        return "uefi"
    return "legacy"
