"""Error taxonomy.

Components raise these (or return typed results); only the orchestrator
decides whether an error aborts the remaining phases.
"""

from __future__ import annotations

from typing import Optional


class InstallerError(Exception):
    """Base class. ``remediation`` names the step an operator should re-run."""

    remediation: Optional[str] = None

    def __init__(self, message: str, *, remediation: Optional[str] = None):
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class ConfigError(InstallerError):
    remediation = "Fix the configuration file and re-run the installer."


class DeviceDiscoveryError(InstallerError):
    remediation = "Check attached disks and exclude_devices, then re-run the installer."


class NoEligibleDevices(DeviceDiscoveryError):
    pass


class PoolBuildFailed(InstallerError):
    remediation = "Inspect 'zpool status', then re-run the installer with idempotency=force."


class MountFailed(InstallerError):
    remediation = "Check that the pool is imported and the target root is free, then re-run."


class ResourceBusy(InstallerError):
    """Raised for reporting only; release treats busy resources as warnings."""


class ToolUnavailable(InstallerError):
    remediation = "Make ZFS tooling available in the rescue system (zfs/zpool), then re-run prepare."


class BootloaderPartial(InstallerError):
    remediation = "Run 'pve-zfs-installer repair-bootloader' before rebooting."


class BootloaderFailed(InstallerError):
    remediation = "Run 'pve-zfs-installer repair-bootloader' before rebooting."


class PackageInstallFailed(InstallerError):
    remediation = "Chroot into the target root and re-run 'apt-get install' for the listed packages."


class VerificationFailed(InstallerError):
    remediation = "Import the pool, inspect the target root for the listed problems, then re-run the installer."
