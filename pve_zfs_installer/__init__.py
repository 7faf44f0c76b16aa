"""Proxmox VE on ZFS bare-metal installer.

Core design goals:
- Exact-capacity pool planning (mirrors where allowed)
- Phased provisioning with explicit phase results
- Fallback ladders for every fragile external step
- Mounts released on every exit path
- Centralized logging
"""

__all__ = []
