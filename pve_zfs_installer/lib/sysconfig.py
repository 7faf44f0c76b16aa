"""Identity and access settings written into the target root."""

from __future__ import annotations

import logging
import re
import socket
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple

from .chroot import chroot_cmd
from .fsutil import write_text

if TYPE_CHECKING:  # pragma: no cover
    from ..context import ProvisionContext

logger = logging.getLogger(__name__)

# Used for the host line in /etc/hosts when no routable address is found.
FALLBACK_ADDRESS = "127.0.1.1"

_SRC_RE = re.compile(r"\bsrc\s+(\S+)")

HOSTS_TEMPLATE = """127.0.0.1 localhost.localdomain localhost
{address} {fqdn} {short}

# The following lines are desirable for IPv6 capable hosts
::1     localhost ip6-localhost ip6-loopback
ff02::1 ip6-allnodes
ff02::2 ip6-allrouters
"""


def host_names(hostname: Optional[str], domain: str) -> Tuple[str, str]:
    """Return ``(short, fqdn)``; an unset hostname falls back to the rescue system's."""

    name = hostname or socket.gethostname() or "pve"
    if "." in name:
        return name.split(".", 1)[0], name
    return name, f"{name}.{domain}"


def primary_address(ctx: "ProvisionContext") -> Optional[str]:
    """Source address of the default route, as the kernel would pick it."""

    r = ctx.query(["ip", "-o", "route", "get", "1.1.1.1"])
    if not r.ok:
        return None
    m = _SRC_RE.search(r.stdout)
    return m.group(1) if m else None


def write_identity(target_root: str, short: str, fqdn: str, address: str, *, dry_run: bool = False) -> None:
    root = Path(target_root)
    write_text(str(root / "etc/hostname"), f"{short}\n", dry_run=dry_run)
    write_text(
        str(root / "etc/hosts"),
        HOSTS_TEMPLATE.format(address=address, fqdn=fqdn, short=short),
        dry_run=dry_run,
    )


def set_timezone(ctx: "ProvisionContext", target_root: str, timezone: str) -> bool:
    r = chroot_cmd(ctx, target_root, ["ln", "-sf", f"/usr/share/zoneinfo/{timezone}", "/etc/localtime"], check=False)
    if not r.ok:
        return False
    write_text(str(Path(target_root) / "etc/timezone"), f"{timezone}\n", dry_run=ctx.dry_run)
    return True


def configure_locale(ctx: "ProvisionContext", target_root: str, locale: str) -> str:
    """Generate ``locale`` in the target. Returns the locale left active (``C`` on failure).

    The C locale is written first so package scripts run while the locale is
    being generated do not warn about a missing one.
    """

    root = Path(target_root)
    default_locale = str(root / "etc/default/locale")
    write_text(default_locale, "LANG=C\nLC_ALL=C\n", dry_run=ctx.dry_run)

    charset = locale.split(".", 1)[1] if "." in locale else "UTF-8"
    write_text(str(root / "etc/locale.gen"), f"{locale} {charset}\n", dry_run=ctx.dry_run)

    if not chroot_cmd(ctx, target_root, ["locale-gen"], check=False).ok:
        logger.warning("locale-gen failed in %s; keeping the C locale", target_root)
        write_text(default_locale, "LANG=C\n", dry_run=ctx.dry_run)
        return "C"

    write_text(default_locale, f"LANG={locale}\n", dry_run=ctx.dry_run)
    return locale


def set_root_password(ctx: "ProvisionContext", target_root: str, password: str) -> bool:
    argv = ["chpasswd"]
    if password.startswith("$"):
        argv.append("-e")
    r = chroot_cmd(ctx, target_root, argv, check=False, input_text=f"root:{password}\n")
    return r.ok


def generate_host_keys(ctx: "ProvisionContext", target_root: str) -> bool:
    # -A only creates the key types that are missing.
    return chroot_cmd(ctx, target_root, ["ssh-keygen", "-A"], check=False).ok
