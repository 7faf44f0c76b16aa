"""Logging setup for installer runs.

The log file gets everything down to DEBUG, which includes the captured
stdout/stderr of every external command. The console shows INFO and above
unless ``verbose`` is set.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .lib.env import PATHS

DEFAULT_LOG_PATH = PATHS.log_default
FALLBACK_LOG_NAME = "pve-zfs-installer.log"

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# Set on the root logger once handlers are attached.
_CONFIGURED_ATTR = "_pve_zfs_log_path"


def _file_handler(path: str) -> logging.FileHandler:
    Path(os.path.dirname(path) or ".").mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    *,
    verbose: bool = False,
    also_console: bool = True,
) -> str:
    """Attach handlers to the root logger; later calls are no-ops.

    Returns the file actually written to. That is ``log_path`` unless it
    cannot be opened (rescue systems often mount /var read-only), in which
    case a log file in the working directory is used instead.
    """

    root = logging.getLogger()
    configured = getattr(root, _CONFIGURED_ATTR, None)
    if configured is not None:
        return configured

    root.setLevel(logging.DEBUG)
    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    chosen_path = log_path
    unusable = None
    try:
        file_handler = _file_handler(log_path)
    except OSError as e:
        unusable = e
        chosen_path = str(Path.cwd() / FALLBACK_LOG_NAME)
        file_handler = _file_handler(chosen_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(logging.DEBUG if verbose else logging.INFO)
        console.setFormatter(fmt)
        root.addHandler(console)

    setattr(root, _CONFIGURED_ATTR, chosen_path)

    log = logging.getLogger(__name__)
    if unusable is not None:
        log.warning("Cannot write %s (%s); logging to %s instead", log_path, unusable, chosen_path)
    log.info("Logging to %s", chosen_path)
    return chosen_path
