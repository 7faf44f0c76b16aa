from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def copy_tree(src: str, dst: str, *, dry_run: bool = False) -> int:
    """Copy ``src`` into ``dst``, merging with what is there. Returns files copied."""

    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(src)

    if dry_run:
        logger.info("Would copy tree %s -> %s", str(s), str(d))
        return 0

    copied = 0
    d.mkdir(parents=True, exist_ok=True)
    for item in s.rglob("*"):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir() and not item.is_symlink():
            out.mkdir(parents=True, exist_ok=True)
        else:
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, out, follow_symlinks=False)
            copied += 1
    logger.info("Copied %d files %s -> %s", copied, str(s), str(d))
    return copied


def copy_file(src: str, dst: str, *, mode: Optional[int] = None, dry_run: bool = False) -> None:
    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(src)

    if dry_run:
        logger.info("Would copy %s -> %s", str(s), str(d))
        return

    d.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(s, d)
    if mode is not None:
        d.chmod(mode)
    logger.info("Copied %s -> %s", str(s), str(d))


def write_text(path: str, contents: str, *, dry_run: bool = False) -> None:
    p = Path(path)
    if dry_run:
        logger.info("Would write %s", str(p))
        return
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(contents, encoding="utf-8")
    logger.info("Wrote %s", str(p))
