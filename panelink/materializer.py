"""Materialise remote listings as empty placeholder entries on local disk.

A mirror directory holds one empty file or directory per remote entry plus a
``.panelink_sizes.json`` side-table recording the real size of each file.
The side-table is rewritten wholesale on every refresh.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable

from panelink.listing import ListingEntry
from panelink.mirror import SIDECAR_NAME, SIZE_TABLE_NAME, is_mirror_path

logger = logging.getLogger(__name__)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def read_size_table(directory: str | os.PathLike[str]) -> dict[str, int]:
    """Return the side-table of *directory*; missing or corrupt reads as empty."""
    table_path = Path(directory) / SIZE_TABLE_NAME
    if not table_path.exists():
        return {}
    try:
        loaded = json.loads(table_path.read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            raise ValueError("Size table root must be a JSON object")
    except (json.JSONDecodeError, ValueError, OSError) as exc:
        logger.warning("Corrupt %s (%s) — treating as empty", table_path, exc)
        return {}
    return {
        str(name): int(size)
        for name, size in loaded.items()
        if isinstance(size, (int, float)) and not isinstance(size, bool)
    }


def sync_directory(local_dir: str | os.PathLike[str], entries: Iterable[ListingEntry]) -> dict[str, int]:
    """Make *local_dir* mirror *entries* exactly.

    Every child except the sidecar is removed, one placeholder is created per
    entry (a later duplicate name replaces an earlier one) and the side-table
    is rewritten.  Returns the size table that was written.
    """
    directory = Path(local_dir)
    directory.mkdir(parents=True, exist_ok=True)

    latest: dict[str, ListingEntry] = {}
    for entry in entries:
        latest[entry.name] = entry

    for child in directory.iterdir():
        if child.name == SIDECAR_NAME:
            continue
        _remove(child)

    sizes: dict[str, int] = {}
    for name, entry in latest.items():
        target = directory / name
        if entry.is_dir:
            target.mkdir()
        else:
            target.touch()
            sizes[name] = entry.size

    tmp = directory / (SIZE_TABLE_NAME + ".tmp")
    tmp.write_text(json.dumps(sizes, indent=2), encoding="utf-8")
    tmp.replace(directory / SIZE_TABLE_NAME)

    logger.debug("Materialised %d entries in %s", len(latest), directory)
    return sizes


def size_of(path: str | os.PathLike[str]) -> int:
    """Size of *path*: side-table value inside a mirror tree, else ``os.stat``."""
    p = Path(path)
    if is_mirror_path(p):
        return read_size_table(p.parent).get(p.name, 0)
    try:
        return p.stat().st_size
    except OSError as exc:
        logger.debug("stat(%s) failed: %s", p, exc)
        return 0
