"""Path normalisation, validation and formatting utilities."""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def shell_quote(path: str) -> str:
    """Quote *path* for use inside a remote ``sh -c`` command line."""
    return shlex.quote(path)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_eta(seconds: float) -> str:
    """Render *seconds* as ``H:MM:SS`` (or ``M:SS`` under an hour)."""
    seconds = max(0, int(round(seconds)))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to hand to a remote command.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Return *path* as an absolute ``pathlib.Path`` without resolving symlinks."""
    return Path(os.path.abspath(os.path.expanduser(os.fspath(path))))


def is_within(path: str | os.PathLike[str], root: str | os.PathLike[str]) -> bool:
    """Return True if *path* equals *root* or lies below it (segment-aware)."""
    p = str(normalize_local_path(path))
    r = str(normalize_local_path(root))
    return p == r or p.startswith(r.rstrip(os.sep) + os.sep)
