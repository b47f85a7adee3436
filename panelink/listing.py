"""Remote directory listing: fetch over ssh (or SFTP) and parse ``ls -la`` text.

Grammar accepted by :func:`parse_listing`, one entry per line:

* blank lines, ``total N`` lines and symlinks (``name -> target``) are skipped;
* a line containing a month abbreviation is a fixed-column ``ls -l`` row —
  the size is the token before the month and the name is everything after
  the ``month day time-or-year`` triple (names may contain spaces);
* any other line is a bare name, a directory if it ends with ``/``.

``.``, ``..`` and PaneLink's own reserved files are never entries.
"""

from __future__ import annotations

import logging
import stat
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from paramiko import SFTPAttributes

from panelink.connection import SSHConnection
from panelink.errors import ConnectionError, ListingError
from panelink.mirror import RESERVED_NAMES, ConnectionDescriptor
from panelink.utils.path_helpers import shell_quote

logger = logging.getLogger(__name__)

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_MONTH_SET = frozenset(MONTHS)
_SIX_MONTHS = 182 * 24 * 3600

SecondaryTransport = Callable[[ConnectionDescriptor, str], str]


@dataclass(frozen=True)
class ListingEntry:
    """One parsed remote directory entry."""

    name: str
    is_dir: bool
    size: int = 0


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _month_index(tokens: list[str]) -> int | None:
    """Index of the month column: a month name after at least three columns,
    directly preceded by the numeric size.  ``None`` for bare-name lines."""
    for i in range(3, len(tokens)):
        if tokens[i] in _MONTH_SET and tokens[i - 1].isdigit():
            return i
    return None


def parse_line(line: str) -> ListingEntry | None:
    """Parse a single listing line; ``None`` for lines that are not entries."""
    stripped = line.strip()
    if not stripped or stripped.startswith("total "):
        return None
    if " -> " in stripped:
        return None

    tokens = stripped.split()
    month = _month_index(tokens)

    if month is not None:
        name_tokens = tokens[month + 3:]
        if not name_tokens:
            logger.debug("Listing row without a name: %r", line)
            return None
        name = " ".join(name_tokens)
        permissions = tokens[0]
        size_token = tokens[month - 1] if month >= 1 else ""
        size = int(size_token) if size_token.isdigit() else 0
        is_dir = permissions.startswith("d")
    else:
        name = stripped
        size = 0
        is_dir = False

    if name.endswith("/"):
        is_dir = True
        name = name.rstrip("/")

    if name in ("", ".", "..") or name in RESERVED_NAMES or "/" in name:
        return None
    return ListingEntry(name=name, is_dir=is_dir, size=0 if is_dir else size)


def parse_listing(text: str) -> list[ListingEntry]:
    """Parse ``ls -la`` (or bare-name) output into entries, in line order."""
    entries = []
    for line in text.splitlines():
        entry = parse_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def format_ls_line(attr: SFTPAttributes, now: float | None = None) -> str:
    """Render SFTP attributes as an ``ls -l`` row the parser understands."""
    mode = stat.filemode(attr.st_mode) if attr.st_mode is not None else "----------"
    mtime = attr.st_mtime or 0
    ts = datetime.fromtimestamp(mtime)
    now = time.time() if now is None else now
    when = ts.strftime("%H:%M") if abs(now - mtime) < _SIX_MONTHS else str(ts.year)
    return (
        f"{mode} 1 {attr.st_uid or 0} {attr.st_gid or 0} {attr.st_size or 0} "
        f"{MONTHS[ts.month - 1]} {ts.day} {when} {attr.filename}"
    )


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


def sftp_listing_text(conn: ConnectionDescriptor, remote_path: str, timeout: float = 10.0) -> str:
    """List *remote_path* over SFTP, rendered as ``ls -l`` text."""
    with SSHConnection(conn, timeout=timeout) as ssh:
        attrs = ssh.list_directory(remote_path)
    lines = []
    for attr in attrs:
        longname = getattr(attr, "longname", None)
        if longname and _month_index(longname.split()) is not None:
            lines.append(longname)
        else:
            lines.append(format_ls_line(attr))
    return "\n".join(lines)


def listing_command(remote_path: str) -> str:
    """Build the remote ``ls`` invocation for *remote_path*.

    ``LC_ALL=C`` keeps month names in English whatever the server locale.
    The trailing slash lists the contents of a symlinked directory.
    """
    target = remote_path.rstrip("/") + "/"
    return f"LC_ALL=C ls -la -- {shell_quote(target)}"


def fetch_listing(
    conn: ConnectionDescriptor,
    remote_path: str,
    runner,
    secondary: SecondaryTransport | None = None,
) -> list[ListingEntry]:
    """Fetch and parse the listing of *remote_path*.

    Tries ``ls -la`` over ssh first (see :func:`listing_command`) and falls
    back to *secondary* (an SFTP session unless another callable is supplied).

    Raises:
        ListingError: Neither transport produced a listing.  Callers must
            leave the mirror directory untouched in this case.
    """
    result = runner.run_remote(conn, listing_command(remote_path))
    if result.ok:
        entries = parse_listing(result.output)
        logger.info("Listed %s:%s — %d entries", conn.destination, remote_path, len(entries))
        return entries

    logger.warning(
        "ls over ssh failed for %s:%s (exit %d: %s)",
        conn.destination, remote_path, result.status, result.error or "no output",
    )
    if secondary is None:
        secondary = sftp_listing_text

    try:
        text = secondary(conn, remote_path)
    except (ConnectionError, OSError, ValueError) as exc:
        logger.error("SFTP listing also failed for %s:%s: %s", conn.destination, remote_path, exc)
        raise ListingError(remote_path, f"ssh exit {result.status}", exc) from exc

    entries = parse_listing(text)
    logger.info(
        "Listed %s:%s over SFTP — %d entries", conn.destination, remote_path, len(entries)
    )
    return entries
