"""Connection descriptors, cache-root sidecars and mirror path translation.

A *mirror root* is a local directory standing in for the remote ``/`` of one
connection.  It carries a small ``Key: value`` sidecar file describing the
connection; every path below the root finds that sidecar by walking upward.
Any local path containing the :data:`MIRROR_SEGMENT` directory name is
remote-backed.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from panelink.errors import PathResolutionError
from panelink.utils.path_helpers import normalize_local_path

logger = logging.getLogger(__name__)

MIRROR_SEGMENT = "PaneLink_SFTP_Cache"
SIDECAR_NAME = ".panelink_connection.txt"
SIZE_TABLE_NAME = ".panelink_sizes.json"
RESERVED_NAMES = frozenset({SIDECAR_NAME, SIZE_TABLE_NAME})

# Upper bound on the number of directories inspected when looking for a sidecar.
MAX_SIDECAR_DEPTH = 10

_SIDECAR_HEADER = "SFTP Connection"


class PasswordLookup(Protocol):
    """Anything able to recover a stored password (e.g. ``ConfigManager``)."""

    def lookup_password(self, host: str, username: str, port: int) -> str | None: ...


@dataclass
class ConnectionDescriptor:
    """Everything needed to reach one remote account."""

    host: str
    username: str
    port: int = 22
    password: str | None = None
    base_path: str = "/"

    @property
    def destination(self) -> str:
        """``user@host`` as understood by ssh and rsync."""
        return f"{self.username}@{self.host}"

    def __repr__(self) -> str:
        # Keep the password out of logs and tracebacks.
        return (
            f"ConnectionDescriptor(host={self.host!r}, username={self.username!r}, "
            f"port={self.port}, base_path={self.base_path!r})"
        )


# ---------------------------------------------------------------------------
# Mirror membership
# ---------------------------------------------------------------------------


def is_mirror_path(path: str | os.PathLike[str]) -> bool:
    """Return True if *path* lies inside a remote-backed mirror tree."""
    return MIRROR_SEGMENT in normalize_local_path(path).parts


def mirror_root_name(descriptor: ConnectionDescriptor) -> str:
    """Directory name used for the mirror root of *descriptor*."""
    host = descriptor.host.replace(".", "_").replace(":", "_")
    return f"{descriptor.username}_{host}_{descriptor.port}"


# ---------------------------------------------------------------------------
# Sidecar I/O
# ---------------------------------------------------------------------------


def write_sidecar(root: Path, descriptor: ConnectionDescriptor) -> Path:
    """Write the sidecar for *descriptor* into *root*.

    The password is deliberately not written; it is recovered from the
    history store when the sidecar is read back.
    """
    lines = [
        _SIDECAR_HEADER,
        f"Host: {descriptor.host}",
        f"Port: {descriptor.port}",
        f"Username: {descriptor.username}",
        f"Path: {descriptor.base_path}",
        f"Connected: {datetime.now().isoformat(timespec='seconds')}",
    ]
    sidecar = root / SIDECAR_NAME
    tmp = sidecar.with_suffix(".tmp")
    tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
    tmp.replace(sidecar)
    return sidecar


def read_sidecar(sidecar: Path) -> ConnectionDescriptor:
    """Parse a sidecar file into a descriptor (without password)."""
    fields: dict[str, str] = {}
    for line in sidecar.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields[key.strip()] = value.strip()

    host = fields.get("Host", "")
    username = fields.get("Username", "")
    if not host or not username:
        raise PathResolutionError(str(sidecar), "sidecar is missing Host or Username")
    try:
        port = int(fields.get("Port", "22") or 22)
    except ValueError:
        logger.warning("Bad Port in %s: %r — using 22", sidecar, fields.get("Port"))
        port = 22
    return ConnectionDescriptor(
        host=host,
        username=username,
        port=port,
        base_path=fields.get("Path") or "/",
    )


def create_mirror_root(cache_dir: Path, descriptor: ConnectionDescriptor) -> Path:
    """Create (or reuse) the mirror root for *descriptor* and write its sidecar."""
    root = Path(cache_dir) / MIRROR_SEGMENT / mirror_root_name(descriptor)
    root.mkdir(parents=True, exist_ok=True)
    write_sidecar(root, descriptor)
    logger.info("Mirror root ready for %s at %s", descriptor.destination, root)
    return root


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def find_mirror_root(path: str | os.PathLike[str]) -> Path:
    """Walk upward from *path* until a directory holding a sidecar is found.

    Raises:
        PathResolutionError: No sidecar within :data:`MAX_SIDECAR_DEPTH` levels.
    """
    current = normalize_local_path(path)
    for _ in range(MAX_SIDECAR_DEPTH):
        if (current / SIDECAR_NAME).is_file():
            return current
        if current.parent == current:
            break
        current = current.parent
    raise PathResolutionError(
        str(path), f"no {SIDECAR_NAME} within {MAX_SIDECAR_DEPTH} levels"
    )


def resolve_connection(
    path: str | os.PathLike[str],
    history: PasswordLookup | None = None,
) -> tuple[ConnectionDescriptor, Path]:
    """Return the connection owning *path* and its mirror root.

    A blank password is recovered from *history* by (host, username, port).
    """
    root = find_mirror_root(path)
    descriptor = read_sidecar(root / SIDECAR_NAME)
    if not descriptor.password and history is not None:
        descriptor.password = history.lookup_password(
            descriptor.host, descriptor.username, descriptor.port
        )
        if not descriptor.password:
            logger.debug("No stored password for %s — relying on keys/agent", descriptor.destination)
    return descriptor, root


def to_remote_path(
    path: str | os.PathLike[str],
    root: str | os.PathLike[str],
    strict: bool = False,
) -> str:
    """Translate a mirror path into the remote absolute path it stands for.

    The root itself maps to ``/``.  A *path* outside *root* falls back to
    ``/`` (logged), or raises :class:`PathResolutionError` when *strict*.
    """
    p = str(normalize_local_path(path))
    r = str(normalize_local_path(root))
    if p == r:
        return "/"
    prefix = r.rstrip(os.sep) + os.sep
    if not p.startswith(prefix):
        if strict:
            raise PathResolutionError(p, f"outside mirror root {r}")
        logger.warning("Path %s is outside mirror root %s — falling back to '/'", p, r)
        return "/"
    suffix = p[len(prefix):].replace(os.sep, "/").strip("/")
    return "/" + suffix


def to_mirror_path(remote_path: str, root: str | os.PathLike[str]) -> Path:
    """Inverse of :func:`to_remote_path`: the local mirror path for *remote_path*."""
    parts = [part for part in remote_path.split("/") if part]
    return normalize_local_path(root).joinpath(*parts)
