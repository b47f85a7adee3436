"""SSH/SFTP connection lifecycle for PaneLink.

Used to verify credentials when the user connects, and as the secondary
listing transport when the ``ssh ls`` path fails.  Connections are
short-lived: open, do one thing, close.  All methods are safe to call from
the background worker thread.
"""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum, auto

import paramiko
from paramiko import SFTPAttributes

from panelink.errors import ConnectionError
from panelink.mirror import ConnectionDescriptor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _TransientAcceptPolicy(paramiko.MissingHostKeyPolicy):
    """Accepts unknown host keys for this session only; nothing is saved.

    Host authentication is out of scope, so the fingerprint is logged and
    the key is forgotten when the client closes.
    """

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Log the fingerprint and let the connection proceed."""
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        logger.warning(
            "Accepting unverified %s host key for %s (MD5 %s) — not persisted",
            key.get_name(),
            hostname,
            fingerprint,
        )


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising — suppresses WinError 10038 on Windows."""
    try:
        client.close()
    except Exception:
        pass  # Suppress WSAENOTSOCK (WinError 10038) and similar cleanup noise


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHConnection
# ---------------------------------------------------------------------------


class SSHConnection:
    """Manages a single SSH/SFTP connection for one connection descriptor.

    Thread-safety:
    - ``_lock`` protects all state transitions.
    - Usable as a context manager: ``with SSHConnection(desc) as conn: ...``
      connects on entry and disconnects on exit.
    """

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        timeout: float = 10.0,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            descriptor: Host, port, username and (optional) password.
            timeout: Connect timeout in seconds.
        """
        self.descriptor = descriptor
        self.timeout = timeout

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    def __enter__(self) -> "SSHConnection":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish SSH and SFTP channels.

        Raises:
            ConnectionError: Authentication failure, timeout, or network error.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                logger.debug("connect() called but already %s", self._state.name)
                return
            self._set_state(ConnectionState.CONNECTING)

        try:
            self._do_connect()
        except ConnectionError as exc:
            with self._lock:
                self._set_state(ConnectionState.ERROR, str(exc))
            raise

    def _do_connect(self) -> None:
        """Internal connection logic — called without holding the lock."""
        desc = self.descriptor
        logger.info("Connecting to %s@%s:%d", desc.username, desc.host, desc.port)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(_TransientAcceptPolicy())

        connect_kwargs: dict = {
            "hostname": desc.host,
            "port": desc.port,
            "username": desc.username,
            "timeout": self.timeout,
            "banner_timeout": self.timeout,
            "auth_timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": not desc.password,
        }
        if desc.password:
            connect_kwargs["password"] = desc.password

        try:
            client.connect(**connect_kwargs)
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise ConnectionError(desc.host, desc.port, "Authentication failed", exc) from exc
        except socket.timeout as exc:
            _close_client_safely(client)
            raise ConnectionError(desc.host, desc.port, "Timed out connecting", exc) from exc
        except (paramiko.SSHException, OSError) as exc:
            _close_client_safely(client)
            raise ConnectionError(desc.host, desc.port, "Failed to connect", exc) from exc

        with self._lock:
            self._client = client
            self._sftp = sftp
            self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", desc.host)

    def disconnect(self) -> None:
        """Gracefully close SFTP and SSH channels."""
        with self._lock:
            if self._sftp:
                try:
                    self._sftp.close()
                except Exception:
                    pass
                self._sftp = None
            if self._client:
                _close_client_safely(self._client)
                self._client = None
            self._set_state(ConnectionState.DISCONNECTED)
        logger.debug("Disconnected from %s", self.descriptor.host)

    # ------------------------------------------------------------------
    # SFTP operations
    # ------------------------------------------------------------------

    def get_sftp(self) -> paramiko.SFTPClient:
        """Return the active SFTP client.

        Raises:
            ConnectionError: If not currently connected.
        """
        with self._lock:
            if self._state != ConnectionState.CONNECTED or self._sftp is None:
                raise ConnectionError(
                    self.descriptor.host,
                    self.descriptor.port,
                    f"Not connected (state: {self._state.name})",
                )
            return self._sftp

    def list_directory(self, remote_path: str) -> list[SFTPAttributes]:
        """List the contents of *remote_path* on the remote host.

        Returns:
            List of ``SFTPAttributes`` objects (one per entry).

        Raises:
            ConnectionError: If not connected, or the session drops mid-listing.
            ValueError: If *remote_path* fails validation.
            OSError: On permission denied or path-not-found.
        """
        from panelink.utils.path_helpers import validate_remote_path

        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote path: {remote_path!r}")

        sftp = self.get_sftp()
        try:
            entries: list[SFTPAttributes] = sftp.listdir_attr(remote_path)
            logger.debug("Listed %d entries in %s", len(entries), remote_path)
            return entries
        except OSError as exc:
            logger.warning("list_directory(%r) failed: %s", remote_path, exc)
            raise
        except (paramiko.SSHException, EOFError) as exc:
            logger.warning("list_directory(%r) lost the session: %s", remote_path, exc)
            raise ConnectionError(
                self.descriptor.host, self.descriptor.port, "Lost connection", exc
            ) from exc
