"""Configuration and connection-history management for PaneLink.

All settings are stored as JSON files under ``~/.panelink/``.
Passwords are never written to disk — they are delegated to ``keyring``.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "PaneLink"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "connect_timeout": 10,
    "listing_timeout": 30,
    "progress_interval": 0.2,
    "fallback_speed": 10 * 1024 * 1024,
    "copy_buffer_size": 1024 * 1024,
    "ssh_binary": "ssh",
    "rsync_binary": "rsync",
    "cache_dir": "",
    "default_remote_path": "/home",
    "local_start_path": str(Path.home()),
}


def _history_key(host: str, username: str, port: int) -> tuple[str, str, int]:
    return (host, username, int(port))


def _keyring_account(host: str, username: str, port: int) -> str:
    """Keyring account name for one (host, username, port) triple."""
    return f"{username}@{host}:{int(port)}"


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and the connection history.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt file triggers a warning and
    a safe reset — it never crashes the application.

    The history is keyed by ``(host, username, port)``; the matching password
    lives in the OS keyring and is recovered with :meth:`lookup_password`.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.panelink/`` if necessary."""
        self._base = base_dir or Path.home() / ".panelink"
        self._config_path = self._base / "config.json"
        self._history_path = self._base / "history.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._history: list[dict[str, Any]] = self._load_history()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_history(self) -> list[dict[str, Any]]:
        """Load ``history.json``, returning an empty list on corruption."""
        if not self._history_path.exists():
            return []
        try:
            raw = self._history_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, list):
                raise ValueError("History root must be a JSON array")
            return [entry for entry in loaded if isinstance(entry, dict)]
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt history.json (%s) — resetting to empty list", exc)
            self._atomic_write(self._history_path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    @property
    def cache_dir(self) -> Path:
        """Directory under which mirror roots are created."""
        configured = self._config.get("cache_dir")
        return Path(configured).expanduser() if configured else self._base / "cache"

    # ------------------------------------------------------------------
    # Connection history
    # ------------------------------------------------------------------

    def load_history(self) -> list[dict[str, Any]]:
        """Return the saved connections, most recently used first."""
        return sorted(
            (dict(entry) for entry in self._history),
            key=lambda entry: entry.get("last_used", 0),
            reverse=True,
        )

    def save_history(self, entries: list[dict[str, Any]]) -> None:
        """Replace the whole history with *entries* (passwords stripped)."""
        self._history = [
            {k: v for k, v in entry.items() if k != "password"} for entry in entries
        ]
        self._atomic_write(self._history_path, self._history)

    def find_connection(self, host: str, username: str, port: int) -> dict[str, Any] | None:
        """Return the history record for *(host, username, port)*, or ``None``."""
        wanted = _history_key(host, username, port)
        for entry in self._history:
            key = _history_key(entry.get("host", ""), entry.get("username", ""), entry.get("port", 22))
            if key == wanted:
                return dict(entry)
        return None

    def upsert_connection(
        self,
        host: str,
        port: int,
        username: str,
        path: str,
        password: str | None = None,
    ) -> dict[str, Any]:
        """Insert or replace the record keyed by *(host, username, port)*.

        The password, if given, goes to the keyring — never into the file.
        Returns the stored record.
        """
        if not host or not username:
            raise ValueError("Connection record needs a non-empty host and username")

        record = {
            "host": host,
            "port": int(port),
            "username": username,
            "path": path,
            "last_used": time.time(),
        }
        wanted = _history_key(host, username, port)
        for i, existing in enumerate(self._history):
            key = _history_key(existing.get("host", ""), existing.get("username", ""), existing.get("port", 22))
            if key == wanted:
                self._history[i] = record
                logger.info("Updated connection record %s", _keyring_account(host, username, port))
                break
        else:
            self._history.append(record)
            logger.info("Added connection record %s", _keyring_account(host, username, port))

        self._atomic_write(self._history_path, self._history)
        if password:
            self.store_password(host, username, port, password)
        return dict(record)

    def delete_connection(self, host: str, username: str, port: int) -> bool:
        """Delete a history record and its stored password.

        Returns ``True`` if a record was deleted, ``False`` if not found.
        """
        wanted = _history_key(host, username, port)
        original_len = len(self._history)
        self._history = [
            entry
            for entry in self._history
            if _history_key(entry.get("host", ""), entry.get("username", ""), entry.get("port", 22)) != wanted
        ]
        if len(self._history) == original_len:
            logger.warning("delete_connection: no record for %s", _keyring_account(host, username, port))
            return False
        self._atomic_write(self._history_path, self._history)
        self.delete_password(host, username, port)
        logger.info("Connection record deleted: %s", _keyring_account(host, username, port))
        return True

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    def store_password(self, host: str, username: str, port: int, password: str) -> None:
        """Store *password* in the OS keyring for this connection."""
        account = _keyring_account(host, username, port)
        keyring.set_password(_KEYRING_SERVICE, account, password)
        logger.debug("Password stored in keyring for %s", account)

    def lookup_password(self, host: str, username: str, port: int) -> str | None:
        """Recover the stored password for *(host, username, port)*, if any."""
        account = _keyring_account(host, username, port)
        try:
            return keyring.get_password(_KEYRING_SERVICE, account)
        except keyring.errors.KeyringError as exc:
            logger.warning("Keyring lookup failed for %s: %s", account, exc)
            return None

    def delete_password(self, host: str, username: str, port: int) -> None:
        """Remove the stored password from the OS keyring."""
        account = _keyring_account(host, username, port)
        try:
            keyring.delete_password(_KEYRING_SERVICE, account)
        except keyring.errors.PasswordDeleteError:
            pass
        logger.debug("Password deleted from keyring for %s", account)
