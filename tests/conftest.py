"""Shared fixtures for the PaneLink test-suite."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from panelink.mirror import ConnectionDescriptor, create_mirror_root
from panelink.runner import CommandResult


@pytest.fixture(autouse=True)
def fake_keyring(monkeypatch: pytest.MonkeyPatch) -> dict:
    """Replace the OS keyring with an in-memory dict for every test."""
    store: dict[tuple[str, str], str] = {}

    def _set(service: str, account: str, password: str) -> None:
        store[(service, account)] = password

    def _get(service: str, account: str):
        return store.get((service, account))

    def _delete(service: str, account: str) -> None:
        import keyring.errors

        if (service, account) not in store:
            raise keyring.errors.PasswordDeleteError("not found")
        del store[(service, account)]

    monkeypatch.setattr("keyring.set_password", _set)
    monkeypatch.setattr("keyring.get_password", _get)
    monkeypatch.setattr("keyring.delete_password", _delete)
    return store


@pytest.fixture()
def descriptor() -> ConnectionDescriptor:
    """A connection descriptor for a made-up host."""
    return ConnectionDescriptor(host="deck.local", username="deck", port=22, base_path="/home/deck")


@pytest.fixture()
def mirror_root(tmp_path: Path, descriptor: ConnectionDescriptor) -> Path:
    """A mirror root (with sidecar) under a temporary cache dir."""
    return create_mirror_root(tmp_path / "cache", descriptor)


@pytest.fixture()
def fake_runner() -> MagicMock:
    """A CommandRunner stand-in whose remote calls all succeed."""
    runner = MagicMock()
    runner.run_remote.return_value = CommandResult(output="", status=0)
    runner.remote_size.return_value = 0
    runner.remote_directory_size.return_value = 0
    runner.delete_remote.return_value = True
    return runner
