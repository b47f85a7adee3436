"""Tests for panelink/transfer.py — TransferEngine batches."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from panelink.errors import PartialBatchError, TransferError
from panelink.listing import ListingEntry
from panelink.materializer import sync_directory
from panelink.mirror import MIRROR_SEGMENT, ConnectionDescriptor
from panelink.progress import ProgressChannel
from panelink.runner import TransferDirection
from panelink.transfer import (
    TERMINAL_STATES,
    CollisionPolicy,
    ItemState,
    Operation,
    TransferEngine,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def snapshots() -> list:
    return []


@pytest.fixture()
def engine(fake_runner: MagicMock, snapshots: list) -> TransferEngine:
    """Engine wired to the fake runner, collecting every snapshot."""
    channel = ProgressChannel()
    channel.subscribe(snapshots.append)
    return TransferEngine(fake_runner, channel=channel, progress_interval=0, copy_buffer_size=4)


@pytest.fixture()
def local_dir(tmp_path: Path) -> Path:
    d = tmp_path / "local"
    d.mkdir()
    return d


@pytest.fixture()
def remote_home(mirror_root: Path) -> Path:
    """Mirror of remote /home/deck holding a file and a directory."""
    home = mirror_root / "home" / "deck"
    sync_directory(home, [ListingEntry("save.dat", False, 300), ListingEntry("roms", True)])
    return home


def _write(path: Path, size: int) -> Path:
    path.write_bytes(b"x" * size)
    return path


# ---------------------------------------------------------------------------
# Local ↔ local
# ---------------------------------------------------------------------------


class TestLocalCopy:
    def test_file_copy(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        src = _write(local_dir / "a.txt", 10)
        dest_dir = tmp_path / "out"
        dest_dir.mkdir()

        result = engine.run([src], dest_dir, Operation.COPY)

        assert (dest_dir / "a.txt").read_bytes() == b"x" * 10
        assert src.exists()
        assert result.items[0].state is ItemState.SUCCEEDED
        assert result.items[0].history == [ItemState.PENDING, ItemState.COLLISION_CHECK, ItemState.IN_FLIGHT]
        assert result.completed_bytes == result.total_bytes == 10

    def test_directory_copy(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        src = local_dir / "tree"
        (src / "sub").mkdir(parents=True)
        _write(src / "one.bin", 5)
        _write(src / "sub" / "two.bin", 7)
        dest_dir = tmp_path / "out"
        dest_dir.mkdir()

        result = engine.run([src], dest_dir)

        assert (dest_dir / "tree" / "one.bin").stat().st_size == 5
        assert (dest_dir / "tree" / "sub" / "two.bin").stat().st_size == 7
        assert result.total_bytes == 12
        assert result.completed_bytes == 12

    def test_local_move_deletes_source(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        src = _write(local_dir / "m.txt", 3)
        dest_dir = tmp_path / "out"
        dest_dir.mkdir()

        result = engine.run([src], dest_dir, Operation.MOVE)

        assert not src.exists()
        assert (dest_dir / "m.txt").exists()
        assert result.items[0].state is ItemState.DELETED
        assert result.ok

    def test_directory_move_keeps_symlinks(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        target = tmp_path / "target"
        target.mkdir()
        _write(target / "inner.bin", 6)
        src = local_dir / "src"
        src.mkdir()
        _write(src / "f.bin", 4)
        (src / "outlink").symlink_to("../../target")
        (src / "filelink").symlink_to("f.bin")
        dest_dir = tmp_path / "out"
        dest_dir.mkdir()

        result = engine.run([src], dest_dir, Operation.MOVE)

        moved = dest_dir / "src"
        assert result.items[0].state is ItemState.DELETED
        assert not src.exists()
        assert (moved / "outlink").is_symlink()
        assert os.readlink(moved / "outlink") == "../../target"
        assert (moved / "filelink").is_symlink()
        assert (moved / "f.bin").read_bytes() == b"xxxx"
        assert (target / "inner.bin").exists()

    def test_chunked_copy_reports_progress(self, engine: TransferEngine, local_dir: Path, tmp_path: Path, snapshots: list) -> None:
        src = _write(local_dir / "c.bin", 10)
        dest_dir = tmp_path / "out"
        dest_dir.mkdir()
        engine.run([src], dest_dir)
        item_progress = [s.item_progress for s in snapshots if not s.completed]
        assert item_progress[0] == 0.0
        assert item_progress[-1] == 1.0
        assert item_progress == sorted(item_progress)


# ---------------------------------------------------------------------------
# Dispatch across the local/remote boundary
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_upload_file(self, engine: TransferEngine, fake_runner: MagicMock, local_dir: Path, remote_home: Path) -> None:
        src = _write(local_dir / "new.txt", 4)
        engine.run([src], remote_home)

        args = fake_runner.transfer_file.call_args[0]
        assert args[0] is TransferDirection.UPLOAD
        assert args[1] == ConnectionDescriptor("deck.local", "deck", 22, base_path="/home/deck")
        assert args[2:4] == (str(src), "/home/deck/new.txt")

    def test_upload_directory(self, engine: TransferEngine, fake_runner: MagicMock, local_dir: Path, remote_home: Path) -> None:
        src = local_dir / "music"
        src.mkdir()
        engine.run([src], remote_home / "roms")
        args = fake_runner.transfer_directory.call_args[0]
        assert args[0] is TransferDirection.UPLOAD
        assert args[3] == "/home/deck/roms/music"

    def test_download_file_uses_remote_size(self, engine: TransferEngine, fake_runner: MagicMock, remote_home: Path, tmp_path: Path) -> None:
        fake_runner.remote_size.return_value = 1234
        dest_dir = tmp_path / "dl"
        dest_dir.mkdir()

        result = engine.run([remote_home / "save.dat"], dest_dir)

        args = fake_runner.transfer_file.call_args[0]
        assert args[0] is TransferDirection.DOWNLOAD
        assert args[2:4] == (str(dest_dir / "save.dat"), "/home/deck/save.dat")
        assert result.total_bytes == 1234

    def test_remote_size_falls_back_to_side_table(self, engine: TransferEngine, fake_runner: MagicMock, remote_home: Path, tmp_path: Path) -> None:
        fake_runner.remote_size.return_value = 0
        result = engine.run([remote_home / "save.dat"], tmp_path)
        assert result.total_bytes == 300

    def test_download_directory(self, engine: TransferEngine, fake_runner: MagicMock, remote_home: Path, tmp_path: Path) -> None:
        fake_runner.remote_directory_size.return_value = 999
        result = engine.run([remote_home / "roms"], tmp_path)
        args = fake_runner.transfer_directory.call_args[0]
        assert args[0] is TransferDirection.DOWNLOAD
        assert args[3] == "/home/deck/roms"
        assert result.total_bytes == 999

    def test_remote_to_remote_uses_relay_with_halved_progress(
        self, engine: TransferEngine, fake_runner: MagicMock, remote_home: Path, snapshots: list
    ) -> None:
        fake_runner.remote_size.return_value = 100

        def _relay(src_conn, src_path, dst_conn, dst_path, is_dir, size, on_progress):
            on_progress(100, 8.0)
            on_progress(200, 8.0)

        fake_runner.remote_to_remote_transfer.side_effect = _relay
        engine.run([remote_home / "save.dat"], remote_home / "roms")

        args = fake_runner.remote_to_remote_transfer.call_args[0]
        assert args[1] == "/home/deck/save.dat"
        assert args[3] == "/home/deck/roms/save.dat"
        assert args[4:6] == (False, 100)
        in_flight = [s.item_progress for s in snapshots if 0 < s.item_progress < 1]
        assert in_flight == [0.5]


# ---------------------------------------------------------------------------
# Failures and move safety
# ---------------------------------------------------------------------------


class TestFailures:
    def test_failed_upload_keeps_source_on_move(self, engine: TransferEngine, fake_runner: MagicMock, local_dir: Path, remote_home: Path) -> None:
        src = _write(local_dir / "keep.txt", 5)
        fake_runner.transfer_file.side_effect = TransferError("rsync exited with code 12")

        result = engine.run([src], remote_home, Operation.MOVE)

        assert src.exists()
        assert result.items[0].state is ItemState.FAILED
        assert "code 12" in result.items[0].error
        assert result.completed_bytes == 0

    def test_failure_does_not_abort_batch(self, engine: TransferEngine, fake_runner: MagicMock, local_dir: Path, remote_home: Path) -> None:
        first = _write(local_dir / "first.txt", 5)
        second = _write(local_dir / "second.txt", 7)
        fake_runner.transfer_file.side_effect = [TransferError("boom"), None]

        result = engine.run([first, second], remote_home)

        assert [i.state for i in result.items] == [ItemState.FAILED, ItemState.SUCCEEDED]
        assert result.completed_bytes == 7
        with pytest.raises(PartialBatchError) as exc_info:
            result.raise_for_errors()
        assert "first.txt: boom" in str(exc_info.value)

    def test_delete_failure_reported_distinctly(self, engine: TransferEngine, fake_runner: MagicMock, remote_home: Path, tmp_path: Path) -> None:
        fake_runner.delete_remote.return_value = False

        result = engine.run([remote_home / "save.dat"], tmp_path, Operation.MOVE)

        item = result.items[0]
        assert item.state is ItemState.DELETE_FAILED
        assert item.succeeded
        assert result.delete_failed == [item]
        assert "original not deleted" in result.summary
        fake_runner.delete_remote.assert_called_once()
        assert fake_runner.delete_remote.call_args[0][1:] == ("/home/deck/save.dat", False)

    def test_same_directory_fails_item(self, engine: TransferEngine, fake_runner: MagicMock, local_dir: Path) -> None:
        src = _write(local_dir / "a.txt", 1)
        result = engine.run([src], local_dir, Operation.MOVE)
        assert result.items[0].state is ItemState.FAILED
        assert src.exists()

    def test_directory_into_itself_fails_item(self, engine: TransferEngine, local_dir: Path) -> None:
        src = local_dir / "tree"
        (src / "inner").mkdir(parents=True)
        result = engine.run([src], src / "inner")
        assert result.items[0].state is ItemState.FAILED
        assert not (src / "inner" / "tree").exists()

    def test_unresolvable_mirror_fails_only_that_item(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        orphan = tmp_path / "x" / MIRROR_SEGMENT / "orphan"
        orphan.mkdir(parents=True)
        (orphan / "lost.txt").touch()
        ok = _write(local_dir / "ok.txt", 2)
        dest = tmp_path / "dest"
        dest.mkdir()

        result = engine.run([orphan / "lost.txt", ok], dest)

        assert [i.state for i in result.items] == [ItemState.FAILED, ItemState.SUCCEEDED]

    def test_every_item_ends_terminal(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        srcs = [_write(local_dir / f"f{i}", i) for i in range(3)]
        result = engine.run(srcs, tmp_path)
        assert all(item.state in TERMINAL_STATES for item in result.items)


# ---------------------------------------------------------------------------
# Collisions
# ---------------------------------------------------------------------------


class TestCollisions:
    @pytest.fixture()
    def clash(self, local_dir: Path, tmp_path: Path) -> tuple[Path, Path]:
        src = _write(local_dir / "same.txt", 8)
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()
        (dest_dir / "same.txt").write_text("old", encoding="utf-8")
        return src, dest_dir

    def test_asked_once_with_names(self, engine: TransferEngine, clash, local_dir: Path) -> None:
        src, dest_dir = clash
        other = _write(local_dir / "other.txt", 1)
        (dest_dir / "other.txt").touch()
        engine.on_collision = MagicMock(return_value=CollisionPolicy.OVERWRITE_ALL)

        engine.run([src, other], dest_dir, Operation.COPY)

        engine.on_collision.assert_called_once_with(["same.txt", "other.txt"], Operation.COPY)

    def test_not_asked_without_collisions(self, engine: TransferEngine, local_dir: Path, tmp_path: Path) -> None:
        engine.on_collision = MagicMock()
        engine.run([_write(local_dir / "fresh", 1)], tmp_path)
        engine.on_collision.assert_not_called()

    def test_overwrite_replaces(self, engine: TransferEngine, clash) -> None:
        src, dest_dir = clash
        engine.on_collision = MagicMock(return_value=CollisionPolicy.OVERWRITE_ALL)
        result = engine.run([src], dest_dir)
        assert (dest_dir / "same.txt").read_bytes() == b"x" * 8
        assert ItemState.OVERWRITING in result.items[0].history

    def test_skip_leaves_destination(self, engine: TransferEngine, clash) -> None:
        src, dest_dir = clash
        engine.on_collision = MagicMock(return_value=CollisionPolicy.SKIP_ALL)
        result = engine.run([src], dest_dir, Operation.MOVE)
        assert (dest_dir / "same.txt").read_text(encoding="utf-8") == "old"
        assert src.exists()
        assert result.items[0].state is ItemState.SKIPPED
        assert result.completed_bytes == 0

    def test_cancel_on_copy_means_skip(self, engine: TransferEngine, clash, local_dir: Path) -> None:
        src, dest_dir = clash
        fresh = _write(local_dir / "fresh.txt", 2)
        engine.on_collision = MagicMock(return_value=CollisionPolicy.CANCEL)
        result = engine.run([src, fresh], dest_dir, Operation.COPY)
        assert not result.cancelled
        assert [i.state for i in result.items] == [ItemState.SKIPPED, ItemState.SUCCEEDED]

    def test_cancel_on_move_does_nothing(self, engine: TransferEngine, clash, local_dir: Path) -> None:
        src, dest_dir = clash
        fresh = _write(local_dir / "fresh.txt", 2)
        engine.on_collision = MagicMock(return_value=CollisionPolicy.CANCEL)
        result = engine.run([src, fresh], dest_dir, Operation.MOVE)
        assert result.cancelled
        assert src.exists() and fresh.exists()
        assert not (dest_dir / "fresh.txt").exists()

    def test_default_is_overwrite(self, engine: TransferEngine, clash) -> None:
        src, dest_dir = clash
        engine.run([src], dest_dir)
        assert (dest_dir / "same.txt").read_bytes() == b"x" * 8

    def test_remote_overwrite_deletes_remote_first(self, engine: TransferEngine, fake_runner: MagicMock, local_dir: Path, remote_home: Path) -> None:
        src = _write(local_dir / "save.dat", 3)
        engine.run([src], remote_home)
        fake_runner.delete_remote.assert_called_once()
        assert fake_runner.delete_remote.call_args[0][1:] == ("/home/deck/save.dat", False)
        fake_runner.transfer_file.assert_called_once()
