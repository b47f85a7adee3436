"""Tests for panelink/materializer.py — placeholders and the size side-table."""

from __future__ import annotations

import json
from pathlib import Path

from panelink.listing import ListingEntry, parse_listing
from panelink.materializer import read_size_table, size_of, sync_directory
from panelink.mirror import SIDECAR_NAME, SIZE_TABLE_NAME


class TestSyncDirectory:
    def test_listing_becomes_placeholders(self, mirror_root: Path) -> None:
        text = (
            "drwxr-xr-x 2 u g 4096 Jan 1 2024 docs\n"
            "-rw-r--r-- 1 u g 128 Jan 1 2024 a.txt\n"
        )
        table = sync_directory(mirror_root, parse_listing(text))

        assert (mirror_root / "docs").is_dir()
        assert list((mirror_root / "docs").iterdir()) == []
        assert (mirror_root / "a.txt").is_file()
        assert (mirror_root / "a.txt").stat().st_size == 0
        assert table == {"a.txt": 128}
        assert json.loads((mirror_root / SIZE_TABLE_NAME).read_text(encoding="utf-8")) == {"a.txt": 128}

    def test_stale_entries_removed_and_sidecar_kept(self, mirror_root: Path) -> None:
        (mirror_root / "old.txt").write_text("stale", encoding="utf-8")
        (mirror_root / "gone").mkdir()
        (mirror_root / "gone" / "inner").touch()

        sync_directory(mirror_root, [ListingEntry("new.txt", False, 5)])

        names = {child.name for child in mirror_root.iterdir()}
        assert names == {SIDECAR_NAME, SIZE_TABLE_NAME, "new.txt"}

    def test_same_listing_twice_gives_same_tree(self, mirror_root: Path) -> None:
        entries = [ListingEntry("a", True), ListingEntry("b.bin", False, 9)]
        first = sync_directory(mirror_root, entries)
        snapshot = sorted(p.name for p in mirror_root.iterdir())
        second = sync_directory(mirror_root, entries)
        assert first == second
        assert sorted(p.name for p in mirror_root.iterdir()) == snapshot

    def test_last_duplicate_wins(self, mirror_root: Path) -> None:
        sync_directory(mirror_root, [ListingEntry("x", False, 1), ListingEntry("x", True)])
        assert (mirror_root / "x").is_dir()
        assert read_size_table(mirror_root) == {}

    def test_empty_listing_empties_directory(self, mirror_root: Path) -> None:
        (mirror_root / "f").touch()
        assert sync_directory(mirror_root, []) == {}
        assert {p.name for p in mirror_root.iterdir()} == {SIDECAR_NAME, SIZE_TABLE_NAME}

    def test_creates_missing_directory(self, mirror_root: Path) -> None:
        target = mirror_root / "home" / "deck"
        sync_directory(target, [ListingEntry("f", False, 3)])
        assert (target / "f").is_file()


class TestSizeTable:
    def test_missing_table_is_empty(self, tmp_path: Path) -> None:
        assert read_size_table(tmp_path) == {}

    def test_corrupt_table_is_empty(self, tmp_path: Path) -> None:
        (tmp_path / SIZE_TABLE_NAME).write_text("{oops", encoding="utf-8")
        assert read_size_table(tmp_path) == {}

    def test_size_of_mirror_entry_uses_table(self, mirror_root: Path) -> None:
        sync_directory(mirror_root, [ListingEntry("big.iso", False, 4_000_000_000)])
        assert size_of(mirror_root / "big.iso") == 4_000_000_000

    def test_size_of_unknown_mirror_entry_is_zero(self, mirror_root: Path) -> None:
        sync_directory(mirror_root, [])
        assert size_of(mirror_root / "nothing") == 0

    def test_size_of_local_file_uses_stat(self, tmp_path: Path) -> None:
        local = tmp_path / "real.bin"
        local.write_bytes(b"x" * 42)
        assert size_of(local) == 42
