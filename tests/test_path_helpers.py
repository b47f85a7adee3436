"""Tests for panelink/utils/path_helpers.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from panelink.utils.path_helpers import (
    format_eta,
    human_readable_size,
    is_within,
    posix_join,
    shell_quote,
    validate_remote_path,
)


class TestFormatting:
    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (10 * 1024 ** 2, "10.0 MB")],
    )
    def test_human_readable_size(self, size: int, expected: str) -> None:
        assert human_readable_size(size) == expected

    def test_format_eta(self) -> None:
        assert format_eta(0) == "0:00"
        assert format_eta(75) == "1:15"
        assert format_eta(3725) == "1:02:05"
        assert format_eta(-3) == "0:00"


class TestRemotePaths:
    def test_posix_join(self) -> None:
        assert posix_join("/home/deck", "My Games") == "/home/deck/My Games"

    def test_shell_quote_spaces_and_quotes(self) -> None:
        assert shell_quote("/a b") == "'/a b'"
        assert shell_quote("it's") == "'it'\"'\"'s'"

    @pytest.mark.parametrize("path", ["/home/deck", "/", "relative/ok", "/a/.hidden"])
    def test_valid(self, path: str) -> None:
        assert validate_remote_path(path)

    @pytest.mark.parametrize("path", ["/a/../b", "..", "/a\x00b"])
    def test_invalid(self, path: str) -> None:
        assert not validate_remote_path(path)


class TestIsWithin:
    def test_nested(self, tmp_path: Path) -> None:
        assert is_within(tmp_path / "a" / "b", tmp_path)

    def test_equal(self, tmp_path: Path) -> None:
        assert is_within(tmp_path, tmp_path)

    def test_shared_prefix_is_not_within(self, tmp_path: Path) -> None:
        assert not is_within(tmp_path / "abc", tmp_path / "ab")
