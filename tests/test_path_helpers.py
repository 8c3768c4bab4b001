"""Tests for termxfer/utils/path_helpers.py."""

from __future__ import annotations

from pathlib import Path, PurePosixPath

import pytest

from termxfer.utils.path_helpers import (
    fmt_millis,
    human_readable_size,
    normalize_local_path,
    resolve_remote_path,
    to_remote_path,
    validate_remote_path,
)


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB"), (-1, "0 B")],
)
def test_human_readable_size(size: int, expected: str) -> None:
    assert human_readable_size(size) == expected


@pytest.mark.parametrize("seconds, expected", [(0, "0.000"), (3.042, "3.042"), (61.5, "61.500")])
def test_fmt_millis(seconds: float, expected: str) -> None:
    assert fmt_millis(seconds) == expected


class TestValidateRemotePath:
    def test_plain_path_accepted(self) -> None:
        assert validate_remote_path("/home/user/file.txt")

    def test_parent_component_accepted(self) -> None:
        assert validate_remote_path("/home/user/../root")

    def test_null_byte_rejected(self) -> None:
        assert not validate_remote_path("/tmp/a\x00b")


def test_to_remote_path_converts_backslashes() -> None:
    assert to_remote_path("dir\\sub\\file") == PurePosixPath("dir/sub/file")


def test_to_remote_path_keeps_posix_path() -> None:
    path = PurePosixPath("/srv")
    assert to_remote_path(path) is path


def test_normalize_local_path_is_absolute(tmp_path: Path) -> None:
    result = normalize_local_path(tmp_path / "a" / ".." / "b")
    assert result.is_absolute()
    assert result.name == "b"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("..", "/home"),
        ("../x", "/home/x"),
        ("sub/./file", "/home/deck/sub/file"),
        ("/srv/www/../logs", "/srv/logs"),
        ("../../../..", "/"),
    ],
)
def test_resolve_remote_path(path: str, expected: str) -> None:
    assert resolve_remote_path(path, PurePosixPath("/home/deck")) == PurePosixPath(expected)
