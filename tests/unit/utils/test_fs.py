"""Filesystem primitive tests: atomic copy, removal, and backup exclusion."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import pytest

from dbkeeper.utils.fs import (
    copy_file,
    create_empty_file,
    ensure_directory,
    exclude_from_backup,
    file_exists,
    is_excluded_from_backup,
    remove_file,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_ensure_directory_creates_parents_and_rejects_files(tmp_path: Path) -> None:
    nested = ensure_directory(tmp_path / "a" / "b")
    assert nested.is_dir()
    assert ensure_directory(nested) == nested

    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(OSError):
        ensure_directory(blocker)


def test_file_exists_only_for_regular_files(tmp_path: Path) -> None:
    target = tmp_path / "db.sqlite"
    assert not file_exists(None)
    assert not file_exists(target)
    assert not file_exists(tmp_path)
    target.write_bytes(b"")
    assert file_exists(target)
    assert file_exists(str(target))


def test_copy_file_replaces_destination_without_leaving_temp_files(tmp_path: Path) -> None:
    source = tmp_path / "source.bin"
    source.write_bytes(b"\x00\x01payload")
    destination = tmp_path / "out" / "dest.bin"
    destination.parent.mkdir()
    destination.write_bytes(b"old")

    copied = copy_file(source, destination)

    assert copied == destination
    assert destination.read_bytes() == b"\x00\x01payload"
    assert sorted(item.name for item in destination.parent.iterdir()) == ["dest.bin"]


def test_copy_file_failure_cleans_up_temp_file(tmp_path: Path) -> None:
    destination = tmp_path / "dest.bin"

    with pytest.raises(FileNotFoundError):
        copy_file(tmp_path / "missing.bin", destination)

    assert list(tmp_path.iterdir()) == []


def test_create_empty_file_keeps_existing_content(tmp_path: Path) -> None:
    target = create_empty_file(tmp_path / "empty.sqlite")
    assert target.stat().st_size == 0

    target.write_bytes(b"data")
    create_empty_file(target)
    assert target.read_bytes() == b"data"


def test_remove_file_reports_whether_something_was_deleted(tmp_path: Path) -> None:
    target = tmp_path / "gone.sqlite"
    target.write_bytes(b"")

    assert remove_file(target)
    assert not remove_file(target)
    assert not remove_file(None)


def test_backup_exclusion_is_best_effort(tmp_path: Path) -> None:
    assert not exclude_from_backup(tmp_path / "missing")
    assert not is_excluded_from_backup(tmp_path / "missing")

    target = tmp_path / "db.sqlite"
    target.write_bytes(b"")
    marked = exclude_from_backup(target)

    assert isinstance(marked, bool)
    if marked and sys.platform != "darwin":
        assert is_excluded_from_backup(target)
