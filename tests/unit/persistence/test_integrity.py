"""Integrity check and validator tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dbkeeper.persistence import (
    DatabaseQueue,
    DatabaseValidator,
    check_integrity,
    integrity_errors,
)

from . import build_sqlite_file, make_provisioner

if TYPE_CHECKING:
    from pathlib import Path


def test_empty_and_populated_databases_pass_quick_check(tmp_path: Path) -> None:
    empty = tmp_path / "empty.sqlite"
    empty.touch()
    populated = build_sqlite_file(tmp_path / "populated.sqlite")

    with DatabaseQueue(empty) as queue:
        assert check_integrity(queue)
    with DatabaseQueue(populated) as queue:
        assert check_integrity(queue)
        assert integrity_errors(queue) == ()


def test_missing_closed_or_garbage_databases_fail_quick_check(tmp_path: Path) -> None:
    assert not check_integrity(None)

    closed = DatabaseQueue(tmp_path / "closed.sqlite")
    closed.close()
    assert not check_integrity(closed)

    garbage = tmp_path / "garbage.sqlite"
    garbage.write_bytes(b"\x00garbage header" * 128)
    with DatabaseQueue(garbage) as queue:
        assert not check_integrity(queue)


def test_integrity_errors_rejects_non_positive_limit(tmp_path: Path) -> None:
    with DatabaseQueue(tmp_path / "limit.sqlite") as queue, pytest.raises(ValueError):
        integrity_errors(queue, max_errors=0)


def test_validator_checks_existence_and_integrity(tmp_path: Path) -> None:
    provisioner = make_provisioner(tmp_path)
    validator = DatabaseValidator(provisioner)

    assert not validator.is_valid_database(None)
    assert not validator.is_valid_database("contacts")

    path = provisioner.locator.database_path("contacts")
    assert path is not None
    build_sqlite_file(path)
    assert validator.is_valid_database("contacts")

    path.write_bytes(b"corrupted beyond repair " * 64)
    assert not validator.is_valid_database("contacts")
