"""Database queue transaction, savepoint, retry, and error-translation tests."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

import pytest

from dbkeeper.persistence import (
    DatabaseBusyError,
    DatabaseClosedError,
    DatabaseConfiguration,
    DatabaseCorruptionError,
    DatabaseError,
    DatabaseQueue,
    TransactionCompletion,
    TransactionKind,
)

from . import CONTACTS_SCHEMA, build_sqlite_file, count_contacts

if TYPE_CHECKING:
    from pathlib import Path


def _queue(tmp_path: Path, **overrides: Any) -> DatabaseQueue:
    queue = DatabaseQueue(tmp_path / "queue.sqlite", DatabaseConfiguration(**overrides))
    queue.execute(CONTACTS_SCHEMA)
    return queue


def test_write_then_read_returns_dict_rows(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:
        inserted = queue.execute("INSERT INTO contacts (name) VALUES (?)", ("alice",))
        assert inserted == 1
        many = queue.executemany(
            "INSERT INTO contacts (name) VALUES (?)", [("bob",), ("carol",)]
        )
        assert many == 2

        rows = queue.query_all("SELECT id, name FROM contacts ORDER BY id")
        assert [row["name"] for row in rows] == ["alice", "bob", "carol"]
        assert queue.query_one("SELECT name FROM contacts WHERE name = ?", ("zed",)) is None
        assert not queue.is_in_transaction


def test_nested_write_failure_rolls_back_only_its_savepoint(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:

        def _inner(conn: Any) -> None:
            conn.execute("INSERT INTO contacts (name) VALUES ('inner')")
            raise RuntimeError("inner failure")

        def _outer(conn: Any) -> None:
            conn.execute("INSERT INTO contacts (name) VALUES ('outer')")
            with pytest.raises(RuntimeError, match="inner failure"):
                queue.write(_inner)
            assert queue.is_in_transaction

        queue.write(_outer)

        names = [row["name"] for row in queue.query_all("SELECT name FROM contacts")]
        assert names == ["outer"]


def test_write_failure_rolls_back_everything(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:

        def _block(conn: Any) -> None:
            conn.execute("INSERT INTO contacts (name) VALUES ('lost')")
            raise ValueError("abort")

        with pytest.raises(ValueError, match="abort"):
            queue.write(_block)

        assert count_contacts(queue) == 0
        assert not queue.is_in_transaction


def test_in_transaction_commits_or_rolls_back_on_completion_value(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:

        def _commit(conn: Any) -> TransactionCompletion:
            conn.execute("INSERT INTO contacts (name) VALUES ('kept')")
            return TransactionCompletion.COMMIT

        def _rollback(conn: Any) -> TransactionCompletion:
            queue.execute("INSERT INTO contacts (name) VALUES ('dropped')")
            return TransactionCompletion.ROLLBACK

        assert queue.in_transaction(_commit) is TransactionCompletion.COMMIT
        assert (
            queue.in_transaction(_rollback, kind=TransactionKind.EXCLUSIVE)
            is TransactionCompletion.ROLLBACK
        )

        names = [row["name"] for row in queue.query_all("SELECT name FROM contacts")]
        assert names == ["kept"]


def test_in_transaction_exception_rolls_back_and_propagates(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:

        def _block(conn: Any) -> TransactionCompletion:
            conn.execute("INSERT INTO contacts (name) VALUES ('lost')")
            raise KeyError("boom")

        with pytest.raises(KeyError):
            queue.in_transaction(_block, kind=TransactionKind.IMMEDIATE)

        assert count_contacts(queue) == 0
        assert not queue.is_in_transaction


def test_in_transaction_refuses_to_nest(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:
        nested_errors: list[DatabaseError] = []

        def _inner(conn: Any) -> TransactionCompletion:
            return TransactionCompletion.COMMIT

        def _outer(conn: Any) -> TransactionCompletion:
            try:
                queue.in_transaction(_inner)
            except DatabaseError as exc:
                nested_errors.append(exc)
            return TransactionCompletion.COMMIT

        queue.in_transaction(_outer)

        assert len(nested_errors) == 1
        assert "already open" in str(nested_errors[0])


def test_user_version_round_trip_and_validation(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:
        assert queue.user_version == 0
        queue.set_user_version(7)
        assert queue.user_version == 7

        with pytest.raises(ValueError):
            queue.set_user_version(-1)
        with pytest.raises(ValueError):
            queue.set_user_version(True)


def test_closed_queue_refuses_work(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.close()
    queue.close()

    assert queue.is_closed
    assert not queue.is_in_transaction
    assert "closed" in repr(queue)
    with pytest.raises(DatabaseClosedError):
        queue.query_all("SELECT 1")
    with pytest.raises(DatabaseClosedError):
        queue.execute("INSERT INTO contacts (name) VALUES ('late')")


def test_integrity_errors_surface_unwrapped(tmp_path: Path) -> None:
    with _queue(tmp_path) as queue:
        queue.execute("INSERT INTO contacts (id, name) VALUES (1, 'alice')")

        with pytest.raises(sqlite3.IntegrityError):
            queue.execute("INSERT INTO contacts (id, name) VALUES (1, 'again')")

        assert count_contacts(queue) == 1


def test_readonly_queue_rejects_writes(tmp_path: Path) -> None:
    path = build_sqlite_file(tmp_path / "ro.sqlite")

    with DatabaseQueue(path, DatabaseConfiguration(readonly=True)) as queue:
        assert queue.readonly
        assert count_contacts(queue) == 2
        with pytest.raises(DatabaseError):
            queue.execute("INSERT INTO contacts (name) VALUES ('mallory')")
        assert count_contacts(queue) == 2


def test_busy_database_raises_after_bounded_retries(tmp_path: Path) -> None:
    path = tmp_path / "busy.sqlite"
    holder = DatabaseQueue(path)
    holder.execute(CONTACTS_SCHEMA)
    contender = DatabaseQueue(
        path,
        DatabaseConfiguration(busy_timeout_ms=0, busy_retry_limit=1, busy_retry_backoff_ms=1),
    )
    errors: list[DatabaseBusyError] = []

    def _hold(conn: Any) -> TransactionCompletion:
        try:
            contender.execute("INSERT INTO contacts (name) VALUES ('blocked')")
        except DatabaseBusyError as exc:
            errors.append(exc)
        return TransactionCompletion.ROLLBACK

    try:
        holder.in_transaction(_hold, kind=TransactionKind.EXCLUSIVE)
    finally:
        contender.close()
        holder.close()

    assert len(errors) == 1
    assert "2 attempt(s)" in str(errors[0])


def test_garbage_file_is_reported_as_corruption(tmp_path: Path) -> None:
    path = tmp_path / "garbage.sqlite"
    path.write_bytes(b"definitely not a database " * 64)

    with pytest.raises(DatabaseCorruptionError), DatabaseQueue(path) as queue:
        queue.query_all("SELECT name FROM sqlite_master")


def test_configuration_validation_and_copy_isolation() -> None:
    with pytest.raises(ValueError, match="journal_mode"):
        DatabaseConfiguration(journal_mode="sideways").validate()
    with pytest.raises(ValueError, match="busy_timeout_ms"):
        DatabaseConfiguration(busy_timeout_ms=-1).validate()
    with pytest.raises(ValueError, match="invalid pragma"):
        DatabaseConfiguration(pragmas={"cache size": 10}).validate()

    original = DatabaseConfiguration(pragmas={"cache_size": -2000})
    duplicate = original.copy()
    duplicate.pragmas["synchronous"] = "NORMAL"
    assert original.pragmas == {"cache_size": -2000}


def test_journal_mode_and_extra_pragmas_are_applied(tmp_path: Path) -> None:
    configuration = DatabaseConfiguration(
        journal_mode="wal", pragmas={"synchronous": 1, "cache_size": -4000}
    )
    with DatabaseQueue(tmp_path / "wal.sqlite", configuration) as queue:
        journal = queue.query_one("PRAGMA journal_mode")
        synchronous = queue.query_one("PRAGMA synchronous")
        foreign_keys = queue.query_one("PRAGMA foreign_keys")

    assert journal is not None and journal["journal_mode"] == "wal"
    assert synchronous is not None and synchronous["synchronous"] == 1
    assert foreign_keys is not None and foreign_keys["foreign_keys"] == 1


def test_in_memory_queue_never_touches_disk(tmp_path: Path) -> None:
    with DatabaseQueue(":memory:") as queue:
        assert queue.is_in_memory
        queue.execute(CONTACTS_SCHEMA)
        queue.execute("INSERT INTO contacts (name) VALUES ('ephemeral')")
        assert count_contacts(queue) == 1

    assert list(tmp_path.iterdir()) == []
