"""
dbkeeper - serialized database queue

File: src/dbkeeper/persistence/queue.py

Purpose
- Own a single SQLite connection and serialize every read, write, and
  transaction issued against it.

What should be included in this file
- Connection configuration handed to open delegates before connecting.
- Transaction runner with explicit commit/rollback completion values.
- Bounded busy-retry and actionable error translation.
- ``PRAGMA user_version`` access.

Functional requirements
- Writes issued while a transaction is open join it through a savepoint.
- A closed queue refuses further work.

Non-functional requirements
- One writer at a time; readers wait for an open transaction to finish.
"""

from __future__ import annotations

import copy
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, TypeVar

from dbkeeper.constants import (
    DEFAULT_BUSY_RETRY_BACKOFF_MS,
    DEFAULT_BUSY_RETRY_LIMIT,
    DEFAULT_BUSY_TIMEOUT_MS,
    IN_MEMORY_DATABASE,
    JOURNAL_MODES,
)
from dbkeeper.persistence import cipher

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None
T = TypeVar("T")

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
    "file is encrypted or is not a database",
)

_DRIVER_ERRORS: Final[tuple[type[Exception], ...]] = (sqlite3.Error, *cipher.DRIVER_ERRORS)


class DatabaseError(RuntimeError):
    """Base class for database provisioning errors."""


class DatabaseConfigurationError(DatabaseError):
    """Raised when storage locations cannot be resolved; not recoverable at runtime."""


class DatabaseOpenError(DatabaseError):
    """Raised (or reported to the delegate) when a database cannot be opened."""


class DatabaseMigrationError(DatabaseError):
    """Raised when a schema migration fails and its transaction was rolled back."""


class DatabaseReadOnlyError(DatabaseMigrationError):
    """Raised when a read-only handle would need a schema migration."""


class DatabaseClosedError(DatabaseError):
    """Raised when work is submitted to a closed queue."""


class DatabaseBusyError(DatabaseError):
    """Raised when bounded busy retries are exhausted."""


class DatabaseCorruptionError(DatabaseError):
    """Raised when SQLite reports possible corruption."""


class TransactionKind(StrEnum):
    DEFERRED = "DEFERRED"
    IMMEDIATE = "IMMEDIATE"
    EXCLUSIVE = "EXCLUSIVE"


class TransactionCompletion(StrEnum):
    COMMIT = "COMMIT"
    ROLLBACK = "ROLLBACK"


@dataclass(slots=True)
class DatabaseConfiguration:
    """Connection settings; open delegates may mutate a copy before connecting."""

    readonly: bool = False
    foreign_keys: bool = True
    journal_mode: str | None = None
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT
    busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS
    passphrase: bytes | str | None = field(default=None, repr=False)
    pragmas: dict[str, str | int] = field(default_factory=dict)

    def copy(self) -> DatabaseConfiguration:
        return copy.deepcopy(self)

    def validate(self) -> None:
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if self.busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if self.busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")
        if self.journal_mode is not None and self.journal_mode.lower() not in JOURNAL_MODES:
            allowed = ", ".join(JOURNAL_MODES)
            raise ValueError(f"journal_mode must be one of: {allowed}; got {self.journal_mode!r}")
        for name in self.pragmas:
            if not name.replace("_", "").isalnum():
                raise ValueError(f"invalid pragma name: {name!r}")


class DatabaseQueue:
    """A single connection whose reads, writes, and transactions run one at a time."""

    def __init__(
        self,
        path: str | Path,
        configuration: DatabaseConfiguration | None = None,
    ) -> None:
        config = (configuration or DatabaseConfiguration()).copy()
        config.validate()

        self._path = str(path)
        self._configuration = config
        self._lock = threading.RLock()
        self._savepoint_counter = 0
        self._closed = False
        self._conn = self._connect()

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_in_memory(self) -> bool:
        return self._path == IN_MEMORY_DATABASE

    @property
    def configuration(self) -> DatabaseConfiguration:
        return self._configuration.copy()

    @property
    def readonly(self) -> bool:
        return self._configuration.readonly

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_in_transaction(self) -> bool:
        with self._lock:
            return not self._closed and self._conn.in_transaction

    @property
    def user_version(self) -> int:
        """The ``PRAGMA user_version`` integer stored in the database header."""

        row = self.query_one("PRAGMA user_version")
        if row is None:
            return 0
        value = next(iter(row.values()))
        if not isinstance(value, int):
            raise DatabaseError("PRAGMA user_version must be an integer")
        return value

    def set_user_version(self, version: int) -> None:
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise ValueError(f"user_version must be a non-negative integer, got {version!r}")
        self.write(lambda conn: self._execute_with_retry(
            conn,
            f"PRAGMA user_version = {version}",
            (),
            operation="set user_version",
        ))

    def read(self, block: Callable[[Any], T]) -> T:
        """Run ``block(connection)`` with exclusive access to the connection."""

        with self._lock:
            conn = self._require_open()
            return block(conn)

    def write(self, block: Callable[[Any], T]) -> T:
        """Run ``block(connection)`` atomically; joins an open transaction via savepoint."""

        with self._lock:
            conn = self._require_open()
            if conn.in_transaction:
                return self._run_in_savepoint(conn, block)
            self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
            try:
                result = block(conn)
            except BaseException:
                self._rollback(conn)
                raise
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")
            return result

    def in_transaction(
        self,
        block: Callable[[Any], TransactionCompletion],
        *,
        kind: TransactionKind = TransactionKind.DEFERRED,
    ) -> TransactionCompletion:
        """
        Run ``block`` inside one transaction and commit or roll back on its return value.

        An exception escaping ``block`` rolls back and propagates unchanged.
        """

        with self._lock:
            conn = self._require_open()
            if conn.in_transaction:
                raise DatabaseError("a transaction is already open on this queue")
            self._execute_with_retry(
                conn, f"BEGIN {kind.value}", (), operation="begin transaction"
            )
            try:
                completion = block(conn)
            except BaseException:
                self._rollback(conn)
                raise
            if completion is TransactionCompletion.COMMIT:
                self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")
            else:
                self._rollback(conn)
            return completion

    def execute(self, sql: str, params: SQLParams = ()) -> int:
        """Execute a parameterized statement and return affected row count."""

        def _run(conn: Any) -> int:
            cursor = self._execute_with_retry(conn, sql, params, operation="execute statement")
            return int(cursor.rowcount)

        return self.write(_run)

    def executemany(self, sql: str, params_iter: Iterable[SQLParams]) -> int:
        """Execute a parameterized statement for a sequence of parameter tuples."""

        params_list = [tuple(params) for params in params_iter]

        def _run(conn: Any) -> int:
            return self._executemany_with_retry(conn, sql, params_list, operation="execute many")

        return self.write(_run)

    def query_all(self, sql: str, params: SQLParams = ()) -> list[dict[str, RowValue]]:
        """Run a query and return rows as dictionaries."""

        def _run(conn: Any) -> list[dict[str, RowValue]]:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(cursor, row) for row in cursor.fetchall()]

        return self.read(_run)

    def query_one(self, sql: str, params: SQLParams = ()) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a dictionary."""

        def _run(conn: Any) -> dict[str, RowValue] | None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(cursor, row)

        return self.read(_run)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()

    def __enter__(self) -> DatabaseQueue:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        mode = "ro" if self.readonly else "rw"
        return f"DatabaseQueue({self._path!r}, {mode}, {state})"

    def _connect(self) -> Any:
        config = self._configuration
        target, uri = self._connection_target()
        timeout = config.busy_timeout_ms / 1000.0
        try:
            if config.passphrase is not None:
                conn = cipher.connect(
                    target, passphrase=config.passphrase, uri=uri, timeout=timeout
                )
            else:
                conn = sqlite3.connect(
                    target,
                    timeout=timeout,
                    isolation_level=None,
                    check_same_thread=False,
                    uri=uri,
                )
        except _DRIVER_ERRORS as exc:
            self._raise_actionable_error(exc, operation="open connection")

        try:
            self._configure_connection(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    def _connection_target(self) -> tuple[str, bool]:
        if self.is_in_memory or not self._configuration.readonly:
            return self._path, False
        return f"{Path(self._path).resolve().as_uri()}?mode=ro", True

    def _configure_connection(self, conn: Any) -> None:
        config = self._configuration
        self._execute_with_retry(
            conn, f"PRAGMA busy_timeout={config.busy_timeout_ms}", (), operation="configure"
        )
        self._execute_with_retry(
            conn,
            f"PRAGMA foreign_keys={'ON' if config.foreign_keys else 'OFF'}",
            (),
            operation="configure",
        )
        if config.readonly:
            self._execute_with_retry(conn, "PRAGMA query_only=ON", (), operation="configure")
        elif config.journal_mode is not None:
            self._execute_with_retry(
                conn,
                f"PRAGMA journal_mode={config.journal_mode.upper()}",
                (),
                operation="configure journal_mode",
            ).fetchall()
        for name, value in sorted(config.pragmas.items()):
            rendered = str(value) if isinstance(value, int) else _quote_literal(str(value))
            self._execute_with_retry(
                conn, f"PRAGMA {name}={rendered}", (), operation=f"configure {name}"
            ).fetchall()

    def _rollback(self, conn: Any) -> None:
        # SQLite may already have rolled back after some errors (SQLITE_FULL, SQLITE_IOERR).
        if conn.in_transaction:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")

    def _require_open(self) -> Any:
        if self._closed:
            raise DatabaseClosedError(f"database queue for {self._path} is closed")
        return self._conn

    def _run_in_savepoint(self, conn: Any, block: Callable[[Any], T]) -> T:
        savepoint = self._next_savepoint_name()
        self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
        try:
            result = block(conn)
        except BaseException:
            self._execute_with_retry(
                conn,
                f"ROLLBACK TO SAVEPOINT {savepoint}",
                (),
                operation="rollback to savepoint",
            )
            self._execute_with_retry(
                conn,
                f"RELEASE SAVEPOINT {savepoint}",
                (),
                operation="release savepoint",
            )
            raise
        self._execute_with_retry(
            conn,
            f"RELEASE SAVEPOINT {savepoint}",
            (),
            operation="release savepoint",
        )
        return result

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: Any,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> Any:
        limit = self._configuration.busy_retry_limit
        for attempt in range(limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except _DRIVER_ERRORS as exc:
                if _is_integrity_error(exc):
                    raise
                if self._is_busy_error(exc) and attempt < limit:
                    time.sleep(self._backoff_seconds(attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise DatabaseBusyError(f"{operation} exhausted retries unexpectedly")

    def _executemany_with_retry(
        self,
        conn: Any,
        sql: str,
        params_list: Sequence[SQLParams],
        *,
        operation: str,
    ) -> int:
        limit = self._configuration.busy_retry_limit
        for attempt in range(limit + 1):
            try:
                cursor = conn.executemany(sql, params_list)
                return int(cursor.rowcount)
            except _DRIVER_ERRORS as exc:
                if _is_integrity_error(exc):
                    raise
                if self._is_busy_error(exc) and attempt < limit:
                    time.sleep(self._backoff_seconds(attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise DatabaseBusyError(f"{operation} exhausted retries unexpectedly")

    def _backoff_seconds(self, attempt: int) -> float:
        return (self._configuration.busy_retry_backoff_ms / 1000.0) * float(2**attempt)

    def _is_busy_error(self, exc: Exception) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: Exception) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: Exception, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise DatabaseCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run an integrity check and recreate the database if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise DatabaseBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._configuration.busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise DatabaseError(f"{operation} failed for {self._path}: {exc}") from exc


def _is_integrity_error(exc: Exception) -> bool:
    return type(exc).__name__ == "IntegrityError"


def _row_to_dict(cursor: Any, row: Sequence[RowValue]) -> dict[str, RowValue]:
    names = [str(column[0]) for column in cursor.description or ()]
    return dict(zip(names, row, strict=False))


def _quote_literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def describe_configuration(configuration: DatabaseConfiguration) -> Mapping[str, object]:
    """Loggable view of ``configuration`` with key material masked."""

    return {
        "readonly": configuration.readonly,
        "foreign_keys": configuration.foreign_keys,
        "journal_mode": configuration.journal_mode,
        "busy_timeout_ms": configuration.busy_timeout_ms,
        "encrypted": configuration.passphrase is not None,
        "pragmas": sorted(configuration.pragmas),
    }


__all__ = [
    "DatabaseBusyError",
    "DatabaseClosedError",
    "DatabaseConfiguration",
    "DatabaseConfigurationError",
    "DatabaseCorruptionError",
    "DatabaseError",
    "DatabaseMigrationError",
    "DatabaseOpenError",
    "DatabaseQueue",
    "DatabaseReadOnlyError",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "TransactionCompletion",
    "TransactionKind",
    "describe_configuration",
]
