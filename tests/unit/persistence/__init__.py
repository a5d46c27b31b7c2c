"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import contextlib
import sqlite3
import zipfile
from pathlib import Path
from typing import Final

from dbkeeper.persistence import (
    BaseDatabaseOpenDelegate,
    DatabaseConfiguration,
    DatabaseLocator,
    DatabaseOpenError,
    DatabaseProvisioner,
    DatabaseQueue,
    TemplateSource,
    TemplateUnpacker,
)

CONTACTS_SCHEMA: Final[str] = (
    "CREATE TABLE IF NOT EXISTS contacts (id INTEGER PRIMARY KEY, name TEXT NOT NULL)"
)
CONTACT_NAMES: Final[tuple[str, ...]] = ("alice", "bob")


class DelegateFailure(RuntimeError):
    """Raised by ``RecordingDelegate`` from the hook named in ``fail_on``."""


class RecordingDelegate(BaseDatabaseOpenDelegate):
    """Delegate that records every callback and can fail on demand."""

    def __init__(
        self,
        *,
        template: TemplateSource | None = None,
        fail_on: str | None = None,
        journal_mode: str | None = None,
    ) -> None:
        self.template = template
        self.fail_on = fail_on
        self.journal_mode = journal_mode
        self.calls: list[tuple[object, ...]] = []
        self.errors: list[DatabaseOpenError] = []

    @property
    def events(self) -> list[str]:
        return [str(call[0]) for call in self.calls]

    def will_create(self, name: str | None) -> TemplateSource | None:
        self.calls.append(("will_create", name))
        self._maybe_fail("will_create")
        return self.template

    def configure(self, name: str | None, configuration: DatabaseConfiguration) -> None:
        self.calls.append(("configure", name))
        if self.journal_mode is not None:
            configuration.journal_mode = self.journal_mode
        self._maybe_fail("configure")

    def on_created(self, name: str | None, queue: DatabaseQueue) -> None:
        self.calls.append(("on_created", name))
        queue.execute(CONTACTS_SCHEMA)
        self._maybe_fail("on_created")

    def on_upgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None:
        self.calls.append(("on_upgrade", name, old_version, new_version))
        queue.execute(CONTACTS_SCHEMA)
        self._maybe_fail("on_upgrade")

    def on_downgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None:
        self.calls.append(("on_downgrade", name, old_version, new_version))
        self._maybe_fail("on_downgrade")

    def on_opened(self, name: str | None, queue: DatabaseQueue) -> None:
        self.calls.append(("on_opened", name))
        self._maybe_fail("on_opened")

    def on_open_failed(self, name: str | None, error: DatabaseOpenError) -> None:
        self.calls.append(("on_open_failed", name))
        self.errors.append(error)

    def _maybe_fail(self, hook: str) -> None:
        if self.fail_on == hook:
            raise DelegateFailure(f"{hook} failed on purpose")


def make_locator(root: Path) -> DatabaseLocator:
    databases_dir = root / "Databases"
    temporary_dir = root / "tmp"
    databases_dir.mkdir(parents=True, exist_ok=True)
    temporary_dir.mkdir(parents=True, exist_ok=True)
    return DatabaseLocator(databases_dir=databases_dir, temporary_dir=temporary_dir)


def make_provisioner(
    root: Path,
    *,
    unpacker: TemplateUnpacker | None = None,
    configuration: DatabaseConfiguration | None = None,
) -> DatabaseProvisioner:
    return DatabaseProvisioner(
        make_locator(root), unpacker=unpacker, configuration=configuration
    )


def build_sqlite_file(
    path: Path,
    *,
    names: tuple[str, ...] = CONTACT_NAMES,
    user_version: int = 0,
) -> Path:
    """Write a plain SQLite database holding a populated ``contacts`` table."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with contextlib.closing(sqlite3.connect(path)) as conn:
        conn.execute(CONTACTS_SCHEMA)
        conn.executemany("INSERT INTO contacts (name) VALUES (?)", [(name,) for name in names])
        conn.execute(f"PRAGMA user_version = {int(user_version)}")
        conn.commit()
    return path


def build_template_archive(archive_path: Path, entry_name: str, source: Path) -> Path:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.write(source, arcname=entry_name)
    return archive_path


def read_user_version(path: Path) -> int:
    with contextlib.closing(sqlite3.connect(path)) as conn:
        return int(conn.execute("PRAGMA user_version").fetchone()[0])


def set_user_version(path: Path, version: int) -> None:
    with contextlib.closing(sqlite3.connect(path)) as conn:
        conn.execute(f"PRAGMA user_version = {int(version)}")
        conn.commit()


def table_names(path: Path) -> set[str]:
    with contextlib.closing(sqlite3.connect(path)) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {str(row[0]) for row in rows}


def count_contacts(queue: DatabaseQueue) -> int:
    row = queue.query_one("SELECT COUNT(*) AS total FROM contacts")
    assert row is not None
    total = row["total"]
    assert isinstance(total, int)
    return total
