"""
dbkeeper - SQL script migrations

File: src/dbkeeper/persistence/scripts.py

Purpose
- Drive database migrations from a directory of numbered SQL scripts.

What should be included in this file
- Discovery of ``NNNN_<name>.sql`` upgrade and ``NNNN_<name>.down.sql`` downgrade scripts.
- Chain validation and SHA-256 checksums per script.
- A ``schema_versions`` ledger recording applied scripts.

Functional requirements
- Versions form a contiguous chain starting at 1.
- Statements run one by one inside the caller's open migration transaction.
- A recorded checksum that differs from the script on disk fails the migration.
- Downgrades fail when any needed down script is missing.

Non-functional requirements
- Script discovery and ordering are deterministic.
"""

from __future__ import annotations

import os
import re
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from dbkeeper.persistence.delegate import BaseDatabaseOpenDelegate, TemplateSource
from dbkeeper.persistence.queue import (
    DatabaseConfiguration,
    DatabaseMigrationError,
    DatabaseOpenError,
    DatabaseQueue,
)
from dbkeeper.utils.hashing import sha256_text

PathLike = str | os.PathLike[str]

_LOGGER = structlog.get_logger(__name__)

_SCRIPT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?P<version>\d{4})_(?P<name>[A-Za-z0-9_]+?)(?P<down>\.down)?\.sql$"
)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


@dataclass(frozen=True, slots=True)
class MigrationScript:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str
    down_statements: tuple[str, ...] | None = None


def split_statements(script: str) -> tuple[str, ...]:
    """
    Split ``script`` into complete SQL statements, dropping blank ones.

    A line may hold several statements; each ``;`` that closes a complete
    statement (per ``sqlite3.complete_statement``) ends one.
    """

    statements: list[str] = []
    buffer = ""
    for line in script.splitlines(keepends=True):
        buffer += line
        position = buffer.find(";")
        while position != -1:
            candidate = buffer[: position + 1]
            if not sqlite3.complete_statement(candidate):
                position = buffer.find(";", position + 1)
                continue
            statement = candidate.strip()
            if statement.rstrip(";").strip():
                statements.append(statement)
            buffer = buffer[position + 1 :]
            position = buffer.find(";")
    if buffer.strip():
        if _strip_comments(buffer).strip():
            raise DatabaseMigrationError(f"incomplete SQL statement: {buffer.strip()[:80]!r}")
    return tuple(statements)


def migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    parts = [f"{version}:{name}\n"]
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        parts.append(f"{normalized}\n--\n")
    return sha256_text("".join(parts))


def load_migration_scripts(directory: PathLike) -> tuple[MigrationScript, ...]:
    """Load and validate the script chain in ``directory``."""

    root = Path(directory)
    if not root.is_dir():
        raise DatabaseMigrationError(f"migration directory not found: {root}")

    upgrades: dict[int, tuple[str, Path]] = {}
    downgrades: dict[int, Path] = {}
    for entry in sorted(root.iterdir()):
        match = _SCRIPT_PATTERN.match(entry.name)
        if match is None or not entry.is_file():
            continue
        version = int(match.group("version"))
        if version < 1:
            raise DatabaseMigrationError(f"migration versions start at 1: {entry.name}")
        if match.group("down"):
            if version in downgrades:
                raise DatabaseMigrationError(f"duplicate downgrade script for version {version}")
            downgrades[version] = entry
        else:
            if version in upgrades:
                raise DatabaseMigrationError(f"duplicate migration script for version {version}")
            upgrades[version] = (match.group("name"), entry)

    expected = list(range(1, len(upgrades) + 1))
    if sorted(upgrades) != expected:
        missing = sorted(set(range(1, max(upgrades, default=0) + 1)) - set(upgrades))
        raise DatabaseMigrationError(f"missing migration scripts for versions: {missing}")
    orphaned = sorted(set(downgrades) - set(upgrades))
    if orphaned:
        raise DatabaseMigrationError(f"downgrade scripts without an upgrade: {orphaned}")

    scripts: list[MigrationScript] = []
    for version in expected:
        name, path = upgrades[version]
        statements = split_statements(path.read_text(encoding="utf-8"))
        down_path = downgrades.get(version)
        down_statements = (
            None
            if down_path is None
            else split_statements(down_path.read_text(encoding="utf-8"))
        )
        scripts.append(
            MigrationScript(
                version=version,
                name=name,
                statements=statements,
                checksum=migration_checksum(version, name, statements),
                down_statements=down_statements,
            )
        )
    return tuple(scripts)


class SqlScriptMigrations(BaseDatabaseOpenDelegate):
    """Open delegate that migrates with numbered SQL scripts from one directory."""

    def __init__(
        self,
        directory: PathLike,
        *,
        target_version: int | None = None,
        template: TemplateSource | None = None,
        journal_mode: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._directory = Path(directory)
        self._scripts = load_migration_scripts(self._directory)
        self._template = template
        self._journal_mode = journal_mode
        self._logger = logger or _LOGGER
        if target_version is not None and target_version < 0:
            raise ValueError("target_version must be >= 0")
        self._target_version = self.latest_version if target_version is None else target_version
        self._check_target_version(self._target_version)
        self.last_error: DatabaseOpenError | None = None

    @property
    def scripts(self) -> tuple[MigrationScript, ...]:
        return self._scripts

    @property
    def latest_version(self) -> int:
        return self._scripts[-1].version if self._scripts else 0

    @property
    def target_version(self) -> int:
        """Version a freshly created database is built to; pass it to the provisioner."""

        return self._target_version

    def will_create(self, name: str | None) -> TemplateSource | None:
        return self._template

    def configure(self, name: str | None, configuration: DatabaseConfiguration) -> None:
        if self._journal_mode is not None:
            configuration.journal_mode = self._journal_mode

    def on_created(self, name: str | None, queue: DatabaseQueue) -> None:
        self._apply_upgrades(queue, 0, self._target_version, recorded=frozenset())

    def on_upgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None:
        self._check_target_version(new_version)
        recorded = self._verify_applied(queue)
        self._apply_upgrades(queue, old_version, new_version, recorded=recorded)

    def on_downgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None:
        recorded = self._recorded_versions(queue)
        applied_up_to = max(old_version, max(recorded, default=0))
        if applied_up_to > self.latest_version:
            raise DatabaseMigrationError(
                f"database version {applied_up_to} is newer than the known scripts "
                f"(latest={self.latest_version})"
            )
        steps: list[tuple[MigrationScript, tuple[str, ...]]] = []
        for script in reversed(self._scripts[new_version:applied_up_to]):
            if script.down_statements is None:
                raise DatabaseMigrationError(
                    f"no downgrade script for version {script.version} ({script.name})"
                )
            steps.append((script, script.down_statements))

        for script, statements in steps:
            self._run_statements(queue, statements, label=f"downgrade {script.version}")
            queue.execute("DELETE FROM schema_versions WHERE version = ?", (script.version,))
            self._logger.info(
                "migration_script_reverted", version=script.version, script=script.name
            )

    def on_open_failed(self, name: str | None, error: DatabaseOpenError) -> None:
        self.last_error = error

    def _check_target_version(self, version: int) -> None:
        if version > self.latest_version:
            raise DatabaseMigrationError(
                f"target version {version} exceeds known migration scripts "
                f"(latest={self.latest_version})"
            )

    def _recorded_versions(self, queue: DatabaseQueue) -> frozenset[int]:
        queue.execute(_SCHEMA_VERSIONS_TABLE_SQL)
        rows = queue.query_all("SELECT version FROM schema_versions")
        return frozenset(row["version"] for row in rows if isinstance(row["version"], int))

    def _verify_applied(self, queue: DatabaseQueue) -> frozenset[int]:
        """Check recorded checksums against the scripts on disk; return the recorded versions."""

        queue.execute(_SCHEMA_VERSIONS_TABLE_SQL)
        rows = queue.query_all("SELECT version, checksum FROM schema_versions ORDER BY version")
        recorded: set[int] = set()
        for row in rows:
            version = row["version"]
            if not isinstance(version, int):
                continue
            recorded.add(version)
            if version > len(self._scripts):
                continue
            expected = self._scripts[version - 1].checksum
            if row["checksum"] != expected:
                raise DatabaseMigrationError(
                    "migration checksum mismatch for version "
                    f"{version}: db={row['checksum']} code={expected}"
                )
        return frozenset(recorded)

    def _apply_upgrades(
        self,
        queue: DatabaseQueue,
        old_version: int,
        new_version: int,
        *,
        recorded: frozenset[int],
    ) -> None:
        # Scripts already recorded in the ledger are skipped even above the stored version.
        queue.execute(_SCHEMA_VERSIONS_TABLE_SQL)
        for script in self._scripts[old_version:new_version]:
            if script.version in recorded:
                self._logger.info(
                    "migration_script_already_applied",
                    version=script.version,
                    script=script.name,
                )
                continue
            self._run_statements(queue, script.statements, label=f"apply {script.version}")
            queue.execute(
                """
                INSERT OR REPLACE INTO schema_versions (version, name, checksum, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (script.version, script.name, script.checksum, _utc_now_iso()),
            )
            self._logger.info(
                "migration_script_applied", version=script.version, script=script.name
            )

    def _run_statements(
        self, queue: DatabaseQueue, statements: Sequence[str], *, label: str
    ) -> None:
        for statement in statements:
            self._logger.debug("migration_statement", step=label, sql=statement[:120])
            queue.execute(statement)


def _strip_comments(text: str) -> str:
    return "\n".join(line.split("--", 1)[0] for line in text.splitlines())


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


__all__ = [
    "MigrationScript",
    "SqlScriptMigrations",
    "load_migration_scripts",
    "migration_checksum",
    "split_statements",
]
