"""
dbkeeper - database open delegate

File: src/dbkeeper/persistence/delegate.py

Purpose
- Define the callbacks an application supplies to seed, configure, and migrate a database.

Functional requirements
- ``name`` is always the caller-supplied logical name, ``None`` for in-memory databases.
- At most one of created/upgrade/downgrade fires per open, and only when versions differ.
- ``on_opened`` and ``on_open_failed`` are mutually exclusive per open attempt.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from dbkeeper.persistence.queue import (
    DatabaseConfiguration,
    DatabaseMigrationError,
    DatabaseOpenError,
    DatabaseQueue,
)


@dataclass(frozen=True, slots=True)
class TemplateSource:
    """A bundled template to seed a new database from; ``encryption_key`` re-encrypts it."""

    path: Path | str
    encryption_key: bytes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        if self.encryption_key is not None and not self.encryption_key:
            raise ValueError("encryption_key must not be empty")

    def __repr__(self) -> str:
        masked = "<set>" if self.encryption_key else None
        return f"TemplateSource(path={str(self.path)!r}, encryption_key={masked})"


@runtime_checkable
class DatabaseOpenDelegate(Protocol):
    def will_create(self, name: str | None) -> TemplateSource | None: ...

    def configure(self, name: str | None, configuration: DatabaseConfiguration) -> None: ...

    def on_created(self, name: str | None, queue: DatabaseQueue) -> None: ...

    def on_upgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None: ...

    def on_downgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None: ...

    def on_opened(self, name: str | None, queue: DatabaseQueue) -> None: ...

    def on_open_failed(self, name: str | None, error: DatabaseOpenError) -> None: ...


class BaseDatabaseOpenDelegate:
    """No-op delegate; subclasses override what they need. Downgrades fail unless overridden."""

    def will_create(self, name: str | None) -> TemplateSource | None:
        return None

    def configure(self, name: str | None, configuration: DatabaseConfiguration) -> None:
        return None

    def on_created(self, name: str | None, queue: DatabaseQueue) -> None:
        return None

    def on_upgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None:
        return None

    def on_downgrade(
        self, name: str | None, queue: DatabaseQueue, old_version: int, new_version: int
    ) -> None:
        raise DatabaseMigrationError(
            f"downgrade of {name!r} from version {old_version} to {new_version} is not supported"
        )

    def on_opened(self, name: str | None, queue: DatabaseQueue) -> None:
        return None

    def on_open_failed(self, name: str | None, error: DatabaseOpenError) -> None:
        return None


__all__ = ["BaseDatabaseOpenDelegate", "DatabaseOpenDelegate", "TemplateSource"]
