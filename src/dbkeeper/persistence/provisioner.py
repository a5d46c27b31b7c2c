"""
dbkeeper - provisioning and migration engine

File: src/dbkeeper/persistence/provisioner.py

Purpose
- Open an existing database or create one (optionally seeded from a template),
  then bring its stored schema version to the requested version.

What should be included in this file
- ``open_or_create``, ``open`` and ``create`` entry points.
- Template seeding with integrity check and optional SQLCipher export.
- Migration inside exactly one EXCLUSIVE transaction.

Functional requirements
- A failed migration rolls back and leaves the stored version unchanged.
- Open failures close the connection, notify the delegate once, and yield ``None``.
- Seeding failures degrade to an empty database; they are logged, not raised.
- Missing storage directories are configuration errors and propagate.

Non-functional requirements
- Not safe for concurrent provisioning of the same name; callers serialize.
- Filesystem side effects run outside any database transaction.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import structlog

from dbkeeper.constants import (
    DATABASE_SIDECAR_SUFFIXES,
    DEFAULT_BUSY_RETRY_BACKOFF_MS,
    DEFAULT_BUSY_RETRY_LIMIT,
    DEFAULT_BUSY_TIMEOUT_MS,
    IN_MEMORY_DATABASE,
    TEMPLATE_FORMATS,
)
from dbkeeper.persistence import cipher
from dbkeeper.persistence.delegate import DatabaseOpenDelegate, TemplateSource
from dbkeeper.persistence.integrity import check_integrity
from dbkeeper.persistence.paths import DatabaseLocator, is_in_memory, sanitize_name
from dbkeeper.persistence.queue import (
    DatabaseConfiguration,
    DatabaseConfigurationError,
    DatabaseError,
    DatabaseMigrationError,
    DatabaseOpenError,
    DatabaseQueue,
    DatabaseReadOnlyError,
    TransactionCompletion,
    TransactionKind,
    describe_configuration,
)
from dbkeeper.persistence.templates import TemplateUnpacker, make_template_unpacker
from dbkeeper.utils.fs import (
    copy_file,
    create_empty_file,
    exclude_from_backup,
    file_exists,
    remove_file,
)

_LOGGER = structlog.get_logger(__name__)

_SEED_ERRORS: Final[tuple[type[BaseException], ...]] = (
    DatabaseError,
    OSError,
    cipher.SqlCipherUnavailable,
    sqlite3.Error,
    *cipher.DRIVER_ERRORS,
)


def connection_configuration(connection: Mapping[str, Any]) -> DatabaseConfiguration:
    """Build the base connection settings from the ``connection`` config section."""

    journal_mode = connection.get("journal_mode")
    configuration = DatabaseConfiguration(
        foreign_keys=bool(connection.get("foreign_keys", True)),
        journal_mode=str(journal_mode) if journal_mode else None,
        busy_timeout_ms=int(connection.get("busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS)),
        busy_retry_limit=int(connection.get("busy_retry_limit", DEFAULT_BUSY_RETRY_LIMIT)),
        busy_retry_backoff_ms=int(
            connection.get("busy_retry_backoff_ms", DEFAULT_BUSY_RETRY_BACKOFF_MS)
        ),
    )
    configuration.validate()
    return configuration


class DatabaseProvisioner:
    """Locate, seed, open and migrate databases by logical name."""

    def __init__(
        self,
        locator: DatabaseLocator,
        *,
        unpacker: TemplateUnpacker | None = None,
        configuration: DatabaseConfiguration | None = None,
        logger: Any | None = None,
    ) -> None:
        self._locator = locator
        self._logger = logger or _LOGGER
        self._unpacker = unpacker or make_template_unpacker(
            TEMPLATE_FORMATS[0], logger=self._logger
        )
        self._configuration = (configuration or DatabaseConfiguration()).copy()
        self._configuration.validate()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        logger: Any | None = None,
    ) -> DatabaseProvisioner:
        templates = config.get("templates", {})
        connection = config.get("connection", {})
        template_format = templates.get("format", TEMPLATE_FORMATS[0])
        return cls(
            DatabaseLocator.from_config(config, logger=logger),
            unpacker=make_template_unpacker(str(template_format), logger=logger),
            configuration=connection_configuration(connection),
            logger=logger,
        )

    @property
    def locator(self) -> DatabaseLocator:
        return self._locator

    @property
    def configuration(self) -> DatabaseConfiguration:
        return self._configuration.copy()

    def open_or_create(
        self,
        name: str | None,
        version: int,
        *,
        readonly: bool = False,
        delegate: DatabaseOpenDelegate | None = None,
    ) -> DatabaseQueue | None:
        """
        Open ``name`` at ``version``, creating it when it does not exist or cannot be opened.

        The fallback is open, then create, then reopen, with one exception: a
        read-only request never falls through to ``create`` for an existing
        file, because creation deletes it first. When such a file cannot be
        opened as is (for example it needs a migration), the result is ``None``
        and the delegate has already seen ``on_open_failed``.
        """

        _require_version(version)
        queue = self.open(name, version, readonly=readonly, delegate=delegate)
        if queue is None:
            if readonly and self._open_target(name) not in (None, IN_MEMORY_DATABASE):
                return None
            queue = self.create(name, version, readonly=readonly, delegate=delegate)
        return queue

    def open(
        self,
        name: str | None,
        version: int | None,
        *,
        readonly: bool = False,
        delegate: DatabaseOpenDelegate | None = None,
    ) -> DatabaseQueue | None:
        """
        Open an existing (or in-memory) database and migrate it to ``version``.

        ``version=None`` opens without migrating. Returns ``None`` when the
        file does not exist or the open/migration failed.
        """

        if version is not None:
            _require_version(version)
        path = self._open_target(name)
        if path is None:
            return None

        if delegate is None:
            return self._open_plain(name, path, readonly=readonly)

        queue: DatabaseQueue | None = None
        try:
            configuration = self._configuration.copy()
            configuration.readonly = readonly
            delegate.configure(name, configuration)
            queue = DatabaseQueue(path, configuration)

            stored_version = queue.user_version
            if version is not None and stored_version != version:
                if queue.readonly:
                    raise DatabaseReadOnlyError(
                        f"database {name!r} is at version {stored_version}, "
                        f"{version} requested, but it was opened read-only"
                    )
                self._migrate(name, queue, delegate, stored_version, version)

            delegate.on_opened(name, queue)
        except DatabaseConfigurationError:
            if queue is not None:
                queue.close()
            raise
        except Exception as exc:
            if queue is not None:
                queue.close()
            error = DatabaseOpenError(f"unable to open database {name!r}: {exc}")
            error.__cause__ = exc
            self._logger.warning(
                "database_open_failed",
                database=name,
                path=path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            delegate.on_open_failed(name, error)
            return None

        self._logger.info(
            "database_opened",
            database=name,
            path=path,
            version=version,
            configuration=describe_configuration(queue.configuration),
        )
        return queue

    def create(
        self,
        name: str | None,
        version: int,
        *,
        readonly: bool = False,
        delegate: DatabaseOpenDelegate | None = None,
    ) -> DatabaseQueue | None:
        """Create ``name`` from scratch (seeded from a template when one is offered) and open it."""

        _require_version(version)
        if is_in_memory(name):
            return self.open(name, version, readonly=readonly, delegate=delegate)

        path = self._locator.database_path(name)
        if path is None:
            raise DatabaseConfigurationError(
                f"no databases directory available to create {name!r}"
            )

        remove_database_files(path)

        template = self._template_for(name, delegate)
        if template is not None and file_exists(template.path):
            self._seed_from_template(sanitize_name(name), template, path)

        if not file_exists(path):
            create_empty_file(path)
            self._logger.debug("database_file_created", database=name, path=str(path))

        queue = self.open(name, version, readonly=readonly, delegate=delegate)
        if queue is None:
            removed = remove_database_files(path)
            self._logger.warning(
                "database_create_failed", database=name, path=str(path), removed=removed
            )
            return None

        self._logger.info("database_created", database=name, path=str(path), version=version)
        return queue

    def delete(self, name: str | None) -> bool:
        """Remove the database file for ``name`` and its sidecars; ``False`` when none existed."""

        path = self._locator.database_path(name)
        if path is None:
            return False
        return bool(remove_database_files(path))

    def _open_target(self, name: str | None) -> str | None:
        if is_in_memory(name):
            return IN_MEMORY_DATABASE
        path = self._locator.database_path(name)
        if path is None or not file_exists(path):
            return None
        return str(path)

    def _open_plain(self, name: str | None, path: str, *, readonly: bool) -> DatabaseQueue | None:
        configuration = self._configuration.copy()
        configuration.readonly = readonly
        try:
            queue = DatabaseQueue(path, configuration)
        except DatabaseError as exc:
            self._logger.warning("database_open_failed", database=name, path=path, error=str(exc))
            return None
        self._logger.info("database_opened", database=name, path=path, version=None)
        return queue

    def _migrate(
        self,
        name: str | None,
        queue: DatabaseQueue,
        delegate: DatabaseOpenDelegate,
        old_version: int,
        new_version: int,
    ) -> None:
        failures: list[Exception] = []

        def _block(_conn: Any) -> TransactionCompletion:
            try:
                if old_version < 1:
                    delegate.on_created(name, queue)
                elif old_version > new_version:
                    delegate.on_downgrade(name, queue, old_version, new_version)
                else:
                    delegate.on_upgrade(name, queue, old_version, new_version)
                queue.set_user_version(new_version)
            except Exception as exc:
                failures.append(exc)
                return TransactionCompletion.ROLLBACK
            return TransactionCompletion.COMMIT

        completion = queue.in_transaction(_block, kind=TransactionKind.EXCLUSIVE)
        if failures:
            failure = failures[0]
            self._logger.warning(
                "migration_rolled_back",
                database=name,
                old_version=old_version,
                new_version=new_version,
                error=str(failure),
            )
            raise DatabaseMigrationError(
                f"migration of {name!r} from version {old_version} to {new_version} failed: "
                f"{failure}"
            ) from failure

        self._logger.info(
            "migration_applied",
            database=name,
            old_version=old_version,
            new_version=new_version,
            completion=completion.value,
        )

    def _template_for(
        self, name: str | None, delegate: DatabaseOpenDelegate | None
    ) -> TemplateSource | None:
        if delegate is None:
            return None
        try:
            return delegate.will_create(name)
        except Exception as exc:
            self._logger.warning("template_lookup_failed", database=name, error=str(exc))
            return None

    def _seed_from_template(self, name: str, template: TemplateSource, destination: Path) -> None:
        temporary = self._locator.require_template_path(name)
        try:
            unpacked = self._unpacker.unpack(name, template.path, temporary)
            if unpacked is None or not file_exists(unpacked):
                self._logger.warning(
                    "template_unpack_failed", database=name, template=str(template.path)
                )
                return

            seed = DatabaseQueue(unpacked, DatabaseConfiguration())
            try:
                intact = check_integrity(seed)
            finally:
                seed.close()
            if not intact:
                self._logger.warning(
                    "template_integrity_failed", database=name, template=str(template.path)
                )
                return

            if template.encryption_key:
                cipher.export_encrypted(unpacked, destination, template.encryption_key)
            else:
                copy_file(unpacked, destination)
            if not exclude_from_backup(destination):
                self._logger.debug("backup_exclusion_unavailable", path=str(destination))
            self._logger.info(
                "database_seeded",
                database=name,
                template=str(template.path),
                encrypted=template.encryption_key is not None,
            )
        except _SEED_ERRORS as exc:
            self._logger.warning(
                "template_seed_failed",
                database=name,
                template=str(template.path),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            remove_database_files(destination)
        finally:
            remove_database_files(temporary)


def remove_database_files(path: str | Path) -> list[str]:
    """Remove a database file and its journal sidecars; return what was removed."""

    target = Path(path)
    removed: list[str] = []
    for candidate in (target, *(Path(f"{target}{suffix}") for suffix in DATABASE_SIDECAR_SUFFIXES)):
        if remove_file(candidate):
            removed.append(str(candidate))
    return removed


def _require_version(version: int) -> None:
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        raise ValueError(f"version must be a non-negative integer, got {version!r}")


__all__ = [
    "DatabaseProvisioner",
    "connection_configuration",
    "remove_database_files",
]
