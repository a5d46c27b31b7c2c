"""
dbkeeper - database naming and path resolution

File: src/dbkeeper/persistence/paths.py

Purpose
- Map logical database names to deterministic on-disk locations.

Functional requirements
- ``None`` or blank names select the in-memory database and never resolve to a path.
- Equal names always resolve to equal paths; file names are the MD5 hex of the name.
- The storage directory is created on demand and excluded from user backups.

Non-functional requirements
- Resolution is pure; only ``databases_directory`` touches the filesystem.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from dbkeeper.constants import (
    DATABASE_FILE_EXTENSION,
    DATABASES_DIR_NAME,
    IN_MEMORY_DATABASE,
    TEMPORARY_DIR_NAME,
)
from dbkeeper.persistence.queue import DatabaseConfigurationError
from dbkeeper.utils.fs import ensure_directory, exclude_from_backup
from dbkeeper.utils.hashing import md5_text

PathLike = str | os.PathLike[str]

_LOGGER = structlog.get_logger(__name__)


def sanitize_name(name: str | None) -> str:
    """Return ``name`` unchanged, or the in-memory sentinel for ``None``/blank names."""

    if name is None or not name.strip():
        return IN_MEMORY_DATABASE
    return name


def is_in_memory(name: str | None) -> bool:
    return sanitize_name(name) == IN_MEMORY_DATABASE


def resolve_path(
    name: str | None,
    base_dir: PathLike | None,
    *,
    extension: str = DATABASE_FILE_EXTENSION,
) -> Path | None:
    """
    Return ``<base_dir>/<md5(name)>.<extension>``.

    Returns ``None`` for the in-memory sentinel and when no base directory is
    available. Names are hashed exactly as given; whitespace is significant.
    """

    sanitized = sanitize_name(name)
    if sanitized == IN_MEMORY_DATABASE or base_dir is None:
        return None
    suffix = extension.lstrip(".")
    file_name = md5_text(sanitized) if not suffix else f"{md5_text(sanitized)}.{suffix}"
    return Path(base_dir) / file_name


def databases_directory(
    root: PathLike,
    *,
    name: str = DATABASES_DIR_NAME,
    exclude: bool = True,
    logger: Any | None = None,
) -> Path:
    """Get or create ``<root>/<name>``; creation failures are logged, not raised."""

    log = logger or _LOGGER
    directory = Path(root) / name
    try:
        ensure_directory(directory)
    except OSError as exc:
        log.error("databases_directory_create_failed", path=str(directory), error=str(exc))
        return directory
    if exclude and not exclude_from_backup(directory):
        log.debug("backup_exclusion_unavailable", path=str(directory))
    return directory


@dataclass(frozen=True, slots=True)
class DatabaseLocator:
    """Resolve database and template temp paths under fixed storage directories."""

    databases_dir: Path | None
    temporary_dir: Path | None
    extension: str = DATABASE_FILE_EXTENSION

    def database_path(self, name: str | None) -> Path | None:
        return resolve_path(name, self.databases_dir, extension=self.extension)

    def template_path(self, name: str | None) -> Path | None:
        return resolve_path(name, self.temporary_dir, extension=self.extension)

    def require_template_path(self, name: str | None) -> Path:
        path = self.template_path(name)
        if path is None:
            raise DatabaseConfigurationError(
                f"no temporary directory available to unpack a template for {name!r}"
            )
        return path

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        logger: Any | None = None,
    ) -> DatabaseLocator:
        """Build a locator from the ``storage`` section, creating both directories."""

        storage = config.get("storage")
        if not isinstance(storage, Mapping):
            raise DatabaseConfigurationError("config is missing the storage section")
        root = storage.get("root")
        if not isinstance(root, str) or not root.strip():
            raise DatabaseConfigurationError("storage.root must be a non-empty path")

        databases_dir = databases_directory(
            root,
            name=str(storage.get("databases_dir", DATABASES_DIR_NAME)),
            exclude=bool(storage.get("exclude_from_backup", True)),
            logger=logger,
        )
        temporary_dir = Path(root) / str(storage.get("temporary_dir", TEMPORARY_DIR_NAME))
        try:
            ensure_directory(temporary_dir)
        except OSError as exc:
            raise DatabaseConfigurationError(
                f"unable to create temporary directory {temporary_dir}: {exc}"
            ) from exc
        return cls(
            databases_dir=databases_dir,
            temporary_dir=temporary_dir,
            extension=str(storage.get("file_extension", DATABASE_FILE_EXTENSION)),
        )


__all__ = [
    "DatabaseLocator",
    "databases_directory",
    "is_in_memory",
    "resolve_path",
    "sanitize_name",
]
