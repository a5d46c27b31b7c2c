"""Stable constants shared across dbkeeper modules."""

from __future__ import annotations

from typing import Final

# Logical database names.
IN_MEMORY_DATABASE: Final[str] = ":memory:"

# On-disk layout.
DATABASE_FILE_EXTENSION: Final[str] = "sqlite"
DATABASES_DIR_NAME: Final[str] = "Databases"
TEMPORARY_DIR_NAME: Final[str] = "tmp"
DATABASE_SIDECAR_SUFFIXES: Final[tuple[str, ...]] = ("-wal", "-shm", "-journal")

# Integrity check sentinel returned by ``PRAGMA quick_check``.
INTEGRITY_OK: Final[str] = "ok"

# Connection defaults.
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25
JOURNAL_MODES: Final[tuple[str, ...]] = ("delete", "truncate", "persist", "memory", "wal", "off")

# Template archive formats.
TEMPLATE_FORMATS: Final[tuple[str, ...]] = ("file", "zip")

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DATABASES_DIR_NAME",
    "DATABASE_FILE_EXTENSION",
    "DATABASE_SIDECAR_SUFFIXES",
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "INTEGRITY_OK",
    "IN_MEMORY_DATABASE",
    "JOURNAL_MODES",
    "TEMPLATE_FORMATS",
    "TEMPORARY_DIR_NAME",
]
