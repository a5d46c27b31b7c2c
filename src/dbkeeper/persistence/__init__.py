"""
dbkeeper - persistence layer

File: src/dbkeeper/persistence/__init__.py

Purpose
- Database provisioning: path resolution, template seeding, integrity checks,
  the serialized queue, and the versioned migration engine.

Non-functional requirements
- SQLite-first; SQLCipher is optional and loaded only when installed.
"""

from dbkeeper.persistence.delegate import (
    BaseDatabaseOpenDelegate,
    DatabaseOpenDelegate,
    TemplateSource,
)
from dbkeeper.persistence.helper import DatabaseHelper
from dbkeeper.persistence.integrity import DatabaseValidator, check_integrity, integrity_errors
from dbkeeper.persistence.paths import (
    DatabaseLocator,
    databases_directory,
    is_in_memory,
    resolve_path,
    sanitize_name,
)
from dbkeeper.persistence.provisioner import (
    DatabaseProvisioner,
    connection_configuration,
    remove_database_files,
)
from dbkeeper.persistence.queue import (
    DatabaseBusyError,
    DatabaseClosedError,
    DatabaseConfiguration,
    DatabaseConfigurationError,
    DatabaseCorruptionError,
    DatabaseError,
    DatabaseMigrationError,
    DatabaseOpenError,
    DatabaseQueue,
    DatabaseReadOnlyError,
    TransactionCompletion,
    TransactionKind,
)
from dbkeeper.persistence.scripts import (
    MigrationScript,
    SqlScriptMigrations,
    load_migration_scripts,
)
from dbkeeper.persistence.templates import (
    FileTemplateUnpacker,
    TemplateUnpacker,
    ZipTemplateUnpacker,
    make_template_unpacker,
)

__all__ = [
    "BaseDatabaseOpenDelegate",
    "DatabaseBusyError",
    "DatabaseClosedError",
    "DatabaseConfiguration",
    "DatabaseConfigurationError",
    "DatabaseCorruptionError",
    "DatabaseError",
    "DatabaseHelper",
    "DatabaseLocator",
    "DatabaseMigrationError",
    "DatabaseOpenDelegate",
    "DatabaseOpenError",
    "DatabaseProvisioner",
    "DatabaseQueue",
    "DatabaseReadOnlyError",
    "DatabaseValidator",
    "FileTemplateUnpacker",
    "MigrationScript",
    "SqlScriptMigrations",
    "TemplateSource",
    "TemplateUnpacker",
    "TransactionCompletion",
    "TransactionKind",
    "ZipTemplateUnpacker",
    "check_integrity",
    "connection_configuration",
    "databases_directory",
    "integrity_errors",
    "is_in_memory",
    "load_migration_scripts",
    "make_template_unpacker",
    "remove_database_files",
    "resolve_path",
    "sanitize_name",
]
