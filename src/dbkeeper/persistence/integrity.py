"""Integrity checks for provisioned databases."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from dbkeeper.constants import INTEGRITY_OK
from dbkeeper.persistence.delegate import DatabaseOpenDelegate
from dbkeeper.persistence.paths import is_in_memory
from dbkeeper.persistence.queue import DatabaseError, DatabaseQueue
from dbkeeper.utils.fs import file_exists

if TYPE_CHECKING:
    from dbkeeper.persistence.provisioner import DatabaseProvisioner

_LOGGER = structlog.get_logger(__name__)


def check_integrity(queue: DatabaseQueue | None) -> bool:
    """
    Run ``PRAGMA quick_check`` and return ``True`` only for a single ``ok`` row.

    A missing or closed queue, or any driver error, yields ``False``.
    """

    if queue is None:
        return False
    try:
        rows = queue.query_all("PRAGMA quick_check")
    except DatabaseError as exc:
        _LOGGER.warning("quick_check_failed", path=queue.path, error=str(exc))
        return False
    if len(rows) != 1:
        return False
    value = next(iter(rows[0].values()), None)
    return isinstance(value, str) and value.lower() == INTEGRITY_OK


def integrity_errors(queue: DatabaseQueue, *, max_errors: int = 100) -> tuple[str, ...]:
    """Run the full ``PRAGMA integrity_check``; an empty tuple means the database is sound."""

    if max_errors <= 0:
        raise ValueError("max_errors must be > 0")
    rows = queue.query_all(f"PRAGMA integrity_check({int(max_errors)})")
    messages = tuple(str(next(iter(row.values()), "")) for row in rows)
    if messages == (INTEGRITY_OK,):
        return ()
    return messages


class DatabaseValidator:
    """Check whether a provisioned database exists and passes ``quick_check``."""

    def __init__(self, provisioner: DatabaseProvisioner, *, logger: Any | None = None) -> None:
        self._provisioner = provisioner
        self._logger = logger or _LOGGER

    def is_valid_database(
        self,
        name: str | None,
        delegate: DatabaseOpenDelegate | None = None,
    ) -> bool:
        if is_in_memory(name):
            return False
        path = self._provisioner.locator.database_path(name)
        if not file_exists(path):
            return False

        queue = self._provisioner.open(name, None, readonly=True, delegate=delegate)
        if queue is None:
            return False
        try:
            valid = check_integrity(queue)
        finally:
            queue.close()
        self._logger.info("database_validated", database=name, valid=valid)
        return valid


__all__ = ["DatabaseValidator", "check_integrity", "integrity_errors"]
