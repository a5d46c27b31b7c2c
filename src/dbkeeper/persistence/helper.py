"""Owning facade that provisions a database on construction and holds its queue."""

from __future__ import annotations

from typing import Any

import structlog

from dbkeeper.config.loader import load_config
from dbkeeper.persistence.delegate import DatabaseOpenDelegate
from dbkeeper.persistence.provisioner import DatabaseProvisioner
from dbkeeper.persistence.queue import DatabaseError, DatabaseQueue

_LOGGER = structlog.get_logger(__name__)


class DatabaseHelper:
    """
    Run ``open_or_create`` once and own the resulting :class:`DatabaseQueue`.

    ``database_queue`` is ``None`` when provisioning failed; the delegate has
    already been told why through ``on_open_failed``. Without an explicit
    ``provisioner`` one is built from the effective ``dbkeeper.toml`` config.
    """

    def __init__(
        self,
        name: str | None,
        version: int,
        *,
        readonly: bool = False,
        delegate: DatabaseOpenDelegate | None = None,
        provisioner: DatabaseProvisioner | None = None,
        logger: Any | None = None,
    ) -> None:
        self._name = name
        self._version = version
        self._logger = logger or _LOGGER
        if provisioner is None:
            provisioner = DatabaseProvisioner.from_config(load_config(), logger=logger)
        self._queue: DatabaseQueue | None = provisioner.open_or_create(
            name, version, readonly=readonly, delegate=delegate
        )

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def version(self) -> int:
        return self._version

    @property
    def database_queue(self) -> DatabaseQueue | None:
        return self._queue

    @property
    def is_open(self) -> bool:
        return self._queue is not None and not self._queue.is_closed

    @property
    def user_version(self) -> int:
        if self._queue is None:
            return -1
        try:
            return self._queue.user_version
        except DatabaseError as exc:
            self._logger.warning("user_version_read_failed", database=self._name, error=str(exc))
            return -1

    @user_version.setter
    def user_version(self, value: int) -> None:
        if self._queue is None:
            self._logger.warning("user_version_write_skipped", database=self._name)
            return
        try:
            self._queue.set_user_version(value)
        except (DatabaseError, ValueError) as exc:
            self._logger.error("user_version_write_failed", database=self._name, error=str(exc))

    def close(self) -> None:
        if self._queue is not None:
            self._queue.close()

    def __enter__(self) -> DatabaseHelper:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()


__all__ = ["DatabaseHelper"]
