"""
dbkeeper - template unpacking

File: src/dbkeeper/persistence/templates.py

Purpose
- Materialize a bundled template database at a temporary destination before seeding.

Functional requirements
- Any file already at the destination is replaced.
- Zip templates extract the entry named exactly after the database.
- Unpack failures are logged and reported as ``None``; they never raise.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import zipfile
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import structlog

from dbkeeper.utils.fs import copy_file, file_exists, remove_file

PathLike = str | os.PathLike[str]

_LOGGER = structlog.get_logger(__name__)


@runtime_checkable
class TemplateUnpacker(Protocol):
    def unpack(
        self,
        database_name: str,
        asset_path: PathLike,
        destination: PathLike,
    ) -> Path | None: ...


class FileTemplateUnpacker:
    """Copy a plain template file byte for byte."""

    kind: Final[str] = "file"

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger or _LOGGER

    def unpack(
        self,
        database_name: str,
        asset_path: PathLike,
        destination: PathLike,
    ) -> Path | None:
        target = Path(destination)
        remove_file(target)
        try:
            copy_file(asset_path, target)
        except OSError as exc:
            self._logger.warning(
                "template_copy_failed",
                database=database_name,
                asset=str(asset_path),
                error=str(exc),
            )
            remove_file(target)
            return None
        return target


class ZipTemplateUnpacker:
    """Extract the archive entry named ``database_name`` from a zip template."""

    kind: Final[str] = "zip"

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger or _LOGGER

    def unpack(
        self,
        database_name: str,
        asset_path: PathLike,
        destination: PathLike,
    ) -> Path | None:
        target = Path(destination)
        remove_file(target)
        if not file_exists(asset_path):
            self._logger.warning(
                "template_archive_missing", database=database_name, asset=str(asset_path)
            )
            return None
        try:
            with zipfile.ZipFile(asset_path) as archive:
                try:
                    info = archive.getinfo(database_name)
                except KeyError:
                    self._logger.warning(
                        "template_entry_missing",
                        database=database_name,
                        asset=str(asset_path),
                    )
                    return None
                with archive.open(info) as reader, target.open("wb") as writer:
                    shutil.copyfileobj(reader, writer)
        except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            self._logger.warning(
                "template_extract_failed",
                database=database_name,
                asset=str(asset_path),
                error=str(exc),
            )
            with contextlib.suppress(OSError):
                remove_file(target)
            return None
        return target


_UNPACKERS: Final[dict[str, type[FileTemplateUnpacker] | type[ZipTemplateUnpacker]]] = {
    FileTemplateUnpacker.kind: FileTemplateUnpacker,
    ZipTemplateUnpacker.kind: ZipTemplateUnpacker,
}


def make_template_unpacker(kind: str, *, logger: Any | None = None) -> TemplateUnpacker:
    try:
        factory = _UNPACKERS[kind.strip().lower()]
    except KeyError:
        allowed = ", ".join(sorted(_UNPACKERS))
        raise ValueError(f"unknown template format {kind!r}; expected one of: {allowed}") from None
    return factory(logger=logger)


__all__ = [
    "FileTemplateUnpacker",
    "TemplateUnpacker",
    "ZipTemplateUnpacker",
    "make_template_unpacker",
]
