"""
dbkeeper - filesystem utilities

File: src/dbkeeper/utils/fs.py

Purpose
- Provide the small set of filesystem primitives the provisioning engine needs:
  directory creation, existence checks, atomic copy, removal, and backup exclusion.

Functional requirements
- Copies land atomically: temp file in the destination directory, then ``os.replace``.
- Removal of a missing file is not an error.
- Backup exclusion is best effort and reports success as a boolean.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Final

PathLike = str | os.PathLike[str]

# Freedesktop "robots" attribute understood by backup tools on Linux.
_BACKUP_EXCLUSION_XATTR: Final[str] = "user.xdg.robots.backup"
_BACKUP_EXCLUSION_VALUE: Final[bytes] = b"false"

__all__ = [
    "copy_file",
    "create_empty_file",
    "ensure_directory",
    "exclude_from_backup",
    "file_exists",
    "is_excluded_from_backup",
    "remove_file",
]


def ensure_directory(path: PathLike) -> Path:
    """Create ``path`` (and parents) when absent and return it."""

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    if not directory.is_dir():
        raise NotADirectoryError(f"{directory!s} is not a directory")
    return directory


def file_exists(path: PathLike | None) -> bool:
    """Return ``True`` when ``path`` names an existing regular file."""

    if path is None:
        return False
    return Path(path).is_file()


def copy_file(source: PathLike, destination: PathLike) -> Path:
    """
    Copy ``source`` byte for byte to ``destination``.

    The write strategy is:
    1. copy into a temp file in the destination directory,
    2. flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(destination)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        with os.fdopen(fd, "wb") as writer, Path(source).open("rb") as reader:
            shutil.copyfileobj(reader, writer)
            writer.flush()
            os.fsync(writer.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise
    return target


def create_empty_file(path: PathLike) -> Path:
    """Create a zero-length file at ``path`` unless one already exists."""

    target = Path(path)
    target.touch(exist_ok=True)
    return target


def remove_file(path: PathLike | None) -> bool:
    """Remove ``path`` if present; return ``True`` when something was deleted."""

    if path is None:
        return False
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    return True


def exclude_from_backup(path: PathLike) -> bool:
    """
    Mark ``path`` as excluded from user backups.

    macOS uses ``tmutil addexclusion``; other platforms set the freedesktop
    ``user.xdg.robots.backup`` extended attribute. Filesystems without
    extended attribute support report ``False``.
    """

    target = Path(path)
    if not target.exists():
        return False

    if sys.platform == "darwin":
        tmutil = shutil.which("tmutil")
        if tmutil is None:
            return False
        completed = subprocess.run(
            [tmutil, "addexclusion", str(target)],
            capture_output=True,
            check=False,
        )
        return completed.returncode == 0

    setxattr = getattr(os, "setxattr", None)
    if setxattr is None:
        return False
    try:
        setxattr(target, _BACKUP_EXCLUSION_XATTR, _BACKUP_EXCLUSION_VALUE)
    except OSError:
        return False
    return True


def is_excluded_from_backup(path: PathLike) -> bool:
    """Return ``True`` when ``path`` carries the backup exclusion marker."""

    target = Path(path)
    if not target.exists():
        return False

    if sys.platform == "darwin":
        tmutil = shutil.which("tmutil")
        if tmutil is None:
            return False
        completed = subprocess.run(
            [tmutil, "isexcluded", str(target)],
            capture_output=True,
            text=True,
            check=False,
        )
        return "[Excluded]" in completed.stdout

    getxattr = getattr(os, "getxattr", None)
    if getxattr is None:
        return False
    try:
        value = getxattr(target, _BACKUP_EXCLUSION_XATTR)
    except OSError:
        return False
    return bool(value == _BACKUP_EXCLUSION_VALUE)
