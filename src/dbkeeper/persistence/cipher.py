"""SQLCipher driver access and encrypted export for seeded databases.

The stdlib ``sqlite3`` module cannot read or write SQLCipher files, so keyed
connections and ``sqlcipher_export`` go through :mod:`pysqlcipher3`. The
driver is optional: without it every keyed operation raises
:class:`SqlCipherUnavailable`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dbkeeper.utils.hashing import hex_encode

try:
    from pysqlcipher3 import dbapi2 as sqlcipher
except ImportError:
    sqlcipher = None

PathLike = str | os.PathLike[str]

_EXPORT_SCHEMA: Final[str] = "encrypted"

DRIVER_ERRORS: Final[tuple[type[Exception], ...]] = (
    (sqlcipher.Error,) if sqlcipher is not None else ()
)


class SqlCipherUnavailable(RuntimeError):
    """Raised when a keyed operation is requested but ``pysqlcipher3`` is missing."""


def is_available() -> bool:
    return sqlcipher is not None


def format_key(key: bytes | str) -> str:
    """Return the passphrase text for ``key``; raw bytes are hex encoded."""

    if isinstance(key, str):
        if not key:
            raise ValueError("passphrase must not be empty")
        return key
    if not key:
        raise ValueError("encryption key must not be empty")
    return hex_encode(key)


def connect(
    target: str,
    *,
    passphrase: bytes | str,
    uri: bool = False,
    timeout: float = 5.0,
) -> Any:
    """Open a keyed SQLCipher connection in autocommit mode."""

    driver = _require_driver()
    conn = driver.connect(
        target,
        timeout=timeout,
        isolation_level=None,
        check_same_thread=False,
        uri=uri,
    )
    try:
        conn.execute(f"PRAGMA key = {_quote(format_key(passphrase))}")
        # Forces key derivation; a wrong key fails here rather than on first query.
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    except Exception:
        conn.close()
        raise
    return conn


def export_encrypted(source: PathLike, destination: PathLike, key: bytes | str) -> Path:
    """
    Write an encrypted copy of the plain database at ``source`` to ``destination``.

    Runs ``ATTACH DATABASE ... KEY``, ``sqlcipher_export`` and ``DETACH`` on a
    driver connection to ``source``.
    """

    driver = _require_driver()
    destination_path = Path(destination)
    conn = driver.connect(str(source), isolation_level=None, check_same_thread=False)
    try:
        conn.execute(
            f"ATTACH DATABASE ? AS {_EXPORT_SCHEMA} KEY ?",
            (str(destination_path), format_key(key)),
        )
        conn.execute(f"SELECT sqlcipher_export('{_EXPORT_SCHEMA}')").fetchall()
        conn.execute(f"DETACH DATABASE {_EXPORT_SCHEMA}")
    finally:
        conn.close()
    return destination_path


def _require_driver() -> Any:
    if sqlcipher is None:
        raise SqlCipherUnavailable(
            "SQLCipher driver pysqlcipher3 is required for encrypted databases; "
            "install dbkeeper[cipher]"
        )
    return sqlcipher


def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


__all__ = [
    "DRIVER_ERRORS",
    "SqlCipherUnavailable",
    "connect",
    "export_encrypted",
    "format_key",
    "is_available",
]
