"""
dbkeeper - hashing utilities

File: src/dbkeeper/utils/hashing.py

Purpose
- Derive stable on-disk file names from logical database names.
- Provide the SHA-256 text digest used for migration script checksums.

Functional requirements
- Name digests are stable across processes and platforms (no salting).
- Key material is hex encoded in lowercase without separators.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import hashlib

__all__ = [
    "hex_encode",
    "md5_text",
    "sha256_text",
]


def md5_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return MD5 hex digest for text; used for file naming, not for security."""

    return hashlib.md5(text.encode(encoding), usedforsecurity=False).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return hashlib.sha256(text.encode(encoding)).hexdigest()


def hex_encode(data: bytes) -> str:
    """Return lowercase hex for binary key material."""

    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"expected bytes, got {type(data).__name__}")
    return bytes(data).hex()
