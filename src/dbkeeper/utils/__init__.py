"""Utility exports for filesystem and hashing helpers."""

from dbkeeper.utils.fs import (
    copy_file,
    create_empty_file,
    ensure_directory,
    exclude_from_backup,
    file_exists,
    is_excluded_from_backup,
    remove_file,
)
from dbkeeper.utils.hashing import hex_encode, md5_text, sha256_text

__all__ = [
    "copy_file",
    "create_empty_file",
    "ensure_directory",
    "exclude_from_backup",
    "file_exists",
    "hex_encode",
    "is_excluded_from_backup",
    "md5_text",
    "remove_file",
    "sha256_text",
]
