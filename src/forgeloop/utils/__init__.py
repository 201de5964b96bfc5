"""Utility exports for filesystem and hashing helpers."""

from forgeloop.utils.fs import (
    FileTooLargeError,
    WorkspacePathError,
    atomic_write,
    read_text_bounded,
    resolve_workspace_path,
)
from forgeloop.utils.hashing import fingerprint, sha256_bytes, sha256_text

__all__ = [
    "FileTooLargeError",
    "WorkspacePathError",
    "atomic_write",
    "fingerprint",
    "read_text_bounded",
    "resolve_workspace_path",
    "sha256_bytes",
    "sha256_text",
]
