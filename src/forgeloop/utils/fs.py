"""
forgeloop — filesystem utilities

File: src/forgeloop/utils/fs.py
Last updated: 2026-10-18

Purpose
- Provide safe, minimal filesystem helpers for atomic writes and workspace-guarded IO.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Workspace paths that resolve outside the configured root are rejected.
- Reads above a byte limit are rejected before the content is loaded.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

from forgeloop.constants import MAX_READ_BYTES

PathLike = str | os.PathLike[str]

__all__ = [
    "FileTooLargeError",
    "WorkspacePathError",
    "atomic_write",
    "read_text_bounded",
    "resolve_workspace_path",
]


class WorkspacePathError(ValueError):
    """Raised when a requested path escapes the workspace root."""


class FileTooLargeError(ValueError):
    """Raised when a bounded read would exceed its byte limit."""

    def __init__(self, path: Path, size: int, limit: int) -> None:
        super().__init__(f"file too large: {path.as_posix()} is {size} bytes (limit {limit})")
        self.path = path
        self.size = size
        self.limit = limit


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        mode = "wb" if isinstance(data, bytes) else "w"
        open_kwargs = {} if isinstance(data, bytes) else {"encoding": encoding, "newline": ""}
        with os.fdopen(fd, mode, **open_kwargs) as file_handle:
            file_handle.write(data)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def resolve_workspace_path(workspace_root: PathLike, relative_path: PathLike) -> Path:
    """
    Resolve ``relative_path`` against ``workspace_root``.

    Absolute inputs are accepted only when they already point inside the root. Symlinks
    are resolved before the containment check, so a link pointing outside is rejected.
    """

    root = Path(workspace_root).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    raw = str(relative_path).strip()
    if not raw:
        raise WorkspacePathError("path must be a non-empty string")
    if "\x00" in raw:
        raise WorkspacePathError("path must not contain NUL bytes")

    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if not _is_relative_to(resolved, root):
        raise WorkspacePathError(f"path escapes workspace root: {raw}")
    return resolved


def read_text_bounded(
    path: PathLike,
    *,
    max_bytes: int = MAX_READ_BYTES,
    encoding: str = "utf-8",
) -> str:
    """Read ``path`` as text, refusing files larger than ``max_bytes``."""

    if max_bytes <= 0:
        raise ValueError("max_bytes must be > 0")
    target = Path(path)
    size = target.stat().st_size
    if size > max_bytes:
        raise FileTooLargeError(target, size, max_bytes)
    with target.open("r", encoding=encoding, newline="") as file_handle:
        return file_handle.read()


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
