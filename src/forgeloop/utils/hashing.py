"""
forgeloop — hashing utilities

File: src/forgeloop/utils/hashing.py
Last updated: 2026-10-18

Purpose
- Provide deterministic SHA-256 helpers for bytes and text.
- Provide short fingerprints used for patch-repeat guards and test-output signatures.

Non-functional requirements
- Standard library only; behavior is cross-platform deterministic.
"""

from __future__ import annotations

import hashlib

_FINGERPRINT_LENGTH = 16

__all__ = [
    "fingerprint",
    "sha256_bytes",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def fingerprint(*parts: str, length: int = _FINGERPRINT_LENGTH) -> str:
    """Return the first ``length`` hex chars of SHA-256 over ``parts`` joined by ``:``."""

    if length <= 0:
        raise ValueError("length must be > 0")
    return sha256_text(":".join(parts))[:length]
