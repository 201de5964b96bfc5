"""
forgeloop — verification plane

File: src/forgeloop/verification_plane/__init__.py
Last updated: 2026-10-18

Purpose
- Turn raw tool output into deduplicated diagnostics and coarse failure classes.
"""

from forgeloop.verification_plane.classification import classify_failure
from forgeloop.verification_plane.diagnostics import (
    DEFAULT_MATCHERS,
    DiagnosticMatcher,
    merge_diagnostics,
    parse_diagnostics,
    primary_failure,
    summarize_diagnostics,
)

__all__ = [
    "DEFAULT_MATCHERS",
    "DiagnosticMatcher",
    "classify_failure",
    "merge_diagnostics",
    "parse_diagnostics",
    "primary_failure",
    "summarize_diagnostics",
]
