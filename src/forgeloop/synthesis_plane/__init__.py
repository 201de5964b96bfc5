"""
forgeloop — synthesis plane

File: src/forgeloop/synthesis_plane/__init__.py
Last updated: 2026-10-18

Purpose
- Role-facing services: the tolerant structured-output parser and the budget-aware tool
  handlers roles call while working.
"""

from forgeloop.synthesis_plane.structured_output import (
    ParseFailure,
    ParseFailureKind,
    ParseResult,
    ParseSuccess,
    parse_structured_object,
    parse_structured_output,
)
from forgeloop.synthesis_plane.tools import ToolResult, ToolSession

__all__ = [
    "ParseFailure",
    "ParseFailureKind",
    "ParseResult",
    "ParseSuccess",
    "ToolResult",
    "ToolSession",
    "parse_structured_object",
    "parse_structured_output",
]
