"""
forgeloop — diagnostics engine

File: src/forgeloop/verification_plane/diagnostics.py
Last updated: 2026-10-18

Purpose
- Turn raw tool stdout/stderr into structured, deduplicated diagnostics entries.
- Render compact summaries that are injected into a role's next turn.

Functional requirements
- Lines are matched by an ordered list of independent matcher strategies; the first
  matcher that returns an entry wins for that line.
- Unmatched lines produce no entry.
- Merging deduplicates by (source, file, message, line), counts occurrences, refreshes
  ``last_seen_at``, and keeps the log sorted newest first.

Non-functional requirements
- Pure functions over immutable entries; no IO.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Final, Protocol

from forgeloop.domain.models import (
    DiagnosticLocation,
    DiagnosticsEntry,
    DiagnosticSource,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import datetime

NO_DIAGNOSTICS_SUMMARY: Final[str] = "No active diagnostics."
DEFAULT_SUMMARY_ENTRIES: Final[int] = 5

_TSC_RE: Final[re.Pattern[str]] = re.compile(
    r"^(.+?)[(:](\d+)[,:](\d+)(?:[):]+)?\s+(?:-\s+)?(?:error|warning)\s+(?:TS\d+:\s+)?(.+)$"
)
_PATH_LINE_COL_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s]*[./][^:\s]*):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+)$"
)
_PATH_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s]*[./][^:\s]*):(?P<line>\d+):\s*(?P<message>.+)$"
)
_PYTEST_FAILED_RE: Final[re.Pattern[str]] = re.compile(r"^FAILED\s+(?P<path>[^\s:]+)(?:::\S+)?")
_TRACEBACK_FRAME_RE: Final[re.Pattern[str]] = re.compile(
    r'^File "(?P<path>[^"]+)", line (?P<line>\d+)'
)
_EXCEPTION_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<name>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt))(?::\s*(?P<detail>.*))?$"
)
_CARGO_ERROR_RE: Final[re.Pattern[str]] = re.compile(r"^error(?:\[E\d+\])?:\s*(?P<message>.+)$")
_CARGO_LOCATION_RE: Final[re.Pattern[str]] = re.compile(
    r"^-->\s*(?P<path>[^:\s]+):(?P<line>\d+):(?P<column>\d+)$"
)


@dataclass(slots=True)
class MatchContext:
    """Per-parse scratch state shared by the matchers of one ``parse_diagnostics`` call."""

    source: DiagnosticSource
    seen_at: datetime
    traceback_frame: tuple[str, int] | None = None
    pending_error: str | None = None


class DiagnosticMatcher(Protocol):
    name: str

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None: ...


class TypeScriptMatcher:
    """``file(line,col): error TSnnnn: message`` and ``file:line:col - error message``."""

    name = "typescript"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        found = _TSC_RE.match(line)
        if found is None:
            return None
        return _entry(
            DiagnosticSource.BUILD,
            found.group(4).strip(),
            context,
            file=found.group(1),
            line=int(found.group(2)),
            column=int(found.group(3)),
        )


class PytestFailedMatcher:
    """``FAILED tests/test_x.py::test_name - reason`` summary lines."""

    name = "pytest_failed"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        if context.source is not DiagnosticSource.TEST:
            return None
        found = _PYTEST_FAILED_RE.match(line)
        if found is None:
            return None
        return _entry(DiagnosticSource.TEST, line, context, file=found.group("path"))


class FailLineMatcher:
    """Jest-style ``FAIL src/foo.test.ts`` lines; the second token is taken as the file."""

    name = "test_fail"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        if context.source is not DiagnosticSource.TEST or not line.startswith("FAIL"):
            return None
        parts = line.split()
        file = parts[1] if len(parts) > 1 else None
        return _entry(DiagnosticSource.TEST, line, context, file=file)


class BulletMatcher:
    """Jest suite headers: ``● Suite › case``."""

    name = "bullet"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        if context.source is not DiagnosticSource.TEST or not line.startswith("●"):
            return None
        message = line[1:].strip()
        if not message:
            return None
        return _entry(DiagnosticSource.TEST, message, context)


class CargoMatcher:
    """``error[E0425]: message`` followed by `` --> path:line:col``."""

    name = "cargo"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        error = _CARGO_ERROR_RE.match(line)
        if error is not None:
            context.pending_error = error.group("message").strip()
            return None
        if context.pending_error is None:
            return None
        location = _CARGO_LOCATION_RE.match(line)
        if location is None:
            return None
        message = context.pending_error
        context.pending_error = None
        return _entry(
            DiagnosticSource.BUILD,
            message,
            context,
            file=location.group("path"),
            line=int(location.group("line")),
            column=int(location.group("column")),
        )


class PythonTracebackMatcher:
    """Innermost ``File "x", line N`` frame paired with the final exception line."""

    name = "python_traceback"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        frame = _TRACEBACK_FRAME_RE.match(line)
        if frame is not None:
            context.traceback_frame = (frame.group("path"), int(frame.group("line")))
            return None
        if context.traceback_frame is None:
            return None
        exception = _EXCEPTION_LINE_RE.match(line)
        if exception is None:
            return None
        path, line_number = context.traceback_frame
        context.traceback_frame = None
        return _entry(DiagnosticSource.RUNTIME, line, context, file=path, line=line_number)


class PathLineColumnMatcher:
    """gcc/clang/go/ruff style ``path:line:col: message``."""

    name = "path_line_column"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        found = _PATH_LINE_COL_RE.match(line)
        if found is None:
            return None
        return _entry(
            context.source,
            found.group("message").strip(),
            context,
            file=found.group("path"),
            line=int(found.group("line")),
            column=int(found.group("column")),
        )


class PathLineMatcher:
    """mypy/pytest style ``path:line: message``."""

    name = "path_line"

    def match(self, line: str, context: MatchContext) -> DiagnosticsEntry | None:
        found = _PATH_LINE_RE.match(line)
        if found is None:
            return None
        return _entry(
            context.source,
            found.group("message").strip(),
            context,
            file=found.group("path"),
            line=int(found.group("line")),
        )


# Order matters: pytest `FAILED path::node` lines are claimed before the generic FAIL rule,
# so their file is the module path rather than the full node id.
DEFAULT_MATCHERS: Final[tuple[DiagnosticMatcher, ...]] = (
    TypeScriptMatcher(),
    PytestFailedMatcher(),
    FailLineMatcher(),
    BulletMatcher(),
    CargoMatcher(),
    PythonTracebackMatcher(),
    PathLineColumnMatcher(),
    PathLineMatcher(),
)


def parse_diagnostics(
    raw_output: str,
    source: DiagnosticSource | str,
    *,
    matchers: Sequence[DiagnosticMatcher] = DEFAULT_MATCHERS,
    seen_at: datetime | None = None,
) -> list[DiagnosticsEntry]:
    """Parse ``raw_output`` line by line into diagnostics entries, first matcher wins."""

    context = MatchContext(
        source=DiagnosticSource(source),
        seen_at=seen_at if seen_at is not None else utc_now(),
    )
    entries: list[DiagnosticsEntry] = []
    for raw_line in raw_output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        for matcher in matchers:
            entry = matcher.match(line, context)
            if entry is not None:
                entries.append(entry)
                break
    return entries


def merge_diagnostics(
    existing: Iterable[DiagnosticsEntry],
    incoming: Iterable[DiagnosticsEntry],
) -> tuple[DiagnosticsEntry, ...]:
    """
    Merge ``incoming`` into ``existing`` by identity.

    A match increments ``occurrence_count`` by one and takes the incoming entry's
    ``last_seen_at``; anything else is appended. The result is sorted newest first and
    the sort is stable, so ties keep their merge order.
    """

    merged = list(existing)
    index_by_identity = {entry.identity: position for position, entry in enumerate(merged)}

    for entry in incoming:
        position = index_by_identity.get(entry.identity)
        if position is None:
            index_by_identity[entry.identity] = len(merged)
            merged.append(entry)
            continue
        current = merged[position]
        merged[position] = replace(
            current,
            last_seen_at=entry.seen_at,
            occurrence_count=current.occurrence_count + 1,
            failure_kind=(
                entry.failure_kind if entry.failure_kind is not None else current.failure_kind
            ),
        )

    merged.sort(key=lambda item: item.seen_at, reverse=True)
    return tuple(merged)


def summarize_diagnostics(
    log: Sequence[DiagnosticsEntry] | None,
    max_entries: int = DEFAULT_SUMMARY_ENTRIES,
) -> str:
    if not log:
        return NO_DIAGNOSTICS_SUMMARY
    if max_entries < 0:
        raise ValueError("max_entries must be >= 0")

    top_entries = list(log)[:max_entries]
    lines = [f"Top {len(top_entries)} Diagnostics:\n"]
    for entry in top_entries:
        lines.append(
            f"- [{entry.source.value.upper()}] {entry.location_label()}: "
            f"{entry.message} (x{entry.occurrence_count})\n"
        )
    if len(log) > max_entries:
        lines.append(f"... and {len(log) - max_entries} more.\n")
    return "".join(lines)


def primary_failure(log: Sequence[DiagnosticsEntry] | None) -> str:
    """One-line description of the most recent entry, or ``""`` when the log is empty."""

    if not log:
        return ""
    top = log[0]
    prefix = f"{top.source.value.upper()} error"
    if top.file is not None:
        prefix = f"{prefix} in {top.location_label()}"
    return f"{prefix}: {top.message}"


def _entry(
    source: DiagnosticSource,
    message: str,
    context: MatchContext,
    *,
    file: str | None = None,
    line: int | None = None,
    column: int | None = None,
) -> DiagnosticsEntry:
    location = DiagnosticLocation(line=line, column=column) if line is not None else None
    return DiagnosticsEntry(
        source=source,
        message=message,
        file=file,
        location=location,
        first_seen_at=context.seen_at,
        last_seen_at=context.seen_at,
    )


__all__ = [
    "DEFAULT_MATCHERS",
    "DEFAULT_SUMMARY_ENTRIES",
    "NO_DIAGNOSTICS_SUMMARY",
    "BulletMatcher",
    "CargoMatcher",
    "DiagnosticMatcher",
    "FailLineMatcher",
    "MatchContext",
    "PathLineColumnMatcher",
    "PathLineMatcher",
    "PytestFailedMatcher",
    "PythonTracebackMatcher",
    "TypeScriptMatcher",
    "merge_diagnostics",
    "parse_diagnostics",
    "primary_failure",
    "summarize_diagnostics",
]
