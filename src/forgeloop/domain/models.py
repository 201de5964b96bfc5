"""
forgeloop — run-state domain models

File: src/forgeloop/domain/models.py
Last updated: 2026-10-18

Purpose
- Define the canonical run record owned by the workflow engine and the small value types
  it is built from: budget counters, progress snapshots, diagnostics entries, probes.

Functional requirements
- Every model is immutable; the engine produces a new ``RunState`` per merge.
- Roles and terminal tags are closed enumerations.
- ``RoleUpdate`` is the only shape a role may hand back to the engine.

Non-functional requirements
- No IO; deterministic ``to_dict`` output for reports and logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Final

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

EDGE_SEPARATOR: Final[str] = "→"


class RoleName(StrEnum):
    """Workflow roles; the engine always starts at ``planner``."""

    PLANNER = "planner"
    RESEARCHER = "researcher"
    CODER = "coder"
    VERIFIER = "verifier"
    JANITOR = "janitor"
    RETROSPECTIVE = "retrospective"
    TICKET_CLOSER = "ticket_closer"


class TerminalTag(StrEnum):
    """Terminal states a ``next`` directive may name."""

    DONE = "done"
    ABORTED_STUCK = "aborted_stuck"
    ABORTED_CONSTRAINT = "aborted_constraint"
    ASK_HUMAN = "ask_human"


class TerminalStatus(StrEnum):
    """Final, non-resumable outcome recorded on a run."""

    DONE_SUCCESS = "done_success"
    DONE_PARTIAL = "done_partial"
    ABORTED_STUCK = "aborted_stuck"
    ABORTED_CONSTRAINT = "aborted_constraint"
    ASK_HUMAN = "ask_human"


class ResourceKind(StrEnum):
    COMMAND = "command"
    TEST = "test"
    WEB_REQUEST = "web_request"


class DiagnosticSource(StrEnum):
    BUILD = "build"
    TEST = "test"
    LINT = "lint"
    LSP = "lsp"
    RUNTIME = "runtime"


class FailureKind(StrEnum):
    """Single classification assigned to a failed command."""

    TIMEOUT = "timeout"
    TEST_FAILURE = "test_failure"
    COMPILATION = "compilation"
    RUNTIME_ERROR = "runtime_error"
    UNKNOWN = "unknown"


NextStep = RoleName | TerminalTag


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def edge_name(source: RoleName | str, target: RoleName | TerminalTag | str) -> str:
    """Return the loop-counter key for a directed role edge."""

    return f"{source}{EDGE_SEPARATOR}{target}"


def parse_next_step(value: object) -> NextStep:
    """Coerce a ``next`` directive into a role or terminal tag."""

    if isinstance(value, (RoleName, TerminalTag)):
        return value
    if not isinstance(value, str):
        raise ValueError(f"next must be a string, got {type(value).__name__}")
    normalized = value.strip().lower()
    for enum_type in (RoleName, TerminalTag):
        try:
            return enum_type(normalized)
        except ValueError:
            continue
    raise ValueError(f"unknown next step {value!r}")


@dataclass(frozen=True, slots=True)
class CommandRecord:
    command: str
    timestamp: datetime

    def to_dict(self) -> dict[str, JSONValue]:
        return {"command": self.command, "timestamp": _iso(self.timestamp)}


@dataclass(frozen=True, slots=True)
class BudgetState:
    """Resource ceilings fixed at run start plus monotonic usage counters."""

    max_commands: int
    max_test_runs: int
    max_web_requests: int
    commands_used: int = 0
    test_runs_used: int = 0
    web_requests_used: int = 0
    command_history: tuple[CommandRecord, ...] = ()

    def __post_init__(self) -> None:
        for name in (
            "max_commands",
            "max_test_runs",
            "max_web_requests",
            "commands_used",
            "test_runs_used",
            "web_requests_used",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        object.__setattr__(self, "command_history", tuple(self.command_history))

    def used(self, kind: ResourceKind) -> int:
        if kind is ResourceKind.COMMAND:
            return self.commands_used
        if kind is ResourceKind.TEST:
            return self.test_runs_used
        return self.web_requests_used

    def ceiling(self, kind: ResourceKind) -> int:
        if kind is ResourceKind.COMMAND:
            return self.max_commands
        if kind is ResourceKind.TEST:
            return self.max_test_runs
        return self.max_web_requests

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "max_commands": self.max_commands,
            "max_test_runs": self.max_test_runs,
            "max_web_requests": self.max_web_requests,
            "commands_used": self.commands_used,
            "test_runs_used": self.test_runs_used,
            "web_requests_used": self.web_requests_used,
            "command_history": [item.to_dict() for item in self.command_history],
        }


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Fixed-shape summary of run progress taken once per step."""

    node: str
    file_change_count: int
    same_error_count: int
    functional_checks_count: int
    last_test_signature: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def signature(self, *, include_node: bool = False) -> tuple[object, ...]:
        """Comparison key that ignores ``timestamp`` (and ``node`` unless requested)."""

        core: tuple[object, ...] = (
            self.file_change_count,
            self.same_error_count,
            self.last_test_signature,
            self.functional_checks_count,
        )
        if include_node:
            return (self.node, *core)
        return core

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "node": self.node,
            "file_change_count": self.file_change_count,
            "same_error_count": self.same_error_count,
            "last_test_signature": self.last_test_signature,
            "functional_checks_count": self.functional_checks_count,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True, slots=True)
class DiagnosticLocation:
    line: int
    column: int | None = None


@dataclass(frozen=True, slots=True)
class DiagnosticsEntry:
    """One deduplicated, occurrence-counted failure record."""

    source: DiagnosticSource
    message: str
    file: str | None = None
    location: DiagnosticLocation | None = None
    first_seen_at: datetime = field(default_factory=utc_now)
    last_seen_at: datetime | None = None
    occurrence_count: int = 1
    failure_kind: FailureKind | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", DiagnosticSource(self.source))
        if not isinstance(self.message, str) or not self.message.strip():
            raise ValueError("message must be a non-empty string")
        if self.occurrence_count < 1:
            raise ValueError("occurrence_count must be >= 1")
        if self.last_seen_at is None:
            object.__setattr__(self, "last_seen_at", self.first_seen_at)

    @property
    def line(self) -> int | None:
        return self.location.line if self.location is not None else None

    @property
    def identity(self) -> tuple[str, str | None, str, int | None]:
        return (self.source.value, self.file, self.message, self.line)

    @property
    def seen_at(self) -> datetime:
        return self.last_seen_at if self.last_seen_at is not None else self.first_seen_at

    def location_label(self) -> str:
        if self.file is None:
            return "Global"
        if self.location is None:
            return self.file
        return f"{self.file}:{self.location.line}"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "source": self.source.value,
            "file": self.file,
            "line": self.line,
            "column": self.location.column if self.location is not None else None,
            "message": self.message,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.seen_at),
            "occurrence_count": self.occurrence_count,
            "failure_kind": self.failure_kind.value if self.failure_kind is not None else None,
        }


@dataclass(frozen=True, slots=True)
class FunctionalCheck:
    """Result of running the application itself rather than its tests."""

    command: str
    exit_code: int | None
    node: str
    timestamp: datetime = field(default_factory=utc_now)
    stdout_sample: str | None = None
    stderr_sample: str | None = None

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "node": self.node,
            "timestamp": _iso(self.timestamp),
            "stdout_sample": self.stdout_sample,
            "stderr_sample": self.stderr_sample,
        }


@dataclass(frozen=True, slots=True)
class RoleUpdate:
    """
    Partial-state delta returned by a role.

    ``None`` means "leave the field unchanged". ``diagnostics`` is merged into the log
    instead of replacing it; every other provided field replaces the current value.
    """

    next: NextStep
    reason: str
    plan: Mapping[str, Any] | None = None
    file_changes: Mapping[str, str] | None = None
    functional_checks: Sequence[FunctionalCheck] | None = None
    budget: BudgetState | None = None
    diagnostics: Sequence[DiagnosticsEntry] = ()
    same_error_count: int | None = None
    last_test_signature: str | None = None
    error: str | None = None
    partial: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "next", parse_next_step(self.next))
        if not isinstance(self.reason, str):
            raise ValueError("reason must be a string")
        object.__setattr__(self, "diagnostics", tuple(self.diagnostics))
        if self.functional_checks is not None:
            object.__setattr__(self, "functional_checks", tuple(self.functional_checks))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> RoleUpdate:
        """Build an update from decoded structured output (``next``/``reason``/``plan``)."""

        if "next" not in payload:
            raise ValueError("role output is missing 'next'")
        reason = payload.get("reason", "")
        plan = payload.get("plan")
        error = payload.get("error")
        return cls(
            next=parse_next_step(payload["next"]),
            reason=str(reason) if reason is not None else "",
            plan=dict(plan) if isinstance(plan, Mapping) else None,
            error=str(error) if error else None,
            partial=bool(payload.get("partial", False)),
        )


@dataclass(frozen=True, slots=True)
class RunState:
    """
    Canonical run record. The workflow engine is its only writer; every merge produces a
    new instance with ``version`` incremented.
    """

    run_id: str
    goal: str
    budget: BudgetState
    profile: str = "fast"
    ticket_id: str | None = None
    plan: Mapping[str, Any] | None = None
    current_role: RoleName | None = None
    next_step: NextStep = RoleName.PLANNER
    loop_counters: Mapping[str, int] = field(default_factory=dict)
    total_steps: int = 0
    diagnostics_log: tuple[DiagnosticsEntry, ...] = ()
    progress_history: tuple[ProgressSnapshot, ...] = ()
    file_changes: Mapping[str, str] = field(default_factory=dict)
    functional_checks: tuple[FunctionalCheck, ...] = ()
    same_error_count: int = 0
    last_test_signature: str | None = None
    last_reason: str = ""
    last_error: str | None = None
    terminal_status: TerminalStatus | None = None
    stop_reason: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    version: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.run_id, str) or not self.run_id.strip():
            raise ValueError("run_id must be a non-empty string")
        if self.total_steps < 0:
            raise ValueError("total_steps must be >= 0")
        object.__setattr__(self, "next_step", parse_next_step(self.next_step))
        object.__setattr__(self, "loop_counters", MappingProxyType(dict(self.loop_counters)))
        object.__setattr__(self, "file_changes", MappingProxyType(dict(self.file_changes)))
        if self.plan is not None:
            object.__setattr__(self, "plan", MappingProxyType(dict(self.plan)))
        object.__setattr__(self, "diagnostics_log", tuple(self.diagnostics_log))
        object.__setattr__(self, "progress_history", tuple(self.progress_history))
        object.__setattr__(self, "functional_checks", tuple(self.functional_checks))

    @property
    def is_terminal(self) -> bool:
        return self.terminal_status is not None

    def evolve(self, **changes: Any) -> RunState:
        """Return a copy with ``changes`` applied and the version bumped."""

        changes.setdefault("version", self.version + 1)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "goal": self.goal,
            "profile": self.profile,
            "ticket_id": self.ticket_id,
            "current_role": self.current_role.value if self.current_role is not None else None,
            "next_step": self.next_step.value,
            "loop_counters": dict(sorted(self.loop_counters.items())),
            "total_steps": self.total_steps,
            "budget": self.budget.to_dict(),
            "diagnostics_log": [entry.to_dict() for entry in self.diagnostics_log],
            "progress_history": [snapshot.to_dict() for snapshot in self.progress_history],
            "file_changes": dict(sorted(self.file_changes.items())),
            "functional_checks": [check.to_dict() for check in self.functional_checks],
            "same_error_count": self.same_error_count,
            "last_test_signature": self.last_test_signature,
            "last_error": self.last_error,
            "terminal_status": (
                self.terminal_status.value if self.terminal_status is not None else None
            ),
            "stop_reason": self.stop_reason,
            "version": self.version,
        }


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "EDGE_SEPARATOR",
    "BudgetState",
    "CommandRecord",
    "DiagnosticLocation",
    "DiagnosticSource",
    "DiagnosticsEntry",
    "FailureKind",
    "FunctionalCheck",
    "JSONScalar",
    "JSONValue",
    "NextStep",
    "ProgressSnapshot",
    "ResourceKind",
    "RoleName",
    "RoleUpdate",
    "RunState",
    "TerminalStatus",
    "TerminalTag",
    "edge_name",
    "parse_next_step",
    "utc_now",
]
