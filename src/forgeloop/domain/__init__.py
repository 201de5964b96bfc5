"""
forgeloop — domain layer

File: src/forgeloop/domain/__init__.py
Last updated: 2026-10-18

Purpose
- Run-state types shared across planes: RunState, BudgetState, ProgressSnapshot,
  DiagnosticsEntry, FunctionalCheck, RoleUpdate.

Functional requirements
- Domain objects must be serializable and immutable.

Non-functional requirements
- Domain layer stays free of IO side effects.
"""

from forgeloop.domain.models import (
    BudgetState,
    CommandRecord,
    DiagnosticLocation,
    DiagnosticsEntry,
    DiagnosticSource,
    FailureKind,
    FunctionalCheck,
    NextStep,
    ProgressSnapshot,
    ResourceKind,
    RoleName,
    RoleUpdate,
    RunState,
    TerminalStatus,
    TerminalTag,
    edge_name,
    parse_next_step,
    utc_now,
)

__all__ = [
    "BudgetState",
    "CommandRecord",
    "DiagnosticLocation",
    "DiagnosticSource",
    "DiagnosticsEntry",
    "FailureKind",
    "FunctionalCheck",
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
