"""
forgeloop — workflow engine

File: src/forgeloop/control_plane/controller.py
Last updated: 2026-10-18

Purpose
- Drive a run to a terminal outcome by invoking the role named by ``next_step`` one at a
  time and merging each role's ``RoleUpdate`` into a fresh ``RunState``.

Functional requirements
- Roles and terminals form a closed state machine; allowed edges live in an explicit
  transition table with per-edge loop eligibility.
- A run at the global step ceiling aborts as ``aborted_stuck`` before any role runs.
- A loop-eligible edge taken more than ``loop_threshold`` times aborts as
  ``aborted_stuck`` before the offending role body executes.
- After every step the stuck detector and then the budget governor are consulted; a
  terminal ``next`` is honored only when neither of them aborts the run.
- Role exceptions, role errors, and illegal transitions are routed back to the planner. An
  error paired with ``done`` is routed back too; other terminal tags keep their outcome.
- Engine-detected fatal conditions never raise; they become a terminal status and reason.

Non-functional requirements
- Single-threaded and cooperative: one role at a time, awaited to completion.
- The engine is the only writer of ``RunState``.
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, TypeAlias

import structlog

from forgeloop.constants import (
    DEFAULT_MAX_RUN_SECONDS,
    LOOP_THRESHOLD,
    MAX_STEPS,
    STUCK_WINDOW,
)
from forgeloop.control_plane.budgets import BudgetGovernor
from forgeloop.control_plane.progress import assess_progress, make_snapshot
from forgeloop.domain.models import (
    NextStep,
    RoleName,
    RoleUpdate,
    RunState,
    TerminalStatus,
    TerminalTag,
    edge_name,
)
from forgeloop.verification_plane.diagnostics import merge_diagnostics

RoleResult: TypeAlias = RoleUpdate | Awaitable[RoleUpdate]
Role: TypeAlias = Callable[[RunState], RoleResult]

MAX_STEPS_REASON: Final[str] = "Max steps limit reached"
RUN_TIME_REASON: Final[str] = "Run time limit reached"

_ALL_ROLES: Final[frozenset[NextStep]] = frozenset(RoleName)
_ALL_TERMINALS: Final[frozenset[NextStep]] = frozenset(TerminalTag)

DEFAULT_TRANSITIONS: Final[Mapping[RoleName, frozenset[NextStep]]] = {
    RoleName.PLANNER: _ALL_ROLES | _ALL_TERMINALS,
    RoleName.RESEARCHER: frozenset({RoleName.PLANNER, TerminalTag.ASK_HUMAN}),
    RoleName.CODER: frozenset({RoleName.VERIFIER, RoleName.PLANNER, TerminalTag.ASK_HUMAN}),
    RoleName.VERIFIER: frozenset(
        {
            RoleName.PLANNER,
            RoleName.JANITOR,
            RoleName.RETROSPECTIVE,
            RoleName.TICKET_CLOSER,
            TerminalTag.DONE,
        }
    ),
    RoleName.JANITOR: frozenset({RoleName.PLANNER, RoleName.VERIFIER}),
    RoleName.RETROSPECTIVE: frozenset({RoleName.TICKET_CLOSER, TerminalTag.DONE}),
    RoleName.TICKET_CLOSER: frozenset({TerminalTag.DONE}),
}

DEFAULT_LOOP_EDGES: Final[frozenset[tuple[RoleName, RoleName]]] = frozenset(
    {
        (RoleName.PLANNER, RoleName.RESEARCHER),
        (RoleName.PLANNER, RoleName.VERIFIER),
        (RoleName.PLANNER, RoleName.CODER),
    }
)

_TERMINAL_STATUS_BY_TAG: Final[Mapping[TerminalTag, TerminalStatus]] = {
    TerminalTag.DONE: TerminalStatus.DONE_SUCCESS,
    TerminalTag.ABORTED_STUCK: TerminalStatus.ABORTED_STUCK,
    TerminalTag.ABORTED_CONSTRAINT: TerminalStatus.ABORTED_CONSTRAINT,
    TerminalTag.ASK_HUMAN: TerminalStatus.ASK_HUMAN,
}


@dataclass(frozen=True, slots=True)
class EngineLimits:
    max_steps: int = MAX_STEPS
    loop_threshold: int = LOOP_THRESHOLD
    stuck_window: int = STUCK_WINDOW
    max_run_seconds: float | None = DEFAULT_MAX_RUN_SECONDS

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.loop_threshold < 1:
            raise ValueError("loop_threshold must be >= 1")
        if self.stuck_window < 1:
            raise ValueError("stuck_window must be >= 1")
        if self.max_run_seconds is not None and self.max_run_seconds <= 0:
            raise ValueError("max_run_seconds must be > 0")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> EngineLimits:
        limits = config.get("limits", {})
        run = config.get("run", {})
        max_run_seconds = run.get("max_run_seconds", DEFAULT_MAX_RUN_SECONDS)
        return cls(
            max_steps=int(limits.get("max_steps", MAX_STEPS)),
            loop_threshold=int(limits.get("loop_threshold", LOOP_THRESHOLD)),
            stuck_window=int(limits.get("stuck_window", STUCK_WINDOW)),
            max_run_seconds=float(max_run_seconds) if max_run_seconds else None,
        )


@dataclass(frozen=True, slots=True)
class TransitionTable:
    """Allowed role edges plus the subset whose repeats are counted."""

    allowed: Mapping[RoleName, frozenset[NextStep]] = field(
        default_factory=lambda: dict(DEFAULT_TRANSITIONS)
    )
    loop_edges: frozenset[tuple[RoleName, RoleName]] = DEFAULT_LOOP_EDGES

    def is_allowed(self, source: RoleName, target: NextStep) -> bool:
        if target is RoleName.PLANNER:
            return True
        return target in self.allowed.get(source, frozenset())

    def is_loop_eligible(self, source: RoleName | None, target: NextStep) -> bool:
        if source is None or not isinstance(target, RoleName):
            return False
        return (source, target) in self.loop_edges


class WorkflowEngine:
    """
    Step-wise run driver.

    ``roles`` maps each role to a callable taking the frozen ``RunState`` and returning a
    ``RoleUpdate`` (or an awaitable of one). The planner is mandatory.
    """

    def __init__(
        self,
        roles: Mapping[RoleName, Role],
        *,
        limits: EngineLimits | None = None,
        transitions: TransitionTable | None = None,
        logger: Any | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        reporter: Callable[[RunState], object] | None = None,
    ) -> None:
        if RoleName.PLANNER not in roles:
            raise ValueError("a planner role is required")
        self._roles = {RoleName(name): role for name, role in roles.items()}
        self._limits = limits if limits is not None else EngineLimits()
        self._transitions = transitions if transitions is not None else TransitionTable()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._monotonic = monotonic
        self._reporter = reporter

    @property
    def limits(self) -> EngineLimits:
        return self._limits

    async def run(self, state: RunState) -> RunState:
        """Step ``state`` until it is terminal, enforcing the wall-clock ceiling between steps."""

        started = self._monotonic()
        current = state
        while not current.is_terminal:
            max_seconds = self._limits.max_run_seconds
            if max_seconds is not None and self._monotonic() - started >= max_seconds:
                current = self._abort(current, TerminalStatus.ABORTED_CONSTRAINT, RUN_TIME_REASON)
                break
            current = await self.step(current)
        if self._reporter is not None:
            self._reporter(current)
        return current

    async def step(self, state: RunState) -> RunState:
        """Advance ``state`` by at most one role invocation."""

        if state.is_terminal:
            return state
        if state.total_steps >= self._limits.max_steps:
            return self._abort(state, TerminalStatus.ABORTED_STUCK, MAX_STEPS_REASON)

        target = state.next_step
        if isinstance(target, TerminalTag):
            return self._finish(state, target, partial=False, reason=state.last_reason)

        source = state.current_role
        edge = edge_name(source, target) if source is not None else None
        loop_eligible = self._transitions.is_loop_eligible(source, target)
        if loop_eligible and edge is not None:
            attempted = state.loop_counters.get(edge, 0) + 1
            if attempted > self._limits.loop_threshold:
                return self._abort(
                    state,
                    TerminalStatus.ABORTED_STUCK,
                    f"Loop limit exceeded on edge {edge} "
                    f"({attempted} > {self._limits.loop_threshold})",
                )

        update = await self._invoke(target, state)
        next_step, error = self._route(target, update)

        loop_counters = dict(state.loop_counters)
        if loop_eligible and edge is not None:
            loop_counters[edge] = loop_counters.get(edge, 0) + 1

        merged = self._merge(state, update, next_step=next_step, error=error)
        merged = merged.evolve(
            current_role=target,
            total_steps=state.total_steps + 1,
            loop_counters=loop_counters,
        )
        merged = merged.evolve(
            progress_history=(*merged.progress_history, make_snapshot(merged, node=target.value)),
        )
        self._logger.info(
            "control_plane_step",
            run_id=merged.run_id,
            step=merged.total_steps,
            role=target.value,
            next=next_step.value,
            reason=update.reason,
            error=error,
            edge=edge,
        )

        assessment = assess_progress(merged.progress_history, window=self._limits.stuck_window)
        if assessment.is_stuck:
            self._logger.warning(
                "control_plane_stuck_detected",
                run_id=merged.run_id,
                step=merged.total_steps,
                reason=assessment.reason,
            )
            return self._abort(merged, TerminalStatus.ABORTED_STUCK, assessment.reason)

        governor = BudgetGovernor(merged.budget, logger=self._logger)
        exhausted = governor.exhausted_kinds()
        if exhausted:
            kinds = ", ".join(kind.value for kind in exhausted)
            return self._abort(
                merged,
                TerminalStatus.ABORTED_CONSTRAINT,
                f"Budget exhausted ({kinds})",
            )
        if isinstance(next_step, TerminalTag):
            return self._finish(merged, next_step, partial=update.partial, reason=update.reason)
        return merged

    async def _invoke(self, role_name: RoleName, state: RunState) -> RoleUpdate:
        role = self._roles.get(role_name)
        if role is None:
            return RoleUpdate(
                next=RoleName.PLANNER,
                reason=f"no handler registered for role {role_name.value}",
                error=f"unknown role: {role_name.value}",
            )
        try:
            result = role(state)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "control_plane_role_error",
                run_id=state.run_id,
                role=role_name.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RoleUpdate(
                next=RoleName.PLANNER,
                reason=f"{role_name.value} raised {type(exc).__name__}",
                error=f"{type(exc).__name__}: {exc}",
            )
        if not isinstance(result, RoleUpdate):
            return RoleUpdate(
                next=RoleName.PLANNER,
                reason=f"{role_name.value} returned {type(result).__name__}",
                error="role must return a RoleUpdate",
            )
        return result

    def _route(self, source: RoleName, update: RoleUpdate) -> tuple[NextStep, str | None]:
        proposed = update.next
        if update.error is not None and (
            isinstance(proposed, RoleName) or proposed is TerminalTag.DONE
        ):
            return RoleName.PLANNER, update.error
        if not self._transitions.is_allowed(source, proposed):
            return (
                RoleName.PLANNER,
                f"illegal transition {edge_name(source, proposed)}",
            )
        return proposed, update.error

    def _merge(
        self,
        state: RunState,
        update: RoleUpdate,
        *,
        next_step: NextStep,
        error: str | None,
    ) -> RunState:
        changes: dict[str, Any] = {
            "next_step": next_step,
            "last_reason": update.reason,
            "last_error": error,
        }
        if update.diagnostics:
            changes["diagnostics_log"] = merge_diagnostics(
                state.diagnostics_log, update.diagnostics
            )
        if update.plan is not None:
            changes["plan"] = update.plan
        if update.file_changes is not None:
            changes["file_changes"] = update.file_changes
        if update.functional_checks is not None:
            changes["functional_checks"] = tuple(update.functional_checks)
        if update.budget is not None:
            changes["budget"] = update.budget
        if update.same_error_count is not None:
            changes["same_error_count"] = update.same_error_count
        if update.last_test_signature is not None:
            changes["last_test_signature"] = update.last_test_signature
        return state.evolve(**changes)

    def _finish(
        self,
        state: RunState,
        tag: TerminalTag,
        *,
        partial: bool,
        reason: str,
    ) -> RunState:
        status = _TERMINAL_STATUS_BY_TAG[tag]
        if status is TerminalStatus.DONE_SUCCESS and partial:
            status = TerminalStatus.DONE_PARTIAL
        self._logger.info(
            "control_plane_terminal",
            run_id=state.run_id,
            step=state.total_steps,
            status=status.value,
            reason=reason,
        )
        return state.evolve(next_step=tag, terminal_status=status, stop_reason=reason)

    def _abort(self, state: RunState, status: TerminalStatus, reason: str) -> RunState:
        self._logger.warning(
            "control_plane_abort",
            run_id=state.run_id,
            step=state.total_steps,
            status=status.value,
            reason=reason,
        )
        tag = TerminalTag(status.value)
        return state.evolve(next_step=tag, terminal_status=status, stop_reason=reason)


__all__ = [
    "DEFAULT_LOOP_EDGES",
    "DEFAULT_TRANSITIONS",
    "MAX_STEPS_REASON",
    "RUN_TIME_REASON",
    "EngineLimits",
    "Role",
    "RoleResult",
    "TransitionTable",
    "WorkflowEngine",
]
