"""
Budget governor and execution-profile policies.

This module translates an execution profile into resource ceilings and answers
exhaustion queries for a run:
- per-profile ceilings for shell commands and test runs
- a configured ceiling for web requests
- command-class policy (package installs, long-lived app/dev-server processes)
- deterministic `check_and_consume` decisions that never move a counter past its ceiling

Decisions are logged through `structlog` as machine-parseable events.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from forgeloop.constants import DEFAULT_MAX_WEB_REQUESTS, GLOBAL_SAFETY_CEILING
from forgeloop.domain.models import BudgetState, CommandRecord, ResourceKind, RunState, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime


class ProfileName(StrEnum):
    STRICT = "strict"
    FAST = "fast"
    SMOKE = "smoke"
    YOLO = "yolo"


@dataclass(frozen=True, slots=True)
class ProfilePolicy:
    """Resource ceilings and allowed command classes for one profile."""

    name: ProfileName
    max_commands: int
    max_test_runs: int
    allow_package_installs: bool
    allow_app_run: bool
    max_coder_turns: int

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name.value,
            "max_commands": self.max_commands,
            "max_test_runs": self.max_test_runs,
            "allow_package_installs": self.allow_package_installs,
            "allow_app_run": self.allow_app_run,
            "max_coder_turns": self.max_coder_turns,
        }


DEFAULT_PROFILE: Final[ProfileName] = ProfileName.FAST
DEFAULT_CODER_TURNS: Final[int] = 20

PROFILE_POLICIES: Final[Mapping[ProfileName, ProfilePolicy]] = {
    ProfileName.STRICT: ProfilePolicy(ProfileName.STRICT, 20, 5, True, True, 20),
    ProfileName.FAST: ProfilePolicy(ProfileName.FAST, 8, 3, False, True, 12),
    ProfileName.SMOKE: ProfilePolicy(ProfileName.SMOKE, 3, 1, False, False, 6),
    ProfileName.YOLO: ProfilePolicy(ProfileName.YOLO, 15, 4, True, True, 500),
}

_INSTALL_PREFIXES: Final[tuple[str, ...]] = (
    "npm install",
    "npm i ",
    "pnpm add",
    "pnpm install",
    "yarn add",
    "pip install",
    "pip3 install",
    "poetry add",
    "go get",
    "cargo add",
)

_HEAVY_MARKERS: Final[tuple[str, ...]] = (
    "playwright install",
    "flet run",
    "npm start",
    "react-scripts start",
    "next dev",
)


class BudgetAction(StrEnum):
    """Outcome of a single `check_and_consume` call."""

    CONSUMED = "consumed"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    """Deterministic budget decision for one resource request."""

    action: BudgetAction
    kind: ResourceKind
    used: int
    ceiling: int
    reason_codes: tuple[str, ...]
    command: str | None = None

    @property
    def allowed(self) -> bool:
        return self.action is BudgetAction.CONSUMED

    @property
    def exhausted(self) -> bool:
        return self.used >= self.ceiling

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "kind": self.kind.value,
            "used": self.used,
            "ceiling": self.ceiling,
            "reason_codes": list(self.reason_codes),
            "command": self.command,
        }


def resolve_profile(source: RunState | str | None) -> ProfileName:
    """Return the declared profile when it is a known name, else ``fast``."""

    declared = source.profile if isinstance(source, RunState) else source
    if not isinstance(declared, str):
        return DEFAULT_PROFILE
    try:
        return ProfileName(declared.strip().lower())
    except ValueError:
        return DEFAULT_PROFILE


def policy_for(profile: RunState | str | None) -> ProfilePolicy:
    return PROFILE_POLICIES[resolve_profile(profile)]


def is_install_command(command: str) -> bool:
    """True when ``command`` starts with a known package-manager install invocation."""

    normalized = command.strip().lower()
    return any(normalized.startswith(prefix) for prefix in _INSTALL_PREFIXES)


def is_heavy_command(command: str) -> bool:
    """True for commands that start long-lived browser installs or dev servers."""

    normalized = command.strip().lower()
    return any(marker in normalized for marker in _HEAVY_MARKERS)


def resolve_effective_turns(profile: RunState | str | None, configured: int | None = None) -> int:
    """
    Resolve the coder-turn budget.

    A positive ``configured`` value overrides the profile default; zero, negative, or
    missing values fall back to it. The result never exceeds the global safety ceiling.
    """

    if isinstance(configured, bool):
        configured = None
    if configured is not None and configured > 0:
        turns = configured
    elif _is_known_profile(profile):
        turns = policy_for(profile).max_coder_turns
    else:
        turns = DEFAULT_CODER_TURNS
    return min(turns, GLOBAL_SAFETY_CEILING)


def initial_budget_state(
    profile: RunState | str | None,
    *,
    max_commands: int | None = None,
    max_test_runs: int | None = None,
    max_web_requests: int | None = None,
) -> BudgetState:
    """Build fresh budget counters from the resolved profile or explicit overrides."""

    policy = policy_for(profile)
    return BudgetState(
        max_commands=_clamp_ceiling(max_commands, policy.max_commands, "max_commands"),
        max_test_runs=_clamp_ceiling(max_test_runs, policy.max_test_runs, "max_test_runs"),
        max_web_requests=_clamp_ceiling(
            max_web_requests, DEFAULT_MAX_WEB_REQUESTS, "max_web_requests"
        ),
    )


def budget_from_config(config: Mapping[str, Any], *, profile: str | None = None) -> BudgetState:
    """
    Build fresh counters from a loaded config.

    The profile defaults to `run.profile`; `limits.max_commands` and `limits.max_test_runs`
    override its ceilings only when present.
    """

    limits = config["limits"]
    return initial_budget_state(
        profile if profile is not None else config["run"]["profile"],
        max_commands=limits.get("max_commands"),
        max_test_runs=limits.get("max_test_runs"),
        max_web_requests=limits["max_web_requests"],
    )


def coder_turns_from_config(config: Mapping[str, Any]) -> int:
    run = config["run"]
    return resolve_effective_turns(run["profile"], run["max_coder_turns"])


class BudgetGovernor:
    """
    Enforce resource ceilings for one run.

    The governor owns a private copy of the counters; callers read them back through
    `state` and hand that snapshot to the workflow engine.
    """

    def __init__(
        self,
        state: BudgetState,
        *,
        logger: Any | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not isinstance(state, BudgetState):
            raise TypeError("state must be a BudgetState")
        self._state = state
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state(self) -> BudgetState:
        return self._state

    def remaining(self, kind: ResourceKind) -> int:
        return max(self._state.ceiling(kind) - self._state.used(kind), 0)

    def exhausted_kinds(self) -> tuple[ResourceKind, ...]:
        return tuple(
            kind for kind in ResourceKind if self._state.used(kind) >= self._state.ceiling(kind)
        )

    def is_exhausted(self) -> bool:
        return bool(self.exhausted_kinds())

    def check_and_consume(
        self, kind: ResourceKind, *, command: str | None = None
    ) -> BudgetDecision:
        """
        Consume one unit of ``kind`` if its ceiling has not been met.

        A rejected request leaves every counter untouched. Commands and test runs with a
        command string are appended to the command history.
        """

        kind = ResourceKind(kind)
        used = self._state.used(kind)
        ceiling = self._state.ceiling(kind)
        reasons: list[str] = []

        if used >= ceiling:
            _append_reason(reasons, f"{kind.value}_ceiling_reached")
            decision = BudgetDecision(
                action=BudgetAction.REJECTED,
                kind=kind,
                used=used,
                ceiling=ceiling,
                reason_codes=tuple(reasons),
                command=command,
            )
            self._log_decision(decision)
            return decision

        history = self._state.command_history
        if command is not None and kind is not ResourceKind.WEB_REQUEST:
            history = (*history, CommandRecord(command=command, timestamp=self._clock()))

        if kind is ResourceKind.COMMAND:
            self._state = replace(self._state, commands_used=used + 1, command_history=history)
        elif kind is ResourceKind.TEST:
            self._state = replace(self._state, test_runs_used=used + 1, command_history=history)
        else:
            self._state = replace(self._state, web_requests_used=used + 1)

        _append_reason(reasons, "within_budget")
        if used + 1 >= ceiling:
            _append_reason(reasons, f"{kind.value}_ceiling_met")
        decision = BudgetDecision(
            action=BudgetAction.CONSUMED,
            kind=kind,
            used=used + 1,
            ceiling=ceiling,
            reason_codes=tuple(reasons),
            command=command,
        )
        self._log_decision(decision)
        return decision

    def _log_decision(self, decision: BudgetDecision) -> None:
        self._logger.info(
            "control_plane_budget_decision",
            action=decision.action.value,
            kind=decision.kind.value,
            used=decision.used,
            ceiling=decision.ceiling,
            reason_codes=list(decision.reason_codes),
            command=decision.command,
        )


def _is_known_profile(profile: RunState | str | None) -> bool:
    declared = profile.profile if isinstance(profile, RunState) else profile
    if not isinstance(declared, str):
        return False
    return declared.strip().lower() in {item.value for item in ProfileName}


def _clamp_ceiling(value: int | None, default: int, name: str) -> int:
    if value is None:
        return min(default, GLOBAL_SAFETY_CEILING)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return min(value, GLOBAL_SAFETY_CEILING)


def _append_reason(reason_codes: list[str], reason_code: str) -> None:
    if reason_code not in reason_codes:
        reason_codes.append(reason_code)


__all__ = [
    "DEFAULT_CODER_TURNS",
    "DEFAULT_PROFILE",
    "PROFILE_POLICIES",
    "BudgetAction",
    "BudgetDecision",
    "BudgetGovernor",
    "ProfileName",
    "ProfilePolicy",
    "budget_from_config",
    "coder_turns_from_config",
    "initial_budget_state",
    "is_heavy_command",
    "is_install_command",
    "policy_for",
    "resolve_effective_turns",
    "resolve_profile",
]
