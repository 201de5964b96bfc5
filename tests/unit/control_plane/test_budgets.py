"""Unit tests for profile policies and the budget governor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest

from forgeloop.config.schema import default_config, merge_config
from forgeloop.constants import GLOBAL_SAFETY_CEILING
from forgeloop.control_plane.budgets import (
    BudgetAction,
    BudgetGovernor,
    ProfileName,
    budget_from_config,
    coder_turns_from_config,
    initial_budget_state,
    is_heavy_command,
    is_install_command,
    policy_for,
    resolve_effective_turns,
    resolve_profile,
)
from forgeloop.domain.models import BudgetState, ResourceKind, RunState

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


@pytest.mark.unit
@pytest.mark.parametrize(
    ("profile", "commands", "tests", "installs", "app_run"),
    [
        ("strict", 20, 5, True, True),
        ("fast", 8, 3, False, True),
        ("smoke", 3, 1, False, False),
        ("yolo", 15, 4, True, True),
    ],
)
def test_profile_policy_table(
    profile: str, commands: int, tests: int, installs: bool, app_run: bool
) -> None:
    policy = policy_for(profile)

    assert policy.max_commands == commands
    assert policy.max_test_runs == tests
    assert policy.allow_package_installs is installs
    assert policy.allow_app_run is app_run


def test_unknown_or_missing_profile_resolves_to_fast() -> None:
    assert resolve_profile(None) is ProfileName.FAST
    assert resolve_profile("turbo") is ProfileName.FAST
    assert resolve_profile("  SMOKE ") is ProfileName.SMOKE

    state = RunState(run_id="r1", goal="g", budget=initial_budget_state(None), profile="nope")
    assert policy_for(state).name is ProfileName.FAST


def test_initial_budget_state_uses_profile_defaults_and_overrides() -> None:
    default = initial_budget_state("smoke")
    assert (default.max_commands, default.max_test_runs, default.max_web_requests) == (3, 1, 30)

    overridden = initial_budget_state("smoke", max_commands=4, max_web_requests=10_000)
    assert overridden.max_commands == 4
    assert overridden.max_web_requests == GLOBAL_SAFETY_CEILING

    with pytest.raises(ValueError, match="max_test_runs must be >= 0"):
        initial_budget_state("fast", max_test_runs=-1)


def test_effective_turns_resolution() -> None:
    assert resolve_effective_turns("fast") == 12
    assert resolve_effective_turns("fast", 40) == 40
    assert resolve_effective_turns("fast", 0) == 12
    assert resolve_effective_turns("fast", -3) == 12
    assert resolve_effective_turns("yolo", 10_000) == GLOBAL_SAFETY_CEILING
    assert resolve_effective_turns("unknown", None) == 20


def test_budget_from_config_reads_limits_and_run_profile() -> None:
    config = merge_config(
        default_config(),
        {"run": {"profile": "smoke"}, "limits": {"max_test_runs": 2, "max_web_requests": 5}},
    )

    budget = budget_from_config(config)

    assert (budget.max_commands, budget.max_test_runs, budget.max_web_requests) == (3, 2, 5)
    assert budget_from_config(config, profile="strict").max_commands == 20


def test_coder_turns_from_config_prefers_positive_override() -> None:
    config = default_config()

    assert coder_turns_from_config(config) == 12
    config["run"]["max_coder_turns"] = 7
    assert coder_turns_from_config(config) == 7


def test_install_and_heavy_command_detection() -> None:
    assert is_install_command("npm install left-pad")
    assert is_install_command("  pip install requests")
    assert not is_install_command("npm test")

    assert is_heavy_command("npx playwright install chromium")
    assert is_heavy_command("npm start")
    assert not is_heavy_command("pytest -q")


@pytest.mark.unit
def test_governor_consumes_until_ceiling_then_rejects_without_mutation() -> None:
    logger = RecordingLogger()
    governor = BudgetGovernor(
        BudgetState(max_commands=2, max_test_runs=1, max_web_requests=1),
        logger=logger,
        clock=lambda: FIXED_NOW,
    )

    first = governor.check_and_consume(ResourceKind.COMMAND, command="ls")
    second = governor.check_and_consume(ResourceKind.COMMAND, command="ls")
    third = governor.check_and_consume(ResourceKind.COMMAND, command="ls")

    assert first.action is BudgetAction.CONSUMED
    assert second.allowed and second.exhausted
    assert "command_ceiling_met" in second.reason_codes
    assert third.action is BudgetAction.REJECTED
    assert third.reason_codes == ("command_ceiling_reached",)
    assert governor.state.commands_used == 2
    assert [record.command for record in governor.state.command_history] == ["ls", "ls"]
    assert governor.state.command_history[0].timestamp == FIXED_NOW
    assert governor.remaining(ResourceKind.COMMAND) == 0
    assert governor.exhausted_kinds() == (ResourceKind.COMMAND,)

    assert [event for event, _ in logger.events] == ["control_plane_budget_decision"] * 3
    assert logger.events[-1][1]["action"] == "rejected"


def test_web_requests_are_not_recorded_in_command_history() -> None:
    governor = BudgetGovernor(
        BudgetState(max_commands=1, max_test_runs=1, max_web_requests=2),
        logger=RecordingLogger(),
    )

    decision = governor.check_and_consume(ResourceKind.WEB_REQUEST, command="https://example.test")

    assert decision.allowed
    assert governor.state.web_requests_used == 1
    assert governor.state.command_history == ()
    assert not governor.is_exhausted()


def test_zero_ceiling_rejects_immediately() -> None:
    governor = BudgetGovernor(
        BudgetState(max_commands=0, max_test_runs=1, max_web_requests=1),
        logger=RecordingLogger(),
    )

    decision = governor.check_and_consume(ResourceKind.COMMAND, command="echo hi")

    assert not decision.allowed
    assert governor.state.commands_used == 0
    assert governor.is_exhausted()


def test_governor_requires_budget_state() -> None:
    with pytest.raises(TypeError):
        BudgetGovernor({"max_commands": 1})  # type: ignore[arg-type]
