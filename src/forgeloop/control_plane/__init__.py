"""Control-plane public API."""

from forgeloop.control_plane.budgets import (
    BudgetDecision,
    BudgetGovernor,
    ProfileName,
    ProfilePolicy,
    budget_from_config,
    coder_turns_from_config,
    initial_budget_state,
    policy_for,
    resolve_effective_turns,
    resolve_profile,
)
from forgeloop.control_plane.controller import EngineLimits, TransitionTable, WorkflowEngine
from forgeloop.control_plane.progress import (
    ProgressAssessment,
    ProgressStatus,
    assess_progress,
    make_snapshot,
)

__all__ = [
    "BudgetDecision",
    "BudgetGovernor",
    "EngineLimits",
    "ProfileName",
    "ProfilePolicy",
    "ProgressAssessment",
    "ProgressStatus",
    "TransitionTable",
    "WorkflowEngine",
    "assess_progress",
    "budget_from_config",
    "coder_turns_from_config",
    "initial_budget_state",
    "make_snapshot",
    "policy_for",
    "resolve_effective_turns",
    "resolve_profile",
]
