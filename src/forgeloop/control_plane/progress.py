"""
forgeloop — progress and stuck-loop detection

File: src/forgeloop/control_plane/progress.py
Last updated: 2026-10-18

Purpose
- Take one fixed-shape progress snapshot per engine step.
- Decide from a rolling window of the newest snapshots whether a run is still moving.

Functional requirements
- Fewer snapshots than the window size always yields ``ok``.
- Snapshots compare equal when every field except ``timestamp`` matches; ``node`` is
  ignored by default so a run cycling between roles with no other change is flagged.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from forgeloop.constants import STUCK_WINDOW
from forgeloop.domain.models import ProgressSnapshot, RunState, utc_now

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime


class ProgressStatus(StrEnum):
    OK = "ok"
    STUCK_CANDIDATE = "stuck_candidate"


@dataclass(frozen=True, slots=True)
class ProgressAssessment:
    status: ProgressStatus
    reason: str = ""

    @property
    def is_stuck(self) -> bool:
        return self.status is ProgressStatus.STUCK_CANDIDATE


def make_snapshot(
    state: RunState,
    *,
    node: str,
    timestamp: datetime | None = None,
) -> ProgressSnapshot:
    """Summarize ``state`` as seen immediately after ``node`` ran."""

    return ProgressSnapshot(
        node=node,
        file_change_count=len(state.file_changes),
        same_error_count=state.same_error_count,
        last_test_signature=state.last_test_signature,
        functional_checks_count=len(state.functional_checks),
        timestamp=timestamp if timestamp is not None else utc_now(),
    )


def assess_progress(
    history: Sequence[ProgressSnapshot],
    *,
    window: int = STUCK_WINDOW,
    compare_node: bool = False,
) -> ProgressAssessment:
    if window < 1:
        raise ValueError("window must be >= 1")
    if len(history) < window:
        return ProgressAssessment(ProgressStatus.OK)

    recent = list(history)[-window:]
    first = recent[0].signature(include_node=compare_node)
    if any(item.signature(include_node=compare_node) != first for item in recent[1:]):
        return ProgressAssessment(ProgressStatus.OK)

    newest = recent[-1]
    reason = (
        f"State has not changed for {window} steps "
        f"(Node: {newest.node}, Files: {newest.file_change_count}, "
        f"Errors: {newest.same_error_count})"
    )
    return ProgressAssessment(ProgressStatus.STUCK_CANDIDATE, reason)


__all__ = [
    "ProgressAssessment",
    "ProgressStatus",
    "assess_progress",
    "make_snapshot",
]
