"""
forgeloop — flow metrics

File: src/forgeloop/observability/flow_metrics.py
Last updated: 2026-10-18

Purpose
- Derive per-run flow metrics (DORA proxies) from a terminal ``RunState`` and aggregate
  them across the most recent run reports.

Functional requirements
- Aggregation reads only the fixed metric lines of the run report format, so reports
  written by older versions remain readable as long as those lines match.
- Trend compares the newer half of the window against the older half once at least ten
  reports exist; a success-rate gap above 0.1 counts as a change.
- Reports that cannot be read are skipped with a warning.

Non-functional requirements
- Deterministic output ordering for ``flow_metrics.json``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from forgeloop.constants import FLOW_METRICS_FILENAME
from forgeloop.domain.models import DiagnosticSource, RoleName, RunState, TerminalStatus
from forgeloop.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

DEFAULT_REPORT_WINDOW: Final[int] = 50
TREND_MIN_REPORTS: Final[int] = 10
TREND_MARGIN: Final[float] = 0.1

_STATUS_RE: Final[re.Pattern[str]] = re.compile(r"\*\*Status:\*\* (\w+)")
_DURATION_RE: Final[re.Pattern[str]] = re.compile(r"\*\*Duration:\*\* ([\d.]+)s")
_CHANGE_SIZE_RE: Final[re.Pattern[str]] = re.compile(r"- \*\*Change Size:\*\* (\d+) files")
_FAILURE_MODE_RE: Final[re.Pattern[str]] = re.compile(r"- \*\*Failure Mode:\*\* (\w+)")
_RESOURCE_RE: Final[re.Pattern[str]] = re.compile(
    r"- \*\*Resource Usage:\*\* (\d+) cmds, (\d+) tests, (\d+) web"
)
_METRICS_HEADING: Final[str] = "## Metrics"


class RunOutcome(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FailureMode(StrEnum):
    NONE = "none"
    PARTIAL_COMPLETION = "partial_completion"
    STUCK_LOOP = "stuck_loop"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNKNOWN_FAILURE = "unknown_failure"
    TESTS_FAILED = "tests_failed"
    BUILD_FAILED = "build_failed"
    LINT_FAILED = "lint_failed"
    BUDGET_EXHAUSTED = "budget_exhausted"


class Trend(StrEnum):
    STABLE = "stable"
    IMPROVING = "improving"
    DEGRADING = "degrading"


_DIAGNOSTIC_FAILURE_MODES: Final[dict[DiagnosticSource, FailureMode]] = {
    DiagnosticSource.TEST: FailureMode.TESTS_FAILED,
    DiagnosticSource.BUILD: FailureMode.BUILD_FAILED,
    DiagnosticSource.LINT: FailureMode.LINT_FAILED,
}


@dataclass(frozen=True, slots=True)
class FlowMetrics:
    change_size: int
    failure_mode: str
    commands_used: int
    test_runs_used: int
    web_requests_used: int
    status: RunOutcome
    duration_seconds: float
    diagnostic_latency_seconds: float = 0.0
    verification_runs: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "change_size": self.change_size,
            "diagnostic_latency_seconds": self.diagnostic_latency_seconds,
            "verification_runs": self.verification_runs,
            "failure_mode": self.failure_mode,
            "commands_used": self.commands_used,
            "test_runs_used": self.test_runs_used,
            "web_requests_used": self.web_requests_used,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True, slots=True)
class AggregatedMetrics:
    total_runs: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float = 0.0
    average_change_size: float = 0.0
    average_commands_used: float = 0.0
    failure_modes: dict[str, int] = field(default_factory=dict)
    recent_trend: Trend = Trend.STABLE

    def to_dict(self) -> dict[str, object]:
        return {
            "total_runs": self.total_runs,
            "success_rate": self.success_rate,
            "average_duration_seconds": self.average_duration_seconds,
            "average_change_size": self.average_change_size,
            "average_commands_used": self.average_commands_used,
            "failure_modes": dict(sorted(self.failure_modes.items())),
            "recent_trend": self.recent_trend.value,
        }


def compute_flow_metrics(state: RunState, started_at: datetime, ended_at: datetime) -> FlowMetrics:
    """Summarize a finished run."""

    budget = state.budget
    latency = 0.0
    if state.functional_checks:
        latency = max((state.functional_checks[0].timestamp - started_at).total_seconds(), 0.0)

    status, failure_mode = _classify_outcome(state)
    return FlowMetrics(
        change_size=len(state.file_changes),
        diagnostic_latency_seconds=latency,
        verification_runs=sum(
            1 for check in state.functional_checks if check.node == RoleName.VERIFIER.value
        ),
        failure_mode=failure_mode.value,
        commands_used=budget.commands_used,
        test_runs_used=budget.test_runs_used,
        web_requests_used=budget.web_requests_used,
        status=status,
        duration_seconds=max((ended_at - started_at).total_seconds(), 0.0),
    )


def _classify_outcome(state: RunState) -> tuple[RunOutcome, FailureMode]:
    if state.terminal_status is TerminalStatus.DONE_SUCCESS:
        return RunOutcome.SUCCESS, FailureMode.NONE
    if state.terminal_status is TerminalStatus.DONE_PARTIAL:
        return RunOutcome.PARTIAL, FailureMode.PARTIAL_COMPLETION

    if state.terminal_status is TerminalStatus.ABORTED_STUCK:
        mode = FailureMode.STUCK_LOOP
    elif state.terminal_status is TerminalStatus.ABORTED_CONSTRAINT:
        mode = FailureMode.CONSTRAINT_VIOLATION
    else:
        mode = FailureMode.UNKNOWN_FAILURE

    if state.diagnostics_log:
        mode = _DIAGNOSTIC_FAILURE_MODES.get(state.diagnostics_log[0].source, mode)

    budget = state.budget
    if (
        budget.commands_used >= budget.max_commands
        or budget.test_runs_used >= budget.max_test_runs
        or budget.web_requests_used >= budget.max_web_requests
    ):
        mode = FailureMode.BUDGET_EXHAUSTED
    return RunOutcome.FAILED, mode


def extract_metrics_from_report(content: str) -> FlowMetrics | None:
    """Scrape the fixed metric lines of one run report; ``None`` if it has no metrics section."""

    if _METRICS_HEADING not in content:
        return None

    resources = _RESOURCE_RE.search(content)
    status = _STATUS_RE.search(content)
    duration = _DURATION_RE.search(content)
    change_size = _CHANGE_SIZE_RE.search(content)
    failure_mode = _FAILURE_MODE_RE.search(content)
    try:
        outcome = RunOutcome(status.group(1)) if status is not None else RunOutcome.FAILED
    except ValueError:
        outcome = RunOutcome.FAILED

    return FlowMetrics(
        change_size=int(change_size.group(1)) if change_size is not None else 0,
        failure_mode=failure_mode.group(1) if failure_mode is not None else "unknown",
        commands_used=int(resources.group(1)) if resources is not None else 0,
        test_runs_used=int(resources.group(2)) if resources is not None else 0,
        web_requests_used=int(resources.group(3)) if resources is not None else 0,
        status=outcome,
        duration_seconds=float(duration.group(1)) if duration is not None else 0.0,
    )


def aggregate_flow_metrics(
    runs_dir: str | Path,
    *,
    limit: int = DEFAULT_REPORT_WINDOW,
    logger: Any | None = None,
) -> AggregatedMetrics:
    """Aggregate the newest ``limit`` reports under ``runs_dir``."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    directory = Path(runs_dir)
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if not directory.is_dir():
        return AggregatedMetrics()

    report_paths = sorted(
        (path for path in directory.iterdir() if path.suffix == ".md" and path.is_file()),
        key=lambda path: path.name,
        reverse=True,
    )[:limit]

    metrics: list[FlowMetrics] = []
    for path in report_paths:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.warning("observability_run_report_unreadable", path=path.as_posix(), error=str(exc))
            continue
        extracted = extract_metrics_from_report(content)
        if extracted is not None:
            metrics.append(extracted)
    return summarize_metrics(metrics)


def summarize_metrics(metrics: Sequence[FlowMetrics]) -> AggregatedMetrics:
    """Aggregate ``metrics`` ordered newest first."""

    if not metrics:
        return AggregatedMetrics()

    total = len(metrics)
    failure_modes: dict[str, int] = {}
    for item in metrics:
        if item.status is not RunOutcome.SUCCESS:
            failure_modes[item.failure_mode] = failure_modes.get(item.failure_mode, 0) + 1

    return AggregatedMetrics(
        total_runs=total,
        success_rate=_success_rate(metrics),
        average_duration_seconds=sum(item.duration_seconds for item in metrics) / total,
        average_change_size=sum(item.change_size for item in metrics) / total,
        average_commands_used=sum(item.commands_used for item in metrics) / total,
        failure_modes=failure_modes,
        recent_trend=_trend(metrics),
    )


def save_aggregated_metrics(cache_dir: str | Path, metrics: AggregatedMetrics) -> Path:
    directory = Path(cache_dir)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / FLOW_METRICS_FILENAME
    atomic_write(target, json.dumps(metrics.to_dict(), indent=2) + "\n")
    return target


def _success_rate(metrics: Sequence[FlowMetrics]) -> float:
    return sum(1 for item in metrics if item.status is RunOutcome.SUCCESS) / len(metrics)


def _trend(metrics: Sequence[FlowMetrics]) -> Trend:
    if len(metrics) < TREND_MIN_REPORTS:
        return Trend.STABLE
    middle = len(metrics) // 2
    newer = _success_rate(metrics[:middle])
    older = _success_rate(metrics[middle:])
    if newer > older + TREND_MARGIN:
        return Trend.IMPROVING
    if newer < older - TREND_MARGIN:
        return Trend.DEGRADING
    return Trend.STABLE


__all__ = [
    "DEFAULT_REPORT_WINDOW",
    "AggregatedMetrics",
    "FailureMode",
    "FlowMetrics",
    "RunOutcome",
    "Trend",
    "aggregate_flow_metrics",
    "compute_flow_metrics",
    "extract_metrics_from_report",
    "save_aggregated_metrics",
    "summarize_metrics",
]
