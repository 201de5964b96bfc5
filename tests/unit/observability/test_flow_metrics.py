"""
forgeloop — unit tests for flow metrics

File: tests/unit/observability/test_flow_metrics.py
Last updated: 2026-10-18

Purpose
- Validate per-run outcome classification, report scraping, aggregation, and trend.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from forgeloop.domain.models import (
    BudgetState,
    DiagnosticsEntry,
    DiagnosticSource,
    FunctionalCheck,
    RunState,
    TerminalStatus,
)
from forgeloop.observability.flow_metrics import (
    AggregatedMetrics,
    FailureMode,
    FlowMetrics,
    RunOutcome,
    Trend,
    aggregate_flow_metrics,
    compute_flow_metrics,
    extract_metrics_from_report,
    save_aggregated_metrics,
    summarize_metrics,
)
from forgeloop.observability.run_report import write_run_report

START = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def _state(
    status: TerminalStatus,
    *,
    run_id: str = "run-metrics",
    commands_used: int = 2,
    max_commands: int = 10,
    **overrides: object,
) -> RunState:
    fields: dict[str, object] = {
        "run_id": run_id,
        "goal": "add a feature",
        "budget": BudgetState(
            max_commands=max_commands,
            max_test_runs=5,
            max_web_requests=5,
            commands_used=commands_used,
            test_runs_used=1,
        ),
        "terminal_status": status,
        "started_at": START,
    }
    fields.update(overrides)
    return RunState(**fields)  # type: ignore[arg-type]


def _metrics(status: RunOutcome, *, duration: float = 1.0) -> FlowMetrics:
    return FlowMetrics(
        change_size=1,
        failure_mode="none" if status is RunOutcome.SUCCESS else "stuck_loop",
        commands_used=1,
        test_runs_used=0,
        web_requests_used=0,
        status=status,
        duration_seconds=duration,
    )


@pytest.mark.unit
def test_successful_run_metrics() -> None:
    state = _state(
        TerminalStatus.DONE_SUCCESS,
        file_changes={"a.py": "patched", "b.py": "created"},
        functional_checks=(
            FunctionalCheck(
                command="npm run dev",
                exit_code=0,
                node="verifier",
                timestamp=START + timedelta(seconds=4),
            ),
            FunctionalCheck(command="npm start", exit_code=0, node="coder", timestamp=START),
        ),
    )

    metrics = compute_flow_metrics(state, START, START + timedelta(seconds=30))

    assert metrics.status is RunOutcome.SUCCESS
    assert metrics.failure_mode == "none"
    assert metrics.change_size == 2
    assert metrics.duration_seconds == 30.0
    assert metrics.diagnostic_latency_seconds == 4.0
    assert metrics.verification_runs == 1
    assert (metrics.commands_used, metrics.test_runs_used, metrics.web_requests_used) == (2, 1, 0)


@pytest.mark.parametrize(
    ("status", "outcome", "mode"),
    [
        (TerminalStatus.DONE_PARTIAL, RunOutcome.PARTIAL, FailureMode.PARTIAL_COMPLETION),
        (TerminalStatus.ABORTED_STUCK, RunOutcome.FAILED, FailureMode.STUCK_LOOP),
        (TerminalStatus.ABORTED_CONSTRAINT, RunOutcome.FAILED, FailureMode.CONSTRAINT_VIOLATION),
        (TerminalStatus.ASK_HUMAN, RunOutcome.FAILED, FailureMode.UNKNOWN_FAILURE),
    ],
)
def test_outcome_classification(
    status: TerminalStatus, outcome: RunOutcome, mode: FailureMode
) -> None:
    metrics = compute_flow_metrics(_state(status), START, START)

    assert metrics.status is outcome
    assert metrics.failure_mode == mode.value


def test_newest_diagnostic_refines_failure_mode() -> None:
    diagnostics = (
        DiagnosticsEntry(source=DiagnosticSource.TEST, message="assert 0", first_seen_at=START),
        DiagnosticsEntry(source=DiagnosticSource.LINT, message="E501", first_seen_at=START),
    )
    state = _state(TerminalStatus.ABORTED_STUCK, diagnostics_log=diagnostics)

    assert compute_flow_metrics(state, START, START).failure_mode == "tests_failed"


def test_exhausted_budget_overrides_failure_mode() -> None:
    state = _state(TerminalStatus.ABORTED_CONSTRAINT, commands_used=10, max_commands=10)

    assert compute_flow_metrics(state, START, START).failure_mode == "budget_exhausted"


def test_negative_duration_is_clamped() -> None:
    metrics = compute_flow_metrics(
        _state(TerminalStatus.DONE_SUCCESS), START, START - timedelta(seconds=5)
    )

    assert metrics.duration_seconds == 0.0


@pytest.mark.unit
def test_aggregates_two_written_reports(tmp_path: Path) -> None:
    runs_dir = tmp_path / "runs"
    success = _state(
        TerminalStatus.DONE_SUCCESS, run_id="run-a", commands_used=5, file_changes={"a.py": "x"}
    )
    failure = _state(TerminalStatus.ABORTED_STUCK, run_id="run-b", commands_used=8)
    logger = RecordingLogger()
    write_run_report(runs_dir, success, ended_at=START + timedelta(seconds=10), logger=logger)
    write_run_report(runs_dir, failure, ended_at=START + timedelta(seconds=20), logger=logger)

    aggregated = aggregate_flow_metrics(runs_dir, logger=logger)

    assert aggregated.total_runs == 2
    assert aggregated.success_rate == 0.5
    assert aggregated.average_duration_seconds == 15.0
    assert aggregated.average_commands_used == 6.5
    assert aggregated.average_change_size == 0.5
    assert aggregated.failure_modes == {"stuck_loop": 1}
    assert aggregated.recent_trend is Trend.STABLE


def test_limit_keeps_only_newest_reports(tmp_path: Path) -> None:
    runs_dir = tmp_path / "runs"
    for offset, status in enumerate(
        [TerminalStatus.ABORTED_STUCK, TerminalStatus.DONE_SUCCESS, TerminalStatus.DONE_SUCCESS]
    ):
        write_run_report(
            runs_dir,
            _state(status, run_id=f"run-{offset}"),
            ended_at=START + timedelta(minutes=offset),
            logger=RecordingLogger(),
        )

    aggregated = aggregate_flow_metrics(runs_dir, limit=2, logger=RecordingLogger())

    assert aggregated.total_runs == 2
    assert aggregated.success_rate == 1.0


def test_unreadable_and_foreign_reports_are_skipped(tmp_path: Path) -> None:
    runs_dir = tmp_path / "runs"
    runs_dir.mkdir()
    (runs_dir / "bad.md").write_bytes(b"\xff\xfe\xfa")
    (runs_dir / "notes.md").write_text("# Notes\nnothing here\n", encoding="utf-8")
    (runs_dir / "ignored.txt").write_text("## Metrics\n", encoding="utf-8")
    logger = RecordingLogger()

    aggregated = aggregate_flow_metrics(runs_dir, logger=logger)

    assert aggregated == AggregatedMetrics()
    assert [event for event, _ in logger.events] == ["observability_run_report_unreadable"]


def test_missing_runs_dir_and_bad_limit(tmp_path: Path) -> None:
    assert aggregate_flow_metrics(tmp_path / "absent") == AggregatedMetrics()
    with pytest.raises(ValueError, match="limit must be >= 1"):
        aggregate_flow_metrics(tmp_path, limit=0)


def test_extract_metrics_defaults_for_missing_lines() -> None:
    report = "# Run Report: x\n**Status:** bogus\n\n## Metrics\n- **Total Steps:** 2\n"

    metrics = extract_metrics_from_report(report)

    assert metrics is not None
    assert metrics.status is RunOutcome.FAILED
    assert metrics.failure_mode == "unknown"
    assert metrics.duration_seconds == 0.0
    assert extract_metrics_from_report("# Run Report: x\n") is None


@pytest.mark.parametrize(
    ("newer", "older", "trend"),
    [
        (RunOutcome.SUCCESS, RunOutcome.FAILED, Trend.IMPROVING),
        (RunOutcome.FAILED, RunOutcome.SUCCESS, Trend.DEGRADING),
        (RunOutcome.SUCCESS, RunOutcome.SUCCESS, Trend.STABLE),
    ],
)
def test_trend_compares_halves(newer: RunOutcome, older: RunOutcome, trend: Trend) -> None:
    metrics = [_metrics(newer)] * 5 + [_metrics(older)] * 5

    assert summarize_metrics(metrics).recent_trend is trend


def test_trend_needs_ten_reports() -> None:
    metrics = [_metrics(RunOutcome.SUCCESS)] * 4 + [_metrics(RunOutcome.FAILED)] * 5

    assert summarize_metrics(metrics).recent_trend is Trend.STABLE


def test_save_aggregated_metrics_writes_snake_case_json(tmp_path: Path) -> None:
    aggregated = summarize_metrics([_metrics(RunOutcome.SUCCESS, duration=3.0)])

    target = save_aggregated_metrics(tmp_path / "cache", aggregated)

    assert target.name == "flow_metrics.json"
    payload = json.loads(target.read_text(encoding="utf-8"))
    assert payload == {
        "total_runs": 1,
        "success_rate": 1.0,
        "average_duration_seconds": 3.0,
        "average_change_size": 1.0,
        "average_commands_used": 1.0,
        "failure_modes": {},
        "recent_trend": "stable",
    }
