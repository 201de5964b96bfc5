"""
forgeloop — run report writer

File: src/forgeloop/observability/run_report.py
Last updated: 2026-10-18

Purpose
- Persist a markdown report for every finished run.

Functional requirements
- The status, duration, and flow-metric lines use a fixed textual shape that
  ``flow_metrics.extract_metrics_from_report`` reads back.
- File name is ``<timestamp>_<run_id>.md`` with ``:`` and ``.`` in the timestamp replaced
  by ``-`` so names sort chronologically.
- Diagnostics timeline lists the ten most frequent entries.

Non-functional requirements
- Atomic write; the runs directory is created on demand.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from forgeloop.domain.models import RunState, utc_now
from forgeloop.observability.flow_metrics import FlowMetrics, compute_flow_metrics
from forgeloop.utils.fs import atomic_write
from forgeloop.verification_plane.diagnostics import primary_failure

TIMELINE_ENTRIES: Final[int] = 10
REPEATED_COMMANDS_SHOWN: Final[int] = 5


def report_filename(run_id: str, generated_at: datetime) -> str:
    stamp = _iso(generated_at).replace(":", "-").replace(".", "-")
    return f"{stamp}_{run_id}.md"


def render_run_report(state: RunState, metrics: FlowMetrics, *, generated_at: datetime) -> str:
    lines: list[str] = [
        f"# Run Report: {state.run_id}",
        "",
        f"**Date:** {_iso(generated_at)}",
        f"**Status:** {metrics.status.value}",
    ]
    if state.terminal_status is not None:
        lines.append(f"**Terminal Status:** {state.terminal_status.value}")
    if state.stop_reason:
        lines.append(f"**Stop Reason:** {state.stop_reason}")
    lines.append(f"**Duration:** {metrics.duration_seconds:.2f}s")
    lines.append(f"**Profile:** {state.profile}")
    if state.last_error:
        lines.append(f"**Error:** {state.last_error}")
    if state.ticket_id:
        lines.append(f"**Ticket ID:** {state.ticket_id}")

    lines.extend(["", "## Goal", state.goal or "No goal recorded."])

    lines.extend(
        [
            "",
            "## Metrics",
            f"- **Total Steps:** {state.total_steps}",
            f"- **Diagnostics:** {len(state.diagnostics_log)}",
        ]
    )
    if state.loop_counters:
        counters = ", ".join(
            f"{edge} x{count}" for edge, count in sorted(state.loop_counters.items())
        )
        lines.append(f"- **Loop Counters:** {counters}")
    failure = primary_failure(state.diagnostics_log)
    if failure:
        lines.append(f"- **Primary Failure:** {failure}")

    lines.extend(
        [
            "",
            "## Flow Metrics (DORA Proxies)",
            f"- **Change Size:** {metrics.change_size} files",
            f"- **Diagnostic Latency:** {metrics.diagnostic_latency_seconds:.2f}s",
            f"- **Verification Runs:** {metrics.verification_runs}",
            f"- **Failure Mode:** {metrics.failure_mode}",
            f"- **Resource Usage:** {metrics.commands_used} cmds, "
            f"{metrics.test_runs_used} tests, {metrics.web_requests_used} web",
        ]
    )

    lines.extend(["", "## Plan"])
    if state.plan:
        lines.extend(f"- **{key}:** {value}" for key, value in state.plan.items())
    else:
        lines.append("No plan generated.")

    lines.extend(["", "## Files Changed"])
    if state.file_changes:
        lines.extend(f"- {path} ({marker})" for path, marker in sorted(state.file_changes.items()))
    else:
        lines.append("No files changed.")

    if state.functional_checks:
        lines.extend(["", "## Functional Probes"])
        for check in state.functional_checks:
            icon = "PASS" if check.passed else "FAIL"
            lines.append(f"- {icon} `{check.command}` (exit {check.exit_code})")
            if check.stderr_sample:
                lines.append(f"  - Stderr: `{check.stderr_sample.replace('`', '')}`")

    if state.diagnostics_log:
        lines.extend(["", "## Diagnostics Timeline"])
        ranked = sorted(
            state.diagnostics_log, key=lambda entry: entry.occurrence_count, reverse=True
        )
        for entry in ranked[:TIMELINE_ENTRIES]:
            lines.append(
                f"- **[{entry.source.value.upper()}]** {entry.location_label()} "
                f"(x{entry.occurrence_count})"
            )
            lines.append(f"  - Last seen: {_iso(entry.seen_at)}")
            lines.append(f"  - Message: `{entry.message.replace('`', '')}`")
        if len(ranked) > TIMELINE_ENTRIES:
            lines.extend(["", f"... and {len(ranked) - TIMELINE_ENTRIES} more diagnostics."])

    budget = state.budget
    lines.extend(
        [
            "",
            "## Budget Usage",
            f"- **Commands**: {budget.commands_used} / {budget.max_commands}",
            f"- **Test Runs**: {budget.test_runs_used} / {budget.max_test_runs}",
            f"- **Web Requests**: {budget.web_requests_used} / {budget.max_web_requests}",
        ]
    )
    counts = Counter(record.command for record in budget.command_history)
    repeated = [(command, count) for command, count in counts.most_common() if count > 1]
    if repeated:
        lines.extend(["", "### Repeated Commands"])
        lines.extend(
            f"- `{command}`: {count} times" for command, count in repeated[:REPEATED_COMMANDS_SHOWN]
        )

    return "\n".join(lines) + "\n"


def write_run_report(
    runs_dir: str | Path,
    state: RunState,
    *,
    ended_at: datetime | None = None,
    logger: Any | None = None,
) -> Path:
    """Render and atomically write the report for ``state``; returns the report path."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    finished = ended_at if ended_at is not None else utc_now()
    metrics = compute_flow_metrics(state, state.started_at, finished)

    directory = Path(runs_dir)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / report_filename(state.run_id, finished)
    atomic_write(target, render_run_report(state, metrics, generated_at=finished))
    log.info(
        "observability_run_report_written",
        run_id=state.run_id,
        path=target.as_posix(),
        status=metrics.status.value,
        failure_mode=metrics.failure_mode,
    )
    return target


@dataclass(slots=True)
class RunReportWriter:
    """Engine ``reporter`` hook writing one report per finished run."""

    runs_dir: Path
    clock: Callable[[], datetime] = utc_now
    logger: Any | None = None
    last_path: Path | None = None

    def __call__(self, state: RunState) -> Path:
        self.last_path = write_run_report(
            self.runs_dir,
            state,
            ended_at=self.clock(),
            logger=self.logger,
        )
        return self.last_path


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "RunReportWriter",
    "render_run_report",
    "report_filename",
    "write_run_report",
]
