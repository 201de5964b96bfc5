"""Observability exports: run logging, run reports, and flow metrics."""

from forgeloop.observability.flow_metrics import (
    AggregatedMetrics,
    FlowMetrics,
    aggregate_flow_metrics,
    compute_flow_metrics,
    save_aggregated_metrics,
)
from forgeloop.observability.logging import (
    RunLog,
    RunLogSettings,
    open_run_log,
    run_context,
    setup_logging,
    shutdown_logging,
)
from forgeloop.observability.run_report import RunReportWriter, write_run_report

__all__ = [
    "AggregatedMetrics",
    "FlowMetrics",
    "RunLog",
    "RunLogSettings",
    "RunReportWriter",
    "aggregate_flow_metrics",
    "compute_flow_metrics",
    "open_run_log",
    "run_context",
    "save_aggregated_metrics",
    "setup_logging",
    "shutdown_logging",
    "write_run_report",
]
