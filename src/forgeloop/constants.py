"""Stable constants shared across forgeloop planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Engine ceilings.
MAX_STEPS: Final[int] = 50
LOOP_THRESHOLD: Final[int] = 5
STUCK_WINDOW: Final[int] = 3
GLOBAL_SAFETY_CEILING: Final[int] = 500
DEFAULT_MAX_WEB_REQUESTS: Final[int] = 30
DEFAULT_MAX_RUN_SECONDS: Final[int] = 300

# Patch engine defaults.
FUZZY_MATCH_THRESHOLD: Final[float] = 0.5
FUZZY_DELETE_THRESHOLD: Final[float] = 0.5
FUZZY_MAX_CHANGED_LINES: Final[int] = 50
MAX_REPEATED_PATCHES: Final[int] = 2

# Workspace IO.
MAX_READ_BYTES: Final[int] = 1024 * 1024

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to workspace root unless overridden by config).
RUNS_DIR: Final[PurePosixPath] = PurePosixPath(".sdd/runs")
CACHE_DIR: Final[PurePosixPath] = PurePosixPath(".sdd/cache")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")
FLOW_METRICS_FILENAME: Final[str] = "flow_metrics.json"

__all__ = [
    "CACHE_DIR",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAX_RUN_SECONDS",
    "DEFAULT_MAX_WEB_REQUESTS",
    "FLOW_METRICS_FILENAME",
    "FUZZY_DELETE_THRESHOLD",
    "FUZZY_MATCH_THRESHOLD",
    "FUZZY_MAX_CHANGED_LINES",
    "GLOBAL_SAFETY_CEILING",
    "LOG_DIR",
    "LOOP_THRESHOLD",
    "MAX_READ_BYTES",
    "MAX_REPEATED_PATCHES",
    "MAX_STEPS",
    "RUNS_DIR",
    "STUCK_WINDOW",
]
