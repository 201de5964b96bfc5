"""
forgeloop — flow metrics aggregation over recent run reports.

Purpose
- Scan the runs directory for the newest run reports, aggregate their flow metrics and
  persist ``flow_metrics.json`` under the cache directory.
- Print a short human summary, or the JSON payload with ``--json``.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Aggregate flow metrics from the most recent run reports.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional forgeloop config file (TOML or YAML) supplying default paths.",
    )
    parser.add_argument(
        "--runs-dir",
        type=Path,
        default=None,
        help="Directory holding run reports (default: paths.runs_dir).",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Directory receiving flow_metrics.json (default: paths.cache_dir).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Number of newest reports to aggregate.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the aggregated metrics as JSON.",
    )
    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Do not write flow_metrics.json.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.limit < 1:
        print("error: --limit must be >= 1", file=sys.stderr)
        return 2

    _ensure_src_path()
    from forgeloop.config import ConfigLoadError, ConfigValidationError, load_config
    from forgeloop.observability.flow_metrics import (
        aggregate_flow_metrics,
        save_aggregated_metrics,
    )

    try:
        config = load_config(args.config)
    except (ConfigLoadError, ConfigValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    paths = config["paths"]
    runs_dir = args.runs_dir if args.runs_dir is not None else Path(paths["runs_dir"])
    cache_dir = args.cache_dir if args.cache_dir is not None else Path(paths["cache_dir"])

    metrics = aggregate_flow_metrics(runs_dir.expanduser(), limit=args.limit)
    saved_to = None if args.no_save else save_aggregated_metrics(cache_dir.expanduser(), metrics)

    if args.json:
        print(json.dumps(metrics.to_dict(), indent=2, sort_keys=True))
        return 0

    print(f"runs analyzed: {metrics.total_runs}")
    print(f"success rate: {metrics.success_rate:.2f}")
    print(f"average duration: {metrics.average_duration_seconds:.2f}s")
    print(f"average change size: {metrics.average_change_size:.2f} files")
    print(f"average commands: {metrics.average_commands_used:.2f}")
    print(f"trend: {metrics.recent_trend.value}")
    for mode, count in sorted(metrics.failure_modes.items()):
        print(f"  {mode}: {count}")
    if saved_to is not None:
        print(f"saved: {saved_to.as_posix()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
