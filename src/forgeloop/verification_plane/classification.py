"""
Failure classification for executed commands.

A command's combined output, exit code and timeout flag map to exactly one
`FailureKind`. Classifiers run in a fixed priority order and the first match wins:
timeout, test-framework failure markers, compiler error markers, non-zero exit,
then `unknown`.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Final

from forgeloop.domain.models import DiagnosticsEntry, FailureKind

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass(frozen=True, slots=True)
class FailureSignal:
    output: str
    exit_code: int | None
    timed_out: bool = False


_TEST_FAILURE_MARKERS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"^FAILED\s", re.MULTILINE),  # pytest
    re.compile(r"=+ .*\b\d+ failed\b", re.MULTILINE),  # pytest summary
    re.compile(r"^Tests:.*\bfailed\b", re.MULTILINE),  # jest
    re.compile(r"^\s*●\s", re.MULTILINE),  # jest
    re.compile(r"^FAIL\s", re.MULTILINE),  # jest / vitest
    re.compile(r"^--- FAIL:", re.MULTILINE),  # go test
    re.compile(r"test result: FAILED"),  # cargo test
    re.compile(r"\bAssertionError\b"),
)

_COMPILATION_MARKERS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\berror TS\d+\b"),  # tsc
    re.compile(r"\bSyntaxError\b"),
    re.compile(r"\berror\[E\d+\]"),  # rustc
    re.compile(r"\bcannot find symbol\b"),  # javac
    re.compile(r"compilation failed", re.IGNORECASE),
    re.compile(r"build failed", re.IGNORECASE),
    re.compile(r"^# [\w./-]+\n.*\.go:\d+:\d+:", re.MULTILINE),  # go build
)


def _is_timeout(signal: FailureSignal) -> bool:
    return signal.timed_out


def _is_test_failure(signal: FailureSignal) -> bool:
    return _matches_any(signal.output, _TEST_FAILURE_MARKERS)


def _is_compilation(signal: FailureSignal) -> bool:
    return _matches_any(signal.output, _COMPILATION_MARKERS)


def _is_runtime_error(signal: FailureSignal) -> bool:
    return signal.exit_code is not None and signal.exit_code != 0


CLASSIFIERS: Final[tuple[tuple[FailureKind, Callable[[FailureSignal], bool]], ...]] = (
    (FailureKind.TIMEOUT, _is_timeout),
    (FailureKind.TEST_FAILURE, _is_test_failure),
    (FailureKind.COMPILATION, _is_compilation),
    (FailureKind.RUNTIME_ERROR, _is_runtime_error),
)


def classify_failure(
    *,
    stdout: str = "",
    stderr: str = "",
    exit_code: int | None,
    timed_out: bool = False,
) -> FailureKind:
    signal = FailureSignal(
        output=f"{stdout}\n{stderr}",
        exit_code=exit_code,
        timed_out=timed_out,
    )
    for kind, predicate in CLASSIFIERS:
        if predicate(signal):
            return kind
    return FailureKind.UNKNOWN


def attach_failure_kind(
    entries: Sequence[DiagnosticsEntry],
    kind: FailureKind,
) -> list[DiagnosticsEntry]:
    """Return ``entries`` with ``failure_kind`` set on each."""

    return [replace(entry, failure_kind=kind) for entry in entries]


def _matches_any(value: str, markers: Iterable[re.Pattern[str]]) -> bool:
    return any(marker.search(value) is not None for marker in markers)


__all__ = [
    "CLASSIFIERS",
    "FailureKind",
    "FailureSignal",
    "attach_failure_kind",
    "classify_failure",
]
