"""Unit tests for command failure classification."""

from __future__ import annotations

import pytest

from forgeloop.domain.models import DiagnosticsEntry, DiagnosticSource, FailureKind
from forgeloop.verification_plane.classification import attach_failure_kind, classify_failure


@pytest.mark.unit
@pytest.mark.parametrize(
    ("stdout", "stderr", "exit_code", "expected"),
    [
        ("FAILED tests/test_a.py::test_x - assert 0", "", 1, FailureKind.TEST_FAILURE),
        ("Tests:       1 failed, 4 passed, 5 total", "", 1, FailureKind.TEST_FAILURE),
        ("--- FAIL: TestSum (0.00s)", "", 1, FailureKind.TEST_FAILURE),
        ("test result: FAILED. 2 passed; 1 failed", "", 101, FailureKind.TEST_FAILURE),
        ("", "src/a.ts(3,1): error TS1005: ';' expected.", 2, FailureKind.COMPILATION),
        ("", "  File \"x.py\", line 1\nSyntaxError: invalid syntax", 1, FailureKind.COMPILATION),
        ("", "error[E0425]: cannot find value `x`", 101, FailureKind.COMPILATION),
        ("", "Segmentation fault", 139, FailureKind.RUNTIME_ERROR),
        ("all good", "", 0, FailureKind.UNKNOWN),
    ],
)
def test_classification_table(
    stdout: str, stderr: str, exit_code: int, expected: FailureKind
) -> None:
    assert classify_failure(stdout=stdout, stderr=stderr, exit_code=exit_code) is expected


def test_timeout_wins_over_every_other_signal() -> None:
    kind = classify_failure(
        stdout="FAILED tests/test_a.py::test_x",
        stderr="SyntaxError",
        exit_code=None,
        timed_out=True,
    )

    assert kind is FailureKind.TIMEOUT


def test_test_markers_win_over_compilation_markers() -> None:
    kind = classify_failure(stdout="AssertionError\nbuild failed", exit_code=1)

    assert kind is FailureKind.TEST_FAILURE


def test_missing_exit_code_without_markers_is_unknown() -> None:
    assert classify_failure(stdout="", stderr="", exit_code=None) is FailureKind.UNKNOWN


def test_attach_failure_kind_returns_tagged_copies() -> None:
    entries = [
        DiagnosticsEntry(source=DiagnosticSource.TEST, message="assert 1 == 2"),
        DiagnosticsEntry(source=DiagnosticSource.TEST, message="assert 3 == 4"),
    ]

    tagged = attach_failure_kind(entries, FailureKind.TEST_FAILURE)

    assert [entry.failure_kind for entry in tagged] == [FailureKind.TEST_FAILURE] * 2
    assert all(entry.failure_kind is None for entry in entries)
