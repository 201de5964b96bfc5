"""
forgeloop — unit tests for the patch engine

File: tests/unit/integration_plane/test_patching.py
Last updated: 2026-10-18

Purpose
- Validate diff validation, strict application, the approximate fallback gate, and
  file-level atomicity of ``apply_patch_file``.
"""

from __future__ import annotations

import difflib
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from forgeloop.integration_plane.patching import (
    Hunk,
    PatchApplyError,
    PatchSettings,
    PatchStage,
    PatchValidationError,
    apply_patch_file,
    apply_patch_text,
    apply_strict,
    count_changed_lines,
    parse_hunks,
    validate_diff_text,
)

DRIFTED_SOURCE = "def add(a, b):\n\n    return a + b\n\n\ndef sub(a, b):\n    return a - b\n"
DRIFTED_DIFF = (
    "@@ -1,2 +1,2 @@\n"
    " def add(a, b):\n"
    "-    return a + b\n"
    "+    return a + b + 0\n"
)
UNRELATED_DIFF = (
    "@@ -1,2 +1,2 @@\n"
    " class Totally(Unrelated):\n"
    "-    value = compute_everything()\n"
    "+    value = 42\n"
)


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def _unified(before: str, after: str, name: str = "x.py", context: int = 3) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            f"a/{name}",
            f"b/{name}",
            n=context,
        )
    )


@pytest.mark.unit
def test_strict_apply_of_generated_diff() -> None:
    before = "a\nb\nc\n"
    after = "a\nB\nc\n"

    outcome = apply_patch_text(before, _unified(before, after), path="x.py")

    assert outcome.stage is PatchStage.STRICT
    assert outcome.content == after
    assert outcome.hunks_applied == 1


def test_strict_apply_with_multiple_hunks() -> None:
    before = "".join(f"line{index}\n" for index in range(1, 11))
    after = before.replace("line2\n", "line two\n").replace("line8\n", "line eight\n")

    outcome = apply_patch_text(before, _unified(before, after, context=1), path="x.py")

    assert outcome.content == after
    assert outcome.hunks_applied == 2


def test_strict_apply_keeps_missing_trailing_newline() -> None:
    assert apply_strict("a\nb", "@@ -1,2 +1,2 @@\n a\n-b\n+c\n") == "a\nc"


def test_strict_mismatch_raises() -> None:
    with pytest.raises(PatchApplyError, match="does not match") as excinfo:
        apply_strict("x\ny\n", "@@ -1,2 +1,2 @@\n a\n-b\n+c\n")

    assert excinfo.value.stage is PatchStage.STRICT
    assert excinfo.value.hunk_index == 0


@pytest.mark.unit
def test_blank_line_drift_applies_through_fuzzy_fallback() -> None:
    outcome = apply_patch_text(DRIFTED_SOURCE, DRIFTED_DIFF, path="src/math_utils.py")

    assert outcome.stage is PatchStage.FUZZY
    assert outcome.content == (
        "def add(a, b):\n\n    return a + b + 0\n\n\ndef sub(a, b):\n    return a - b\n"
    )


def test_fuzzy_refuses_unrelated_hunk() -> None:
    with pytest.raises(PatchApplyError, match="fuzzy fallback also failed") as excinfo:
        apply_patch_text("x = 1\ny = 2\n", UNRELATED_DIFF, path="settings.py")

    assert excinfo.value.stage is PatchStage.FUZZY
    assert excinfo.value.hunk_index == 0
    assert excinfo.value.preview is not None


def test_non_source_extension_has_no_fuzzy_fallback() -> None:
    diff = "@@ -1,2 +1,2 @@\n # Heading\n-old\n+new\n"

    with pytest.raises(PatchApplyError) as excinfo:
        apply_patch_text("# Title\nold\n", diff, path="docs/README.md")

    message = str(excinfo.value)
    assert message.startswith("Failed to apply patch to docs/README.md: ")
    assert "fuzzy fallback not available (extension '.md' is not a source file)" in message
    assert excinfo.value.stage is PatchStage.FUZZY_UNAVAILABLE


def test_large_diff_has_no_fuzzy_fallback() -> None:
    removed = "".join(f"-old {index}\n" for index in range(30))
    added = "".join(f"+new {index}\n" for index in range(30))
    diff = f"@@ -1,30 +1,30 @@\n{removed}{added}"

    with pytest.raises(PatchApplyError, match=r"\(60 changed lines\)") as excinfo:
        apply_patch_text("something else\n", diff, path="big.py")

    assert excinfo.value.stage is PatchStage.FUZZY_UNAVAILABLE


def test_injected_approximate_patcher_is_used() -> None:
    calls: list[int] = []

    class StubPatcher:
        def apply(self, original: str, hunks: Sequence[Hunk]) -> str:
            calls.append(len(hunks))
            return "patched\n"

    outcome = apply_patch_text("x\n", DRIFTED_DIFF, path="m.py", approximate=StubPatcher())

    assert outcome.content == "patched\n"
    assert calls == [1]


@pytest.mark.parametrize(
    ("diff", "message"),
    [
        ("   ", "diff is empty"),
        ("```diff\n@@ -1 +1 @@\n-a\n+b\n```\n", "markdown code fence"),
        ("<tool_call>\n@@ -1 +1 @@\n-a\n+b\n", "tool-call or XML-like tag"),
        ("just some prose\n", "no hunk header and no added/removed lines"),
    ],
)
def test_malformed_diffs_are_rejected(diff: str, message: str) -> None:
    with pytest.raises(PatchValidationError, match=message):
        validate_diff_text(diff)


def test_validation_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        apply_patch_text("a\n", "```\n-a\n+b\n```", path="x.py")


def test_count_changed_lines_skips_file_headers() -> None:
    diff = "--- a/x\n+++ b/x\n@@ -1,2 +1,2 @@\n-a\n+b\n c\n"

    assert count_changed_lines(diff) == 2


def test_parse_hunks_splits_expected_and_replacement() -> None:
    diff = "--- a/x\n+++ b/x\n@@ -3,2 +3,2 @@\n ctx\n-old\n+new\n@@ -9 +9 @@\n-z\n"

    first, second = parse_hunks(diff)

    assert first == Hunk(expected=("ctx", "old"), replacement=("ctx", "new"), source_start=3)
    assert second.expected == ("z",)
    assert second.replacement == ()
    assert second.source_start == 9


def test_patch_settings_from_config_normalizes_extensions() -> None:
    settings = PatchSettings.from_config(
        {"fuzzy_extensions": ["PY", ".Md"], "match_threshold": 0.3}
    )

    assert settings.fuzzy_extensions == frozenset({".py", ".md"})
    assert settings.match_threshold == 0.3
    assert settings.allows_fuzzy("README.MD")
    assert not settings.allows_fuzzy("main.ts")

    with pytest.raises(ValueError, match="delete_threshold"):
        PatchSettings(delete_threshold=1.5)


@pytest.mark.unit
def test_apply_patch_file_writes_fuzzy_result(tmp_path: Path) -> None:
    target = tmp_path / "math_utils.py"
    target.write_text(DRIFTED_SOURCE, encoding="utf-8")
    logger = RecordingLogger()

    outcome = apply_patch_file(target, DRIFTED_DIFF, logger=logger)

    assert target.read_text(encoding="utf-8") == outcome.content
    assert "a + b + 0" in outcome.content
    assert logger.events[-1][0] == "integration_plane_patch_applied"
    assert logger.events[-1][1]["stage"] == "fuzzy"


def test_apply_patch_file_failure_leaves_file_untouched(tmp_path: Path) -> None:
    target = tmp_path / "settings.py"
    target.write_text("x = 1\ny = 2\n", encoding="utf-8")
    logger = RecordingLogger()

    with pytest.raises(PatchApplyError):
        apply_patch_file(target, UNRELATED_DIFF, logger=logger)

    assert target.read_text(encoding="utf-8") == "x = 1\ny = 2\n"
    assert [event for event, _ in logger.events] == ["integration_plane_patch_rejected"]
    assert logger.events[0][1]["stage"] == PatchStage.FUZZY


def test_apply_patch_file_creates_missing_file(tmp_path: Path) -> None:
    target = tmp_path / "pkg" / "new_module.py"

    outcome = apply_patch_file(
        target, "@@ -0,0 +1,2 @@\n+line one\n+line two\n", logger=RecordingLogger()
    )

    assert outcome.stage is PatchStage.STRICT
    assert target.read_text(encoding="utf-8") == "line one\nline two\n"
