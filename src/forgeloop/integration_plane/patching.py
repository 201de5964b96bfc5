"""
forgeloop — patch application engine

File: src/forgeloop/integration_plane/patching.py
Last updated: 2026-10-18

Purpose
- Apply a unified diff to a single file, preferring an exact structural apply and falling
  back to approximate matching only under tight constraints.

Functional requirements
- Malformed input (code fences, tool-call markup, no hunks or change lines) is rejected
  with ``PatchValidationError`` before any apply attempt.
- Strict apply requires every hunk's context and removed lines to match the file exactly at
  the declared line numbers.
- Approximate apply runs only for recognized source extensions and diffs with fewer than
  ``fuzzy_max_changed_lines`` added/removed lines. Hunks apply in order against the running
  content; every micro-edit of a hunk must succeed or the whole operation fails.
- The target file is written once, atomically, after every hunk succeeded.

Non-functional requirements
- Deterministic output; no partial writes.
"""

from __future__ import annotations

import difflib
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, Protocol

import structlog
from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from forgeloop.constants import (
    FUZZY_DELETE_THRESHOLD,
    FUZZY_MATCH_THRESHOLD,
    FUZZY_MAX_CHANGED_LINES,
)
from forgeloop.utils.fs import atomic_write, read_text_bounded

DEFAULT_FUZZY_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {
        ".c",
        ".cc",
        ".cjs",
        ".cpp",
        ".cs",
        ".css",
        ".go",
        ".h",
        ".hpp",
        ".java",
        ".js",
        ".jsx",
        ".kt",
        ".mjs",
        ".php",
        ".py",
        ".rb",
        ".rs",
        ".scss",
        ".svelte",
        ".swift",
        ".ts",
        ".tsx",
        ".vue",
    }
)

_PREVIEW_CHARS: Final[int] = 50
_HUNK_HEADER_RE: Final[re.Pattern[str]] = re.compile(
    r"^@@\s*-(?P<start>\d+)(?:,(?P<length>\d+))?\s+\+\d+(?:,\d+)?\s*@@"
)
_TAG_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^</?[A-Za-z_][\w:.-]*(?:\s[^<>]*)?/?>")
_FILE_HEADER_PREFIXES: Final[tuple[str, ...]] = ("--- ", "+++ ", "diff ", "index ")


class PatchStage(StrEnum):
    STRICT = "strict"
    FUZZY = "fuzzy"
    FUZZY_UNAVAILABLE = "fuzzy_unavailable"


class PatchError(Exception):
    """Base class for patch engine failures."""


class PatchValidationError(PatchError, ValueError):
    """Raised when diff text is malformed rather than merely inapplicable."""


class PatchApplyError(PatchError):
    """Raised when a well-formed diff cannot be applied; the file is left unchanged."""

    def __init__(
        self,
        message: str,
        *,
        stage: PatchStage,
        hunk_index: int | None = None,
        preview: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.hunk_index = hunk_index
        self.preview = preview


@dataclass(frozen=True, slots=True)
class Hunk:
    """Before/after text of one diff hunk; ``expected`` is context plus removed lines."""

    expected: tuple[str, ...]
    replacement: tuple[str, ...]
    source_start: int | None = None

    @property
    def expected_text(self) -> str:
        return "\n".join(self.expected)

    @property
    def replacement_text(self) -> str:
        return "\n".join(self.replacement)

    def preview(self) -> str:
        return (
            f'"{self.expected_text[:_PREVIEW_CHARS]}..." -> '
            f'"{self.replacement_text[:_PREVIEW_CHARS]}..."'
        )


@dataclass(frozen=True, slots=True)
class PatchSettings:
    match_threshold: float = FUZZY_MATCH_THRESHOLD
    delete_threshold: float = FUZZY_DELETE_THRESHOLD
    fuzzy_max_changed_lines: int = FUZZY_MAX_CHANGED_LINES
    fuzzy_extensions: frozenset[str] = field(default=DEFAULT_FUZZY_EXTENSIONS)

    def __post_init__(self) -> None:
        for name in ("match_threshold", "delete_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if self.fuzzy_max_changed_lines < 0:
            raise ValueError("fuzzy_max_changed_lines must be >= 0")
        object.__setattr__(
            self,
            "fuzzy_extensions",
            frozenset(_normalize_extension(item) for item in self.fuzzy_extensions),
        )

    @classmethod
    def from_config(cls, patching: Mapping[str, Any]) -> PatchSettings:
        extensions = patching.get("fuzzy_extensions")
        return cls(
            match_threshold=float(patching.get("match_threshold", FUZZY_MATCH_THRESHOLD)),
            delete_threshold=float(patching.get("delete_threshold", FUZZY_DELETE_THRESHOLD)),
            fuzzy_max_changed_lines=int(
                patching.get("fuzzy_max_changed_lines", FUZZY_MAX_CHANGED_LINES)
            ),
            fuzzy_extensions=(
                frozenset(extensions) if extensions is not None else DEFAULT_FUZZY_EXTENSIONS
            ),
        )

    def allows_fuzzy(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in self.fuzzy_extensions


@dataclass(frozen=True, slots=True)
class PatchOutcome:
    path: str
    stage: PatchStage
    content: str
    hunks_applied: int

    def to_dict(self) -> dict[str, object]:
        return {
            "path": self.path,
            "stage": self.stage.value,
            "hunks_applied": self.hunks_applied,
        }


class ApproximatePatcher(Protocol):
    def apply(self, original: str, hunks: Sequence[Hunk]) -> str: ...


def validate_diff_text(diff_text: str) -> None:
    """Reject text that is not a bare unified diff."""

    if not isinstance(diff_text, str) or not diff_text.strip():
        raise PatchValidationError("diff is empty")
    if "```" in diff_text:
        raise PatchValidationError("diff contains non-diff markup: markdown code fence")

    has_hunk_header = False
    has_change_line = False
    for line in diff_text.splitlines():
        if line.startswith("@@"):
            has_hunk_header = True
            continue
        if line.startswith(_FILE_HEADER_PREFIXES):
            continue
        if line.startswith(("+", "-")):
            has_change_line = True
            continue
        if line.startswith((" ", "\\")):
            continue
        if _TAG_LINE_RE.match(line.strip()):
            raise PatchValidationError(
                f"diff contains non-diff markup: tool-call or XML-like tag {line.strip()[:40]!r}"
            )
    if not has_hunk_header and not has_change_line:
        raise PatchValidationError(
            "diff contains non-diff markup: no hunk header and no added/removed lines"
        )


def count_changed_lines(diff_text: str) -> int:
    return sum(
        1
        for line in diff_text.splitlines()
        if line.startswith(("+", "-")) and not line.startswith(("+++ ", "--- "))
    )


def apply_strict(original: str, diff_text: str, *, path_hint: str = "file") -> str:
    """Apply ``diff_text`` exactly; any context mismatch raises ``PatchApplyError``."""

    try:
        patch = PatchSet(_with_file_headers(diff_text, path_hint))
    except UnidiffParseError as exc:
        raise PatchApplyError(f"unparseable diff: {exc}", stage=PatchStage.STRICT) from exc
    if len(patch) > 1:
        raise PatchValidationError(f"diff must target exactly one file, found {len(patch)}")
    if len(patch) == 0 or len(patch[0]) == 0:
        raise PatchApplyError("diff has no parseable hunks", stage=PatchStage.STRICT)

    lines = original.splitlines(keepends=True)
    out: list[str] = []
    cursor = 0
    for hunk_index, hunk in enumerate(patch[0]):
        position = hunk.source_start if hunk.source_length == 0 else hunk.source_start - 1
        position = max(position, 0)
        if position < cursor or position > len(lines):
            raise PatchApplyError(
                f"hunk {hunk_index} starts at line {hunk.source_start}, outside the file",
                stage=PatchStage.STRICT,
                hunk_index=hunk_index,
            )
        out.extend(lines[cursor:position])
        cursor = position
        for line in hunk:
            if line.is_added:
                out.append(_terminated(line.value))
            elif line.is_removed or line.is_context:
                if cursor >= len(lines) or _strip_eol(lines[cursor]) != _strip_eol(line.value):
                    raise PatchApplyError(
                        f"hunk {hunk_index} does not match file content at line {cursor + 1}",
                        stage=PatchStage.STRICT,
                        hunk_index=hunk_index,
                    )
                if line.is_context:
                    out.append(lines[cursor])
                cursor += 1
    out.extend(lines[cursor:])
    return _match_trailing_newline(original, "".join(out))


def parse_hunks(diff_text: str) -> list[Hunk]:
    """Decompose ``diff_text`` into ``Hunk`` values without requiring accurate headers."""

    hunks: list[Hunk] = []
    expected: list[str] = []
    replacement: list[str] = []
    source_start: int | None = None
    in_hunk = False

    def flush() -> None:
        if expected or replacement:
            hunks.append(Hunk(tuple(expected), tuple(replacement), source_start))
        expected.clear()
        replacement.clear()

    for line in diff_text.splitlines():
        if line.startswith("@@"):
            flush()
            header = _HUNK_HEADER_RE.match(line)
            source_start = int(header.group("start")) if header is not None else None
            in_hunk = True
            continue
        if not in_hunk and line.startswith(_FILE_HEADER_PREFIXES):
            continue
        if line.startswith("\\"):
            continue
        if line.startswith("-"):
            expected.append(line[1:])
        elif line.startswith("+"):
            replacement.append(line[1:])
        elif line.startswith(" ") or line == "":
            expected.append(line[1:])
            replacement.append(line[1:])
        else:
            continue
        in_hunk = True
    flush()
    return hunks


class DifflibApproximatePatcher:
    """
    Approximate hunk application on top of ``difflib.SequenceMatcher``.

    Each hunk is located by scoring candidate windows of the current content against the
    hunk's expected text (whitespace-only lines ignored). The line-level edits from
    expected to replacement are then mapped onto the located window. An edit fails when
    any line it removes cannot be aligned, or when the aligned text differs from the
    expected text by more than ``delete_threshold``.
    """

    def __init__(
        self,
        *,
        match_threshold: float = FUZZY_MATCH_THRESHOLD,
        delete_threshold: float = FUZZY_DELETE_THRESHOLD,
    ) -> None:
        self._min_ratio = 1.0 - match_threshold
        self._delete_threshold = delete_threshold

    def apply(self, original: str, hunks: Sequence[Hunk]) -> str:
        newline = "\r\n" if "\r\n" in original else "\n"
        current = original.splitlines(keepends=True)
        offset = 0
        for hunk_index, hunk in enumerate(hunks):
            hint = (hunk.source_start - 1 + offset) if hunk.source_start else 0
            before = len(current)
            current = self._apply_hunk(current, hunk, hunk_index, hint, newline)
            offset += len(current) - before
        return _match_trailing_newline(original, "".join(current))

    def _apply_hunk(
        self,
        lines: list[str],
        hunk: Hunk,
        hunk_index: int,
        hint: int,
        newline: str,
    ) -> list[str]:
        expected = list(hunk.expected)
        if not any(item.strip() for item in expected):
            raise self._failure(hunk, hunk_index, "hunk has no context to anchor on")

        located = self._locate(lines, expected, hint)
        if located is None:
            raise self._failure(hunk, hunk_index, "no region of the file resembles the hunk")
        start, end = located
        window = [_strip_eol(item) for item in lines[start:end]]

        alignment = _align(expected, window)
        edits: list[tuple[int, int, list[str]]] = []
        matcher = difflib.SequenceMatcher(a=expected, b=list(hunk.replacement), autojunk=False)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                continue
            new_lines = [item + newline for item in hunk.replacement[j1:j2]]
            if i1 == i2:
                position = _insert_position(alignment, i1, len(window))
                if position is None:
                    raise self._failure(hunk, hunk_index, "insertion point not found")
                edits.append((position, position, new_lines))
                continue
            mapped = [alignment[index] for index in range(i1, i2) if index in alignment]
            if len(mapped) != i2 - i1:
                raise self._failure(hunk, hunk_index, "lines to replace not found in file")
            w_start = mapped[0]
            w_end = mapped[-1]
            found_text = "\n".join(window[w_start : w_end + 1])
            expected_text = "\n".join(expected[i1:i2])
            similarity = difflib.SequenceMatcher(
                a=expected_text, b=found_text, autojunk=False
            ).ratio()
            if 1.0 - similarity > self._delete_threshold:
                raise self._failure(hunk, hunk_index, "text to replace differs too much")
            edits.append((w_start, w_end + 1, new_lines))

        window_lines = list(lines[start:end])
        last_end = len(window_lines) + 1
        ordered = sorted(edits, key=lambda item: item[0], reverse=True)
        for edit_start, edit_end, new_lines in ordered:
            if edit_end > last_end:
                raise self._failure(hunk, hunk_index, "overlapping edits")
            window_lines[edit_start:edit_end] = new_lines
            last_end = edit_start
        if window_lines and not window_lines[-1].endswith(("\n", "\r")) and end < len(lines):
            window_lines[-1] += newline
        return lines[:start] + window_lines + lines[end:]

    def _locate(self, lines: list[str], expected: list[str], hint: int) -> tuple[int, int] | None:
        target = _scoring_text(expected)
        target_lines = len([item for item in expected if item.strip()])
        matcher = difflib.SequenceMatcher(autojunk=False)
        matcher.set_seq2(target)

        best: tuple[float, int, int, int] | None = None
        min_length = max(1, len(expected) // 2)
        max_length = max(len(expected) * 2, len(expected) + 2)
        for start in range(len(lines)):
            if not lines[start].strip():
                continue
            for length in range(min_length, max_length + 1):
                end = start + length
                if end > len(lines):
                    break
                if not lines[end - 1].strip():
                    continue
                window = lines[start:end]
                if len([item for item in window if item.strip()]) > target_lines * 2 + 1:
                    break
                matcher.set_seq1(_scoring_text(window))
                if matcher.real_quick_ratio() < self._min_ratio:
                    continue
                if matcher.quick_ratio() < self._min_ratio:
                    continue
                ratio = matcher.ratio()
                if ratio < self._min_ratio:
                    continue
                candidate = (ratio, -abs(start - hint), -length, start)
                if best is None or candidate > best:
                    best = candidate
        if best is None:
            return None
        _, _, negative_length, start = best
        return start, start - negative_length

    @staticmethod
    def _failure(hunk: Hunk, hunk_index: int, reason: str) -> PatchApplyError:
        return PatchApplyError(
            f"approximate patch failed for hunk {hunk_index}: {reason}: {hunk.preview()}",
            stage=PatchStage.FUZZY,
            hunk_index=hunk_index,
            preview=hunk.preview(),
        )


def apply_patch_text(
    original: str,
    diff_text: str,
    *,
    path: str = "file",
    settings: PatchSettings | None = None,
    approximate: ApproximatePatcher | None = None,
) -> PatchOutcome:
    """Validate and apply ``diff_text`` to ``original`` in memory."""

    resolved = settings if settings is not None else PatchSettings()
    validate_diff_text(diff_text)

    try:
        content = apply_strict(original, diff_text, path_hint=Path(path).name)
    except PatchApplyError as strict_error:
        changed = count_changed_lines(diff_text)
        if not resolved.allows_fuzzy(path) or changed >= resolved.fuzzy_max_changed_lines:
            detail = (
                f"{changed} changed lines"
                if resolved.allows_fuzzy(path)
                else f"extension {Path(path).suffix or '<none>'!r} is not a source file"
            )
            raise PatchApplyError(
                f"Failed to apply patch to {path}: {strict_error}; "
                f"fuzzy fallback not available ({detail})",
                stage=PatchStage.FUZZY_UNAVAILABLE,
            ) from strict_error

        hunks = parse_hunks(diff_text)
        patcher = (
            approximate
            if approximate is not None
            else DifflibApproximatePatcher(
                match_threshold=resolved.match_threshold,
                delete_threshold=resolved.delete_threshold,
            )
        )
        try:
            content = patcher.apply(original, hunks)
        except PatchApplyError as fuzzy_error:
            raise PatchApplyError(
                f"Failed to apply patch to {path}: {strict_error}; "
                f"fuzzy fallback also failed: {fuzzy_error}",
                stage=PatchStage.FUZZY,
                hunk_index=fuzzy_error.hunk_index,
                preview=fuzzy_error.preview,
            ) from fuzzy_error
        return PatchOutcome(
            path=path, stage=PatchStage.FUZZY, content=content, hunks_applied=len(hunks)
        )

    hunk_count = sum(1 for line in diff_text.splitlines() if line.startswith("@@"))
    return PatchOutcome(
        path=path, stage=PatchStage.STRICT, content=content, hunks_applied=hunk_count
    )


def apply_patch_file(
    target: str | Path,
    diff_text: str,
    *,
    settings: PatchSettings | None = None,
    approximate: ApproximatePatcher | None = None,
    max_read_bytes: int | None = None,
    logger: Any | None = None,
) -> PatchOutcome:
    """
    Apply ``diff_text`` to the file at ``target`` and write the result atomically.

    A missing file is treated as empty so creation diffs apply. On any failure the file
    on disk is untouched and the error propagates.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    path = Path(target)
    if path.exists():
        original = (
            read_text_bounded(path, max_bytes=max_read_bytes)
            if max_read_bytes is not None
            else read_text_bounded(path)
        )
    else:
        original = ""

    try:
        outcome = apply_patch_text(
            original,
            diff_text,
            path=path.as_posix(),
            settings=settings,
            approximate=approximate,
        )
    except PatchError as exc:
        log.warning(
            "integration_plane_patch_rejected",
            path=path.as_posix(),
            stage=getattr(exc, "stage", "validation"),
            hunk_index=getattr(exc, "hunk_index", None),
            error=str(exc),
        )
        raise

    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(path, outcome.content)
    log.info(
        "integration_plane_patch_applied",
        path=path.as_posix(),
        stage=outcome.stage.value,
        hunks_applied=outcome.hunks_applied,
    )
    return outcome


def _align(expected: list[str], window: list[str]) -> dict[int, int]:
    """Map expected line indexes to window line indexes, ignoring indentation drift."""

    normalized_expected = [item.strip() for item in expected]
    normalized_window = [item.strip() for item in window]
    matcher = difflib.SequenceMatcher(a=normalized_expected, b=normalized_window, autojunk=False)
    alignment: dict[int, int] = {}
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for step in range(i2 - i1):
                alignment[i1 + step] = j1 + step
        elif tag == "replace":
            for step in range(i2 - i1):
                alignment[i1 + step] = j1 + min(step, j2 - j1 - 1)
    return alignment


def _insert_position(alignment: Mapping[int, int], index: int, window_length: int) -> int | None:
    if index in alignment:
        return alignment[index]
    if index - 1 in alignment:
        return alignment[index - 1] + 1
    if index == 0:
        return 0
    if not alignment:
        return None
    return window_length if index > max(alignment) else None


def _scoring_text(lines: Sequence[str]) -> str:
    return "\n".join(item.strip() for item in lines if item.strip())


def _with_file_headers(diff_text: str, name: str) -> str:
    text = diff_text if diff_text.endswith("\n") else diff_text + "\n"
    lines = text.splitlines()
    for index, line in enumerate(lines[:-1]):
        if line.startswith("--- ") and lines[index + 1].startswith("+++ "):
            return text
    return f"--- a/{name}\n+++ b/{name}\n{text}"


def _strip_eol(value: str) -> str:
    return value.rstrip("\r\n")


def _terminated(value: str) -> str:
    return value if value.endswith("\n") else value + "\n"


def _match_trailing_newline(original: str, result: str) -> str:
    if original and not original.endswith("\n") and result.endswith("\n"):
        return result.rstrip("\r\n")
    return result


def _normalize_extension(value: str) -> str:
    text = value.strip().lower()
    return text if text.startswith(".") else f".{text}"


__all__ = [
    "DEFAULT_FUZZY_EXTENSIONS",
    "ApproximatePatcher",
    "DifflibApproximatePatcher",
    "Hunk",
    "PatchApplyError",
    "PatchError",
    "PatchOutcome",
    "PatchSettings",
    "PatchStage",
    "PatchValidationError",
    "apply_patch_file",
    "apply_patch_text",
    "apply_strict",
    "count_changed_lines",
    "parse_hunks",
    "validate_diff_text",
]
