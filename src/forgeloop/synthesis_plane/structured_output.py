"""
forgeloop — tolerant structured-output parser

File: src/forgeloop/synthesis_plane/structured_output.py
Last updated: 2026-10-18

Purpose
- Recover a JSON-like value from free-form text produced by a text-generating collaborator.
  The text may be wrapped in prose or code fences, carry truncation markers, or use
  non-standard syntax.

Functional requirements
- Candidate selection: a fenced block tagged ``json``, then any fenced block, then the
  widest balanced brace/bracket span, then the trimmed raw text. Text that itself starts
  with a brace or bracket goes straight to the widest span so that string fields holding
  fenced examples are not cut at the inner fence.
- Sanitization strips BOM and zero-width/bidi characters, truncation-marker lines, stray
  fence lines, and a leading "here is the json:" preamble.
- Parse tiers: strict JSON, then a repair pass (trailing commas, unquoted keys, single
  quotes, Python literals, raw newlines in strings) followed by strict JSON, then a YAML
  flow read of the repaired text.
- Bad input never raises; callers receive ``ParseSuccess`` or ``ParseFailure``.

Non-functional requirements
- Deterministic and side-effect free.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import yaml

if TYPE_CHECKING:
    from collections.abc import Sequence


class ParseFailureKind(StrEnum):
    PARSE_ERROR = "parse-error"
    TRUNCATED = "truncated"


@dataclass(frozen=True, slots=True)
class ParseSuccess:
    value: Any
    sanitized: str = ""
    strategy: str = "strict"

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class ParseFailure:
    kind: ParseFailureKind
    message: str
    raw: str
    sanitized: str

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "raw": self.raw,
            "sanitized": self.sanitized,
        }


ParseResult = ParseSuccess | ParseFailure


@dataclass(frozen=True, slots=True)
class SanitizedText:
    text: str
    saw_truncation: bool


_FENCED_BLOCK_RE: Final[re.Pattern[str]] = re.compile(
    r"(?P<fence>`{3,})(?P<lang>[^\n`]*)\n(?P<body>.*?)(?:\n(?P=fence))",
    flags=re.DOTALL,
)
_TRUNCATION_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^\s*([⋮…⋯]+|\.{3,})\s*$")
_FENCE_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^`{3,}[\w+-]*$")
_PREAMBLE_RE: Final[re.Pattern[str]] = re.compile(r"^here is (the )?json[:：]", re.IGNORECASE)
_INVISIBLE_RE: Final[re.Pattern[str]] = re.compile(
    "[\u200b-\u200f\u202a-\u202e\u2060\u2066-\u2069]"
)
_TRUNCATION_GLYPHS: Final[frozenset[str]] = frozenset("⋮…⋯")
_CLOSERS: Final[dict[str, str]] = {"{": "}", "[": "]"}
_LITERALS: Final[dict[str, str]] = {
    "True": "true",
    "False": "false",
    "None": "null",
    "undefined": "null",
}
_EMPTY_OBJECT: Final[str] = "{}"


def parse_structured_output(
    raw: str | None,
    *,
    known_keys: Sequence[str] | None = None,
) -> ParseResult:
    """
    Parse ``raw`` into a structured value without raising.

    ``known_keys`` enables a key-slicing strategy that runs first and survives unescaped
    quotes inside string values, provided every top-level key is known in advance.
    """

    raw_text = raw if isinstance(raw, str) else ""
    if not raw_text.strip():
        return ParseSuccess(value={}, sanitized=_EMPTY_OBJECT, strategy="empty")

    candidate = extract_candidate(raw_text)

    if known_keys:
        keyed = _parse_known_keys(_strip_invisible(candidate), known_keys)
        if keyed is not None:
            return ParseSuccess(value=keyed, sanitized=candidate, strategy="known_keys")

    cleaned = sanitize(candidate)
    if not cleaned.text:
        if cleaned.saw_truncation:
            return ParseFailure(
                kind=ParseFailureKind.TRUNCATED,
                message="no content left after removing truncation markers",
                raw=raw_text,
                sanitized="",
            )
        return ParseSuccess(value={}, sanitized=_EMPTY_OBJECT, strategy="empty")

    value, error = _loads_json(cleaned.text)
    if error is None:
        return ParseSuccess(value=value, sanitized=cleaned.text)

    repaired = repair_json_text(cleaned.text)
    value, error = _loads_json(repaired)
    if error is None:
        return ParseSuccess(value=value, sanitized=repaired, strategy="repaired")

    if repaired[:1] in _CLOSERS:
        try:
            loaded = yaml.safe_load(repaired)
        except (yaml.YAMLError, ValueError):
            loaded = None
        if isinstance(loaded, (dict, list)):
            return ParseSuccess(value=loaded, sanitized=repaired, strategy="yaml")

    truncated = cleaned.saw_truncation or _has_inline_truncation(cleaned.text)
    return ParseFailure(
        kind=ParseFailureKind.TRUNCATED if truncated else ParseFailureKind.PARSE_ERROR,
        message=error or "invalid structured output",
        raw=raw_text,
        sanitized=repaired,
    )


def _loads_json(text: str) -> tuple[Any, str | None]:
    try:
        return json.loads(text), None
    except json.JSONDecodeError as exc:
        return None, f"{exc.msg} (line {exc.lineno}, column {exc.colno})"


def extract_candidate(raw: str) -> str:
    """Select the substring of ``raw`` most likely to hold the structured value."""

    text = _strip_invisible(raw)
    trimmed = text.strip()
    if not trimmed:
        return _EMPTY_OBJECT

    # A bare object wins over fences nested in its string values.
    if trimmed.startswith("{") and widest_balanced_span(trimmed) == trimmed:
        return trimmed

    fenced = list(_FENCED_BLOCK_RE.finditer(text))
    for match in fenced:
        if match.group("lang").strip().lower() == "json" and match.group("body").strip():
            return match.group("body").strip()
    for match in fenced:
        if match.group("body").strip():
            return match.group("body").strip()

    span = widest_balanced_span(text)
    if span is not None:
        return span
    return trimmed


def widest_balanced_span(text: str) -> str | None:
    """
    Return the longest balanced ``{...}`` or ``[...]`` region of ``text``.

    Double-quoted strings inside a region are skipped so braces in string values do not
    close it. A mismatched closer abandons the region being scanned.
    """

    best: str | None = None
    stack: list[str] = []
    start = -1
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and stack:
            in_string = True
        elif char in _CLOSERS:
            if not stack:
                start = index
            stack.append(char)
        elif char in ("}", "]"):
            if not stack:
                continue
            if _CLOSERS[stack[-1]] != char:
                stack.clear()
                continue
            stack.pop()
            if not stack:
                span = text[start : index + 1]
                if best is None or len(span) > len(best):
                    best = span
    return best


def sanitize(candidate: str) -> SanitizedText:
    text = _strip_invisible(candidate)
    saw_truncation = False
    kept: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if _TRUNCATION_LINE_RE.match(line):
            saw_truncation = True
            continue
        if _FENCE_LINE_RE.match(stripped):
            continue
        if not any(item.strip() for item in kept) and _PREAMBLE_RE.match(stripped):
            continue
        kept.append(line)
    return SanitizedText(text="\n".join(kept).strip(), saw_truncation=saw_truncation)


def repair_json_text(text: str) -> str:
    """
    Rewrite common non-JSON spellings into JSON.

    Handles single-quoted strings, unquoted identifier keys, ``True``/``False``/``None``,
    trailing commas before a closer, and raw newlines inside strings. Anything else is
    copied through unchanged.
    """

    out: list[str] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char in ('"', "'"):
            literal, index = _read_string(text, index)
            out.append(literal)
            continue
        if char == ",":
            lookahead = index + 1
            while lookahead < length and text[lookahead].isspace():
                lookahead += 1
            if lookahead < length and text[lookahead] in ("}", "]"):
                index += 1
                continue
            out.append(char)
            index += 1
            continue
        if char.isdigit() or (char == "-" and index + 1 < length and text[index + 1].isdigit()):
            end = index + 1
            while end < length and (text[end].isalnum() or text[end] in ".+-"):
                end += 1
            out.append(text[index:end])
            index = end
            continue
        if char.isalpha() or char in "_$":
            end = index + 1
            while end < length and (text[end].isalnum() or text[end] in "_$"):
                end += 1
            word = text[index:end]
            lookahead = end
            while lookahead < length and text[lookahead] in " \t":
                lookahead += 1
            if lookahead < length and text[lookahead] == ":":
                out.append(json.dumps(word))
            else:
                out.append(_LITERALS.get(word, word))
            index = end
            continue
        out.append(char)
        index += 1
    return "".join(out)


def _read_string(text: str, start: int) -> tuple[str, int]:
    quote = text[start]
    chars: list[str] = []
    index = start + 1
    length = len(text)
    while index < length:
        char = text[index]
        if char == "\\" and index + 1 < length:
            nxt = text[index + 1]
            if nxt == "'":
                chars.append("'")
            else:
                chars.append(char + nxt)
            index += 2
            continue
        if char == quote:
            return '"' + "".join(chars) + '"', index + 1
        if char == "\n":
            chars.append("\\n")
        elif char == "\r":
            chars.append("\\r")
        elif char == "\t":
            chars.append("\\t")
        elif char == '"':
            chars.append('\\"')
        else:
            chars.append(char)
        index += 1
    # Unterminated string: emit as-is so the strict parser reports it.
    return text[start:], length


def _parse_known_keys(candidate: str, known_keys: Sequence[str]) -> dict[str, Any] | None:
    positions: list[tuple[int, int, str]] = []
    for key in known_keys:
        for match in re.finditer(rf'"{re.escape(key)}"\s*:', candidate):
            positions.append((match.start(), match.end(), key))
    if not positions:
        return None
    positions.sort()

    result: dict[str, Any] = {}
    for position, (_, value_start, key) in enumerate(positions):
        if position + 1 < len(positions):
            next_start = positions[position + 1][0]
            segment = candidate[value_start:next_start]
            comma = segment.rfind(",")
            value_end = value_start + comma if comma != -1 else next_start
        else:
            closing = candidate.rfind("}")
            value_end = closing if closing > value_start else len(candidate)
        result[key] = _decode_keyed_value(candidate[value_start:value_end].strip())
    return result


def _decode_keyed_value(raw_value: str) -> Any:
    if raw_value.startswith('"'):
        content = raw_value[1:]
        if content.endswith('"'):
            content = content[:-1]
        return content.replace("\\n", "\n").replace('\\"', '"')
    for candidate in (raw_value, repair_json_text(raw_value)):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return raw_value


def _strip_invisible(text: str) -> str:
    if text.startswith("\ufeff"):
        text = text[1:]
    return _INVISIBLE_RE.sub("", text)


def _has_inline_truncation(text: str) -> bool:
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _TRUNCATION_GLYPHS:
            return True
    return False


def parse_structured_object(
    raw: str | None,
    *,
    known_keys: Sequence[str] | None = None,
) -> ParseResult:
    """Like ``parse_structured_output`` but a non-object value is a ``parse-error``."""

    result = parse_structured_output(raw, known_keys=known_keys)
    if isinstance(result, ParseFailure) or isinstance(result.value, Mapping):
        return result
    return ParseFailure(
        kind=ParseFailureKind.PARSE_ERROR,
        message=f"expected an object, got {type(result.value).__name__}",
        raw=raw or "",
        sanitized=result.sanitized,
    )


__all__ = [
    "ParseFailure",
    "ParseFailureKind",
    "ParseResult",
    "ParseSuccess",
    "SanitizedText",
    "extract_candidate",
    "parse_structured_object",
    "parse_structured_output",
    "repair_json_text",
    "sanitize",
    "widest_balanced_span",
]
