"""
forgeloop — unit tests for the tolerant structured-output parser

File: tests/unit/synthesis_plane/test_structured_output.py
Last updated: 2026-10-18

Purpose
- Validate candidate extraction, sanitization, repair, and failure classification.

What this test file should cover
- Fenced, prose-wrapped, and bare payloads.
- Repairs for single quotes, unquoted keys, Python literals, trailing commas, raw newlines.
- Truncation detection and the known-keys strategy.
"""

from __future__ import annotations

import json

import pytest

from forgeloop.synthesis_plane.structured_output import (
    ParseFailure,
    ParseFailureKind,
    ParseSuccess,
    extract_candidate,
    parse_structured_object,
    parse_structured_output,
    repair_json_text,
    sanitize,
    widest_balanced_span,
)

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st

    HYPOTHESIS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - fallback path
    HYPOTHESIS_AVAILABLE = False


def _success(result: ParseSuccess | ParseFailure) -> ParseSuccess:
    assert isinstance(result, ParseSuccess), result
    return result


@pytest.mark.unit
def test_strict_json_object() -> None:
    result = _success(parse_structured_output('{"next": "coder", "reason": "ok"}'))

    assert result.value == {"next": "coder", "reason": "ok"}
    assert result.strategy == "strict"
    assert result.ok


def test_json_fence_inside_prose() -> None:
    raw = 'Sure! Here you go:\n```json\n{"next": "planner"}\n```\nThanks'

    result = _success(parse_structured_output(raw))

    assert result.value == {"next": "planner"}


def test_any_fence_is_used_when_no_json_fence_exists() -> None:
    raw = "Plan below.\n```\n[1, 2, 3]\n```"

    assert _success(parse_structured_output(raw)).value == [1, 2, 3]


def test_json_fence_wins_over_bracketed_log_prefix() -> None:
    raw = '[2026-10-18 12:00:00 INFO planner] decision:\n```json\n{"next": "coder"}\n```'

    result = _success(parse_structured_output(raw))

    assert result.value == {"next": "coder"}
    assert result.strategy == "strict"


def test_json_fence_wins_over_leading_object_followed_by_prose() -> None:
    raw = '{"draft": "a much longer first attempt"} was wrong:\n```json\n{"next": "verifier"}\n```'

    assert _success(parse_structured_output(raw)).value == {"next": "verifier"}


def test_braces_inside_prose_without_fence() -> None:
    assert _success(parse_structured_output('I think {"a": 1} is right')).value == {"a": 1}


def test_leading_brace_keeps_inner_fence_in_string_value() -> None:
    raw = '{"plan": "use ```py fences``` for code", "next": "coder"}'

    result = _success(parse_structured_output(raw))

    assert result.value["plan"] == "use ```py fences``` for code"


@pytest.mark.unit
def test_repairs_python_style_object() -> None:
    raw = "{'next': 'coder', done: True, 'items': [1, 2,], 'plan': None,}"

    result = _success(parse_structured_output(raw))

    assert result.strategy == "repaired"
    assert result.value == {"next": "coder", "done": True, "items": [1, 2], "plan": None}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"a":1,"b":2,}', {"a": 1, "b": 2}),
        ("{'a':1}", {"a": 1}),
        ("{a:1}", {"a": 1}),
    ],
)
def test_tolerated_syntax_matches_canonical_json(raw: str, expected: dict[str, int]) -> None:
    result = _success(parse_structured_output(raw))

    assert result.value == expected
    assert result.value == _success(parse_structured_output(json.dumps(expected))).value


def test_repairs_raw_newline_inside_string() -> None:
    result = _success(parse_structured_output('{"reason": "line one\nline two"}'))

    assert result.value == {"reason": "line one\nline two"}
    assert result.strategy == "repaired"


def test_yaml_flow_tier_reads_bare_scalars() -> None:
    result = _success(parse_structured_output("{a: 1, b: [x, y]}"))

    assert result.strategy == "yaml"
    assert result.value == {"a": 1, "b": ["x", "y"]}


def test_invisible_characters_are_stripped() -> None:
    result = _success(parse_structured_output('\ufeff{\u200b"a": 1}'))

    assert result.value == {"a": 1}


def test_truncation_marker_lines_are_dropped() -> None:
    raw = '{\n  "next": "coder",\n  ⋮\n  "reason": "x"\n}'

    assert _success(parse_structured_output(raw)).value == {"next": "coder", "reason": "x"}


@pytest.mark.parametrize("raw", ["", "   ", None])
def test_blank_input_is_an_empty_object(raw: str | None) -> None:
    result = _success(parse_structured_output(raw))

    assert result.value == {}
    assert result.strategy == "empty"


def test_only_truncation_marker_is_truncated_failure() -> None:
    result = parse_structured_output("⋮")

    assert isinstance(result, ParseFailure)
    assert result.kind is ParseFailureKind.TRUNCATED
    assert not result.ok
    assert result.to_dict()["kind"] == "truncated"


@pytest.mark.parametrize("raw", ['{"a": 1, …', '{"x": ⋮'])
def test_inline_truncation_is_truncated_failure(raw: str) -> None:
    result = parse_structured_output(raw)

    assert isinstance(result, ParseFailure)
    assert result.kind is ParseFailureKind.TRUNCATED


def test_prose_is_a_parse_error() -> None:
    result = parse_structured_output("this is not json at all")

    assert isinstance(result, ParseFailure)
    assert result.kind is ParseFailureKind.PARSE_ERROR
    assert result.raw == "this is not json at all"
    assert "line 1" in result.message


def test_known_keys_survive_unescaped_quotes() -> None:
    raw = '{"next": "coder", "reason": "he said "hi" loudly"}'

    result = _success(parse_structured_output(raw, known_keys=["next", "reason"]))

    assert result.strategy == "known_keys"
    assert result.value == {"next": "coder", "reason": 'he said "hi" loudly'}


def test_known_keys_decode_non_string_values() -> None:
    raw = '{"next": "done", "partial": true}'

    result = _success(parse_structured_output(raw, known_keys=["next", "partial"]))

    assert result.value == {"next": "done", "partial": True}


def test_unmatched_known_keys_fall_back_to_json() -> None:
    result = _success(parse_structured_output('{"a": 1}', known_keys=["next"]))

    assert result.strategy == "strict"


def test_parse_structured_object_rejects_arrays() -> None:
    result = parse_structured_object("[1, 2]")

    assert isinstance(result, ParseFailure)
    assert result.kind is ParseFailureKind.PARSE_ERROR
    assert result.message == "expected an object, got list"
    assert _success(parse_structured_object('{"a": 1}')).value == {"a": 1}


def test_widest_balanced_span_ignores_braces_in_strings() -> None:
    assert widest_balanced_span('a {"x": "}"} b [1, [2]] {') == '{"x": "}"}'
    assert widest_balanced_span("{]") is None
    assert widest_balanced_span("no braces") is None


def test_extract_candidate_prefers_json_fence() -> None:
    raw = "```text\nnot it\n```\n```json\n{\"b\": 2}\n```"

    assert extract_candidate(raw) == '{"b": 2}'
    assert extract_candidate("   ") == "{}"


def test_sanitize_drops_preamble_and_stray_fences() -> None:
    cleaned = sanitize('Here is the JSON:\n```\n{"a": 2}\n```')

    assert cleaned.text == '{"a": 2}'
    assert not cleaned.saw_truncation


def test_repair_json_text_leaves_valid_json_alone() -> None:
    text = '{"a": [1, -2.5e3, "x, y"], "b": {"c": false}}'

    assert repair_json_text(text) == text


if HYPOTHESIS_AVAILABLE:

    @settings(max_examples=60, deadline=None)
    @given(st.text(max_size=200))
    def test_property_parser_never_raises(raw: str) -> None:
        result = parse_structured_output(raw)

        assert isinstance(result, (ParseSuccess, ParseFailure))
