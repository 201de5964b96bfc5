"""
forgeloop — configuration schema.

File: src/forgeloop/config/schema.py
Last updated: 2026-10-18

Purpose
- Declare every forgeloop config section (``run``, ``limits``, ``patching``, ``paths``,
  ``observability``) once, as a table of typed fields, and validate payloads against it.

What should be included in this file
- Built-in defaults and the strict/fast/smoke/yolo profile overlays.
- Table-driven validation that reports every issue with its dotted path.
- Deep merge and redaction helpers used by the loader.

Functional requirements
- ``validate_config`` returns the normalized config or raises ``ConfigValidationError``
  carrying all issues, sorted by path.
- Overlays under ``profiles.<name>`` may set any field outside ``meta``; applying one
  re-validates the merged result.
- Keys that look like credentials are rejected in config and redacted in dumps.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from forgeloop.constants import (
    CACHE_DIR,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_RUN_SECONDS,
    DEFAULT_MAX_WEB_REQUESTS,
    FUZZY_DELETE_THRESHOLD,
    FUZZY_MATCH_THRESHOLD,
    FUZZY_MAX_CHANGED_LINES,
    LOG_DIR,
    LOOP_THRESHOLD,
    MAX_READ_BYTES,
    MAX_REPEATED_PATCHES,
    MAX_STEPS,
    RUNS_DIR,
    STUCK_WINDOW,
)
from forgeloop.integration_plane.patching import DEFAULT_FUZZY_EXTENSIONS

FieldKind = Literal["int", "float", "bool", "path", "choice", "extensions"]

PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "fast", "smoke", "yolo")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
REDACTED: Final[str] = "<redacted>"

_EXTENSION_RE: Final = re.compile(r"^\.[A-Za-z0-9_+-]+$")
_PROFILE_NAME_RE: Final = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_RE: Final = re.compile(r"([a-z0-9])([A-Z])")
_KEY_SPLIT_RE: Final = re.compile(r"[^a-z0-9]+")
_SECRET_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "apikey",
        "auth",
        "authorization",
        "cookie",
        "credential",
        "credentials",
        "key",
        "passphrase",
        "passwd",
        "password",
        "secret",
        "token",
    }
)
_INVALID: Final = object()


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Type and bounds of one config field."""

    kind: FieldKind
    minimum: int | float | None = None
    maximum: int | float | None = None
    choices: tuple[str, ...] = ()
    required: bool = True


def _count(minimum: int, *, required: bool = True) -> FieldSpec:
    return FieldSpec("int", minimum=minimum, required=required)


def _ratio() -> FieldSpec:
    return FieldSpec("float", minimum=0.0, maximum=1.0)


SCHEMA: Final[Mapping[str, Mapping[str, FieldSpec]]] = {
    "meta": {"schema_version": _count(1)},
    "run": {
        "profile": FieldSpec("choice", choices=PROFILE_NAMES),
        # 0 disables the wall-clock ceiling.
        "max_run_seconds": _count(0),
        # 0 defers to the profile's coder turn allowance.
        "max_coder_turns": _count(0),
        "command_timeout_seconds": _count(1),
        "test_timeout_seconds": _count(1),
    },
    "limits": {
        "max_steps": _count(1),
        "loop_threshold": _count(1),
        "stuck_window": _count(2),
        "max_web_requests": _count(0),
        "max_read_bytes": _count(1),
        "max_repeated_patches": _count(1),
        # Absent means the profile ceiling applies.
        "max_commands": _count(0, required=False),
        "max_test_runs": _count(0, required=False),
    },
    "patching": {
        "match_threshold": _ratio(),
        "delete_threshold": _ratio(),
        "fuzzy_max_changed_lines": _count(0),
        "fuzzy_extensions": FieldSpec("extensions"),
    },
    "paths": {
        "workspace_root": FieldSpec("path"),
        "runs_dir": FieldSpec("path"),
        "cache_dir": FieldSpec("path"),
    },
    "observability": {
        "log_level": FieldSpec("choice", choices=LOG_LEVELS),
        "log_format": FieldSpec("choice", choices=("console", "json")),
        "log_dir": FieldSpec("path"),
        "redact_secrets": FieldSpec("bool"),
    },
}

_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(name for name in SCHEMA if name != "meta")

PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = tuple(
    (section, key)
    for section, fields in SCHEMA.items()
    for key, spec in fields.items()
    if spec.kind == "path"
)

DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "run": {
        "profile": "fast",
        "max_run_seconds": DEFAULT_MAX_RUN_SECONDS,
        "max_coder_turns": 0,
        "command_timeout_seconds": 60,
        "test_timeout_seconds": 120,
    },
    "limits": {
        "max_steps": MAX_STEPS,
        "loop_threshold": LOOP_THRESHOLD,
        "stuck_window": STUCK_WINDOW,
        "max_web_requests": DEFAULT_MAX_WEB_REQUESTS,
        "max_read_bytes": MAX_READ_BYTES,
        "max_repeated_patches": MAX_REPEATED_PATCHES,
    },
    "patching": {
        "match_threshold": FUZZY_MATCH_THRESHOLD,
        "delete_threshold": FUZZY_DELETE_THRESHOLD,
        "fuzzy_max_changed_lines": FUZZY_MAX_CHANGED_LINES,
        "fuzzy_extensions": sorted(DEFAULT_FUZZY_EXTENSIONS),
    },
    "paths": {
        "workspace_root": ".",
        "runs_dir": str(RUNS_DIR),
        "cache_dir": str(CACHE_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": str(LOG_DIR),
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {"run": {"profile": "strict"}},
        "fast": {"run": {"profile": "fast"}},
        "smoke": {
            "run": {"profile": "smoke", "max_run_seconds": 120},
            "limits": {"max_steps": 20},
        },
        "yolo": {"run": {"profile": "yolo", "max_run_seconds": 900}},
    },
}


@dataclass(frozen=True, slots=True)
class ConfigIssue:
    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised with every issue found in a config payload."""

    def __init__(self, issues: Sequence[ConfigIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


def default_config() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG)


def config_issues(config: object) -> tuple[ConfigIssue, ...]:
    """Return every validation issue in ``config``; empty when it is valid."""

    _, issues = _check(config)
    return issues


def validate_config(config: object) -> dict[str, Any]:
    """Return the normalized config or raise ``ConfigValidationError``."""

    normalized, issues = _check(config)
    if issues:
        raise ConfigValidationError(issues)
    return normalized


def apply_profile(config: Mapping[str, Any], profile: str) -> dict[str, Any]:
    """Merge the ``profiles.<profile>`` overlay onto ``config`` and re-validate."""

    profiles = config.get("profiles")
    overlay = profiles.get(profile) if isinstance(profiles, Mapping) else None
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigIssue("profiles", f"profile {profile!r} is not defined"),)
        )
    return validate_config(merge_config(config, overlay))


def merge_config(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; non-mapping values replace."""

    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def is_sensitive_key(key: str) -> bool:
    """True for keys naming a credential; ``*_env`` keys name a variable, not a value."""

    tokens = [item for item in _KEY_SPLIT_RE.split(_CAMEL_RE.sub(r"\1_\2", key).lower()) if item]
    if not tokens or tokens[-1] == "env":
        return False
    return any(token in _SECRET_TOKENS for token in tokens)


def redact_config(value: Any) -> Any:
    """Return a key-sorted copy with sensitive values replaced by ``<redacted>``."""

    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if is_sensitive_key(str(key)) else redact_config(item)
            for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))
        }
    if isinstance(value, (list, tuple)):
        return [redact_config(item) for item in value]
    return value


def _check(config: object) -> tuple[dict[str, Any], tuple[ConfigIssue, ...]]:
    if not isinstance(config, Mapping):
        return {}, (ConfigIssue("<root>", f"expected object, got {type(config).__name__}"),)

    issues: list[ConfigIssue] = []
    _reject_unknown(config, (*SCHEMA, "profiles"), "", issues)
    normalized = _check_sections(config, "", tuple(SCHEMA), issues, partial=False)

    version = normalized.get("meta", {}).get("schema_version")
    if isinstance(version, int) and version != CONFIG_SCHEMA_VERSION:
        issues.append(ConfigIssue("meta.schema_version", _version_message(version)))

    profiles = config.get("profiles", {})
    if not isinstance(profiles, Mapping):
        issues.append(ConfigIssue("profiles", f"expected object, got {type(profiles).__name__}"))
    else:
        normalized["profiles"] = _check_profiles(profiles, issues)

    return normalized, tuple(sorted(issues, key=lambda issue: issue.path))


def _check_profiles(profiles: Mapping[str, Any], issues: list[ConfigIssue]) -> dict[str, Any]:
    checked: dict[str, Any] = {}
    for name in sorted(profiles, key=str):
        path = f"profiles.{name}"
        overlay = profiles[name]
        if not _PROFILE_NAME_RE.fullmatch(str(name)):
            issues.append(ConfigIssue(path, "profile names must match ^[a-z][a-z0-9_-]*$"))
            continue
        if not isinstance(overlay, Mapping):
            issues.append(ConfigIssue(path, f"expected object, got {type(overlay).__name__}"))
            continue
        _reject_unknown(overlay, _OVERLAY_SECTIONS, path, issues)
        present = tuple(section for section in _OVERLAY_SECTIONS if section in overlay)
        checked[str(name)] = _check_sections(overlay, path, present, issues, partial=True)
    return checked


def _check_sections(
    payload: Mapping[str, Any],
    prefix: str,
    sections: tuple[str, ...],
    issues: list[ConfigIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for section in sections:
        path = _join(prefix, section)
        if section not in payload:
            issues.append(ConfigIssue(path, "missing required field"))
            continue
        raw = payload[section]
        if not isinstance(raw, Mapping):
            issues.append(ConfigIssue(path, f"expected object, got {type(raw).__name__}"))
            continue
        normalized[section] = _check_fields(raw, SCHEMA[section], path, issues, partial=partial)

    limits = normalized.get("limits", {})
    max_steps, loop_threshold = limits.get("max_steps"), limits.get("loop_threshold")
    if max_steps is not None and loop_threshold is not None and loop_threshold > max_steps:
        issues.append(
            ConfigIssue(_join(prefix, "limits.loop_threshold"), "must be <= limits.max_steps")
        )
    return normalized


def _check_fields(
    raw: Mapping[str, Any],
    fields: Mapping[str, FieldSpec],
    path: str,
    issues: list[ConfigIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown(raw, tuple(fields), path, issues)
    normalized: dict[str, Any] = {}
    for key, spec in fields.items():
        field_path = _join(path, key)
        if key not in raw:
            if spec.required and not partial:
                issues.append(ConfigIssue(field_path, "missing required field"))
            continue
        value = _coerce(spec, raw[key], field_path, issues)
        if value is not _INVALID:
            normalized[key] = value
    return normalized


def _coerce(spec: FieldSpec, value: object, path: str, issues: list[ConfigIssue]) -> object:
    def fail(message: str, at: str = path) -> object:
        issues.append(ConfigIssue(at, message))
        return _INVALID

    if spec.kind == "bool":
        if not isinstance(value, bool):
            return fail(f"expected boolean, got {type(value).__name__}")
        return value

    if spec.kind in ("int", "float"):
        number: int | float
        if isinstance(value, int) and not isinstance(value, bool):
            number = value if spec.kind == "int" else float(value)
        elif spec.kind == "float" and isinstance(value, float):
            number = value
        else:
            expected = "integer" if spec.kind == "int" else "number"
            return fail(f"expected {expected}, got {type(value).__name__}")
        if not math.isfinite(number):
            return fail("must be finite")
        if spec.minimum is not None and number < spec.minimum:
            return fail(f"must be >= {spec.minimum}")
        if spec.maximum is not None and number > spec.maximum:
            return fail(f"must be <= {spec.maximum}")
        return number

    if spec.kind == "extensions":
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            return fail(f"expected list of strings, got {type(value).__name__}")
        found: set[str] = set()
        valid = True
        for index, item in enumerate(value):
            if not isinstance(item, str) or not _EXTENSION_RE.fullmatch(item.strip()):
                fail("must be a file extension starting with '.' (example: .py)", f"{path}[{index}]")
                valid = False
                continue
            found.add(item.strip().lower())
        return sorted(found) if valid else _INVALID

    if not isinstance(value, str):
        return fail(f"expected string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        return fail("must not be empty")
    if spec.kind == "choice" and text not in spec.choices:
        return fail(f"invalid value {text!r}; expected one of: {', '.join(sorted(spec.choices))}")
    if spec.kind == "path" and "\x00" in text:
        return fail("must not contain NUL bytes")
    return text


def _reject_unknown(
    payload: Mapping[str, Any], allowed: Sequence[str], prefix: str, issues: list[ConfigIssue]
) -> None:
    for key in payload:
        if key in allowed:
            continue
        message = (
            "embedded secret values are forbidden" if is_sensitive_key(str(key)) else "unknown field"
        )
        issues.append(ConfigIssue(_join(prefix, str(key)), message))


def _version_message(found: int) -> str:
    relation = "older" if found < CONFIG_SCHEMA_VERSION else "newer"
    return (
        f"schema version {found} is {relation} than supported {CONFIG_SCHEMA_VERSION}; "
        "update meta.schema_version and re-check forgeloop.toml against the current defaults"
    )


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PROFILE_NAMES",
    "REDACTED",
    "SCHEMA",
    "ConfigIssue",
    "ConfigValidationError",
    "FieldKind",
    "FieldSpec",
    "apply_profile",
    "config_issues",
    "default_config",
    "is_sensitive_key",
    "merge_config",
    "redact_config",
    "validate_config",
]
