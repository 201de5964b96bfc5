"""
forgeloop — unit tests for config schema validation

File: tests/unit/config/test_schema.py
Last updated: 2026-10-18

Purpose
- Validate the field table, structured issues, profile overlays, and redaction.

What this test file should cover
- The repository's live forgeloop.toml validates and matches the built-in defaults.
- Unknown keys, embedded secrets, type and range violations report exact paths.
- Overlays are re-validated after merging.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import pytest

from forgeloop.config.schema import (
    SCHEMA,
    ConfigValidationError,
    apply_profile,
    config_issues,
    default_config,
    is_sensitive_key,
    merge_config,
    redact_config,
    validate_config,
)
from forgeloop.constants import CONFIG_SCHEMA_VERSION

REPO_ROOT = Path(__file__).resolve().parents[3]


def _load_toml(path: Path) -> dict[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _issues(config: object) -> dict[str, str]:
    found = config_issues(config)
    assert found
    return {issue.path: issue.message for issue in found}


@pytest.mark.unit
def test_forgeloop_toml_validates_and_matches_defaults() -> None:
    from_file = validate_config(_load_toml(REPO_ROOT / "forgeloop.toml"))

    assert from_file["meta"]["schema_version"] == CONFIG_SCHEMA_VERSION
    assert set(from_file["profiles"]) == {"strict", "fast", "smoke", "yolo"}
    assert from_file == validate_config(default_config())


def test_every_required_default_has_a_schema_entry() -> None:
    config = default_config()

    for section, fields in SCHEMA.items():
        required = {key for key, spec in fields.items() if spec.required}
        assert required <= set(config[section]), section


def test_unknown_key_rejection_is_explicit() -> None:
    config = default_config()
    config["run"]["colour"] = "blue"

    assert _issues(config)["run.colour"] == "unknown field"


def test_embedded_secret_is_rejected() -> None:
    config = default_config()
    config["limits"]["api_key"] = "sk-FAKE"

    assert _issues(config)["limits.api_key"] == "embedded secret values are forbidden"


def test_type_validation_reports_structured_paths() -> None:
    config = default_config()
    config["limits"]["max_steps"] = "three"
    config["observability"]["redact_secrets"] = "yes"

    issues = _issues(config)

    assert issues["limits.max_steps"] == "expected integer, got str"
    assert issues["observability.redact_secrets"] == "expected boolean, got str"


@pytest.mark.parametrize(
    ("section", "key", "value", "message"),
    [
        ("limits", "max_steps", 0, "must be >= 1"),
        ("limits", "stuck_window", 1, "must be >= 2"),
        ("limits", "max_commands", -1, "must be >= 0"),
        ("run", "command_timeout_seconds", 0, "must be >= 1"),
        ("patching", "match_threshold", 1.5, "must be <= 1.0"),
        ("observability", "log_level", "LOUD", "invalid value 'LOUD'"),
        ("run", "profile", "turbo", "expected one of: fast, smoke, strict, yolo"),
        ("paths", "runs_dir", "  ", "must not be empty"),
    ],
)
def test_range_violation_reports_exact_path(
    section: str, key: str, value: object, message: str
) -> None:
    config = default_config()
    config[section][key] = value

    assert message in _issues(config)[f"{section}.{key}"]


def test_zero_disables_wall_clock_and_coder_turn_overrides() -> None:
    config = default_config()
    config["run"]["max_run_seconds"] = 0
    config["run"]["max_coder_turns"] = 0

    assert config_issues(config) == ()


def test_loop_threshold_cannot_exceed_max_steps() -> None:
    config = default_config()
    config["limits"]["max_steps"] = 4
    config["limits"]["loop_threshold"] = 5

    assert _issues(config)["limits.loop_threshold"] == "must be <= limits.max_steps"


def test_missing_section_and_newer_schema_version() -> None:
    config = default_config()
    del config["paths"]
    config["meta"]["schema_version"] = CONFIG_SCHEMA_VERSION + 1

    issues = _issues(config)

    assert issues["paths"] == "missing required field"
    assert "newer than supported" in issues["meta.schema_version"]


def test_non_mapping_root_is_rejected() -> None:
    assert _issues(["not", "a", "mapping"]) == {"<root>": "expected object, got list"}


def test_validation_error_lists_every_issue_in_path_order() -> None:
    config = default_config()
    config["run"]["profile"] = "turbo"
    config["limits"]["max_steps"] = 0

    with pytest.raises(ConfigValidationError) as excinfo:
        validate_config(config)

    assert [issue.path for issue in excinfo.value.issues] == ["limits.max_steps", "run.profile"]
    assert "- run.profile:" in str(excinfo.value)


def test_fuzzy_extensions_are_normalized_and_checked() -> None:
    config = default_config()
    config["patching"]["fuzzy_extensions"] = [".PY", ".ts", ".py"]

    assert validate_config(config)["patching"]["fuzzy_extensions"] == [".py", ".ts"]

    config["patching"]["fuzzy_extensions"] = ["py"]
    assert "must be a file extension" in _issues(config)["patching.fuzzy_extensions[0]"]


@pytest.mark.unit
def test_profile_overlay_is_applied_and_revalidated() -> None:
    effective = apply_profile(default_config(), "smoke")

    assert effective["run"]["profile"] == "smoke"
    assert effective["run"]["max_run_seconds"] == 120
    assert effective["limits"]["max_steps"] == 20
    assert effective["limits"]["loop_threshold"] == 5


def test_unknown_profile_raises_structured_error() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        apply_profile(default_config(), "nope")

    [issue] = excinfo.value.issues
    assert issue.path == "profiles"
    assert issue.message == "profile 'nope' is not defined"


def test_invalid_overlay_value_is_reported_under_profile_path() -> None:
    config = default_config()
    config["profiles"]["broken"] = {"limits": {"max_steps": -1}, "meta": {"schema_version": 2}}

    issues = _issues(config)

    assert issues["profiles.broken.limits.max_steps"] == "must be >= 1"
    assert issues["profiles.broken.meta"] == "unknown field"


def test_merge_config_is_deep_and_non_destructive() -> None:
    base = {"run": {"profile": "fast", "max_run_seconds": 300}}

    merged = merge_config(base, {"run": {"max_run_seconds": 60}})

    assert merged == {"run": {"profile": "fast", "max_run_seconds": 60}}
    assert base["run"]["max_run_seconds"] == 300


@pytest.mark.parametrize(
    ("key", "sensitive"),
    [
        ("api_key", True),
        ("authToken", True),
        ("client_secret", True),
        ("api_key_env", False),
        ("redact_secrets", False),
        ("max_read_bytes", False),
    ],
)
def test_sensitive_key_detection(key: str, sensitive: bool) -> None:
    assert is_sensitive_key(key) is sensitive


def test_redaction_is_recursive_and_non_destructive() -> None:
    config = {
        "observability": {"redact_secrets": True, "log_dir": "logs"},
        "extra": {"nested": [{"authToken": "abc"}], "client_secret": "xyz"},
    }

    redacted = redact_config(config)

    assert redacted == {
        "extra": {"client_secret": "<redacted>", "nested": [{"authToken": "<redacted>"}]},
        "observability": {"log_dir": "logs", "redact_secrets": True},
    }
    assert list(redacted) == ["extra", "observability"]
    assert config["extra"]["client_secret"] == "xyz"
