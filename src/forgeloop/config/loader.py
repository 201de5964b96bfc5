"""
forgeloop — runtime config loader.

File: src/forgeloop/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective config for a run: built-in defaults, then ``forgeloop.toml`` (or a
  ``.yaml``/``.yml`` file), then the selected profile overlay, then ``FORGELOOP_*``
  environment variables, then explicit overrides from the caller.

Functional requirements
- Every schema field has an environment variable ``FORGELOOP_<SECTION>_<FIELD>``, coerced
  to that field's kind; ``FORGELOOP_PROFILE`` selects an overlay when no profile is passed.
- Relative paths resolve against the directory holding the config file.
- An explicitly named config file must exist; the implicit ``./forgeloop.toml`` may not.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml

from forgeloop.config.schema import (
    PATH_FIELDS,
    SCHEMA,
    FieldSpec,
    apply_profile,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "forgeloop.toml"
ENV_PREFIX: Final[str] = "FORGELOOP_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})
_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """The config file could not be read, or an override could not be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Return the validated effective config.

    ``overrides`` maps dotted field paths (``"limits.max_steps"``) to values and wins over
    everything else. ``environ`` defaults to ``os.environ``.
    """

    env = os.environ if environ is None else environ
    if config_path is None:
        path = (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    else:
        path = Path(config_path).expanduser().resolve()

    config = validate_config(
        merge_config(default_config(), read_config_file(path, required=config_path is not None))
    )
    selected = profile if profile is not None else env.get(PROFILE_ENV)
    if selected:
        config = apply_profile(config, selected.strip())
    config = merge_config(config, env_overrides(env))
    config = merge_config(config, _nest_dotted(overrides or {}))
    return validate_config(resolve_paths(config, base_dir=path.parent))


def read_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    """Parse one TOML or YAML file; a missing optional file reads as empty."""

    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path.as_posix()}")
        return {}
    try:
        if path.suffix.lower() in _YAML_SUFFIXES:
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle)
        else:
            with path.open("rb") as handle:
                loaded = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path.as_posix()}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"invalid YAML in {path.as_posix()}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read {path.as_posix()}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigLoadError(f"config root must be an object: {path.as_posix()}")
    return dict(loaded)


def env_name(section: str, key: str) -> str:
    return f"{ENV_PREFIX}{section.upper()}_{key.upper()}"


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``FORGELOOP_<SECTION>_<FIELD>`` variables into a nested override mapping."""

    found: dict[str, Any] = {}
    for section, fields in SCHEMA.items():
        for key, spec in fields.items():
            name = env_name(section, key)
            if name in environ:
                found.setdefault(section, {})[key] = _coerce_env(name, environ[name], spec)
    return found


def resolve_paths(config: Mapping[str, Any], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy with every path field made absolute against ``base_dir``."""

    resolved = merge_config({}, config)
    for section, key in PATH_FIELDS:
        values = resolved.get(section)
        if isinstance(values, dict) and isinstance(values.get(key), str):
            expanded = Path(os.path.expandvars(values[key])).expanduser()
            values[key] = Path(os.path.normpath(base_dir / expanded)).as_posix()
    return resolved


def dump_effective_config(config: Mapping[str, Any]) -> str:
    """Return the redacted config as compact, key-sorted JSON."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _coerce_env(name: str, raw: str, spec: FieldSpec) -> object:
    value = raw.strip()
    if spec.kind in ("int", "float"):
        try:
            return int(value) if spec.kind == "int" else float(value)
        except ValueError as exc:
            expected = "an integer" if spec.kind == "int" else "a number"
            raise ConfigLoadError(f"{name} must be {expected}, got {raw!r}") from exc
    if spec.kind == "bool":
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ConfigLoadError(f"{name} must be a boolean (true/false, 1/0, yes/no, on/off)")
    if spec.kind == "extensions":
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _nest_dotted(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for dotted, value in overrides.items():
        parts = [part for part in str(dotted).split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid override key {dotted!r}")
        cursor = nested
        for part in parts[:-1]:
            if not isinstance(cursor.get(part), dict):
                cursor[part] = {}
            cursor = cursor[part]
        cursor[parts[-1]] = value
    return nested


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "ConfigLoadError",
    "dump_effective_config",
    "env_name",
    "env_overrides",
    "load_config",
    "read_config_file",
    "resolve_paths",
]
