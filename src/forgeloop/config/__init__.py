"""
forgeloop config package public API.

File: src/forgeloop/config/__init__.py
Last updated: 2026-10-18

Purpose
- Export config loading/validation entrypoints and public error types.
"""

from forgeloop.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROFILE_ENV,
    ConfigLoadError,
    dump_effective_config,
    load_config,
)
from forgeloop.config.schema import (
    DEFAULT_CONFIG,
    PROFILE_NAMES,
    SCHEMA,
    ConfigIssue,
    ConfigValidationError,
    apply_profile,
    default_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "PROFILE_NAMES",
    "SCHEMA",
    "ConfigIssue",
    "ConfigLoadError",
    "ConfigValidationError",
    "apply_profile",
    "default_config",
    "dump_effective_config",
    "load_config",
    "validate_config",
]
