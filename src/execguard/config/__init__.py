"""
execguard config package public API.

File: src/execguard/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``execguard.toml`` + ``EXECGUARD_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from execguard.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    load_config,
    load_settings,
)
from execguard.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    ExecGuardSettings,
    assert_valid_config,
    default_config,
    merge_config,
    settings_from_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ExecGuardSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "load_settings",
    "merge_config",
    "settings_from_config",
    "validate_config",
]
