"""
execguard — configuration schema and validation.

File: src/execguard/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules, and turn a
  validated payload into the frozen :class:`ExecGuardSettings` tree.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields (store URL credentials included).

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown fields and embedded secrets.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal, TypedDict

from execguard import constants as c

ConfigSchemaVersion: Final[int] = c.CONFIG_SCHEMA_VERSION
STORE_BACKENDS: Final[tuple[str, ...]] = ("memory", "redis")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_URL_CREDENTIALS = re.compile(r"^([a-z][a-z0-9+.-]*://)([^/@]*)@", re.IGNORECASE)

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)


class MetaConfig(TypedDict):
    schema_version: int


class RateLimitConfig(TypedDict):
    max_executions: int
    window_ms: int


class LocksConfig(TypedDict):
    ttl_ms: int
    lock_timeout_ms: int
    retry_interval_ms: int
    max_retry_interval_ms: int
    read_helper_ttl_ms: int
    read_count_ttl_ms: int
    auto_renew: bool
    key_prefix: str


class SandboxConfig(TypedDict):
    timeout_ms: int
    memory_limit_bytes: int
    cpu_limit: float
    allow_network: bool
    max_output_bytes: int
    kill_grace_ms: int
    container_image: str
    container_binary: str
    max_concurrency: int
    scratch_dir: str


class RecoveryConfig(TypedDict):
    retry_attempts: int
    retry_delay_ms: int
    backoff_multiplier: float
    policies_file: str


class CircuitBreakerConfig(TypedDict):
    failure_threshold: int
    reset_timeout_ms: int
    half_open_max_calls: int


class StoreConfig(TypedDict):
    backend: Literal["memory", "redis"]
    url: str


class ValidationConfig(TypedDict):
    max_arg_length: int
    max_code_length: int
    max_args: int


class ObservabilityConfig(TypedDict):
    log_level: str
    json: bool


class ExecGuardConfig(TypedDict):
    meta: MetaConfig
    rate_limit: RateLimitConfig
    locks: LocksConfig
    sandbox: SandboxConfig
    recovery: RecoveryConfig
    circuit_breaker: CircuitBreakerConfig
    store: StoreConfig
    validation: ValidationConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ExecGuardConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "rate_limit": {
        "max_executions": c.DEFAULT_MAX_EXECUTIONS,
        "window_ms": c.DEFAULT_WINDOW_MS,
    },
    "locks": {
        "ttl_ms": c.DEFAULT_LOCK_TTL_MS,
        "lock_timeout_ms": c.DEFAULT_LOCK_TIMEOUT_MS,
        "retry_interval_ms": c.DEFAULT_LOCK_RETRY_INTERVAL_MS,
        "max_retry_interval_ms": c.DEFAULT_LOCK_MAX_RETRY_INTERVAL_MS,
        "read_helper_ttl_ms": c.DEFAULT_READ_HELPER_TTL_MS,
        "read_count_ttl_ms": c.DEFAULT_READ_COUNT_TTL_MS,
        "auto_renew": False,
        "key_prefix": c.DEFAULT_KEY_PREFIX,
    },
    "sandbox": {
        "timeout_ms": c.DEFAULT_TIMEOUT_MS,
        "memory_limit_bytes": c.DEFAULT_MEMORY_LIMIT_BYTES,
        "cpu_limit": c.DEFAULT_CPU_LIMIT,
        "allow_network": False,
        "max_output_bytes": c.DEFAULT_MAX_OUTPUT_BYTES,
        "kill_grace_ms": c.DEFAULT_KILL_GRACE_MS,
        "container_image": c.DEFAULT_CONTAINER_IMAGE,
        "container_binary": c.DEFAULT_CONTAINER_BINARY,
        "max_concurrency": 0,
        "scratch_dir": "",
    },
    "recovery": {
        "retry_attempts": c.DEFAULT_RETRY_ATTEMPTS,
        "retry_delay_ms": c.DEFAULT_RETRY_DELAY_MS,
        "backoff_multiplier": c.DEFAULT_BACKOFF_MULTIPLIER,
        "policies_file": "",
    },
    "circuit_breaker": {
        "failure_threshold": c.DEFAULT_FAILURE_THRESHOLD,
        "reset_timeout_ms": c.DEFAULT_RESET_TIMEOUT_MS,
        "half_open_max_calls": 1,
    },
    "store": {"backend": "memory", "url": "redis://localhost:6379/0"},
    "validation": {
        "max_arg_length": c.DEFAULT_MAX_ARG_LENGTH,
        "max_code_length": c.DEFAULT_MAX_CODE_LENGTH,
        "max_args": c.DEFAULT_MAX_ARGS,
    },
    "observability": {"log_level": "INFO", "json": True},
}

# Config paths that hold filesystem paths; the loader resolves them against the file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("sandbox", "scratch_dir"),
    ("recovery", "policies_file"),
)


# ---------------------------------------------------------------------------
# Typed settings tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RateLimitSettings:
    max_executions: int = c.DEFAULT_MAX_EXECUTIONS
    window_ms: int = c.DEFAULT_WINDOW_MS


@dataclass(frozen=True, slots=True)
class LockSettings:
    ttl_ms: int = c.DEFAULT_LOCK_TTL_MS
    lock_timeout_ms: int = c.DEFAULT_LOCK_TIMEOUT_MS
    retry_interval_ms: int = c.DEFAULT_LOCK_RETRY_INTERVAL_MS
    max_retry_interval_ms: int = c.DEFAULT_LOCK_MAX_RETRY_INTERVAL_MS
    read_helper_ttl_ms: int = c.DEFAULT_READ_HELPER_TTL_MS
    read_count_ttl_ms: int = c.DEFAULT_READ_COUNT_TTL_MS
    auto_renew: bool = False
    key_prefix: str = c.DEFAULT_KEY_PREFIX


@dataclass(frozen=True, slots=True)
class SandboxSettings:
    timeout_ms: int = c.DEFAULT_TIMEOUT_MS
    memory_limit_bytes: int = c.DEFAULT_MEMORY_LIMIT_BYTES
    cpu_limit: float = c.DEFAULT_CPU_LIMIT
    allow_network: bool = False
    max_output_bytes: int = c.DEFAULT_MAX_OUTPUT_BYTES
    kill_grace_ms: int = c.DEFAULT_KILL_GRACE_MS
    container_image: str = c.DEFAULT_CONTAINER_IMAGE
    container_binary: str = c.DEFAULT_CONTAINER_BINARY
    max_concurrency: int = 0
    scratch_dir: str = ""


@dataclass(frozen=True, slots=True)
class RecoverySettings:
    retry_attempts: int = c.DEFAULT_RETRY_ATTEMPTS
    retry_delay_ms: int = c.DEFAULT_RETRY_DELAY_MS
    backoff_multiplier: float = c.DEFAULT_BACKOFF_MULTIPLIER
    policies_file: str = ""


@dataclass(frozen=True, slots=True)
class CircuitBreakerSettings:
    failure_threshold: int = c.DEFAULT_FAILURE_THRESHOLD
    reset_timeout_ms: int = c.DEFAULT_RESET_TIMEOUT_MS
    half_open_max_calls: int = 1


@dataclass(frozen=True, slots=True)
class StoreSettings:
    backend: str = "memory"
    url: str = "redis://localhost:6379/0"


@dataclass(frozen=True, slots=True)
class ValidationSettings:
    max_arg_length: int = c.DEFAULT_MAX_ARG_LENGTH
    max_code_length: int = c.DEFAULT_MAX_CODE_LENGTH
    max_args: int = c.DEFAULT_MAX_ARGS


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str = "INFO"
    json: bool = True


@dataclass(frozen=True, slots=True)
class ExecGuardSettings:
    """Validated, immutable configuration consumed by :class:`~execguard.runtime.CoreRuntime`."""

    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)


_SECTION_TYPES: Final[dict[str, type]] = {
    "rate_limit": RateLimitSettings,
    "locks": LockSettings,
    "sandbox": SandboxSettings,
    "recovery": RecoverySettings,
    "circuit_breaker": CircuitBreakerSettings,
    "store": StoreSettings,
    "validation": ValidationSettings,
    "observability": ObservabilitySettings,
}


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ExecGuardConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade execguard.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the execguard runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a full config payload and return structured issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def settings_from_config(config: Mapping[str, object]) -> ExecGuardSettings:
    """Validate ``config`` once and build the typed settings tree from it."""

    validated = assert_valid_config(config)
    sections = {
        name: section_type(**validated[name]) for name, section_type in _SECTION_TYPES.items()
    }
    return ExecGuardSettings(**sections)


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Alias for schema-level redacted dumps."""

    return redact_config(config)


# ---------------------------------------------------------------------------
# Section validators
# ---------------------------------------------------------------------------


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"meta", *_SECTION_TYPES}
    _reject_unknown_keys(payload, allowed, "", issues)
    _require_keys(payload, allowed, "", issues)

    out: dict[str, Any] = {}
    validators = {
        "meta": _validate_meta,
        "rate_limit": _validate_rate_limit,
        "locks": _validate_locks,
        "sandbox": _validate_sandbox,
        "recovery": _validate_recovery,
        "circuit_breaker": _validate_circuit_breaker,
        "store": _validate_store,
        "validation": _validate_validation,
        "observability": _validate_observability,
    }
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _check_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_rate_limit(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _check_keys(payload, {"max_executions", "window_ms"}, path, issues)
    return _collect_ints(payload, path, issues, minimums={"max_executions": 1, "window_ms": 1})


def _validate_locks(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    int_fields = {
        "ttl_ms": 1,
        "lock_timeout_ms": 0,
        "retry_interval_ms": 1,
        "max_retry_interval_ms": 1,
        "read_helper_ttl_ms": 1,
        "read_count_ttl_ms": 1,
    }
    _check_keys(payload, {*int_fields, "auto_renew", "key_prefix"}, path, issues)
    out = _collect_ints(payload, path, issues, minimums=int_fields)

    if "auto_renew" in payload:
        parsed_bool = _as_bool(payload["auto_renew"], _join(path, "auto_renew"), issues)
        if parsed_bool is not None:
            out["auto_renew"] = parsed_bool
    if "key_prefix" in payload:
        parsed_prefix = _as_str(payload["key_prefix"], _join(path, "key_prefix"), issues)
        if parsed_prefix is not None:
            if ":" in parsed_prefix or any(ch.isspace() for ch in parsed_prefix):
                issues.add(_join(path, "key_prefix"), "must not contain ':' or whitespace")
            else:
                out["key_prefix"] = parsed_prefix

    retry = out.get("retry_interval_ms")
    max_retry = out.get("max_retry_interval_ms")
    if retry is not None and max_retry is not None and max_retry < retry:
        issues.add(
            _join(path, "max_retry_interval_ms"), "must be >= locks.retry_interval_ms"
        )
    return out


def _validate_sandbox(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    int_fields = {
        "timeout_ms": 1,
        "memory_limit_bytes": 1,
        "max_output_bytes": 1,
        "kill_grace_ms": 0,
        "max_concurrency": 0,
    }
    _check_keys(
        payload,
        {
            *int_fields,
            "cpu_limit",
            "allow_network",
            "container_image",
            "container_binary",
            "scratch_dir",
        },
        path,
        issues,
    )
    out = _collect_ints(payload, path, issues, minimums=int_fields)

    if "cpu_limit" in payload:
        parsed_cpu = _as_float(payload["cpu_limit"], _join(path, "cpu_limit"), issues)
        if parsed_cpu is not None:
            if parsed_cpu <= 0:
                issues.add(_join(path, "cpu_limit"), "must be > 0")
            else:
                out["cpu_limit"] = parsed_cpu
    if "allow_network" in payload:
        parsed_bool = _as_bool(payload["allow_network"], _join(path, "allow_network"), issues)
        if parsed_bool is not None:
            out["allow_network"] = parsed_bool
    for key in ("container_image", "container_binary"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    if "scratch_dir" in payload:
        parsed_dir = _as_optional_path(payload["scratch_dir"], _join(path, "scratch_dir"), issues)
        if parsed_dir is not None:
            out["scratch_dir"] = parsed_dir
    return out


def _validate_recovery(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _check_keys(
        payload,
        {"retry_attempts", "retry_delay_ms", "backoff_multiplier", "policies_file"},
        path,
        issues,
    )
    out = _collect_ints(
        payload, path, issues, minimums={"retry_attempts": 1, "retry_delay_ms": 0}
    )
    if "backoff_multiplier" in payload:
        parsed = _as_float(
            payload["backoff_multiplier"], _join(path, "backoff_multiplier"), issues, minimum=1.0
        )
        if parsed is not None:
            out["backoff_multiplier"] = parsed
    if "policies_file" in payload:
        parsed_file = _as_optional_path(
            payload["policies_file"], _join(path, "policies_file"), issues
        )
        if parsed_file is not None:
            out["policies_file"] = parsed_file
    return out


def _validate_circuit_breaker(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    minimums = {"failure_threshold": 1, "reset_timeout_ms": 1, "half_open_max_calls": 1}
    _check_keys(payload, set(minimums), path, issues)
    return _collect_ints(payload, path, issues, minimums=minimums)


def _validate_store(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _check_keys(payload, {"backend", "url"}, path, issues)
    out: dict[str, Any] = {}
    if "backend" in payload:
        parsed_backend = _as_enum(
            payload["backend"], _join(path, "backend"), issues, allowed_values=STORE_BACKENDS
        )
        if parsed_backend is not None:
            out["backend"] = parsed_backend
    if "url" in payload:
        parsed_url = _as_str(payload["url"], _join(path, "url"), issues)
        if parsed_url is not None:
            if not parsed_url.startswith(("redis://", "rediss://", "unix://")):
                issues.add(_join(path, "url"), "must be a redis://, rediss:// or unix:// URL")
            else:
                out["url"] = parsed_url
    return out


def _validate_validation(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    minimums = {"max_arg_length": 1, "max_code_length": 1, "max_args": 1}
    _check_keys(payload, set(minimums), path, issues)
    return _collect_ints(payload, path, issues, minimums=minimums)


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _check_keys(payload, {"log_level", "json"}, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        level_value = raw_level.strip().upper() if isinstance(raw_level, str) else raw_level
        parsed_level = _as_enum(
            level_value, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "json" in payload:
        parsed_json = _as_bool(payload["json"], _join(path, "json"), issues)
        if parsed_json is not None:
            out["json"] = parsed_json
    return out


# ---------------------------------------------------------------------------
# Primitive coercion helpers
# ---------------------------------------------------------------------------


def _check_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)


def _collect_ints(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    minimums: Mapping[str, int],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, minimum in minimums.items():
        if key not in payload:
            continue
        parsed = _as_int(payload[key], _join(path, key), issues, minimum=minimum)
        if parsed is not None:
            out[key] = parsed
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_optional_path(value: object, path: str, issues: _IssueCollector) -> str | None:
    """Path text where the empty string means "not configured"."""

    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden; use the store URL")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    if parent_key == "url" and isinstance(value, str):
        return _URL_CREDENTIALS.sub(r"\1<redacted>@", value)
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "ExecGuardConfig",
    "ExecGuardSettings",
    "CircuitBreakerSettings",
    "LockSettings",
    "ObservabilitySettings",
    "PATH_FIELDS",
    "RateLimitSettings",
    "RecoverySettings",
    "SandboxSettings",
    "StoreSettings",
    "ValidationSettings",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "settings_from_config",
    "validate_config",
]
