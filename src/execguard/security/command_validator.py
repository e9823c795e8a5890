"""
Input validation for anything about to reach a subprocess, a sandbox or the coordination store.

Checks run in a fixed order and the first failure raises:

1. type/shape: every item is a ``str`` (``None`` and bytes are rejected)
2. length ceiling (per context: argument, code body, or store key)
3. character/pattern denylist (separators, traversal, control bytes, bidi and zero-width
   characters, injection markers), matched against the NFKC form of each item
4. numeric range checks for bounded flags such as ``--timeout=`` and ``--maxWorkers=``
5. cross-argument conflicts such as ``--silent`` together with ``--verbose``

Validation is pure. Accepted values are returned as the very same strings, never rewritten.
"""

from __future__ import annotations

import os
import re
import unicodedata
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePath
from typing import TYPE_CHECKING, Final

from execguard.constants import (
    DEFAULT_MAX_ARG_LENGTH,
    DEFAULT_MAX_ARGS,
    DEFAULT_MAX_CODE_LENGTH,
    MAX_KEY_LENGTH,
)
from execguard.errors import SecurityViolationError, ValidationError

if TYPE_CHECKING:
    from collections.abc import Sequence

_SNIPPET_RADIUS: Final[int] = 16
_KEY_CHARSET: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/@+-]*$")


class ValidationContext(StrEnum):
    """Destination of the validated strings."""

    ARGUMENT = "argument"
    CODE = "code"
    KEY = "key"


@dataclass(frozen=True, slots=True)
class DenyPattern:
    classification: str
    pattern: re.Pattern[str]


@dataclass(frozen=True, slots=True)
class NumericBound:
    """Inclusive range for a ``--flag=<int>`` argument."""

    flag: str
    minimum: int
    maximum: int

    def __post_init__(self) -> None:
        if not self.flag.startswith("--"):
            raise ValueError("flag must start with '--'")
        if self.minimum > self.maximum:
            raise ValueError("minimum cannot exceed maximum")


_CONTROL_CHARS: Final[DenyPattern] = DenyPattern(
    "control_character", re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
)
_CONTROL_CHARS_STRICT: Final[DenyPattern] = DenyPattern(
    "control_character", re.compile(r"[\x00-\x1f\x7f]")
)
_INVISIBLE_CHARS: Final[DenyPattern] = DenyPattern(
    "invisible_character",
    re.compile(r"[\u00ad\u061c\u180e\u200b-\u200f\u202a-\u202e\u2060-\u2064\u2066-\u2069\ufeff]"),
)

ARGUMENT_DENY_PATTERNS: Final[tuple[DenyPattern, ...]] = (
    _CONTROL_CHARS_STRICT,
    _INVISIBLE_CHARS,
    DenyPattern("path_traversal", re.compile(r"\.\.[/\\]|[/\\]\.\.$|^\.\.$")),
    DenyPattern("script_injection", re.compile(r"<\s*script|javascript:", re.IGNORECASE)),
    DenyPattern(
        "sql_injection",
        re.compile(
            r"\bdrop\s+table\b|\bunion\s+select\b|\bor\s+1\s*=\s*1\b|'\s*--", re.IGNORECASE
        ),
    ),
    DenyPattern(
        "destructive_command",
        re.compile(r"\brm\s+-[a-z]*r[a-z]*f|\brm\s+-[a-z]*f[a-z]*r|\bdel\s+/[sq]", re.IGNORECASE),
    ),
    DenyPattern("metacharacter", re.compile(r"[;&|`$(){}\[\]]")),
)

CODE_DENY_PATTERNS: Final[tuple[DenyPattern, ...]] = (_CONTROL_CHARS, _INVISIBLE_CHARS)

KEY_DENY_PATTERNS: Final[tuple[DenyPattern, ...]] = (
    _CONTROL_CHARS_STRICT,
    _INVISIBLE_CHARS,
    DenyPattern("path_traversal", re.compile(r"\.\.")),
    DenyPattern("metacharacter", re.compile(r"[;&|`$(){}\[\]*?\s]")),
)

DEFAULT_CONFLICTS: Final[tuple[tuple[str, str], ...]] = (
    ("--silent", "--verbose"),
    ("--coverage", "--no-coverage"),
    ("--watch", "--ci"),
)

BLOCKED_COMMANDS: Final[frozenset[str]] = frozenset(
    {
        "rm",
        "rmdir",
        "sudo",
        "su",
        "doas",
        "chmod",
        "chown",
        "kill",
        "killall",
        "pkill",
        "dd",
        "mkfs",
        "mount",
        "umount",
        "nc",
        "ncat",
        "netcat",
        "telnet",
        "ssh",
        "scp",
        "curl",
        "wget",
        "shutdown",
        "reboot",
        "crontab",
    }
)


def default_numeric_bounds(cpu_count: int | None = None) -> tuple[NumericBound, ...]:
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return (
        NumericBound("--timeout", 0, 3_600_000),
        NumericBound("--maxWorkers", 1, max(1, cpus * 2)),
    )


@dataclass(frozen=True, slots=True)
class ValidatorLimits:
    max_arg_length: int = DEFAULT_MAX_ARG_LENGTH
    max_code_length: int = DEFAULT_MAX_CODE_LENGTH
    max_key_length: int = MAX_KEY_LENGTH
    max_args: int = DEFAULT_MAX_ARGS

    def __post_init__(self) -> None:
        for name in ("max_arg_length", "max_code_length", "max_key_length", "max_args"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True, slots=True)
class CommandValidator:
    """Stateless validator; instances only carry configured limits and rules."""

    limits: ValidatorLimits = field(default_factory=ValidatorLimits)
    numeric_bounds: tuple[NumericBound, ...] = field(default_factory=default_numeric_bounds)
    conflicts: tuple[tuple[str, str], ...] = DEFAULT_CONFLICTS
    blocked_commands: frozenset[str] = BLOCKED_COMMANDS

    def validate(
        self,
        args: Sequence[str],
        context: ValidationContext | str = ValidationContext.ARGUMENT,
    ) -> tuple[str, ...]:
        """Validate ``args`` for ``context`` and return them unchanged.

        Raises ``ValidationError`` for shape/length/range/conflict failures and
        ``SecurityViolationError`` for denylist hits. Each error names the offending
        index and a short snippet.
        """

        resolved = _coerce_context(context)
        items = _require_sequence(args)
        if resolved is ValidationContext.ARGUMENT and len(items) > self.limits.max_args:
            raise ValidationError(
                f"too many arguments: {len(items)} > {self.limits.max_args}",
                classification="too_many_arguments",
            )

        for index, item in enumerate(items):
            _check_type(item, index)

        max_length = self._max_length(resolved)
        for index, item in enumerate(items):
            if len(item) > max_length:
                raise ValidationError(
                    f"{resolved.value} at index {index} exceeds {max_length} characters "
                    f"(got {len(item)})",
                    index=index,
                    snippet=item[: _SNIPPET_RADIUS * 2],
                    classification="too_long",
                )
            if resolved is ValidationContext.KEY and not item:
                raise ValidationError(
                    "key must not be empty", index=index, snippet="", classification="empty"
                )

        patterns = _patterns_for(resolved)
        for index, item in enumerate(items):
            # compatibility forms such as fullwidth semicolons match their ASCII rules
            folded = unicodedata.normalize("NFKC", item)
            for deny in patterns:
                match = deny.pattern.search(folded)
                if match is None:
                    continue
                raise SecurityViolationError(
                    f"{resolved.value} at index {index} rejected: {deny.classification} "
                    f"near {_snippet(folded, match.start(), match.end())!r}",
                    index=index,
                    snippet=_snippet(folded, match.start(), match.end()),
                    classification=deny.classification,
                )

        if resolved is ValidationContext.KEY:
            for index, item in enumerate(items):
                if _KEY_CHARSET.fullmatch(item) is None:
                    raise ValidationError(
                        f"key at index {index} contains unsupported characters",
                        index=index,
                        snippet=item[: _SNIPPET_RADIUS * 2],
                        classification="invalid_key",
                    )
            return items

        if resolved is ValidationContext.ARGUMENT:
            for index, item in enumerate(items):
                self._check_numeric(item, index)
            self._check_conflicts(items)
        return items

    def validate_key(self, key: str) -> str:
        return self.validate((key,), ValidationContext.KEY)[0]

    def validate_code(self, code: str) -> str:
        return self.validate((code,), ValidationContext.CODE)[0]

    def validate_argv(self, argv: Sequence[str]) -> tuple[str, ...]:
        """Validate a full process argv, including the blocked-executable list."""

        items = self.validate(argv, ValidationContext.ARGUMENT)
        if not items:
            raise ValidationError("argv must not be empty", classification="empty")
        executable = PurePath(items[0]).name
        if executable in self.blocked_commands:
            raise SecurityViolationError(
                f"executable {executable!r} is blocked",
                index=0,
                snippet=executable,
                classification="blocked_command",
            )
        return items

    def _max_length(self, context: ValidationContext) -> int:
        if context is ValidationContext.CODE:
            return self.limits.max_code_length
        if context is ValidationContext.KEY:
            return self.limits.max_key_length
        return self.limits.max_arg_length

    def _check_numeric(self, item: str, index: int) -> None:
        for bound in self.numeric_bounds:
            prefix = f"{bound.flag}="
            if not item.startswith(prefix):
                continue
            raw = item[len(prefix) :]
            try:
                value = int(raw, 10)
            except ValueError as exc:
                raise ValidationError(
                    f"{bound.flag} must be an integer (got {raw!r})",
                    index=index,
                    snippet=item,
                    classification="numeric_format",
                ) from exc
            if value < bound.minimum or value > bound.maximum:
                raise ValidationError(
                    f"{bound.flag} must be between {bound.minimum} and {bound.maximum} "
                    f"(got {value})",
                    index=index,
                    snippet=item,
                    classification="out_of_range",
                )

    def _check_conflicts(self, items: tuple[str, ...]) -> None:
        for left, right in self.conflicts:
            left_index = _flag_index(items, left)
            right_index = _flag_index(items, right)
            if left_index is None or right_index is None:
                continue
            raise ValidationError(
                f"conflicting arguments: {left} and {right}",
                index=max(left_index, right_index),
                snippet=f"{left} {right}",
                classification="conflict",
            )


def validate(
    args: Sequence[str],
    context: ValidationContext | str = ValidationContext.ARGUMENT,
) -> tuple[str, ...]:
    """Validate with default limits. See :meth:`CommandValidator.validate`."""

    return CommandValidator().validate(args, context)


def _coerce_context(value: ValidationContext | str) -> ValidationContext:
    if isinstance(value, ValidationContext):
        return value
    try:
        return ValidationContext(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ValidationContext)
        raise ValueError(f"unsupported validation context {value!r}; expected: {allowed}") from exc


def _require_sequence(args: object) -> tuple[str, ...]:
    if isinstance(args, (str, bytes)) or not isinstance(args, (list, tuple)):
        raise ValidationError(
            f"args must be a list or tuple of strings, got {type(args).__name__}",
            classification="invalid_type",
        )
    return tuple(args)


def _check_type(item: object, index: int) -> None:
    if item is None:
        raise ValidationError(
            f"value at index {index} must not be None", index=index, classification="invalid_type"
        )
    if not isinstance(item, str):
        raise ValidationError(
            f"value at index {index} must be a string, got {type(item).__name__}",
            index=index,
            classification="invalid_type",
        )


def _patterns_for(context: ValidationContext) -> tuple[DenyPattern, ...]:
    if context is ValidationContext.CODE:
        return CODE_DENY_PATTERNS
    if context is ValidationContext.KEY:
        return KEY_DENY_PATTERNS
    return ARGUMENT_DENY_PATTERNS


def _snippet(text: str, start: int, end: int) -> str:
    lo = max(0, start - _SNIPPET_RADIUS)
    hi = min(len(text), end + _SNIPPET_RADIUS)
    return text[lo:hi].encode("unicode_escape").decode("ascii")


def _flag_index(items: tuple[str, ...], flag: str) -> int | None:
    for index, item in enumerate(items):
        if item == flag or item.startswith(f"{flag}="):
            return index
    return None


__all__ = [
    "ARGUMENT_DENY_PATTERNS",
    "BLOCKED_COMMANDS",
    "CODE_DENY_PATTERNS",
    "CommandValidator",
    "DEFAULT_CONFLICTS",
    "DenyPattern",
    "KEY_DENY_PATTERNS",
    "NumericBound",
    "ValidationContext",
    "ValidatorLimits",
    "default_numeric_bounds",
    "validate",
]
