"""Network access decisions for sandboxed executions."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from execguard.sandbox.models import IsolationTier, SandboxPolicyError, SandboxSpec

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - Python <3.11 compatibility.
    UTC = timezone.utc  # noqa: UP017

DecisionLogger = Callable[["NetworkDecision"], None]


class NetworkPolicyMode(str, Enum):
    """Host-wide ceiling on what a spec may request."""

    DENY = "deny"
    LOGGED_PERMISSIVE = "logged_permissive"


@dataclass(frozen=True, slots=True)
class NetworkDecision:
    """Whether one spec runs with network access, and how each tier expresses it."""

    mode: NetworkPolicyMode
    tier: IsolationTier
    requested: bool
    allowed: bool
    reason: str
    context: dict[str, str] = field(default_factory=dict)
    decided_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if not self.reason.strip():
            raise ValueError("reason must not be empty")
        if self.allowed and not self.requested:
            raise ValueError("network cannot be allowed when it was not requested")
        object.__setattr__(
            self, "context", {str(key): str(value) for key, value in self.context.items()}
        )

    @property
    def container_network(self) -> str:
        """Value for the container runtime's ``--network`` flag."""

        return "bridge" if self.allowed else "none"


class NetworkPolicy:
    """Evaluate ``SandboxSpec.allow_network`` against the configured mode.

    Network is off unless the sandbox spec asks for it and the mode permits it. The in-process
    tier never has network capabilities, so requesting network there is a policy error.
    """

    def __init__(
        self,
        *,
        mode: NetworkPolicyMode | str = NetworkPolicyMode.DENY,
        decision_logger: DecisionLogger | None = None,
        logger: Any | None = None,
    ) -> None:
        self._mode = _coerce_mode(mode)
        self._decision_logger = decision_logger
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_flag(cls, allow_network: bool, **kwargs: Any) -> NetworkPolicy:
        mode = NetworkPolicyMode.LOGGED_PERMISSIVE if allow_network else NetworkPolicyMode.DENY
        return cls(mode=mode, **kwargs)

    @property
    def mode(self) -> NetworkPolicyMode:
        return self._mode

    def evaluate(
        self, spec: SandboxSpec, *, context: Mapping[str, str] | None = None
    ) -> NetworkDecision:
        if not spec.allow_network:
            decision = NetworkDecision(
                mode=self._mode,
                tier=spec.tier,
                requested=False,
                allowed=False,
                reason="network access not requested",
                context=dict(context or {}),
            )
        elif spec.tier is IsolationTier.IN_PROCESS:
            decision = NetworkDecision(
                mode=self._mode,
                tier=spec.tier,
                requested=True,
                allowed=False,
                reason="in_process tier has no network capability",
                context=dict(context or {}),
            )
        elif self._mode is NetworkPolicyMode.DENY:
            decision = NetworkDecision(
                mode=self._mode,
                tier=spec.tier,
                requested=True,
                allowed=False,
                reason="network access denied by policy mode",
                context=dict(context or {}),
            )
        else:
            decision = NetworkDecision(
                mode=self._mode,
                tier=spec.tier,
                requested=True,
                allowed=True,
                reason="network access allowed in logged_permissive mode",
                context=dict(context or {}),
            )
            self._logger.info("sandbox_network_allowed", tier=spec.tier.value)
        self._emit_decision(decision)
        return decision

    def enforce(
        self, spec: SandboxSpec, *, context: Mapping[str, str] | None = None
    ) -> NetworkDecision:
        """Like :meth:`evaluate`, but a refused request raises ``SandboxPolicyError``."""

        decision = self.evaluate(spec, context=context)
        if decision.requested and not decision.allowed:
            raise SandboxPolicyError(
                f"network request denied for {spec.tier.value} sandbox: {decision.reason}",
                context={"tier": spec.tier.value, "mode": self._mode.value},
            )
        return decision

    def _emit_decision(self, decision: NetworkDecision) -> None:
        if self._decision_logger is not None:
            self._decision_logger(decision)


def _coerce_mode(value: NetworkPolicyMode | str) -> NetworkPolicyMode:
    if isinstance(value, NetworkPolicyMode):
        return value
    if not isinstance(value, str):
        raise ValueError("mode must be a string or NetworkPolicyMode")
    normalized = value.strip().lower()
    try:
        return NetworkPolicyMode(normalized)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in NetworkPolicyMode)
        raise ValueError(
            f"unsupported network policy mode {value!r}; expected one of: {allowed}"
        ) from exc


__all__ = [
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
]
