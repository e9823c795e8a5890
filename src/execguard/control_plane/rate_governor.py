"""Sliding-window admission control keyed by command identity."""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from execguard.constants import DEFAULT_MAX_EXECUTIONS, DEFAULT_WINDOW_MS
from execguard.errors import RateLimitedError

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RateDecision:
    """Outcome of one admission check. ``wait_ms`` is 0 when admitted."""

    identity: str
    allowed: bool
    wait_ms: int
    in_window: int
    limit: int


@dataclass(frozen=True, slots=True)
class RateGovernorStats:
    identities: int
    admitted: int
    rejected: int
    evicted: int


@dataclass(slots=True)
class _Window:
    timestamps: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_seen: float = 0.0


class RateGovernor:
    """Per-identity sliding window.

    Each identity owns its own lock, so unrelated identities never serialize on each
    other. Expired timestamps are pruned lazily on every check, and identities idle for
    more than two windows are evicted.
    """

    def __init__(
        self,
        *,
        max_executions: int = DEFAULT_MAX_EXECUTIONS,
        window_ms: int = DEFAULT_WINDOW_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        if max_executions <= 0:
            raise ValueError("max_executions must be > 0")
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        self._max_executions = max_executions
        self._window_s = window_ms / 1000.0
        self._window_ms = window_ms
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._windows: dict[str, _Window] = {}
        self._last_cleanup = clock()
        self._admitted = 0
        self._rejected = 0
        self._evicted = 0

    @property
    def max_executions(self) -> int:
        return self._max_executions

    @property
    def window_ms(self) -> int:
        return self._window_ms

    async def check_rate(self, identity: str) -> RateDecision:
        """Admit and record one execution for ``identity`` if the window has room."""

        name = _normalize_identity(identity)
        window = self._windows.get(name)
        if window is None:
            window = self._windows.setdefault(name, _Window())

        async with window.lock:
            now = self._clock()
            window.last_seen = now
            horizon = now - self._window_s
            while window.timestamps and window.timestamps[0] <= horizon:
                window.timestamps.popleft()

            in_window = len(window.timestamps)
            if in_window < self._max_executions:
                window.timestamps.append(now)
                self._admitted += 1
                decision = RateDecision(name, True, 0, in_window + 1, self._max_executions)
            else:
                oldest = window.timestamps[0]
                wait_ms = max(1, math.ceil((oldest + self._window_s - now) * 1000))
                self._rejected += 1
                decision = RateDecision(name, False, wait_ms, in_window, self._max_executions)
                self._logger.info(
                    "rate_limited",
                    identity=name,
                    wait_ms=wait_ms,
                    in_window=in_window,
                    limit=self._max_executions,
                )

        if now - self._last_cleanup >= 2 * self._window_s:
            await self.cleanup_idle()
        return decision

    async def admit(self, identity: str, *, wait: bool = True) -> RateDecision:
        """Block until admitted when ``wait`` is true, else raise ``RateLimitedError``."""

        while True:
            decision = await self.check_rate(identity)
            if decision.allowed:
                return decision
            if not wait:
                raise RateLimitedError(decision.identity, decision.wait_ms)
            await self._sleep(decision.wait_ms / 1000.0)

    async def cleanup_idle(self) -> int:
        """Drop identities with no activity for two windows. Returns the number evicted."""

        now = self._clock()
        self._last_cleanup = now
        cutoff = now - 2 * self._window_s
        evicted = 0
        for name in list(self._windows):
            window = self._windows.get(name)
            if window is None or window.lock.locked():
                continue
            if window.last_seen <= cutoff:
                del self._windows[name]
                evicted += 1
        if evicted:
            self._evicted += evicted
            self._logger.debug("rate_windows_evicted", count=evicted)
        return evicted

    def stats(self) -> RateGovernorStats:
        return RateGovernorStats(
            identities=len(self._windows),
            admitted=self._admitted,
            rejected=self._rejected,
            evicted=self._evicted,
        )


def identity_for(argv: Sequence[str]) -> str:
    """Rate identity for a command line: its first word."""

    for item in argv:
        stripped = item.strip()
        if stripped:
            return stripped.split()[0]
    raise ValueError("argv must contain at least one non-empty item")


def _normalize_identity(identity: str) -> str:
    if not isinstance(identity, str):
        raise ValueError(f"identity must be a string, got {type(identity).__name__}")
    normalized = identity.strip()
    if not normalized:
        raise ValueError("identity must not be empty")
    return normalized


__all__ = [
    "RateDecision",
    "RateGovernor",
    "RateGovernorStats",
    "identity_for",
]
