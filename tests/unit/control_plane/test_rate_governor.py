"""Unit tests for per-identity sliding-window admission."""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import CapturingLogger

from execguard.control_plane.rate_governor import RateGovernor, identity_for
from execguard.errors import ErrorType, RateLimitedError


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


def _governor(clock: _Clock, **kwargs: object) -> RateGovernor:
    return RateGovernor(clock=clock, sleep=clock.sleep, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_fourth_rapid_call_reports_time_to_window_edge() -> None:
    clock = _Clock()
    governor = _governor(clock, max_executions=3, window_ms=1_000)

    decisions = []
    for _ in range(3):
        decisions.append(await governor.check_rate("build-cmd"))
        clock.advance_ms(10)
    rejected = await governor.check_rate("build-cmd")

    assert [item.allowed for item in decisions] == [True, True, True]
    assert [item.in_window for item in decisions] == [1, 2, 3]
    assert rejected.allowed is False
    assert rejected.in_window == 3
    assert rejected.limit == 3
    assert 960 <= rejected.wait_ms <= 1_000


@settings(max_examples=25, deadline=None)
@given(limit=st.integers(min_value=1, max_value=30), window_ms=st.integers(10, 60_000))
def test_n_plus_one_requests_yield_exactly_one_rejection(limit: int, window_ms: int) -> None:
    async def scenario() -> None:
        clock = _Clock()
        governor = _governor(clock, max_executions=limit, window_ms=window_ms)

        decisions = [await governor.check_rate("make") for _ in range(limit + 1)]
        assert [item.allowed for item in decisions].count(False) == 1
        assert decisions[-1].allowed is False

        clock.advance_ms(window_ms + 1)
        assert (await governor.check_rate("make")).allowed is True

    asyncio.run(scenario())


@pytest.mark.asyncio
async def test_identities_are_independent() -> None:
    clock = _Clock()
    governor = _governor(clock, max_executions=1, window_ms=1_000)

    assert (await governor.check_rate("git")).allowed is True
    assert (await governor.check_rate("git")).allowed is False
    assert (await governor.check_rate("npm")).allowed is True


@pytest.mark.asyncio
async def test_admit_waits_until_window_frees_up() -> None:
    clock = _Clock()
    governor = _governor(clock, max_executions=2, window_ms=500)

    await governor.admit("pytest")
    await governor.admit("pytest")
    decision = await governor.admit("pytest")

    assert decision.allowed is True
    assert clock.slept
    assert sum(clock.slept) == pytest.approx(0.5, abs=0.002)


@pytest.mark.asyncio
async def test_admit_without_wait_raises_rate_limited() -> None:
    clock = _Clock()
    logger = CapturingLogger()
    governor = _governor(clock, max_executions=1, window_ms=2_000, logger=logger)

    await governor.admit("deploy", wait=False)
    with pytest.raises(RateLimitedError) as excinfo:
        await governor.admit("deploy", wait=False)

    assert excinfo.value.identity == "deploy"
    assert excinfo.value.wait_ms == 2_000
    assert excinfo.value.error_type is ErrorType.RATE_LIMITED
    assert excinfo.value.retryable is True
    events = [call.args[0] for call in logger.calls]
    assert "rate_limited" in events


@pytest.mark.asyncio
async def test_idle_identities_are_evicted() -> None:
    clock = _Clock()
    governor = _governor(clock, max_executions=5, window_ms=1_000)

    await governor.check_rate("old")
    clock.advance_ms(1_500)
    await governor.check_rate("fresh")
    clock.advance_ms(600)

    assert await governor.cleanup_idle() == 1
    stats = governor.stats()
    assert stats.identities == 1
    assert stats.admitted == 2
    assert stats.evicted == 1


@pytest.mark.asyncio
async def test_stats_count_rejections() -> None:
    clock = _Clock()
    governor = _governor(clock, max_executions=1, window_ms=1_000)

    await governor.check_rate("ls")
    await governor.check_rate("ls")
    await governor.check_rate("ls")

    stats = governor.stats()
    assert stats.admitted == 1
    assert stats.rejected == 2


@pytest.mark.asyncio
async def test_blank_identity_is_rejected() -> None:
    governor = RateGovernor()
    with pytest.raises(ValueError, match="identity"):
        await governor.check_rate("   ")


def test_identity_is_first_command_word() -> None:
    assert identity_for(["  npm run build", "--prod"]) == "npm"
    assert identity_for(["", "make", "all"]) == "make"
    with pytest.raises(ValueError):
        identity_for(["", "  "])


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError, match="max_executions"):
        RateGovernor(max_executions=0)
    with pytest.raises(ValueError, match="window_ms"):
        RateGovernor(window_ms=0)
