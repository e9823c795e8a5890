"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from typing import TYPE_CHECKING

import pytest

from execguard.utils.concurrency import BoundedSemaphore, run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[object]]:
    captured: list[object] = []
    original = sys.unraisablehook
    sys.unraisablehook = captured.append
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.5)
    return 1


async def test_run_with_timeout_returns_result() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1


async def test_run_with_timeout_cancels_the_operation() -> None:
    cancelled = asyncio.Event()

    async def hang() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(TimeoutError, match="timed out"):
        await run_with_timeout(hang(), 0.01)

    assert cancelled.is_set()


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001)
        gc.collect()

    assert leaked == []


async def test_rejected_timeout_closes_the_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(ValueError, match="timeout_seconds"):
            await run_with_timeout(coro, 0)
        del coro
        gc.collect()

    assert leaked == []


async def test_semaphore_tracks_permits_waiters_and_peak() -> None:
    semaphore = BoundedSemaphore(2)
    release = asyncio.Event()

    async def worker() -> None:
        async with semaphore.permit():
            await release.wait()

    tasks = [asyncio.create_task(worker()) for _ in range(3)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert semaphore.snapshot() == {
        "limit": 2,
        "in_use": 2,
        "available": 0,
        "waiting": 1,
        "peak": 2,
    }

    release.set()
    await asyncio.gather(*tasks)

    assert semaphore.in_use == 0
    assert semaphore.waiting == 0
    assert semaphore.peak == 2


async def test_cancelled_waiter_does_not_hold_a_permit() -> None:
    semaphore = BoundedSemaphore(1)
    await semaphore.acquire()

    waiter = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert semaphore.in_use == 1
    assert semaphore.waiting == 0
    semaphore.release()
    assert semaphore.available == 1


def test_over_release_and_invalid_limit_are_rejected() -> None:
    semaphore = BoundedSemaphore(1)
    with pytest.raises(RuntimeError, match="more times than acquire"):
        semaphore.release()
    with pytest.raises(ValueError, match="limit"):
        BoundedSemaphore(0)
