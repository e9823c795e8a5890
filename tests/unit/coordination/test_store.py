"""Unit tests for coordination store clients."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from execguard.coordination.store import (
    COMPARE_AND_DELETE_SCRIPT,
    COMPARE_AND_EXTEND_SCRIPT,
    DECR_WITH_CLEANUP_SCRIPT,
    INCR_WITH_EXPIRY_SCRIPT,
    KEY_ABSENT,
    KEY_PERSISTENT,
    CoordinationStore,
    MemoryCoordinationStore,
    RedisCoordinationStore,
)
from execguard.errors import CoordinationStoreError, ValidationError


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class _FakeRedis:
    """Minimal async Redis double: SET NX PX, GET, DEL, PTTL and the four Lua scripts."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    def register_script(self, script: str) -> Callable[..., Awaitable[int]]:
        handlers = {
            COMPARE_AND_DELETE_SCRIPT: self._compare_and_delete,
            COMPARE_AND_EXTEND_SCRIPT: self._compare_and_extend,
            INCR_WITH_EXPIRY_SCRIPT: self._incr,
            DECR_WITH_CLEANUP_SCRIPT: self._decr,
        }
        handler = handlers[script]

        async def run(*, keys: list[str], args: list[Any]) -> int:
            return handler(keys[0], args)

        return run

    async def set(self, key: str, value: str, *, nx: bool, px: int) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = px
        return True

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def pttl(self, key: str) -> int:
        if key not in self.data:
            return KEY_ABSENT
        return self.ttls.get(key, KEY_PERSISTENT)

    async def aclose(self) -> None:
        self.closed = True

    def _compare_and_delete(self, key: str, args: list[Any]) -> int:
        if self.data.get(key) == args[0]:
            del self.data[key]
            return 1
        return 0

    def _compare_and_extend(self, key: str, args: list[Any]) -> int:
        if self.data.get(key) == args[0]:
            self.ttls[key] = int(args[1])
            return 1
        return 0

    def _incr(self, key: str, args: list[Any]) -> int:
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        if int(args[0]) > 0:
            self.ttls[key] = int(args[0])
        return value

    def _decr(self, key: str, args: list[Any]) -> int:
        value = int(self.data.get(key, "0")) - 1
        self.data[key] = str(value)
        if args[0] == "1" and value <= 0:
            del self.data[key]
        return value


class _BrokenRedis(_FakeRedis):
    async def set(self, key: str, value: str, *, nx: bool, px: int) -> bool | None:
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_try_acquire_is_set_if_absent() -> None:
    store = MemoryCoordinationStore()

    assert await store.try_acquire("lock:a", "holder-1", 1_000) is True
    assert await store.try_acquire("lock:a", "holder-2", 1_000) is False
    assert await store.get("lock:a") == "holder-1"


@pytest.mark.asyncio
async def test_release_and_extend_compare_holder() -> None:
    store = MemoryCoordinationStore()
    await store.try_acquire("lock:a", "holder-1", 1_000)

    assert await store.release("lock:a", "holder-2") is False
    assert await store.extend("lock:a", "holder-2", 5_000) is False
    assert await store.get("lock:a") == "holder-1"

    assert await store.extend("lock:a", "holder-1", 5_000) is True
    assert await store.release("lock:a", "holder-1") is True
    assert await store.get("lock:a") is None


@pytest.mark.asyncio
async def test_expired_entry_cannot_be_released_by_old_holder() -> None:
    clock = _Clock()
    store = MemoryCoordinationStore(clock=clock)
    await store.try_acquire("lock:a", "holder-1", 100)

    clock.advance_ms(150)
    assert await store.try_acquire("lock:a", "holder-2", 100) is True
    assert await store.release("lock:a", "holder-1") is False
    assert await store.get("lock:a") == "holder-2"


@pytest.mark.asyncio
async def test_pttl_reports_absent_persistent_and_remaining() -> None:
    clock = _Clock()
    store = MemoryCoordinationStore(clock=clock)

    assert await store.pttl("missing") == KEY_ABSENT
    await store.incr("counter")
    assert await store.pttl("counter") == KEY_PERSISTENT

    await store.try_acquire("lock:a", "h", 1_000)
    clock.advance_ms(500)
    assert await store.pttl("lock:a") == 500


@pytest.mark.asyncio
async def test_counter_decrement_deletes_at_zero() -> None:
    store = MemoryCoordinationStore()

    assert await store.incr("count", ttl_ms=1_000) == 1
    assert await store.incr("count", ttl_ms=1_000) == 2
    assert await store.decr("count", delete_if_nonpositive=True) == 1
    assert await store.decr("count", delete_if_nonpositive=True) == 0
    assert await store.get("count") is None


@pytest.mark.asyncio
async def test_non_integer_counter_is_a_store_error() -> None:
    store = MemoryCoordinationStore()
    await store.try_acquire("count", "not-a-number", 1_000)

    with pytest.raises(CoordinationStoreError):
        await store.incr("count")


@pytest.mark.asyncio
async def test_keys_are_validated_and_namespaced() -> None:
    store = MemoryCoordinationStore(namespace="tenant-a")

    assert store.qualify("lock:x") == "tenant-a:lock:x"
    with pytest.raises(ValidationError):
        await store.try_acquire("../escape", "h", 1_000)
    with pytest.raises(ValueError, match="ttl_ms"):
        await store.try_acquire("lock:x", "h", 0)


def test_stores_satisfy_protocol() -> None:
    assert isinstance(MemoryCoordinationStore(), CoordinationStore)
    redis_store = RedisCoordinationStore(_FakeRedis())  # type: ignore[arg-type]
    assert isinstance(redis_store, CoordinationStore)


@pytest.mark.asyncio
async def test_redis_store_uses_atomic_scripts() -> None:
    client = _FakeRedis()
    store = RedisCoordinationStore(client, namespace="eg")  # type: ignore[arg-type]

    assert await store.try_acquire("lock:a", "holder-1", 2_000) is True
    assert client.data["eg:lock:a"] == "holder-1"
    assert await store.try_acquire("lock:a", "holder-2", 2_000) is False

    assert await store.extend("lock:a", "holder-2", 9_000) is False
    assert await store.extend("lock:a", "holder-1", 9_000) is True
    assert await store.pttl("lock:a") == 9_000

    assert await store.release("lock:a", "holder-2") is False
    assert await store.release("lock:a", "holder-1") is True

    assert await store.incr("rw:r:read_count", ttl_ms=500) == 1
    assert await store.decr("rw:r:read_count", delete_if_nonpositive=True) == 0
    assert "eg:rw:r:read_count" not in client.data

    await store.close()
    assert client.closed is True


@pytest.mark.asyncio
async def test_redis_errors_become_store_errors() -> None:
    store = RedisCoordinationStore(_BrokenRedis())  # type: ignore[arg-type]

    with pytest.raises(CoordinationStoreError) as excinfo:
        await store.try_acquire("lock:a", "h", 1_000)

    assert excinfo.value.context["operation"] == "try_acquire"
    assert excinfo.value.retryable is True
