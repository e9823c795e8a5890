"""Coordination store clients: atomic set-if-absent, compare-and-delete, compare-and-extend."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog
from redis.exceptions import RedisError

from execguard.constants import DEFAULT_KEY_PREFIX
from execguard.errors import CoordinationStoreError
from execguard.security.command_validator import CommandValidator

if TYPE_CHECKING:
    from redis.asyncio import Redis

KEY_ABSENT: Final[int] = -2
KEY_PERSISTENT: Final[int] = -1

COMPARE_AND_DELETE_SCRIPT: Final[str] = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""

COMPARE_AND_EXTEND_SCRIPT: Final[str] = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
    return 0
end
"""

INCR_WITH_EXPIRY_SCRIPT: Final[str] = """
local value = redis.call("INCR", KEYS[1])
if tonumber(ARGV[1]) > 0 then
    redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return value
"""

DECR_WITH_CLEANUP_SCRIPT: Final[str] = """
local value = redis.call("DECR", KEYS[1])
if ARGV[1] == "1" and value <= 0 then
    redis.call("DEL", KEYS[1])
end
return value
"""


@runtime_checkable
class CoordinationStore(Protocol):
    """Shared key-value store with millisecond expiry and atomic compare-and-act."""

    async def try_acquire(self, key: str, holder_id: str, ttl_ms: int) -> bool: ...

    async def release(self, key: str, holder_id: str) -> bool: ...

    async def extend(self, key: str, holder_id: str, ttl_ms: int) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def incr(self, key: str, *, ttl_ms: int | None = None) -> int: ...

    async def decr(self, key: str, *, delete_if_nonpositive: bool = False) -> int: ...

    async def delete(self, key: str) -> bool: ...

    async def pttl(self, key: str) -> int: ...

    async def close(self) -> None: ...


class _KeyspaceMixin:
    """Namespace and validate keys before they reach the backend."""

    _namespace: str
    _validator: CommandValidator

    def _init_keyspace(self, namespace: str, validator: CommandValidator | None) -> None:
        self._validator = validator or CommandValidator()
        self._namespace = self._validator.validate_key(namespace)

    @property
    def namespace(self) -> str:
        return self._namespace

    def qualify(self, key: str) -> str:
        return f"{self._namespace}:{self._validator.validate_key(key)}"


class RedisCoordinationStore(_KeyspaceMixin):
    """``redis.asyncio`` client using server-side Lua for compare-and-act operations."""

    def __init__(
        self,
        client: Redis,
        *,
        namespace: str = DEFAULT_KEY_PREFIX,
        validator: CommandValidator | None = None,
        logger: Any | None = None,
    ) -> None:
        self._init_keyspace(namespace, validator)
        self._client = client
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE_SCRIPT)
        self._compare_and_extend = client.register_script(COMPARE_AND_EXTEND_SCRIPT)
        self._incr_with_expiry = client.register_script(INCR_WITH_EXPIRY_SCRIPT)
        self._decr_with_cleanup = client.register_script(DECR_WITH_CLEANUP_SCRIPT)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        namespace: str = DEFAULT_KEY_PREFIX,
        validator: CommandValidator | None = None,
        logger: Any | None = None,
    ) -> RedisCoordinationStore:
        from redis.asyncio import Redis

        client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, namespace=namespace, validator=validator, logger=logger)

    async def try_acquire(self, key: str, holder_id: str, ttl_ms: int) -> bool:
        qualified = self.qualify(key)
        _validate_ttl(ttl_ms)
        try:
            result = await self._client.set(qualified, holder_id, nx=True, px=int(ttl_ms))
        except RedisError as exc:
            raise self._wrap("try_acquire", qualified, exc) from exc
        return bool(result)

    async def release(self, key: str, holder_id: str) -> bool:
        qualified = self.qualify(key)
        try:
            result = await self._compare_and_delete(keys=[qualified], args=[holder_id])
        except RedisError as exc:
            raise self._wrap("release", qualified, exc) from exc
        return int(result) == 1

    async def extend(self, key: str, holder_id: str, ttl_ms: int) -> bool:
        qualified = self.qualify(key)
        _validate_ttl(ttl_ms)
        try:
            result = await self._compare_and_extend(
                keys=[qualified], args=[holder_id, int(ttl_ms)]
            )
        except RedisError as exc:
            raise self._wrap("extend", qualified, exc) from exc
        return int(result) == 1

    async def get(self, key: str) -> str | None:
        qualified = self.qualify(key)
        try:
            value = await self._client.get(qualified)
        except RedisError as exc:
            raise self._wrap("get", qualified, exc) from exc
        return None if value is None else str(value)

    async def incr(self, key: str, *, ttl_ms: int | None = None) -> int:
        qualified = self.qualify(key)
        expiry = 0 if ttl_ms is None else int(ttl_ms)
        try:
            value = await self._incr_with_expiry(keys=[qualified], args=[expiry])
        except RedisError as exc:
            raise self._wrap("incr", qualified, exc) from exc
        return int(value)

    async def decr(self, key: str, *, delete_if_nonpositive: bool = False) -> int:
        qualified = self.qualify(key)
        flag = "1" if delete_if_nonpositive else "0"
        try:
            value = await self._decr_with_cleanup(keys=[qualified], args=[flag])
        except RedisError as exc:
            raise self._wrap("decr", qualified, exc) from exc
        return int(value)

    async def delete(self, key: str) -> bool:
        qualified = self.qualify(key)
        try:
            removed = await self._client.delete(qualified)
        except RedisError as exc:
            raise self._wrap("delete", qualified, exc) from exc
        return int(removed) > 0

    async def pttl(self, key: str) -> int:
        qualified = self.qualify(key)
        try:
            remaining = await self._client.pttl(qualified)
        except RedisError as exc:
            raise self._wrap("pttl", qualified, exc) from exc
        return int(remaining)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            raise self._wrap("ping", self._namespace, exc) from exc

    async def close(self) -> None:
        await self._client.aclose()

    def _wrap(self, operation: str, key: str, exc: Exception) -> CoordinationStoreError:
        self._logger.warning(
            "coordination_store_error",
            operation=operation,
            key=key,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return CoordinationStoreError(
            f"coordination store {operation} failed for {key!r}: {exc}",
            context={"operation": operation, "key": key},
        )


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: float | None


class MemoryCoordinationStore(_KeyspaceMixin):
    """Single-process store with the same atomicity contract, for tests and local runs."""

    def __init__(
        self,
        *,
        namespace: str = DEFAULT_KEY_PREFIX,
        validator: CommandValidator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._init_keyspace(namespace, validator)
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    async def try_acquire(self, key: str, holder_id: str, ttl_ms: int) -> bool:
        qualified = self.qualify(key)
        _validate_ttl(ttl_ms)
        with self._lock:
            if self._live(qualified) is not None:
                return False
            self._entries[qualified] = _Entry(holder_id, self._deadline(ttl_ms))
            return True

    async def release(self, key: str, holder_id: str) -> bool:
        qualified = self.qualify(key)
        with self._lock:
            entry = self._live(qualified)
            if entry is None or entry.value != holder_id:
                return False
            del self._entries[qualified]
            return True

    async def extend(self, key: str, holder_id: str, ttl_ms: int) -> bool:
        qualified = self.qualify(key)
        _validate_ttl(ttl_ms)
        with self._lock:
            entry = self._live(qualified)
            if entry is None or entry.value != holder_id:
                return False
            entry.expires_at = self._deadline(ttl_ms)
            return True

    async def get(self, key: str) -> str | None:
        qualified = self.qualify(key)
        with self._lock:
            entry = self._live(qualified)
            return None if entry is None else entry.value

    async def incr(self, key: str, *, ttl_ms: int | None = None) -> int:
        qualified = self.qualify(key)
        with self._lock:
            value = self._counter(qualified) + 1
            entry = self._entries.get(qualified)
            expires_at = entry.expires_at if entry is not None else None
            if ttl_ms is not None and ttl_ms > 0:
                expires_at = self._deadline(ttl_ms)
            self._entries[qualified] = _Entry(str(value), expires_at)
            return value

    async def decr(self, key: str, *, delete_if_nonpositive: bool = False) -> int:
        qualified = self.qualify(key)
        with self._lock:
            value = self._counter(qualified) - 1
            if delete_if_nonpositive and value <= 0:
                self._entries.pop(qualified, None)
                return value
            entry = self._entries.get(qualified)
            expires_at = entry.expires_at if entry is not None else None
            self._entries[qualified] = _Entry(str(value), expires_at)
            return value

    async def delete(self, key: str) -> bool:
        qualified = self.qualify(key)
        with self._lock:
            return self._live(qualified) is not None and self._entries.pop(qualified) is not None

    async def pttl(self, key: str) -> int:
        qualified = self.qualify(key)
        with self._lock:
            entry = self._live(qualified)
            if entry is None:
                return KEY_ABSENT
            if entry.expires_at is None:
                return KEY_PERSISTENT
            return max(0, int((entry.expires_at - self._clock()) * 1000))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def _live(self, qualified: str) -> _Entry | None:
        entry = self._entries.get(qualified)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[qualified]
            return None
        return entry

    def _counter(self, qualified: str) -> int:
        entry = self._live(qualified)
        if entry is None:
            return 0
        try:
            return int(entry.value)
        except ValueError as exc:
            raise CoordinationStoreError(
                f"value at {qualified!r} is not an integer", context={"key": qualified}
            ) from exc

    def _deadline(self, ttl_ms: int) -> float:
        return self._clock() + ttl_ms / 1000.0


def _validate_ttl(ttl_ms: int) -> None:
    if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, int):
        raise ValueError(f"ttl_ms must be an integer, got {type(ttl_ms).__name__}")
    if ttl_ms <= 0:
        raise ValueError("ttl_ms must be > 0")


__all__ = [
    "COMPARE_AND_DELETE_SCRIPT",
    "COMPARE_AND_EXTEND_SCRIPT",
    "CoordinationStore",
    "KEY_ABSENT",
    "KEY_PERSISTENT",
    "MemoryCoordinationStore",
    "RedisCoordinationStore",
]
