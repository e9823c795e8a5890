"""Coordination store wrapper that routes every call through a circuit breaker."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from execguard.coordination.store import CoordinationStore
from execguard.errors import CoordinationStoreError
from execguard.recovery.circuit_breaker import CircuitBreaker, CircuitOpenError

T = TypeVar("T")


class StoreCircuitOpenError(CircuitOpenError, CoordinationStoreError):
    """The store's circuit is open. Lock release treats it like any store failure."""


class CircuitGuardedStore:
    """``CoordinationStore`` whose calls fail fast while the store circuit is open.

    ``close`` bypasses the breaker so shutdown always reaches the backend.
    """

    def __init__(self, store: CoordinationStore, breaker: CircuitBreaker) -> None:
        self._store = store
        self._breaker = breaker

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def inner(self) -> CoordinationStore:
        return self._store

    async def try_acquire(self, key: str, holder_id: str, ttl_ms: int) -> bool:
        return await self._guard(lambda: self._store.try_acquire(key, holder_id, ttl_ms))

    async def release(self, key: str, holder_id: str) -> bool:
        return await self._guard(lambda: self._store.release(key, holder_id))

    async def extend(self, key: str, holder_id: str, ttl_ms: int) -> bool:
        return await self._guard(lambda: self._store.extend(key, holder_id, ttl_ms))

    async def get(self, key: str) -> str | None:
        return await self._guard(lambda: self._store.get(key))

    async def incr(self, key: str, *, ttl_ms: int | None = None) -> int:
        return await self._guard(lambda: self._store.incr(key, ttl_ms=ttl_ms))

    async def decr(self, key: str, *, delete_if_nonpositive: bool = False) -> int:
        return await self._guard(
            lambda: self._store.decr(key, delete_if_nonpositive=delete_if_nonpositive)
        )

    async def delete(self, key: str) -> bool:
        return await self._guard(lambda: self._store.delete(key))

    async def pttl(self, key: str) -> int:
        return await self._guard(lambda: self._store.pttl(key))

    async def close(self) -> None:
        await self._store.close()

    async def _guard(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await self._breaker.call(operation)
        except StoreCircuitOpenError:
            raise
        except CircuitOpenError as exc:
            raise StoreCircuitOpenError(exc.name, exc.retry_after_ms) from exc


__all__ = ["CircuitGuardedStore", "StoreCircuitOpenError"]
