"""Exclusive and read/write locks built on a :class:`CoordinationStore`.

Ownership is enforced by the store: a token can only release or extend the key while the
stored value still equals its holder id. Nothing here caches ownership between calls.

Read/write keys per resource::

    rw:<resource>:write       exclusive writer entry
    rw:<resource>:read        short-TTL helper entry serializing reader-count updates
    rw:<resource>:read_count  number of active readers

Writers take the same helper entry while they check the reader count and set the write
key, so a reader increment and a writer grant never interleave while the helper is held.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Final

import structlog

from execguard.constants import (
    AUTO_RENEW_FRACTION,
    DEFAULT_LOCK_MAX_RETRY_INTERVAL_MS,
    DEFAULT_LOCK_RETRY_INTERVAL_MS,
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_LOCK_TTL_MS,
    DEFAULT_READ_COUNT_TTL_MS,
    DEFAULT_READ_HELPER_TTL_MS,
)
from execguard.coordination.store import KEY_ABSENT, CoordinationStore
from execguard.domain.ids import generate_holder_id
from execguard.errors import CoordinationStoreError, ErrorSeverity, ErrorType, ExecGuardError
from execguard.security.command_validator import CommandValidator

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - Python <3.11 compatibility.
    UTC = timezone.utc  # noqa: UP017

SleepFn = Callable[[float], Awaitable[None]]

_EXCLUSIVE_PREFIX: Final[str] = "lock"
_RW_PREFIX: Final[str] = "rw"


class LockState(StrEnum):
    UNACQUIRED = "unacquired"
    HELD = "held"
    RELEASED = "released"
    EXPIRED = "expired"


_TERMINAL_STATES: Final[frozenset[LockState]] = frozenset({LockState.RELEASED, LockState.EXPIRED})


class LockMode(StrEnum):
    EXCLUSIVE = "exclusive"
    READ = "read"
    WRITE = "write"


class LockError(ExecGuardError):
    """Base error for lock acquisition failures."""

    error_type = ErrorType.CONCURRENCY_CONFLICT
    severity = ErrorSeverity.MEDIUM


class LockTimeoutError(LockError):
    """Raised when a lock could not be acquired before the caller's deadline."""

    def __init__(self, resource: str, waited_ms: int, attempts: int) -> None:
        super().__init__(
            f"timed out acquiring lock on {resource!r} after {waited_ms}ms ({attempts} attempts)",
            context={"resource": resource, "waited_ms": waited_ms, "attempts": attempts},
        )
        self.resource = resource
        self.waited_ms = waited_ms
        self.attempts = attempts


class WriteBlockedByReadersError(LockError):
    """Raised immediately when a write lock is requested while readers are active."""

    def __init__(self, resource: str, read_count: int) -> None:
        super().__init__(
            f"write lock on {resource!r} blocked by {read_count} active reader(s)",
            context={"resource": resource, "read_count": read_count},
        )
        self.resource = resource
        self.read_count = read_count


@dataclass(slots=True)
class LockToken:
    """Proof of a successful acquisition. Only its creator may release or extend it."""

    key: str
    holder_id: str
    acquired_at: datetime
    ttl_ms: int
    resource: str
    mode: LockMode = LockMode.EXCLUSIVE
    _state: LockState = field(default=LockState.HELD, repr=False)

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def is_held(self) -> bool:
        return self._state is LockState.HELD

    def _transition(self, target: LockState) -> None:
        if self._state in _TERMINAL_STATES:
            raise RuntimeError(f"lock token is already {self._state.value}")
        self._state = target


@dataclass(frozen=True, slots=True)
class LockStatus:
    """Store-observed state for one resource."""

    resource: str
    exclusive_holder: str | None
    exclusive_ttl_ms: int | None
    write_holder: str | None
    read_count: int

    @property
    def locked(self) -> bool:
        return self.exclusive_holder is not None or self.write_holder is not None


class DistributedLockManager:
    """Acquire, extend and release locks whose single source of truth is the store."""

    def __init__(
        self,
        store: CoordinationStore,
        *,
        default_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        retry_interval_ms: int = DEFAULT_LOCK_RETRY_INTERVAL_MS,
        max_retry_interval_ms: int = DEFAULT_LOCK_MAX_RETRY_INTERVAL_MS,
        read_helper_ttl_ms: int = DEFAULT_READ_HELPER_TTL_MS,
        read_count_ttl_ms: int = DEFAULT_READ_COUNT_TTL_MS,
        auto_renew: bool = False,
        validator: CommandValidator | None = None,
        holder_id_factory: Callable[[], str] = generate_holder_id,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        for name, value in (
            ("default_ttl_ms", default_ttl_ms),
            ("retry_interval_ms", retry_interval_ms),
            ("max_retry_interval_ms", max_retry_interval_ms),
            ("read_helper_ttl_ms", read_helper_ttl_ms),
            ("read_count_ttl_ms", read_count_ttl_ms),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0")
        if lock_timeout_ms < 0:
            raise ValueError("lock_timeout_ms must be >= 0")
        if max_retry_interval_ms < retry_interval_ms:
            raise ValueError("max_retry_interval_ms cannot be lower than retry_interval_ms")

        self._store = store
        self._default_ttl_ms = default_ttl_ms
        self._lock_timeout_ms = lock_timeout_ms
        self._retry_interval_ms = retry_interval_ms
        self._max_retry_interval_ms = max_retry_interval_ms
        self._read_helper_ttl_ms = read_helper_ttl_ms
        self._read_count_ttl_ms = read_count_ttl_ms
        self._auto_renew = auto_renew
        self._validator = validator or CommandValidator()
        self._holder_id_factory = holder_id_factory
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._renewals: dict[str, asyncio.Task[None]] = {}

    @property
    def store(self) -> CoordinationStore:
        return self._store

    # ------------------------------------------------------------------
    # Exclusive locks
    # ------------------------------------------------------------------

    async def acquire_lock(
        self,
        resource: str,
        ttl_ms: int | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> LockToken:
        """Acquire an exclusive lock, retrying with bounded backoff until ``timeout_ms``."""

        self._validator.validate_key(resource)
        key = _exclusive_key(resource)
        ttl = self._resolve_ttl(ttl_ms)
        holder_id = self._holder_id_factory()

        async def attempt() -> bool:
            return await self._store.try_acquire(key, holder_id, ttl)

        await self._retry_until(resource, attempt, timeout_ms)
        return self._issue(key, holder_id, ttl, resource, LockMode.EXCLUSIVE)

    async def try_acquire_lock(self, resource: str, ttl_ms: int | None = None) -> LockToken | None:
        """Single non-blocking attempt; ``None`` when another holder owns the resource."""

        try:
            return await self.acquire_lock(resource, ttl_ms, timeout_ms=0)
        except LockTimeoutError:
            return None

    async def release(self, token: LockToken) -> bool:
        """Release ``token``. Returns ``False`` (never raises) when it is no longer held."""

        self._cancel_renewal(token)
        if not token.is_held:
            self._logger.debug(
                "lock_release_noop", resource=token.resource, state=token.state.value
            )
            return False

        try:
            if token.mode is LockMode.READ:
                remaining = await self._store.decr(token.key, delete_if_nonpositive=True)
                released = remaining >= 0
            else:
                released = await self._store.release(token.key, token.holder_id)
        except CoordinationStoreError as exc:
            self._logger.warning(
                "lock_release_failed",
                resource=token.resource,
                mode=token.mode.value,
                error=str(exc),
            )
            return False

        if released:
            token._transition(LockState.RELEASED)
            self._logger.info("lock_released", resource=token.resource, mode=token.mode.value)
            return True

        token._transition(LockState.EXPIRED)
        self._logger.warning(
            "lock_release_expired", resource=token.resource, mode=token.mode.value
        )
        return False

    async def extend(self, token: LockToken, new_ttl_ms: int | None = None) -> bool:
        """Renew an exclusive or write token without releasing it."""

        if token.mode is LockMode.READ:
            raise ValueError("read tokens share a reader count and cannot be extended")
        if not token.is_held:
            return False
        ttl = self._resolve_ttl(new_ttl_ms if new_ttl_ms is not None else token.ttl_ms)
        extended = await self._store.extend(token.key, token.holder_id, ttl)
        if not extended:
            token._transition(LockState.EXPIRED)
            self._cancel_renewal(token)
            self._logger.warning("lock_extend_expired", resource=token.resource)
            return False
        token.ttl_ms = ttl
        self._logger.debug("lock_extended", resource=token.resource, ttl_ms=ttl)
        return True

    async def is_valid(self, token: LockToken) -> bool:
        if not token.is_held:
            return False
        if token.mode is LockMode.READ:
            return await self.read_count(token.resource) > 0
        return await self._store.get(token.key) == token.holder_id

    # ------------------------------------------------------------------
    # Read/write locks
    # ------------------------------------------------------------------

    async def acquire_read(self, resource: str, *, timeout_ms: int | None = None) -> LockToken:
        """Join the shared reader set. Readers never block each other."""

        self._validator.validate_key(resource)
        helper_key, count_key, write_key = _rw_keys(resource)
        holder_id = self._holder_id_factory()

        async def undo() -> None:
            await self._store.decr(count_key, delete_if_nonpositive=True)

        async def attempt() -> bool:
            if not await self._store.try_acquire(helper_key, holder_id, self._read_helper_ttl_ms):
                return False
            counted = False
            try:
                if await self._store.get(write_key) is not None:
                    return False
                await self._store.incr(count_key, ttl_ms=self._read_count_ttl_ms)
                counted = True
                return True
            finally:
                await self._release_helper(
                    resource, helper_key, holder_id, undo if counted else None
                )

        await self._retry_until(resource, attempt, timeout_ms)
        return self._issue(count_key, holder_id, self._read_count_ttl_ms, resource, LockMode.READ)

    async def acquire_write(
        self,
        resource: str,
        ttl_ms: int | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> LockToken:
        """Acquire the writer entry. Fails fast with ``WriteBlockedByReadersError``."""

        self._validator.validate_key(resource)
        helper_key, count_key, write_key = _rw_keys(resource)
        ttl = self._resolve_ttl(ttl_ms)
        holder_id = self._holder_id_factory()

        async def undo() -> None:
            await self._store.release(write_key, holder_id)

        async def attempt() -> bool:
            if not await self._store.try_acquire(helper_key, holder_id, self._read_helper_ttl_ms):
                return False
            granted = False
            try:
                readers = _parse_count(await self._store.get(count_key))
                if readers > 0:
                    raise WriteBlockedByReadersError(resource, readers)
                granted = await self._store.try_acquire(write_key, holder_id, ttl)
                return granted
            finally:
                await self._release_helper(
                    resource, helper_key, holder_id, undo if granted else None
                )

        await self._retry_until(resource, attempt, timeout_ms)
        return self._issue(write_key, holder_id, ttl, resource, LockMode.WRITE)

    async def read_count(self, resource: str) -> int:
        self._validator.validate_key(resource)
        _, count_key, _ = _rw_keys(resource)
        return _parse_count(await self._store.get(count_key))

    # ------------------------------------------------------------------
    # Scoped acquisition and administration
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(
        self,
        resource: str,
        *,
        mode: LockMode | str = LockMode.EXCLUSIVE,
        ttl_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> AsyncIterator[LockToken]:
        """Hold a lock for the body of an ``async with`` block; release on every exit path."""

        resolved = LockMode(mode)
        if resolved is LockMode.READ:
            token = await self.acquire_read(resource, timeout_ms=timeout_ms)
        elif resolved is LockMode.WRITE:
            token = await self.acquire_write(resource, ttl_ms, timeout_ms=timeout_ms)
        else:
            token = await self.acquire_lock(resource, ttl_ms, timeout_ms=timeout_ms)
        try:
            yield token
        finally:
            await self.release(token)

    async def lock_status(self, resource: str) -> LockStatus:
        self._validator.validate_key(resource)
        exclusive_key = _exclusive_key(resource)
        _, count_key, write_key = _rw_keys(resource)
        holder = await self._store.get(exclusive_key)
        ttl = await self._store.pttl(exclusive_key)
        return LockStatus(
            resource=resource,
            exclusive_holder=holder,
            exclusive_ttl_ms=None if ttl == KEY_ABSENT else ttl,
            write_holder=await self._store.get(write_key),
            read_count=_parse_count(await self._store.get(count_key)),
        )

    async def force_release(self, resource: str) -> bool:
        """Administrative release that ignores ownership. Use only for stuck locks."""

        self._validator.validate_key(resource)
        _, _, write_key = _rw_keys(resource)
        removed_exclusive = await self._store.delete(_exclusive_key(resource))
        removed_write = await self._store.delete(write_key)
        self._logger.warning(
            "lock_force_released",
            resource=resource,
            exclusive=removed_exclusive,
            write=removed_write,
        )
        return removed_exclusive or removed_write

    async def close(self) -> None:
        tasks = list(self._renewals.values())
        self._renewals.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _retry_until(
        self,
        resource: str,
        attempt: Callable[[], Awaitable[bool]],
        timeout_ms: int | None,
    ) -> None:
        budget_ms = self._lock_timeout_ms if timeout_ms is None else timeout_ms
        if budget_ms < 0:
            raise ValueError("timeout_ms must be >= 0")
        started = self._clock()
        deadline = started + budget_ms / 1000.0
        interval_ms = self._retry_interval_ms
        attempts = 0

        while True:
            attempts += 1
            if await attempt():
                return
            remaining = deadline - self._clock()
            if remaining <= 0:
                waited_ms = int((self._clock() - started) * 1000)
                self._logger.info(
                    "lock_timeout", resource=resource, waited_ms=waited_ms, attempts=attempts
                )
                raise LockTimeoutError(resource, waited_ms, attempts)
            await self._sleep(min(interval_ms / 1000.0, remaining))
            interval_ms = min(interval_ms * 2, self._max_retry_interval_ms)

    async def _release_helper(
        self,
        resource: str,
        helper_key: str,
        holder_id: str,
        undo: Callable[[], Awaitable[None]] | None,
    ) -> None:
        """Drop the helper entry. If that fails after a grant, roll the grant back first.

        A grant whose token is never issued would otherwise block writers (or hold the
        write key) until its TTL runs out.
        """

        try:
            await self._store.release(helper_key, holder_id)
        except CoordinationStoreError:
            if undo is not None:
                try:
                    await undo()
                except CoordinationStoreError as undo_exc:
                    self._logger.error(
                        "lock_grant_rollback_failed", resource=resource, error=str(undo_exc)
                    )
                else:
                    self._logger.warning("lock_grant_rolled_back", resource=resource)
            raise

    def _issue(
        self,
        key: str,
        holder_id: str,
        ttl_ms: int,
        resource: str,
        mode: LockMode,
    ) -> LockToken:
        token = LockToken(
            key=key,
            holder_id=holder_id,
            acquired_at=datetime.now(tz=UTC),
            ttl_ms=ttl_ms,
            resource=resource,
            mode=mode,
        )
        self._logger.info("lock_acquired", resource=resource, mode=mode.value, ttl_ms=ttl_ms)
        if self._auto_renew and mode is not LockMode.READ:
            self._renewals[holder_id] = asyncio.get_running_loop().create_task(
                self._renew_loop(token)
            )
        return token

    async def _renew_loop(self, token: LockToken) -> None:
        while token.is_held:
            await self._sleep(token.ttl_ms * AUTO_RENEW_FRACTION / 1000.0)
            if not token.is_held:
                return
            try:
                renewed = await self.extend(token)
            except CoordinationStoreError as exc:
                self._logger.warning("lock_renewal_failed", resource=token.resource, error=str(exc))
                continue
            if not renewed:
                return

    def _cancel_renewal(self, token: LockToken) -> None:
        task = self._renewals.pop(token.holder_id, None)
        if task is None or task is _current_task():
            return
        task.cancel()

    def _resolve_ttl(self, ttl_ms: int | None) -> int:
        ttl = self._default_ttl_ms if ttl_ms is None else ttl_ms
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ValueError("ttl_ms must be a positive integer")
        return ttl


def _exclusive_key(resource: str) -> str:
    return f"{_EXCLUSIVE_PREFIX}:{resource}"


def _rw_keys(resource: str) -> tuple[str, str, str]:
    base = f"{_RW_PREFIX}:{resource}"
    return f"{base}:read", f"{base}:read_count", f"{base}:write"


def _parse_count(raw: str | None) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)
    except ValueError as exc:
        raise CoordinationStoreError(f"reader count is not an integer: {raw!r}") from exc


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


__all__ = [
    "DistributedLockManager",
    "LockError",
    "LockMode",
    "LockState",
    "LockStatus",
    "LockTimeoutError",
    "LockToken",
    "WriteBlockedByReadersError",
]
