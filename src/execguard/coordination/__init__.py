"""Cross-process coordination: store clients and the distributed lock manager."""

from execguard.coordination.guarded import CircuitGuardedStore, StoreCircuitOpenError
from execguard.coordination.locks import (
    DistributedLockManager,
    LockError,
    LockMode,
    LockState,
    LockStatus,
    LockTimeoutError,
    LockToken,
    WriteBlockedByReadersError,
)
from execguard.coordination.store import (
    CoordinationStore,
    MemoryCoordinationStore,
    RedisCoordinationStore,
)

__all__ = [
    "CircuitGuardedStore",
    "CoordinationStore",
    "DistributedLockManager",
    "LockError",
    "LockMode",
    "LockState",
    "LockStatus",
    "LockTimeoutError",
    "LockToken",
    "MemoryCoordinationStore",
    "RedisCoordinationStore",
    "StoreCircuitOpenError",
    "WriteBlockedByReadersError",
]
