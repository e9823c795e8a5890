"""Control plane: rate admission and the guarded execution pipeline."""

from execguard.control_plane.controller import (
    ExecutionCoordinator,
    ExecutionObserver,
    ExecutionOutcome,
    ExecutionRequest,
    NullObserver,
)
from execguard.control_plane.rate_governor import (
    RateDecision,
    RateGovernor,
    RateGovernorStats,
    identity_for,
)

__all__ = [
    "ExecutionCoordinator",
    "ExecutionObserver",
    "ExecutionOutcome",
    "ExecutionRequest",
    "NullObserver",
    "RateDecision",
    "RateGovernor",
    "RateGovernorStats",
    "identity_for",
]
