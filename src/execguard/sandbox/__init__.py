"""
execguard sandbox — isolated execution of untrusted payloads.

Three tiers, chosen explicitly per sandbox spec:
- ``in_process``: capability-checked Python subset in a disposable, killable evaluator.
- ``process``: child process with scrubbed environment, rlimits and kill escalation.
- ``container``: fresh locked-down container per execution.
"""

from execguard.sandbox.container_runtime import (
    ContainerConfig,
    ContainerRunner,
    ContainerRuntime,
    DockerCliRuntime,
    ExecOutcome,
)
from execguard.sandbox.inprocess import InProcessRunner, compile_restricted
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    ResourceLimitError,
    SandboxError,
    SandboxPolicyError,
    SandboxResult,
    SandboxSpec,
    SandboxTimeoutError,
    SandboxUnavailableError,
)
from execguard.sandbox.network_policy import NetworkDecision, NetworkPolicy, NetworkPolicyMode
from execguard.sandbox.process_runner import ProcessRunner
from execguard.sandbox.resource_governor import ResourceGovernor, ResourceGovernorConfig
from execguard.sandbox.sandbox_manager import SandboxExecutor, SandboxExecutorStats

__all__ = [
    "ContainerConfig",
    "ContainerRunner",
    "ContainerRuntime",
    "DockerCliRuntime",
    "ExecOutcome",
    "InProcessRunner",
    "IsolationTier",
    "KillReason",
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
    "ProcessRunner",
    "ResourceGovernor",
    "ResourceGovernorConfig",
    "ResourceLimitError",
    "SandboxError",
    "SandboxExecutor",
    "SandboxExecutorStats",
    "SandboxPolicyError",
    "SandboxResult",
    "SandboxSpec",
    "SandboxTimeoutError",
    "SandboxUnavailableError",
    "compile_restricted",
]
