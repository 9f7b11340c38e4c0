"""
Sandbox Module for the Sandbox Isolation Engine

Container-backed sandboxes with admission control and resource monitoring.

Components:
- models: SandboxConfig, ResourceLimits, SecurityPolicy, SandboxState
- resource_ledger: process-wide CPU/memory admission control
- config_validator: static checks on limits and security policy
- container_runtime: docker/podman CLI abstraction
- sandbox_manager: lifecycle, monitoring and cleanup

Usage:
    from isolation.sandbox import SandboxManager, ResourceLedger, CliContainerRuntime

    manager = SandboxManager(CliContainerRuntime(), ResourceLedger())
    result = manager.execute_in_sandbox("task-1", ["echo", "hello"])
"""

from .models import (
    SandboxStatus,
    NetworkMode,
    RestartPolicy,
    ResourceLimits,
    SecurityPolicy,
    SandboxConfig,
    ResourceUsage,
    SandboxState,
    ExecResult,
    SandboxMetrics,
)

from .resource_ledger import (
    ResourceLedger,
    Allocation,
)

from .config_validator import SecurityValidator

from .container_runtime import (
    ContainerRuntime,
    CliContainerRuntime,
    RuntimeKind,
    parse_size,
    parse_stats_line,
)

from .sandbox_manager import SandboxManager

__all__ = [
    # Models
    'SandboxStatus',
    'NetworkMode',
    'RestartPolicy',
    'ResourceLimits',
    'SecurityPolicy',
    'SandboxConfig',
    'ResourceUsage',
    'SandboxState',
    'ExecResult',
    'SandboxMetrics',
    # Ledger
    'ResourceLedger',
    'Allocation',
    # Validation
    'SecurityValidator',
    # Runtime
    'ContainerRuntime',
    'CliContainerRuntime',
    'RuntimeKind',
    'parse_size',
    'parse_stats_line',
    # Manager
    'SandboxManager',
]
