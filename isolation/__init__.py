"""
Sandbox Isolation Engine - Core Components
"""

__version__ = "1.0.0"

from .constants import (
    Timeouts,
    Intervals,
    Limits,
    Permissions,
    Paths,
    NetworkDefaults,
    SandboxDefaults,
)

from .errors import (
    IsolationError,
    ResourceExhaustionError,
    ConfigurationError,
    ExternalToolError,
    SandboxTimeoutError,
    UnexpectedExitError,
    SandboxNotFoundError,
    NetworkNotConnectedError,
)

from .events import EventBus, EngineEvent
from .config import EngineConfig, load_engine_config

from .sandbox import (
    SandboxManager,
    SandboxConfig,
    SandboxState,
    SandboxStatus,
    ResourceLimits,
    SecurityPolicy,
    ResourceLedger,
    CliContainerRuntime,
)
from .network import (
    NetworkIsolationManager,
    NetworkPolicy,
    NetworkRule,
    Destination,
    IptablesPacketFilter,
)
from .security import (
    SecurityManager,
    SecurityProfile,
    SecurityEvent,
    PolicyStore,
)
from .engine import IsolationEngine

__all__ = [
    # Constants
    'Timeouts',
    'Intervals',
    'Limits',
    'Permissions',
    'Paths',
    'NetworkDefaults',
    'SandboxDefaults',
    # Errors
    'IsolationError',
    'ResourceExhaustionError',
    'ConfigurationError',
    'ExternalToolError',
    'SandboxTimeoutError',
    'UnexpectedExitError',
    'SandboxNotFoundError',
    'NetworkNotConnectedError',
    # Events and config
    'EventBus',
    'EngineEvent',
    'EngineConfig',
    'load_engine_config',
    # Sandbox
    'SandboxManager',
    'SandboxConfig',
    'SandboxState',
    'SandboxStatus',
    'ResourceLimits',
    'SecurityPolicy',
    'ResourceLedger',
    'CliContainerRuntime',
    # Network
    'NetworkIsolationManager',
    'NetworkPolicy',
    'NetworkRule',
    'Destination',
    'IptablesPacketFilter',
    # Security
    'SecurityManager',
    'SecurityProfile',
    'SecurityEvent',
    'PolicyStore',
    # Engine
    'IsolationEngine',
]
