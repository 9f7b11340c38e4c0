"""
Centralized Constants Module for the Sandbox Isolation Engine.

Consolidates the thresholds, intervals and limits used by the sandbox,
network and security managers so they can be audited in one place.

Values marked with an override comment can be changed at runtime through
environment variables prefixed with ISOLATION_. Invalid or out-of-range
overrides are logged and ignored.

Usage:
    from isolation.constants import Timeouts, Intervals, Limits

    subprocess.run(cmd, timeout=Timeouts.SUBPROCESS_DEFAULT)
    stop_event.wait(Intervals.RESOURCE_POLL)
"""

import os
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

ENV_PREFIX = "ISOLATION_"


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

T = TypeVar('T')


def _env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    validator: Optional[Callable[[T], bool]] = None,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
) -> T:
    """Get a configuration value with environment variable override.

    Args:
        env_var: Environment variable name (will be prefixed with ISOLATION_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        validator: Optional validation function
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(
                f"{full_env_var}={env_value} below minimum {min_value}, using default"
            )
            return default
        if max_value is not None and converted > max_value:
            logger.warning(
                f"{full_env_var}={env_value} above maximum {max_value}, using default"
            )
            return default

        if validator is not None and not validator(converted):
            logger.warning(f"{full_env_var}={env_value} failed validation, using default")
            return default

        logger.info(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


def _parse_bool(value: str) -> bool:
    """Parse a boolean environment value."""
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# TIMEOUT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """Centralized timeout values in seconds."""
    # External tool invocations (docker/podman/iptables)
    SUBPROCESS_SHORT: float = 5.0       # Availability checks
    SUBPROCESS_DEFAULT: float = 30.0    # Container create/start/network calls
    CONTAINER_STOP_GRACE: int = 5       # Seconds passed to `stop -t`

    # Sandbox readiness wait in execute_in_sandbox
    # Override with: ISOLATION_READINESS_TIMEOUT=20
    READINESS: float = _env_override(
        "READINESS_TIMEOUT", 10.0, float, min_value=0.5, max_value=300.0
    )
    READINESS_POLL: float = 0.1

    # Thread join timeouts
    THREAD_JOIN_SHORT: float = 2.0
    THREAD_JOIN_DEFAULT: float = 5.0


# =============================================================================
# MONITORING INTERVALS
# =============================================================================

@dataclass(frozen=True)
class Intervals:
    """Background loop intervals in seconds."""
    # Override with: ISOLATION_RESOURCE_POLL_INTERVAL=10
    RESOURCE_POLL: float = _env_override(
        "RESOURCE_POLL_INTERVAL", 5.0, float, min_value=0.5, max_value=3600.0
    )
    NETWORK_STATS: float = _env_override(
        "NETWORK_STATS_INTERVAL", 30.0, float, min_value=1.0, max_value=3600.0
    )
    COMPLIANCE_CHECK: float = _env_override(
        "COMPLIANCE_INTERVAL", 30.0, float, min_value=1.0, max_value=3600.0
    )
    SECURITY_REPORT: float = 60.0
    EVENT_PRUNE: float = 3600.0


# =============================================================================
# LIMIT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Limits:
    """Admission and validation limits."""
    # Sandbox configuration bounds
    MAX_CPU_CORES: float = 8.0
    MIN_MEMORY_MB: int = 64
    MAX_MEMORY_MB: int = 8192

    # Security profile bounds
    MAX_EXECUTION_TIME: int = 3600
    MAX_CONNECTIONS: int = 100
    MAX_CONNECTION_TIMEOUT: int = 300

    # Compliance scoring
    COMPLIANCE_WINDOW: int = 50                 # Recent events considered
    COMPLIANCE_WARNING_THRESHOLD: int = 70      # Score below this warns
    ISOLATION_VIOLATION_THRESHOLD: int = 10     # Violations above this isolate
    HIGH_RISK_EVENT_THRESHOLD: int = 5          # High events above this = high risk

    # In-memory audit ring
    # Override with: ISOLATION_MAX_AUDIT_EVENTS=50000
    MAX_AUDIT_EVENTS: int = _env_override(
        "MAX_AUDIT_EVENTS", 10000, int, min_value=100, max_value=1000000
    )
    EVENT_RETENTION_SECONDS: int = 24 * 60 * 60

    # Completed execution durations kept for averaging
    EXECUTION_HISTORY: int = 1000


# =============================================================================
# FILE PERMISSION CONSTANTS
# =============================================================================

class Permissions(IntEnum):
    """File permission modes for the policy store and signing key."""
    SECURE_FILE = 0o600                 # rw-------
    SECURE_DIR = 0o700                  # rwx------


# =============================================================================
# PATH CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Paths:
    """Default filesystem locations."""
    # Override with: ISOLATION_POLICY_STORE_DIR=/var/lib/isolation/security-db
    POLICY_STORE_DIR: str = _env_override(
        "POLICY_STORE_DIR", os.path.join(os.getcwd(), "security-db")
    )
    PROFILES_SUBDIR: str = "profiles"
    EVENTS_SUBDIR: str = "events"
    CONFIG_FILE: str = _env_override("CONFIG_FILE", "/etc/isolation/engine.yaml")


# =============================================================================
# NETWORK CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class NetworkDefaults:
    """Sandbox network defaults."""
    # Private pool that per-sandbox /24 subnets are carved from
    SUBNET_POOL: str = _env_override("SUBNET_POOL", "172.30.0.0/16")
    SUBNET_PREFIX: int = 24
    NETWORK_PREFIX: str = "sandbox-"
    CHAIN_PREFIX: str = "NET-"
    PARENT_CHAIN: str = "DOCKER-USER"
    USE_SUDO: bool = _env_override("USE_SUDO", False, _parse_bool)
    LOOPBACK_CIDR: str = "127.0.0.1/32"


# =============================================================================
# SANDBOX DEFAULTS
# =============================================================================

@dataclass(frozen=True)
class SandboxDefaults:
    """Defaults applied to new sandbox configurations."""
    IMAGE: str = _env_override("SANDBOX_IMAGE", "director-sandbox")
    CPU: float = 1.0
    MEMORY_MB: int = 512
    DISK_MB: int = 1024
    MAX_DURATION_SEC: int = 300
    WORKING_DIRECTORY: str = "/task"
    USER: str = "sandboxuser"
    MAX_PROCESSES: int = 10
    MAX_OPEN_FILES: int = 100
