"""
Engine Configuration - YAML file plus ISOLATION_ environment overrides.

Precedence (highest first): environment variables, the YAML file, the
defaults in isolation.constants.

Configuration Structure:
    runtime_binary: podman          # auto-detected when omitted
    use_sudo: false                 # prefix iptables with `sudo -n`
    readiness_timeout: 10
    resource_poll_interval: 5
    network_stats_interval: 30
    compliance_interval: 30
    security_report_interval: 60
    policy_store_dir: /var/lib/isolation/security-db
    signing_key_path: /var/lib/isolation/signing.key
    subnet_pool: 172.30.0.0/16
    max_audit_events: 10000
    stop_on_isolation: false
    profile_files:
      - /etc/isolation/profiles.d
    default_resource_limits:
      cpu: 1.0
      memory_mb: 512
    default_security_policy:
      allow_network: false
      blocked_paths: [/etc, /root]

Usage:
    from isolation.config import load_engine_config

    config = load_engine_config("/etc/isolation/engine.yaml")
    engine = IsolationEngine(config)
"""

import ipaddress
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from ..constants import (
    Intervals,
    Limits,
    NetworkDefaults,
    Paths,
    Timeouts,
    _env_override,
    _parse_bool,
)
from ..errors import ConfigurationError
from ..sandbox.models import ResourceLimits, SecurityPolicy

logger = logging.getLogger(__name__)


def _is_private_network(value: str) -> bool:
    try:
        return ipaddress.ip_network(value, strict=False).is_private
    except ValueError:
        return False


def _split_paths(value: str) -> List[str]:
    return [p for p in value.split(os.pathsep) if p]


@dataclass
class EngineConfig:
    """Settings for an IsolationEngine and the managers it wires."""
    runtime_binary: Optional[str] = None
    use_sudo: bool = NetworkDefaults.USE_SUDO

    readiness_timeout: float = Timeouts.READINESS
    resource_poll_interval: float = Intervals.RESOURCE_POLL
    network_stats_interval: float = Intervals.NETWORK_STATS
    compliance_interval: float = Intervals.COMPLIANCE_CHECK
    security_report_interval: float = Intervals.SECURITY_REPORT
    enable_monitoring: bool = True

    policy_store_dir: str = Paths.POLICY_STORE_DIR
    signing_key_path: Optional[str] = None
    subnet_pool: str = NetworkDefaults.SUBNET_POOL
    max_audit_events: int = Limits.MAX_AUDIT_EVENTS
    profile_files: List[str] = field(default_factory=list)
    stop_on_isolation: bool = False

    # Ledger totals; None means "ask psutil"
    total_cpu: Optional[float] = None
    total_memory_mb: Optional[int] = None

    default_resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    default_security_policy: SecurityPolicy = field(default_factory=SecurityPolicy)

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: on the first invalid setting
        """
        for name in ('readiness_timeout', 'resource_poll_interval',
                     'network_stats_interval', 'compliance_interval',
                     'security_report_interval'):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number, got {value!r}")

        if not _is_private_network(self.subnet_pool):
            raise ConfigurationError(f"subnet_pool must be a private network: {self.subnet_pool}")

        if self.max_audit_events < 1:
            raise ConfigurationError("max_audit_events must be at least 1")

        if self.total_cpu is not None and self.total_cpu <= 0:
            raise ConfigurationError("total_cpu must be positive")
        if self.total_memory_mb is not None and self.total_memory_mb <= 0:
            raise ConfigurationError("total_memory_mb must be positive")

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, (ResourceLimits, SecurityPolicy)):
                value = value.to_dict()
            elif isinstance(value, list):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """Build from a parsed mapping; unknown keys are logged and ignored."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}

        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            kwargs[key] = value

        try:
            if 'default_resource_limits' in kwargs:
                kwargs['default_resource_limits'] = ResourceLimits.from_dict(
                    kwargs['default_resource_limits'] or {}
                )
            if 'default_security_policy' in kwargs:
                kwargs['default_security_policy'] = SecurityPolicy.from_dict(
                    kwargs['default_security_policy'] or {}
                )
            if 'profile_files' in kwargs:
                profile_files = kwargs['profile_files'] or []
                if isinstance(profile_files, str):
                    profile_files = [profile_files]
                kwargs['profile_files'] = [str(p) for p in profile_files]
            return cls(**kwargs)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid engine configuration: {e}") from e

    def apply_environment(self) -> 'EngineConfig':
        """Apply ISOLATION_* overrides in place."""
        self.runtime_binary = _env_override("RUNTIME", self.runtime_binary)
        self.use_sudo = _env_override("USE_SUDO", self.use_sudo, _parse_bool)
        self.readiness_timeout = _env_override(
            "READINESS_TIMEOUT", self.readiness_timeout, float, min_value=0.5, max_value=300.0
        )
        self.resource_poll_interval = _env_override(
            "RESOURCE_POLL_INTERVAL", self.resource_poll_interval, float,
            min_value=0.5, max_value=3600.0,
        )
        self.network_stats_interval = _env_override(
            "NETWORK_STATS_INTERVAL", self.network_stats_interval, float,
            min_value=1.0, max_value=3600.0,
        )
        self.compliance_interval = _env_override(
            "COMPLIANCE_INTERVAL", self.compliance_interval, float,
            min_value=1.0, max_value=3600.0,
        )
        self.policy_store_dir = _env_override("POLICY_STORE_DIR", self.policy_store_dir)
        self.signing_key_path = _env_override("SIGNING_KEY", self.signing_key_path)
        self.subnet_pool = _env_override(
            "SUBNET_POOL", self.subnet_pool, validator=_is_private_network
        )
        self.max_audit_events = _env_override(
            "MAX_AUDIT_EVENTS", self.max_audit_events, int, min_value=100, max_value=1000000
        )
        self.stop_on_isolation = _env_override(
            "STOP_ON_ISOLATION", self.stop_on_isolation, _parse_bool
        )
        self.profile_files = _env_override("PROFILE_FILES", self.profile_files, _split_paths)
        return self


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load configuration from `path` (or the default config file if it
    exists), then apply environment overrides and validate.

    Raises:
        ConfigurationError: unreadable file, bad YAML or invalid values
    """
    explicit = path is not None
    path = path or Paths.CONFIG_FILE

    data: Dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        logger.info(f"Loaded engine configuration from {path}")
    elif explicit:
        raise ConfigurationError(f"Configuration file not found: {path}")
    else:
        logger.debug(f"No configuration file at {path}, using defaults")

    config = EngineConfig.from_dict(data).apply_environment()
    config.validate()
    return config
