"""
Built-in security profiles, profile validation and YAML profile files.

Configuration Structure:
    profiles:
      batch-jobs:
        name: "Batch Jobs"
        risk_level: medium
        capabilities:
          - {name: filesystem_read, allowed: true}
          - {name: network_outbound, allowed: false}
        allowed_paths: [/tmp, /task]
        blocked_paths: [/etc, /root]
        resource_policy:
          max_cpu_cores: 2
          max_memory_mb: 2048
          max_execution_time: 600

Usage:
    from isolation.security.profiles import builtin_profiles, load_profile_file

    for profile in builtin_profiles() + load_profile_file("/etc/isolation/profiles.yaml"):
        manager.register_profile(profile)
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import yaml

from ..constants import Limits
from ..errors import ConfigurationError
from .models import (
    ConstraintType,
    NetworkSecurityPolicy,
    ResourceSecurityPolicy,
    RiskLevel,
    SecurityCapability,
    SecurityConstraint,
    SecurityProfile,
    Severity,
)

logger = logging.getLogger(__name__)

BUILTIN_PROFILE_IDS = ('low-risk', 'medium-risk', 'high-risk')


def _constraints(files: int, processes: int, memory_mb: int, seconds: int,
                 severities: List[Severity]) -> List[SecurityConstraint]:
    files_sev, proc_sev, mem_sev, time_sev = severities
    return [
        SecurityConstraint("max_files", "Max Open Files", ConstraintType.FILESYSTEM,
                           files, "Maximum number of open files", True, files_sev),
        SecurityConstraint("max_processes", "Max Processes", ConstraintType.PROCESS,
                           processes, "Maximum number of processes", True, proc_sev),
        SecurityConstraint("max_memory", "Max Memory", ConstraintType.MEMORY,
                           memory_mb, "Maximum memory in MB", True, mem_sev),
        SecurityConstraint("max_time", "Max Execution Time", ConstraintType.TIME,
                           seconds, "Maximum execution time in seconds", True, time_sev),
    ]


def builtin_profiles() -> List[SecurityProfile]:
    """The low/medium/high risk templates registered at startup."""
    low = SecurityProfile(
        id="low-risk",
        name="Low Risk Development",
        description="Profile for development and testing environments",
        risk_level=RiskLevel.LOW,
        capabilities=[
            SecurityCapability("filesystem_read", True),
            SecurityCapability("filesystem_write", True),
            SecurityCapability("network_outbound", True),
            SecurityCapability("process_create", True),
            SecurityCapability("network_inbound", False),
        ],
        constraints=_constraints(
            100, 20, 1024, 300,
            [Severity.LOW, Severity.LOW, Severity.MEDIUM, Severity.MEDIUM],
        ),
        allowed_paths=["/tmp", "/app", "/task"],
        blocked_paths=["/root", "/etc", "/var/log"],
        network_policy=NetworkSecurityPolicy(
            allow_external_network=True,
            allowed_hosts=["localhost", "127.0.0.1"],
            allowed_ports=[80, 443, 8080],
            allow_dns=True,
            allow_http=True,
            allow_https=True,
            max_connections=10,
            connection_timeout=30,
        ),
        resource_policy=ResourceSecurityPolicy(
            max_cpu_cores=1,
            max_memory_mb=1024,
            max_disk_space_mb=2048,
            max_open_files=100,
            max_processes=20,
            max_execution_time=300,
            allow_disk_write=True,
            allow_exec=True,
        ),
    )

    medium = SecurityProfile(
        id="medium-risk",
        name="Medium Risk Staging",
        description="Profile for staging and pre-production environments",
        risk_level=RiskLevel.MEDIUM,
        capabilities=[
            SecurityCapability("filesystem_read", True),
            SecurityCapability("filesystem_write", True),
            SecurityCapability("network_outbound", True),
            SecurityCapability("network_inbound", False),
            SecurityCapability("process_create", True),
            SecurityCapability("exec", False),
        ],
        constraints=_constraints(
            50, 10, 512, 120,
            [Severity.MEDIUM, Severity.MEDIUM, Severity.MEDIUM, Severity.HIGH],
        ),
        allowed_paths=["/tmp", "/app", "/task", "/opt"],
        blocked_paths=["/root", "/etc", "/var", "/proc", "/sys"],
        network_policy=NetworkSecurityPolicy(
            allow_external_network=True,
            allowed_hosts=["localhost", "127.0.0.1", "staging-api.company.com"],
            allowed_ports=[80, 443, 8080, 5432],
            blocked_hosts=["*.internal", "localhost.localdomain"],
            blocked_ports=[22, 23, 25, 3389],
            allow_dns=True,
            allow_http=True,
            allow_https=True,
            max_connections=5,
            connection_timeout=15,
        ),
        resource_policy=ResourceSecurityPolicy(
            max_cpu_cores=0.5,
            max_memory_mb=512,
            max_disk_space_mb=1024,
            max_open_files=50,
            max_processes=10,
            max_execution_time=120,
            allow_disk_write=True,
            allow_exec=False,
        ),
    )

    # "/" is not listed: a blocked root would shadow every allowed path
    high = SecurityProfile(
        id="high-risk",
        name="High Risk Production-Like",
        description="Profile for production-like testing with strict controls",
        risk_level=RiskLevel.HIGH,
        capabilities=[
            SecurityCapability("filesystem_read", True),
            SecurityCapability("filesystem_write", False),
            SecurityCapability("network_outbound", False),
            SecurityCapability("network_inbound", False),
            SecurityCapability("process_create", True),
            SecurityCapability("exec", False),
        ],
        constraints=_constraints(
            20, 5, 256, 60,
            [Severity.HIGH, Severity.HIGH, Severity.HIGH, Severity.CRITICAL],
        ),
        allowed_paths=["/tmp", "/app"],
        blocked_paths=["/root", "/etc", "/var", "/proc", "/sys", "/dev"],
        network_policy=NetworkSecurityPolicy(
            allow_external_network=False,
            allowed_hosts=["localhost", "127.0.0.1"],
            allowed_ports=[],
            blocked_hosts=["*"],
            blocked_ports=[1, 65534],
            allow_dns=False,
            allow_http=False,
            allow_https=False,
            max_connections=1,
            connection_timeout=5,
        ),
        resource_policy=ResourceSecurityPolicy(
            max_cpu_cores=0.25,
            max_memory_mb=256,
            max_disk_space_mb=512,
            max_open_files=20,
            max_processes=5,
            max_execution_time=60,
            allow_disk_write=False,
            allow_exec=False,
        ),
    )

    return [low, medium, high]


def validate_profile(profile: SecurityProfile) -> None:
    """
    Reject profiles whose numeric limits are out of range.

    Raises:
        ConfigurationError: naming the first invalid limit
    """
    resource = profile.resource_policy
    if resource is not None:
        if not 0 < resource.max_cpu_cores <= Limits.MAX_CPU_CORES:
            raise ConfigurationError("Invalid CPU cores limit")
        if not 0 < resource.max_memory_mb <= Limits.MAX_MEMORY_MB:
            raise ConfigurationError("Invalid memory limit")
        if not 0 < resource.max_execution_time <= Limits.MAX_EXECUTION_TIME:
            raise ConfigurationError("Invalid execution time limit")

    network = profile.network_policy
    if network is not None:
        if not 0 < network.max_connections <= Limits.MAX_CONNECTIONS:
            raise ConfigurationError("Invalid max connections limit")
        if not 0 < network.connection_timeout <= Limits.MAX_CONNECTION_TIMEOUT:
            raise ConfigurationError("Invalid connection timeout")

    for capability in profile.capabilities:
        if not isinstance(capability.allowed, bool):
            raise ConfigurationError(f"Invalid capability setting for {capability.name}")


def profiles_from_dict(data: Dict[str, Any]) -> List[SecurityProfile]:
    """Parse the `profiles:` mapping of a profile file."""
    profiles_data = data.get('profiles')
    if not isinstance(profiles_data, dict):
        raise ConfigurationError("Profile file must contain a 'profiles' mapping")

    profiles = []
    for profile_id, profile_data in profiles_data.items():
        if not isinstance(profile_data, dict):
            raise ConfigurationError(f"Profile {profile_id} must be a mapping")
        try:
            profiles.append(SecurityProfile.from_dict({**profile_data, 'id': str(profile_id)}))
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid profile {profile_id}: {e}") from e
    return profiles


def load_profile_file(path: Union[str, Path]) -> List[SecurityProfile]:
    """
    Load and validate every profile in one YAML file.

    Raises:
        ConfigurationError: unreadable file, bad YAML or an invalid profile
    """
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read profile file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not data:
        raise ConfigurationError(f"Empty profile file: {path}")

    profiles = profiles_from_dict(data)
    for profile in profiles:
        validate_profile(profile)

    logger.info(f"Loaded {len(profiles)} profiles from {path}")
    return profiles


def load_profile_paths(paths: Iterable[Union[str, Path]]) -> List[SecurityProfile]:
    """Load profiles from files and directories, skipping ones that fail."""
    profiles: List[SecurityProfile] = []
    for entry in paths:
        entry = Path(entry)
        if entry.is_dir():
            files = sorted(entry.glob("*.yaml")) + sorted(entry.glob("*.yml"))
        else:
            files = [entry]

        for file_path in files:
            try:
                profiles.extend(load_profile_file(file_path))
            except ConfigurationError as e:
                logger.error(f"Failed to load profiles from {file_path}: {e}")
    return profiles
