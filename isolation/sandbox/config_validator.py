"""
Static validation of sandbox configurations.

Runs after admission and before any container command is issued. Each
failure raises ConfigurationError naming the offending constraint.
"""

import logging

from ..constants import Limits
from ..errors import ConfigurationError
from ..utils.paths import first_match
from .models import NetworkMode, SandboxConfig

logger = logging.getLogger(__name__)

_NETWORKLESS_MODES = (NetworkMode.ISOLATED, NetworkMode.NONE)


class SecurityValidator:
    """Validates resource and security parameters of a SandboxConfig."""

    def validate(self, config: SandboxConfig) -> None:
        limits = config.resource_limits
        policy = config.security_policy

        if not 0 < limits.cpu <= Limits.MAX_CPU_CORES:
            raise ConfigurationError(
                f"CPU limit must be between 0 and {int(Limits.MAX_CPU_CORES)} cores"
            )

        if not Limits.MIN_MEMORY_MB <= limits.memory_mb <= Limits.MAX_MEMORY_MB:
            raise ConfigurationError(
                f"Memory limit must be between {Limits.MIN_MEMORY_MB}MB and "
                f"{Limits.MAX_MEMORY_MB // 1024}GB"
            )

        if limits.disk_mb < 0:
            raise ConfigurationError("Disk limit must not be negative")

        if limits.max_duration_sec <= 0:
            raise ConfigurationError("Maximum duration must be positive")

        if not policy.allow_network and (
            config.network_mode not in _NETWORKLESS_MODES or limits.network_allowed
        ):
            raise ConfigurationError(
                "Network access is disabled but sandbox requires network"
            )

        if not policy.allow_exec and config.command:
            raise ConfigurationError("Command execution is disabled")

        if config.volumes and not policy.allow_filesystem:
            raise ConfigurationError(
                "Filesystem access is disabled but sandbox mounts volumes"
            )

        for volume in config.volumes:
            host_path = volume.split(':', 1)[0]
            if first_match(host_path, policy.blocked_paths):
                raise ConfigurationError(f"Blocked volume path: {host_path}")

        logger.debug(f"Configuration for sandbox {config.id} passed validation")
