"""
Sandbox data model.

SandboxConfig and its nested limits/policy are frozen: a sandbox's
configuration cannot change after creation. SandboxState is owned by the
SandboxManager and only mutated by its lifecycle and monitor operations.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..constants import SandboxDefaults


class SandboxStatus(Enum):
    """Lifecycle status of a sandbox."""
    CREATING = "creating"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    FAILED = "failed"
    EXITED = "exited"


class NetworkMode(Enum):
    """Container network mode requested by the caller."""
    ISOLATED = "isolated"
    BRIDGE = "bridge"
    HOST = "host"
    NONE = "none"


class RestartPolicy(Enum):
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


def _as_tuple(value: Any) -> Tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class ResourceLimits:
    """CPU/memory/disk budget for one sandbox."""
    cpu: float = SandboxDefaults.CPU
    memory_mb: int = SandboxDefaults.MEMORY_MB
    disk_mb: int = SandboxDefaults.DISK_MB
    network_allowed: bool = False
    max_duration_sec: int = SandboxDefaults.MAX_DURATION_SEC

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cpu': self.cpu,
            'memory_mb': self.memory_mb,
            'disk_mb': self.disk_mb,
            'network_allowed': self.network_allowed,
            'max_duration_sec': self.max_duration_sec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResourceLimits':
        return cls(
            cpu=float(data.get('cpu', SandboxDefaults.CPU)),
            memory_mb=int(data.get('memory_mb', SandboxDefaults.MEMORY_MB)),
            disk_mb=int(data.get('disk_mb', SandboxDefaults.DISK_MB)),
            network_allowed=bool(data.get('network_allowed', False)),
            max_duration_sec=int(data.get('max_duration_sec', SandboxDefaults.MAX_DURATION_SEC)),
        )


@dataclass(frozen=True)
class SecurityPolicy:
    """Static security constraints checked before a container is created."""
    allow_filesystem: bool = True
    allow_network: bool = False
    allow_exec: bool = True
    allowed_paths: Tuple[str, ...] = ()
    blocked_paths: Tuple[str, ...] = ()
    max_processes: int = SandboxDefaults.MAX_PROCESSES
    max_open_files: int = SandboxDefaults.MAX_OPEN_FILES
    read_only_root: bool = True
    no_privileges: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'allowed_paths', _as_tuple(self.allowed_paths))
        object.__setattr__(self, 'blocked_paths', _as_tuple(self.blocked_paths))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allow_filesystem': self.allow_filesystem,
            'allow_network': self.allow_network,
            'allow_exec': self.allow_exec,
            'allowed_paths': list(self.allowed_paths),
            'blocked_paths': list(self.blocked_paths),
            'max_processes': self.max_processes,
            'max_open_files': self.max_open_files,
            'read_only_root': self.read_only_root,
            'no_privileges': self.no_privileges,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityPolicy':
        defaults = cls()
        return cls(
            allow_filesystem=bool(data.get('allow_filesystem', defaults.allow_filesystem)),
            allow_network=bool(data.get('allow_network', defaults.allow_network)),
            allow_exec=bool(data.get('allow_exec', defaults.allow_exec)),
            allowed_paths=tuple(data.get('allowed_paths', ())),
            blocked_paths=tuple(data.get('blocked_paths', ())),
            max_processes=int(data.get('max_processes', defaults.max_processes)),
            max_open_files=int(data.get('max_open_files', defaults.max_open_files)),
            read_only_root=bool(data.get('read_only_root', defaults.read_only_root)),
            no_privileges=bool(data.get('no_privileges', defaults.no_privileges)),
        )


@dataclass(frozen=True)
class SandboxConfig:
    """
    Immutable description of a sandbox.

    `network` names the isolated network the container is created on; it is
    filled in by the engine when a per-sandbox network is attached.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "default-sandbox"
    image: str = SandboxDefaults.IMAGE
    command: Tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    security_policy: SecurityPolicy = field(default_factory=SecurityPolicy)
    network_mode: NetworkMode = NetworkMode.ISOLATED
    volumes: Tuple[str, ...] = ()
    working_directory: str = SandboxDefaults.WORKING_DIRECTORY
    user: str = SandboxDefaults.USER
    cleanup_on_exit: bool = True
    restart_policy: RestartPolicy = RestartPolicy.NEVER
    network: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'command', _as_tuple(self.command))
        object.__setattr__(self, 'volumes', _as_tuple(self.volumes))
        object.__setattr__(self, 'environment', MappingProxyType(dict(self.environment or {})))
        if not isinstance(self.network_mode, NetworkMode):
            object.__setattr__(self, 'network_mode', NetworkMode(self.network_mode))
        if not isinstance(self.restart_policy, RestartPolicy):
            object.__setattr__(self, 'restart_policy', RestartPolicy(self.restart_policy))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'image': self.image,
            'command': list(self.command),
            'environment': dict(self.environment),
            'resource_limits': self.resource_limits.to_dict(),
            'security_policy': self.security_policy.to_dict(),
            'network_mode': self.network_mode.value,
            'volumes': list(self.volumes),
            'working_directory': self.working_directory,
            'user': self.user,
            'cleanup_on_exit': self.cleanup_on_exit,
            'restart_policy': self.restart_policy.value,
            'network': self.network,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SandboxConfig':
        kwargs: Dict[str, Any] = {}
        for key in ('id', 'name', 'image', 'working_directory', 'user',
                    'cleanup_on_exit', 'network'):
            if key in data:
                kwargs[key] = data[key]
        if 'command' in data:
            kwargs['command'] = tuple(data['command'])
        if 'environment' in data:
            kwargs['environment'] = {str(k): str(v) for k, v in data['environment'].items()}
        if 'volumes' in data:
            kwargs['volumes'] = tuple(data['volumes'])
        if 'resource_limits' in data:
            kwargs['resource_limits'] = ResourceLimits.from_dict(data['resource_limits'])
        if 'security_policy' in data:
            kwargs['security_policy'] = SecurityPolicy.from_dict(data['security_policy'])
        if 'network_mode' in data:
            kwargs['network_mode'] = NetworkMode(data['network_mode'])
        if 'restart_policy' in data:
            kwargs['restart_policy'] = RestartPolicy(data['restart_policy'])
        return cls(**kwargs)


@dataclass
class ResourceUsage:
    """Latest resource sample for a running sandbox."""
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    net_bytes_in: int = 0
    net_bytes_out: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cpu_percent': self.cpu_percent,
            'memory_bytes': self.memory_bytes,
            'net_bytes_in': self.net_bytes_in,
            'net_bytes_out': self.net_bytes_out,
        }


@dataclass
class SandboxState:
    """Mutable runtime record for one sandbox."""
    id: str
    config: SandboxConfig
    status: SandboxStatus = SandboxStatus.CREATING
    container_handle: Optional[str] = None
    pid: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    usage: ResourceUsage = field(default_factory=ResourceUsage)
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_monotonic: Optional[float] = None

    def mark_running(self, handle: str, pid: Optional[int] = None) -> None:
        self.status = SandboxStatus.RUNNING
        self.container_handle = handle
        self.pid = pid
        self.start_time = datetime.utcnow()
        self.started_monotonic = time.monotonic()

    def mark_finished(self, status: SandboxStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.end_time = datetime.utcnow()
        if error is not None:
            self.last_error = error

    @property
    def elapsed_seconds(self) -> Optional[float]:
        if self.started_monotonic is None:
            return None
        return time.monotonic() - self.started_monotonic

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.config.name,
            'status': self.status.value,
            'container_handle': self.container_handle,
            'pid': self.pid,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'exit_code': self.exit_code,
            'usage': self.usage.to_dict(),
            'last_error': self.last_error,
            'network': self.config.network,
        }


@dataclass
class ExecResult:
    """Outcome of a command executed inside a sandbox."""
    exit_code: int
    stdout: str
    stderr: str
    sandbox_id: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sandbox_id': self.sandbox_id,
            'exit_code': self.exit_code,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'duration_seconds': self.duration_seconds,
        }


@dataclass
class SandboxMetrics:
    """Aggregated view returned by SandboxManager.get_metrics()."""
    total_sandboxes: int = 0
    active_sandboxes: int = 0
    failed_sandboxes: int = 0
    average_execution_time: float = 0.0
    peak_cpu_percent: float = 0.0
    peak_memory_bytes: int = 0
    resource_utilization: Dict[str, Any] = field(default_factory=dict)
    by_status: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_sandboxes': self.total_sandboxes,
            'active_sandboxes': self.active_sandboxes,
            'failed_sandboxes': self.failed_sandboxes,
            'average_execution_time': self.average_execution_time,
            'peak_cpu_percent': self.peak_cpu_percent,
            'peak_memory_bytes': self.peak_memory_bytes,
            'resource_utilization': dict(self.resource_utilization),
            'by_status': dict(self.by_status),
        }


ACTIVE_STATUSES: List[SandboxStatus] = [
    SandboxStatus.CREATING,
    SandboxStatus.RUNNING,
    SandboxStatus.PAUSED,
]
