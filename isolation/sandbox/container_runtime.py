"""
Container Runtime adapter.

The SandboxManager and NetworkIsolationManager never shell out directly;
they talk to a ContainerRuntime. CliContainerRuntime drives the docker or
podman binary through subprocess. Any non-zero exit is surfaced as an
ExternalToolError carrying the captured stderr.

Tests use an in-memory implementation of the same interface.
"""

import json
import logging
import re
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from ..constants import Timeouts
from ..errors import ExternalToolError, SandboxTimeoutError
from .models import ExecResult, NetworkMode, ResourceUsage, RestartPolicy, SandboxConfig

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "isolation.sandbox"

# docker/podman `stats` unit suffixes
_SIZE_UNITS = {
    'b': 1,
    'kb': 1000,
    'mb': 1000 ** 2,
    'gb': 1000 ** 3,
    'tb': 1000 ** 4,
    'kib': 1024,
    'mib': 1024 ** 2,
    'gib': 1024 ** 3,
    'tib': 1024 ** 4,
}

_SIZE_RE = re.compile(r'^\s*([0-9]*\.?[0-9]+)\s*([a-zA-Z]*)\s*$')


def parse_size(size_str: str) -> int:
    """
    Parse a human-readable size as printed by `docker stats`.

    Examples:
        "512B" -> 512
        "1.5KiB" -> 1536
        "2MB" -> 2000000
        "--" -> 0
    """
    match = _SIZE_RE.match(size_str or "")
    if not match:
        return 0
    value, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower() if unit else 'b')
    if multiplier is None:
        return 0
    return int(float(value) * multiplier)


def parse_stats_line(line: str) -> ResourceUsage:
    """Parse one `{{.CPUPerc}}\\t{{.MemUsage}}\\t{{.NetIO}}` stats line."""
    parts = line.strip().split('\t')
    if len(parts) < 3:
        raise ValueError(f"Unexpected stats output: {line!r}")

    cpu_str, mem_str, net_str = parts[0], parts[1], parts[2]

    try:
        cpu_percent = float(cpu_str.strip().rstrip('%') or 0)
    except ValueError:
        cpu_percent = 0.0

    memory_bytes = parse_size(mem_str.split('/')[0])

    net_parts = net_str.split('/')
    net_in = parse_size(net_parts[0]) if net_parts else 0
    net_out = parse_size(net_parts[1]) if len(net_parts) > 1 else 0

    return ResourceUsage(
        cpu_percent=cpu_percent,
        memory_bytes=memory_bytes,
        net_bytes_in=net_in,
        net_bytes_out=net_out,
    )


class RuntimeKind(Enum):
    """Available container runtimes."""
    PODMAN = "podman"
    DOCKER = "docker"
    NONE = "none"


class ContainerRuntime(ABC):
    """Narrow interface over a container engine."""

    name = "abstract"

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    def create(self, config: SandboxConfig) -> str:
        """Create (but do not start) a container; returns its handle."""

    @abstractmethod
    def start(self, handle: str) -> None:
        ...

    @abstractmethod
    def stop(self, handle: str) -> None:
        ...

    @abstractmethod
    def remove(self, handle: str) -> None:
        ...

    @abstractmethod
    def exec(self, handle: str, command: List[str],
             env: Optional[Dict[str, str]] = None,
             timeout: Optional[float] = None) -> ExecResult:
        """Run a command inside a running container."""

    @abstractmethod
    def stats(self, handle: str) -> ResourceUsage:
        ...

    @abstractmethod
    def inspect(self, handle: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def network_create(self, name: str, subnet: str, gateway: str,
                       internal: bool = True,
                       options: Optional[Dict[str, str]] = None,
                       labels: Optional[Dict[str, str]] = None) -> str:
        ...

    @abstractmethod
    def network_connect(self, network: str, handle: str) -> None:
        ...

    @abstractmethod
    def network_disconnect(self, network: str, handle: str) -> None:
        ...

    @abstractmethod
    def network_remove(self, network: str) -> None:
        ...

    @abstractmethod
    def network_inspect(self, network: str) -> Dict[str, Any]:
        ...

    def get_capabilities(self) -> Dict[str, Any]:
        return {'runtime': self.name, 'available': self.is_available}


class CliContainerRuntime(ContainerRuntime):
    """
    ContainerRuntime backed by the docker or podman CLI.

    Args:
        binary: Explicit runtime binary; auto-detected (podman first) when None
        timeout: Default timeout for non-exec commands
    """

    def __init__(self, binary: Optional[str] = None,
                 timeout: float = Timeouts.SUBPROCESS_DEFAULT):
        self._timeout = timeout
        if binary:
            self._binary = binary
            self._kind = (
                RuntimeKind.PODMAN if 'podman' in binary else RuntimeKind.DOCKER
            )
        else:
            self._kind = self._detect_runtime()
            self._binary = self._kind.value

        if self._kind == RuntimeKind.NONE:
            logger.warning("No container runtime found. Sandbox creation will fail.")
        else:
            logger.info(f"Using container runtime: {self._binary}")

    @staticmethod
    def _detect_runtime() -> RuntimeKind:
        """Detect available container runtime (prefer podman)."""
        for kind in (RuntimeKind.PODMAN, RuntimeKind.DOCKER):
            if not shutil.which(kind.value):
                continue
            try:
                result = subprocess.run(
                    [kind.value, 'version', '--format', 'json'],
                    capture_output=True,
                    timeout=Timeouts.SUBPROCESS_SHORT,
                )
                if result.returncode == 0:
                    return kind
            except (subprocess.TimeoutExpired, OSError):
                continue
        return RuntimeKind.NONE

    @property
    def name(self) -> str:
        return self._binary

    @property
    def kind(self) -> RuntimeKind:
        return self._kind

    @property
    def is_available(self) -> bool:
        return self._kind != RuntimeKind.NONE

    def _run(self, args: List[str], timeout: Optional[float] = None,
             input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        """Run a runtime command; raises ExternalToolError on non-zero exit."""
        cmd = [self._binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                input=input_text,
                timeout=timeout or self._timeout,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(cmd, None, f"{self._binary} not found: {e}") from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ExternalToolError(cmd, None, str(e)) from e

        if result.returncode != 0:
            raise ExternalToolError(cmd, result.returncode, result.stderr)

        return result

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def build_create_args(self, config: SandboxConfig) -> List[str]:
        """Translate a SandboxConfig into `create` arguments."""
        limits = config.resource_limits
        policy = config.security_policy

        user = "nobody:nogroup" if policy.no_privileges else config.user
        args = [
            'create',
            '--name', config.id,
            '--label', f'{SANDBOX_LABEL}={config.id}',
            '--user', user,
            '--workdir', config.working_directory,
            '--network', self._network_arg(config),
        ]

        if limits.cpu > 0:
            args.extend(['--cpus', str(limits.cpu)])
        if limits.memory_mb > 0:
            args.extend(['--memory', f'{limits.memory_mb}m'])
        if policy.max_processes > 0:
            args.extend(['--pids-limit', str(policy.max_processes)])
        if policy.max_open_files > 0:
            args.extend([
                '--ulimit', f'nofile={policy.max_open_files}:{policy.max_open_files}',
            ])

        for key, value in config.environment.items():
            args.extend(['--env', f'{key}={value}'])

        for volume in config.volumes:
            args.extend(['--volume', volume])

        if config.restart_policy != RestartPolicy.NEVER:
            args.extend(['--restart', config.restart_policy.value])

        if policy.read_only_root:
            args.append('--read-only')
        if policy.no_privileges:
            args.extend(['--security-opt', 'no-new-privileges:true'])
            args.extend(['--cap-drop', 'ALL'])

        args.append(config.image)
        args.extend(config.command)
        return args

    @staticmethod
    def _network_arg(config: SandboxConfig) -> str:
        if config.network:
            return config.network
        if config.network_mode in (NetworkMode.ISOLATED, NetworkMode.NONE):
            return 'none'
        if not config.resource_limits.network_allowed:
            return 'none'
        return config.network_mode.value

    def create(self, config: SandboxConfig) -> str:
        result = self._run(self.build_create_args(config))
        handle = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else config.id
        logger.debug(f"Created container {handle} for sandbox {config.id}")
        return handle

    def start(self, handle: str) -> None:
        self._run(['start', handle])

    def stop(self, handle: str) -> None:
        self._run(
            ['stop', '-t', str(Timeouts.CONTAINER_STOP_GRACE), handle],
            timeout=self._timeout + Timeouts.CONTAINER_STOP_GRACE,
        )

    def remove(self, handle: str) -> None:
        self._run(['rm', '-f', handle])

    def exec(self, handle: str, command: List[str],
             env: Optional[Dict[str, str]] = None,
             timeout: Optional[float] = None) -> ExecResult:
        args = [self._binary, 'exec']
        for key, value in (env or {}).items():
            args.extend(['--env', f'{key}={value}'])
        args.append(handle)
        args.extend(command)

        logger.debug(f"Executing in {handle}: {' '.join(command)}")
        started = time.monotonic()
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run only kills the exec client; the command keeps
            # running in the container until the container is killed
            self._kill_after_timeout(handle)
            raise SandboxTimeoutError(
                f"Command timed out after {timeout}s in {handle}",
                timeout=timeout or 0.0,
            ) from e
        except FileNotFoundError as e:
            raise ExternalToolError(args, None, f"{self._binary} not found: {e}") from e

        return ExecResult(
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=time.monotonic() - started,
        )

    def _kill_after_timeout(self, handle: str) -> None:
        try:
            self._run(['kill', handle], timeout=Timeouts.SUBPROCESS_SHORT)
            logger.warning(f"Killed container {handle} after exec timeout")
        except ExternalToolError as e:
            logger.warning(f"Failed to kill container {handle} after exec timeout: {e}")

    def stats(self, handle: str) -> ResourceUsage:
        result = self._run([
            'stats', handle, '--no-stream',
            '--format', '{{.CPUPerc}}\t{{.MemUsage}}\t{{.NetIO}}',
        ])
        return parse_stats_line(result.stdout)

    def inspect(self, handle: str) -> Dict[str, Any]:
        result = self._run(['inspect', handle])
        data = json.loads(result.stdout or '[]')
        if isinstance(data, list):
            data = data[0] if data else {}
        return data

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def network_create(self, name: str, subnet: str, gateway: str,
                       internal: bool = True,
                       options: Optional[Dict[str, str]] = None,
                       labels: Optional[Dict[str, str]] = None) -> str:
        args = [
            'network', 'create',
            '--driver', 'bridge',
            '--subnet', subnet,
            '--gateway', gateway,
        ]
        if internal:
            args.append('--internal')
        for key, value in (options or {}).items():
            args.extend(['--opt', f'{key}={value}'])
        for key, value in (labels or {}).items():
            args.extend(['--label', f'{key}={value}'])
        args.append(name)

        result = self._run(args)
        return result.stdout.strip() or name

    def network_connect(self, network: str, handle: str) -> None:
        self._run(['network', 'connect', network, handle])

    def network_disconnect(self, network: str, handle: str) -> None:
        self._run(['network', 'disconnect', network, handle])

    def network_remove(self, network: str) -> None:
        self._run(['network', 'rm', network])

    def network_inspect(self, network: str) -> Dict[str, Any]:
        result = self._run(['network', 'inspect', network])
        data = json.loads(result.stdout or '[]')
        if isinstance(data, list):
            data = data[0] if data else {}
        return data

    def get_capabilities(self) -> Dict[str, Any]:
        return {
            'runtime': self._kind.value,
            'binary': self._binary,
            'available': self.is_available,
        }
