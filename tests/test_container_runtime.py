"""
Tests for the CLI container runtime adapter.

subprocess is patched throughout; no container engine is required.
"""

import os
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from isolation.errors import ExternalToolError, SandboxTimeoutError
from isolation.sandbox.container_runtime import (
    CliContainerRuntime,
    RuntimeKind,
    parse_size,
    parse_stats_line,
)
from isolation.sandbox.models import (
    NetworkMode,
    ResourceLimits,
    RestartPolicy,
    SandboxConfig,
    SecurityPolicy,
)


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


@pytest.fixture
def docker():
    return CliContainerRuntime(binary="docker")


# ===========================================================================
# Parsing Tests
# ===========================================================================

class TestParseSize:
    """Tests for parse_size()."""

    @pytest.mark.unit
    @pytest.mark.parametrize("text,expected", [
        ("512B", 512),
        ("1.5KiB", 1536),
        ("2MB", 2000000),
        ("1GiB", 1024 ** 3),
        ("0B", 0),
        ("--", 0),
        ("", 0),
        ("12XB", 0),
    ])
    def test_sizes(self, text, expected):
        assert parse_size(text) == expected


class TestParseStatsLine:
    """Tests for parse_stats_line()."""

    @pytest.mark.unit
    def test_full_line(self):
        """A docker stats line should parse into ResourceUsage."""
        usage = parse_stats_line("12.50%\t100MiB / 512MiB\t1.2kB / 3kB\n")
        assert usage.cpu_percent == 12.5
        assert usage.memory_bytes == 100 * 1024 * 1024
        assert usage.net_bytes_in == 1200
        assert usage.net_bytes_out == 3000

    @pytest.mark.unit
    def test_placeholder_cpu(self):
        """Podman's '--' placeholders should read as zero."""
        usage = parse_stats_line("--\t-- / --\t-- / --")
        assert usage.cpu_percent == 0.0
        assert usage.memory_bytes == 0

    @pytest.mark.unit
    def test_short_line_rejected(self):
        with pytest.raises(ValueError):
            parse_stats_line("12%")


# ===========================================================================
# Detection Tests
# ===========================================================================

class TestDetection:
    """Runtime auto-detection."""

    @pytest.mark.unit
    def test_prefers_podman(self):
        """podman should win when both binaries work."""
        with patch('isolation.sandbox.container_runtime.shutil.which', return_value='/usr/bin/x'), \
                patch('isolation.sandbox.container_runtime.subprocess.run',
                      return_value=_completed("{}")):
            runtime = CliContainerRuntime()
        assert runtime.kind == RuntimeKind.PODMAN
        assert runtime.name == "podman"
        assert runtime.is_available

    @pytest.mark.unit
    def test_falls_back_to_docker(self):
        """docker should be used when podman is missing."""
        def which(name):
            return '/usr/bin/docker' if name == 'docker' else None

        with patch('isolation.sandbox.container_runtime.shutil.which', side_effect=which), \
                patch('isolation.sandbox.container_runtime.subprocess.run',
                      return_value=_completed("{}")):
            runtime = CliContainerRuntime()
        assert runtime.kind == RuntimeKind.DOCKER

    @pytest.mark.unit
    def test_nothing_available(self):
        with patch('isolation.sandbox.container_runtime.shutil.which', return_value=None):
            runtime = CliContainerRuntime()
        assert runtime.kind == RuntimeKind.NONE
        assert not runtime.is_available
        assert runtime.get_capabilities()['available'] is False

    @pytest.mark.unit
    def test_explicit_binary(self):
        """An explicit binary skips detection."""
        runtime = CliContainerRuntime(binary="/opt/bin/podman")
        assert runtime.kind == RuntimeKind.PODMAN
        assert runtime.name == "/opt/bin/podman"


# ===========================================================================
# Create Argument Tests
# ===========================================================================

class TestBuildCreateArgs:
    """Tests for build_create_args()."""

    @pytest.mark.unit
    def test_hardened_defaults(self, docker):
        """Default configs should be locked down."""
        config = SandboxConfig(id="sbx-1", image="python:3.12-slim", command=("sleep", "60"))
        args = docker.build_create_args(config)

        assert args[:3] == ['create', '--name', 'sbx-1']
        assert args[args.index('--user') + 1] == "nobody:nogroup"
        assert args[args.index('--network') + 1] == "none"
        assert args[args.index('--cpus') + 1] == "1.0"
        assert args[args.index('--memory') + 1] == "512m"
        assert args[args.index('--pids-limit') + 1] == "10"
        assert 'nofile=100:100' in args
        assert '--read-only' in args
        assert 'no-new-privileges:true' in args
        assert args[args.index('--cap-drop') + 1] == "ALL"
        assert args[-3:] == ['python:3.12-slim', 'sleep', '60']

    @pytest.mark.unit
    def test_attached_network_wins(self, docker):
        """An engine-attached network should be passed through."""
        config = SandboxConfig(id="sbx-1", network="sandbox-sbx-1")
        args = docker.build_create_args(config)
        assert args[args.index('--network') + 1] == "sandbox-sbx-1"

    @pytest.mark.unit
    def test_bridge_requires_network_allowed(self, docker):
        """Bridge mode only applies when the limits allow networking."""
        closed = SandboxConfig(id="a", network_mode=NetworkMode.BRIDGE)
        opened = SandboxConfig(
            id="b",
            network_mode=NetworkMode.BRIDGE,
            resource_limits=ResourceLimits(network_allowed=True),
        )
        args = docker.build_create_args(closed)
        assert args[args.index('--network') + 1] == "none"

        args = docker.build_create_args(opened)
        assert args[args.index('--network') + 1] == "bridge"

    @pytest.mark.unit
    def test_privileged_user_and_env(self, docker):
        """Without no_privileges the configured user is kept."""
        config = SandboxConfig(
            id="sbx-1",
            user="sandboxuser",
            environment={'TASK_ID': '42'},
            volumes=("/data:/data:ro",),
            security_policy=SecurityPolicy(no_privileges=False, read_only_root=False),
        )
        args = docker.build_create_args(config)
        assert args[args.index('--user') + 1] == "sandboxuser"
        assert 'TASK_ID=42' in args
        assert '/data:/data:ro' in args
        assert '--read-only' not in args
        assert '--cap-drop' not in args

    @pytest.mark.unit
    @pytest.mark.parametrize("policy,expected", [
        (RestartPolicy.ON_FAILURE, "on-failure"),
        (RestartPolicy.ALWAYS, "always"),
    ])
    def test_restart_policy(self, docker, policy, expected):
        args = docker.build_create_args(SandboxConfig(id="sbx-1", restart_policy=policy))
        assert args[args.index('--restart') + 1] == expected

    @pytest.mark.unit
    def test_never_restart_omits_flag(self, docker):
        assert '--restart' not in docker.build_create_args(SandboxConfig(id="sbx-1"))


# ===========================================================================
# Command Execution Tests
# ===========================================================================

class TestCommands:
    """Subprocess invocation and error mapping."""

    @pytest.mark.unit
    def test_create_returns_handle(self, docker):
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   return_value=_completed("abc123\n")) as run:
            handle = docker.create(SandboxConfig(id="sbx-1"))

        assert handle == "abc123"
        assert run.call_args[0][0][:2] == ['docker', 'create']

    @pytest.mark.unit
    def test_nonzero_exit_raises(self, docker):
        """A failing runtime command should carry its stderr."""
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   return_value=_completed(returncode=125, stderr="Error: no such image\n")):
            with pytest.raises(ExternalToolError) as exc_info:
                docker.start("abc123")

        assert exc_info.value.returncode == 125
        assert exc_info.value.stderr == "Error: no such image"
        assert exc_info.value.command == ['docker', 'start', 'abc123']

    @pytest.mark.unit
    def test_missing_binary_raises(self, docker):
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   side_effect=FileNotFoundError("docker")):
            with pytest.raises(ExternalToolError):
                docker.remove("abc123")

    @pytest.mark.unit
    def test_command_timeout_raises_tool_error(self, docker):
        """A hung runtime command maps to ExternalToolError, not TimeoutExpired."""
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=30)):
            with pytest.raises(ExternalToolError) as exc_info:
                docker.stop("abc123")

        assert exc_info.value.returncode is None
        assert exc_info.value.command[:2] == ['docker', 'stop']
        assert "timed out" in exc_info.value.stderr

    @pytest.mark.unit
    def test_exec_result(self, docker):
        """exec returns the exit code and output without raising."""
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   return_value=_completed("out", returncode=2, stderr="err")) as run:
            result = docker.exec("abc123", ["ls", "/"], env={'A': '1'}, timeout=10)

        assert result.exit_code == 2
        assert result.stdout == "out"
        assert result.stderr == "err"
        assert run.call_args[0][0] == ['docker', 'exec', '--env', 'A=1', 'abc123', 'ls', '/']
        assert run.call_args[1]['timeout'] == 10

    @pytest.mark.unit
    def test_exec_timeout(self, docker):
        """An expired exec should raise SandboxTimeoutError."""
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=5)):
            with pytest.raises(SandboxTimeoutError) as exc_info:
                docker.exec("abc123", ["sleep", "100"], timeout=5)
        assert exc_info.value.timeout == 5

    @pytest.mark.unit
    def test_exec_timeout_kills_container(self, docker):
        """The exec'd command must not outlive its timeout inside the container."""
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   side_effect=[subprocess.TimeoutExpired(cmd="docker", timeout=5),
                                _completed()]) as run:
            with pytest.raises(SandboxTimeoutError):
                docker.exec("abc123", ["sleep", "100"], timeout=5)

        assert run.call_count == 2
        assert run.call_args_list[1][0][0] == ['docker', 'kill', 'abc123']

    @pytest.mark.unit
    def test_stats(self, docker):
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   return_value=_completed("50.00%\t1MiB / 2MiB\t0B / 0B\n")):
            usage = docker.stats("abc123")
        assert usage.cpu_percent == 50.0
        assert usage.memory_bytes == 1024 * 1024

    @pytest.mark.unit
    def test_inspect_unwraps_list(self, docker):
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   return_value=_completed('[{"Id": "abc123", "State": {"Pid": 77}}]')):
            data = docker.inspect("abc123")
        assert data['State']['Pid'] == 77

    @pytest.mark.unit
    def test_network_create_args(self, docker):
        """Internal networks should carry options and labels."""
        with patch('isolation.sandbox.container_runtime.subprocess.run',
                   return_value=_completed("netid\n")) as run:
            network_id = docker.network_create(
                "sandbox-sbx-1", "172.30.0.0/24", "172.30.0.1",
                internal=True,
                options={'com.docker.network.bridge.enable_icc': 'false'},
                labels={'isolation.sandbox': 'sbx-1'},
            )

        args = run.call_args[0][0]
        assert network_id == "netid"
        assert args[:3] == ['docker', 'network', 'create']
        assert '--internal' in args
        assert 'com.docker.network.bridge.enable_icc=false' in args
        assert 'isolation.sandbox=sbx-1' in args
        assert args[-1] == "sandbox-sbx-1"
