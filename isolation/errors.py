"""
Exception taxonomy for the Sandbox Isolation Engine.

Creation and validation failures raise; monitoring and teardown failures are
logged and swallowed by the managers. Policy violations are never raised,
they are returned as data from SecurityManager.validate_execution().
"""

from typing import List, Optional


class IsolationError(Exception):
    """Base class for all engine errors."""
    pass


class ResourceExhaustionError(IsolationError):
    """Admission denied: the ledger cannot cover the requested CPU/memory."""

    def __init__(self, message: str, requested_cpu: float = 0.0,
                 requested_memory_mb: int = 0,
                 available_cpu: float = 0.0, available_memory_mb: int = 0):
        super().__init__(message)
        self.requested_cpu = requested_cpu
        self.requested_memory_mb = requested_memory_mb
        self.available_cpu = available_cpu
        self.available_memory_mb = available_memory_mb


class ConfigurationError(IsolationError, ValueError):
    """Invalid resource, security or network parameters."""
    pass


class ExternalToolError(IsolationError):
    """A container runtime or packet filter command exited non-zero."""

    def __init__(self, command: List[str], returncode: Optional[int], stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        tool = self.command[0] if self.command else "command"
        super().__init__(
            f"{tool} command failed with code {returncode}: {self.stderr}"
        )


class SandboxTimeoutError(IsolationError, TimeoutError):
    """Command execution exceeded its wall-clock budget and was killed."""

    def __init__(self, message: str, timeout: float = 0.0):
        super().__init__(message)
        self.timeout = timeout


class UnexpectedExitError(IsolationError):
    """The container backing a sandbox vanished while being monitored."""
    pass


class SandboxNotFoundError(IsolationError, KeyError):
    """No sandbox with the given id is registered."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class NetworkNotConnectedError(IsolationError):
    """A network operation requires the sandbox to be attached to a network."""
    pass


__all__ = [
    'IsolationError',
    'ResourceExhaustionError',
    'ConfigurationError',
    'ExternalToolError',
    'SandboxTimeoutError',
    'UnexpectedExitError',
    'SandboxNotFoundError',
    'NetworkNotConnectedError',
]
