"""
CLI Module for the Sandbox Isolation Engine

Provides command-line tools:
- sandboxctl: run sandboxes, list profiles, export audit reports

Usage:
    python -m isolation.cli.sandboxctl run -- /bin/echo hello
    python -m isolation.cli.sandboxctl profiles
"""

from .sandboxctl import SandboxCLI, main as sandboxctl_main

__all__ = [
    'SandboxCLI',
    'sandboxctl_main',
]
