"""
Pytest configuration and shared fixtures for Sandbox Isolation Engine tests.

The container runtime and packet filter are replaced with in-memory fakes
(tests/fakes.py), so nothing here needs docker, podman, iptables or root.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Generator, List

import pytest

# Add the parent directory to the path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from isolation.config.engine_config import EngineConfig
from isolation.engine import IsolationEngine
from isolation.events import EngineEvent, EventBus
from isolation.network.network_isolation import NetworkIsolationManager
from isolation.sandbox.resource_ledger import ResourceLedger
from isolation.sandbox.sandbox_manager import SandboxManager
from isolation.security.policy_store import PolicyStore
from isolation.security.security_manager import SecurityManager

from fakes import FakeContainerRuntime, FakePacketFilter


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="isolation_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


# ===========================================================================
# Event Fixtures
# ===========================================================================

class EventRecorder:
    """Collects every event emitted on a bus."""

    def __init__(self, bus: EventBus):
        self.events: List[EngineEvent] = []
        bus.subscribe_all(self.events.append)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> List[EngineEvent]:
        return [e for e in self.events if e.name == name]


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


# ===========================================================================
# Collaborator Fixtures
# ===========================================================================

@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def packet_filter() -> FakePacketFilter:
    return FakePacketFilter()


@pytest.fixture
def ledger() -> ResourceLedger:
    """A ledger with fixed totals: 4 cores, 4096MB."""
    return ResourceLedger(total_cpu=4.0, total_memory_mb=4096)


@pytest.fixture
def policy_store(temp_dir: Path) -> PolicyStore:
    return PolicyStore(str(temp_dir / "security-db"))


# ===========================================================================
# Manager Fixtures
# ===========================================================================

@pytest.fixture
def sandbox_manager(runtime, ledger, event_bus) -> Generator[SandboxManager, None, None]:
    """SandboxManager with background monitoring disabled."""
    manager = SandboxManager(
        runtime,
        ledger,
        event_bus=event_bus,
        readiness_timeout=1.0,
        enable_monitoring=False,
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def network_manager(runtime, packet_filter, event_bus) -> Generator[NetworkIsolationManager, None, None]:
    manager = NetworkIsolationManager(runtime, packet_filter, event_bus=event_bus)
    yield manager
    manager.stop()


@pytest.fixture
def security_manager(policy_store, event_bus) -> Generator[SecurityManager, None, None]:
    """SecurityManager whose compliance loop effectively never fires on its own."""
    manager = SecurityManager(
        store=policy_store,
        event_bus=event_bus,
        compliance_interval=3600.0,
    )
    yield manager
    manager.stop()


@pytest.fixture
def engine(temp_dir, runtime, packet_filter, ledger, event_bus) -> Generator[IsolationEngine, None, None]:
    config = EngineConfig(
        policy_store_dir=str(temp_dir / "security-db"),
        readiness_timeout=1.0,
        compliance_interval=3600.0,
        enable_monitoring=False,
    )
    engine = IsolationEngine(
        config,
        runtime=runtime,
        packet_filter=packet_filter,
        ledger=ledger,
        event_bus=event_bus,
    )
    yield engine
    engine.shutdown()


# ===========================================================================
# Markers Registration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "security: Security-specific tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
