"""
Isolation Engine - composition root for the sandbox, network and security managers.

Wires one ResourceLedger, ContainerRuntime, PacketFilter, PolicyStore and
EventBus into the three managers and connects them through events:

    sandbox_cleanup              -> tear down the sandbox network, drop its profile
    sandbox_isolation_triggered  -> isolate the sandbox network
                                    (and clean it up with stop_on_isolation)
    resource_limit_exceeded      -> warning event in the security audit trail

Usage:
    from isolation import IsolationEngine, SandboxConfig, load_engine_config

    engine = IsolationEngine(load_engine_config())
    engine.start()

    sandbox_id = engine.create_sandbox(SandboxConfig(image="python:3.12-slim"),
                                       profile_id="medium-risk")
    ...
    engine.shutdown()
"""

import dataclasses
import logging
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

from .config.engine_config import EngineConfig
from .errors import ConfigurationError
from .events import EngineEvent, EventBus
from .network.models import NetworkPolicy
from .network.network_isolation import NetworkIsolationManager
from .network.packet_filter import IptablesPacketFilter, PacketFilter
from .sandbox.container_runtime import CliContainerRuntime, ContainerRuntime
from .sandbox.models import ExecResult, SandboxConfig
from .sandbox.resource_ledger import ResourceLedger
from .sandbox.sandbox_manager import SandboxManager
from .security.models import EventAction, EventCategory, EventType, SecurityEvent, Severity
from .security.policy_store import PolicyStore
from .security.security_manager import SecurityManager
from .utils.error_handling import ErrorCategory, ErrorSeverity, get_error_aggregator, safe_execute

logger = logging.getLogger(__name__)


class IsolationEngine:
    """
    Owns the managers and the cross-manager policy.

    The engine, not the Security Manager, acts on isolation triggers.
    Collaborators can be injected; anything not injected is built from
    the EngineConfig.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        runtime: Optional[ContainerRuntime] = None,
        packet_filter: Optional[PacketFilter] = None,
        ledger: Optional[ResourceLedger] = None,
        store: Optional[PolicyStore] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config or EngineConfig()
        self.event_bus = event_bus or EventBus()
        self.runtime = runtime or CliContainerRuntime(self.config.runtime_binary)
        self.packet_filter = packet_filter or IptablesPacketFilter(use_sudo=self.config.use_sudo)
        self.ledger = ledger or ResourceLedger(self.config.total_cpu, self.config.total_memory_mb)
        self.store = store or PolicyStore(self.config.policy_store_dir,
                                          self.config.signing_key_path)

        self.sandboxes = SandboxManager(
            self.runtime,
            self.ledger,
            event_bus=self.event_bus,
            default_config=SandboxConfig(
                resource_limits=self.config.default_resource_limits,
                security_policy=self.config.default_security_policy,
            ),
            poll_interval=self.config.resource_poll_interval,
            readiness_timeout=self.config.readiness_timeout,
            enable_monitoring=self.config.enable_monitoring,
        )
        self.network = NetworkIsolationManager(
            self.runtime,
            self.packet_filter,
            event_bus=self.event_bus,
            subnet_pool=self.config.subnet_pool,
            stats_interval=self.config.network_stats_interval,
        )
        self.security = SecurityManager(
            store=self.store,
            event_bus=self.event_bus,
            profile_files=self.config.profile_files,
            compliance_interval=self.config.compliance_interval,
            report_interval=self.config.security_report_interval,
            max_events=self.config.max_audit_events,
        )

        self._running = False
        self._lock = threading.Lock()
        self._setup_callbacks()

    # -------------------------------------------------------------------------
    # Event wiring
    # -------------------------------------------------------------------------

    def _setup_callbacks(self) -> None:
        """Connect the managers through the event bus."""
        self.event_bus.subscribe('sandbox_cleanup', self._on_sandbox_cleanup)
        self.event_bus.subscribe('sandbox_isolation_triggered', self._on_isolation_triggered)
        self.event_bus.subscribe('resource_limit_exceeded', self._on_resource_limit_exceeded)

    def _on_sandbox_cleanup(self, event: EngineEvent) -> None:
        self._release_attachments(event.get('sandbox_id'))

    def _release_attachments(self, sandbox_id: str) -> None:
        with safe_execute("cleanup sandbox network", ErrorCategory.NETWORK,
                          severity=ErrorSeverity.WARNING,
                          additional_context={'sandbox_id': sandbox_id}):
            self.network.cleanup_sandbox_network(sandbox_id)
        self.security.remove_policy(sandbox_id)

    def _on_isolation_triggered(self, event: EngineEvent) -> None:
        sandbox_id = event.get('sandbox_id')
        logger.warning(
            f"Isolating sandbox {sandbox_id} ({event.get('reason', 'violation_threshold')}, "
            f"{event.get('violation_count')} violations)"
        )

        with safe_execute("isolate sandbox network", ErrorCategory.NETWORK,
                          severity=ErrorSeverity.ERROR,
                          additional_context={'sandbox_id': sandbox_id}):
            self.network.isolate_sandbox(sandbox_id)

        if self.config.stop_on_isolation:
            logger.warning(f"Stopping sandbox {sandbox_id} (stop_on_isolation)")
            self.sandboxes.cleanup_sandbox(sandbox_id)

    def _on_resource_limit_exceeded(self, event: EngineEvent) -> None:
        sandbox_id = event.get('sandbox_id')
        profile = self.security.get_active_profile(sandbox_id)
        self.security.audit_event(SecurityEvent.create(
            EventType.WARNING,
            Severity.MEDIUM,
            EventCategory.RESOURCE,
            sandbox_id,
            f"Resource limit exceeded: {event.get('category')} "
            f"{event.get('value')} > {event.get('limit')}",
            EventAction.ALERTED,
            details={
                'resource': event.get('category'),
                'value': event.get('value'),
                'limit': event.get('limit'),
            },
            policy=profile.id if profile else None,
        ))

    # -------------------------------------------------------------------------
    # Sandbox lifecycle
    # -------------------------------------------------------------------------

    def _require_profile(self, profile_id: Optional[str]) -> None:
        if profile_id is not None and self.security.get_security_profile(profile_id) is None:
            raise ConfigurationError(f"Security profile not found: {profile_id}")

    def _network_hook(
        self, attach_network: bool,
    ) -> Optional[Callable[[SandboxConfig], SandboxConfig]]:
        """Admission hook that puts an admitted sandbox on a fresh network."""
        if not attach_network:
            return None

        def create_network(config: SandboxConfig) -> SandboxConfig:
            network_id = self.network.create_sandbox_network(config.id)
            return dataclasses.replace(config, network=network_id)

        return create_network

    def _attach(self, sandbox_id: str, handle: str, attach_network: bool,
                profile_id: Optional[str], network_policy: Optional[NetworkPolicy]) -> None:
        """Finish wiring a running sandbox: network record, policy, profile."""
        if attach_network:
            self.network.connect_sandbox_to_network(sandbox_id, handle, already_attached=True)
            if network_policy is not None:
                self.network.apply_network_policy(sandbox_id, network_policy)
        if profile_id is not None:
            self.security.apply_profile_to_sandbox(sandbox_id, profile_id)

    def create_sandbox(
        self,
        config: SandboxConfig,
        profile_id: Optional[str] = None,
        attach_network: bool = True,
        network_policy: Optional[NetworkPolicy] = None,
    ) -> str:
        """
        Create a sandbox on its own isolated network and bind a profile.

        The network is created once the ledger has admitted the sandbox and
        before its container, so the container starts on it. A failed
        container creation rolls the network back; a failure while binding
        policy or profile cleans the whole sandbox up.

        Raises:
            ConfigurationError: unknown profile or invalid sandbox config
            ResourceExhaustionError: not enough ledger capacity
            ExternalToolError: the runtime or packet filter failed
        """
        self._require_profile(profile_id)
        sandbox_id = config.id
        if self.sandboxes.get_sandbox_state(sandbox_id) is not None:
            raise ConfigurationError(f"Sandbox {sandbox_id} already exists")

        try:
            self.sandboxes.create_sandbox(config, on_admitted=self._network_hook(attach_network))
        except Exception:
            if attach_network:
                with safe_execute("roll back sandbox network", ErrorCategory.NETWORK,
                                  severity=ErrorSeverity.WARNING):
                    self.network.cleanup_sandbox_network(sandbox_id)
            raise

        state = self.sandboxes.get_sandbox_state(sandbox_id)
        try:
            self._attach(sandbox_id, state.container_handle, attach_network,
                         profile_id, network_policy)
        except Exception:
            logger.error(f"Failed to bind policies for sandbox {sandbox_id}, cleaning up")
            self.sandboxes.cleanup_sandbox(sandbox_id)
            raise

        return sandbox_id

    def execute_in_sandbox(
        self,
        task_id: str,
        command: List[str],
        config: Optional[SandboxConfig] = None,
        profile_id: Optional[str] = None,
        attach_network: bool = True,
        network_policy: Optional[NetworkPolicy] = None,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cleanup_on_exit: Optional[bool] = None,
    ) -> ExecResult:
        """Run a command in an ephemeral, networked, profiled sandbox."""
        self._require_profile(profile_id)

        base = config or SandboxConfig(
            resource_limits=self.config.default_resource_limits,
            security_policy=self.config.default_security_policy,
        )
        if config is None:
            base = dataclasses.replace(
                base,
                id=f"task-{task_id}-{uuid.uuid4().hex[:8]}",
                name=f"task-{task_id}",
            )
        sandbox_id = base.id

        def on_ready(ready_id: str, handle: str) -> None:
            self._attach(ready_id, handle, attach_network, profile_id, network_policy)

        try:
            return self.sandboxes.execute_in_sandbox(
                task_id,
                command,
                config=base,
                environment=environment,
                timeout=timeout,
                cleanup_on_exit=cleanup_on_exit,
                on_ready=on_ready,
                on_admitted=self._network_hook(attach_network),
            )
        finally:
            # Never registered (admission or validation failed): nothing
            # emitted sandbox_cleanup, so release the network here
            if self.sandboxes.get_sandbox_state(sandbox_id) is None:
                self._release_attachments(sandbox_id)

    def cleanup_sandbox(self, sandbox_id: str) -> bool:
        return self.sandboxes.cleanup_sandbox(sandbox_id)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_capabilities(self) -> Dict[str, Any]:
        return {
            'runtime': self.runtime.get_capabilities(),
            'packet_filter': self.packet_filter.get_capabilities(),
            'signing_enabled': self.store.signing_enabled,
        }

    def get_error_summary(self) -> Dict[str, Any]:
        """Failures logged and skipped on teardown and monitoring paths."""
        return get_error_aggregator().get_error_summary()

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'sandboxes': self.sandboxes.list_sandboxes(),
            'metrics': self.sandboxes.get_metrics().to_dict(),
            'network': self.network.get_network_topology(),
            'active_profiles': {
                sandbox_id: profile.id
                for sandbox_id, profile in self.security.get_active_policies().items()
            },
            'capabilities': self.get_capabilities(),
            'errors': self.get_error_summary(),
        }

    # -------------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start network stats polling and security reporting."""
        with self._lock:
            if self._running:
                return
            self._running = True

        self.network.start()
        self.security.start()
        logger.info("Isolation engine started")

    def shutdown(self) -> int:
        """Clean up every sandbox and stop background loops."""
        with self._lock:
            self._running = False

        cleaned = self.sandboxes.cleanup_all()
        # Networks created for sandboxes that never registered
        self.network.cleanup_all()
        self.network.stop()
        self.security.stop()
        logger.info(f"Isolation engine stopped ({cleaned} sandboxes cleaned up)")
        return cleaned
