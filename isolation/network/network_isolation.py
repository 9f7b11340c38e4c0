"""
Network Isolation Manager for the Sandbox Isolation Engine

Gives every sandbox its own isolated bridge network and a filter chain
that enforces an ordered allow/deny/log policy on top of a default deny:
1. Deterministic per-sandbox /24 subnets carved from a private pool
2. Internal networks by default (no egress unless explicitly requested)
3. One packet-filter chain per network, default DROP
4. In-process policy evaluation (check_traffic) mirroring the chain order
5. Best-effort teardown of network, chain and bookkeeping
6. Background polling of per-network connection counts

Usage:
    from isolation.network import NetworkIsolationManager, IptablesPacketFilter

    manager = NetworkIsolationManager(runtime, IptablesPacketFilter())
    network_id = manager.create_sandbox_network("sbx-1")
    manager.connect_sandbox_to_network("sbx-1", container_handle)
    manager.isolate_sandbox("sbx-1")
    ...
    manager.cleanup_sandbox_network("sbx-1")
"""

import ipaddress
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..constants import Intervals, NetworkDefaults, Timeouts
from ..errors import (
    ConfigurationError,
    ExternalToolError,
    NetworkNotConnectedError,
    ResourceExhaustionError,
)
from ..events import EventBus
from ..sandbox.container_runtime import SANDBOX_LABEL, ContainerRuntime
from ..utils.error_handling import (
    ErrorCategory,
    ErrorSeverity,
    log_external_error,
    log_network_error,
    safe_execute,
)
from .models import (
    Destination,
    Direction,
    InterfaceStatus,
    NetworkInterface,
    NetworkPolicy,
    NetworkRule,
    NetworkStats,
    Protocol,
    RuleAction,
    SandboxNetwork,
    TrafficDecision,
    order_rules,
)
from .packet_filter import PacketFilter, chain_name

logger = logging.getLogger(__name__)

_OPT_MASQUERADE = "com.docker.network.bridge.enable_ip_masquerade"
_OPT_ICC = "com.docker.network.bridge.enable_icc"


def build_isolation_policy(sandbox_id: str) -> NetworkPolicy:
    """Loopback-only inbound and a single outbound deny-all."""
    return NetworkPolicy(
        id=f"isolate-{sandbox_id}",
        name=f"Isolation policy for {sandbox_id}",
        inbound=[
            NetworkRule(
                id="allow-loopback",
                action=RuleAction.ALLOW,
                source_host=NetworkDefaults.LOOPBACK_CIDR,
                description="Loopback only",
            ),
        ],
        outbound=[
            NetworkRule(
                id="deny-all",
                action=RuleAction.DENY,
                description="Deny all outbound traffic",
            ),
        ],
        enable_logging=True,
    )


def build_access_policy(sandbox_id: str, destinations: List[Destination]) -> NetworkPolicy:
    """One allow-outbound rule per destination."""
    rules = [
        NetworkRule(
            id=f"allow-{dest.host}-{dest.port if dest.port is not None else 'any'}",
            action=RuleAction.ALLOW,
            protocol=dest.protocol,
            destination_host=dest.host,
            destination_port=dest.port,
            description=f"Allow access to {dest.host}",
        )
        for dest in destinations
    ]
    return NetworkPolicy(
        id=f"access-{sandbox_id}",
        name=f"Network access policy for {sandbox_id}",
        outbound=rules,
    )


class NetworkIsolationManager:
    """
    Manages per-sandbox isolated networks and their traffic policies.

    A sandbox has at most one network. All bookkeeping maps are guarded by
    one lock; runtime and packet-filter commands run outside it.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        packet_filter: PacketFilter,
        event_bus: Optional[EventBus] = None,
        subnet_pool: str = NetworkDefaults.SUBNET_POOL,
        stats_interval: float = Intervals.NETWORK_STATS,
    ):
        self._runtime = runtime
        self._filter = packet_filter
        self._event_bus = event_bus
        self._stats_interval = stats_interval

        try:
            self._pool = ipaddress.ip_network(subnet_pool)
        except ValueError as e:
            raise ConfigurationError(f"Invalid subnet pool {subnet_pool}: {e}") from e
        if not self._pool.is_private:
            raise ConfigurationError(f"Subnet pool {subnet_pool} is not a private range")
        if self._pool.prefixlen > NetworkDefaults.SUBNET_PREFIX:
            raise ConfigurationError(
                f"Subnet pool {subnet_pool} is smaller than a /{NetworkDefaults.SUBNET_PREFIX}"
            )

        self._lock = threading.Lock()
        self._networks: Dict[str, SandboxNetwork] = {}          # sandbox_id -> network
        self._interfaces: Dict[str, NetworkInterface] = {}      # sandbox_id -> interface
        self._stats: Dict[str, NetworkStats] = {}               # network_id -> stats
        self._policies: Dict[str, NetworkPolicy] = {}           # policy_id -> policy
        self._active_policies: Dict[str, NetworkPolicy] = {}    # sandbox_id -> policy
        self._reserved_subnets: Dict[str, str] = {}             # subnet -> sandbox_id

        self._stats_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        if not self._filter.is_available:
            logger.warning(
                "Packet filtering unavailable: network policies are tracked "
                "but not enforced on the host"
            )

    def _emit(self, name: str, /, **payload: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(name, **payload)

    @property
    def filtering_available(self) -> bool:
        return self._filter.is_available

    # -------------------------------------------------------------------------
    # Subnets
    # -------------------------------------------------------------------------

    def _reserve_subnet(self, sandbox_id: str, subnet: Optional[str]) -> ipaddress.IPv4Network:
        """Reserve an explicit subnet or the next free /24 from the pool. Caller holds lock."""
        taken = [ipaddress.ip_network(s) for s in self._reserved_subnets]

        if subnet is not None:
            try:
                network = ipaddress.ip_network(subnet, strict=False)
            except ValueError as e:
                raise ConfigurationError(f"Invalid subnet {subnet}: {e}") from e
            if not network.is_private:
                raise ConfigurationError(f"Subnet {subnet} is not a private range")
            for other in taken:
                if network.overlaps(other):
                    raise ConfigurationError(
                        f"Subnet {network} overlaps {other} already in use"
                    )
            self._reserved_subnets[str(network)] = sandbox_id
            return network

        for candidate in self._pool.subnets(new_prefix=NetworkDefaults.SUBNET_PREFIX):
            if not any(candidate.overlaps(other) for other in taken):
                self._reserved_subnets[str(candidate)] = sandbox_id
                return candidate

        raise ResourceExhaustionError(f"No free sandbox subnets left in {self._pool}")

    # -------------------------------------------------------------------------
    # Network lifecycle
    # -------------------------------------------------------------------------

    def create_sandbox_network(
        self,
        sandbox_id: str,
        subnet: Optional[str] = None,
        gateway: Optional[str] = None,
        internal: bool = True,
        enable_icc: bool = False,
    ) -> str:
        """
        Create the isolated network for a sandbox.

        Args:
            sandbox_id: Owning sandbox
            subnet: Explicit private subnet; next free /24 when None
            gateway: Gateway address; first host of the subnet when None
            internal: No external routing unless False
            enable_icc: Allow container-to-container traffic on the bridge

        Returns:
            The network id (`sandbox-<sandbox_id>`)

        Raises:
            ConfigurationError: sandbox already has a network, or bad subnet
            ResourceExhaustionError: subnet pool exhausted
            ExternalToolError: runtime or packet filter command failed
        """
        network_id = f"{NetworkDefaults.NETWORK_PREFIX}{sandbox_id}"

        with self._lock:
            if sandbox_id in self._networks:
                raise ConfigurationError(f"Sandbox {sandbox_id} already has a network")
            network = self._reserve_subnet(sandbox_id, subnet)

        hosts = network.hosts()
        first_host = str(next(hosts))
        predicted_ip = str(next(hosts, first_host))
        gateway = gateway or first_host
        try:
            gateway_ok = ipaddress.ip_address(gateway) in network
        except ValueError:
            gateway_ok = False
        if not gateway_ok:
            self._release_subnet(str(network))
            raise ConfigurationError(f"Gateway {gateway} is not an address inside {network}")

        options = {
            _OPT_MASQUERADE: str(not internal).lower(),
            _OPT_ICC: str(enable_icc).lower(),
        }

        try:
            runtime_id = self._runtime.network_create(
                network_id,
                str(network),
                gateway,
                internal=internal,
                options=options,
                labels={SANDBOX_LABEL: sandbox_id},
            )
        except Exception:
            self._release_subnet(str(network))
            raise

        chain = chain_name(network_id)
        try:
            self._filter.create_chain(chain, str(network))
        except ExternalToolError:
            logger.error(f"Failed to create filter chain for {network_id}, removing network")
            with safe_execute("remove network after chain failure",
                              ErrorCategory.NETWORK, severity=ErrorSeverity.WARNING):
                self._runtime.network_remove(network_id)
            with safe_execute("delete partial filter chain",
                              ErrorCategory.NETWORK, severity=ErrorSeverity.WARNING):
                self._filter.delete_chain(chain, str(network))
            self._release_subnet(str(network))
            raise

        record = SandboxNetwork(
            network_id=network_id,
            sandbox_id=sandbox_id,
            subnet=str(network),
            gateway=gateway,
            internal=internal,
            chain=chain,
            runtime_id=runtime_id,
        )
        interface = NetworkInterface(
            name=f"eth-{sandbox_id[:10]}",
            network_id=network_id,
            sandbox_id=sandbox_id,
            subnet=str(network),
            gateway=gateway,
            ip=predicted_ip,
        )

        with self._lock:
            self._networks[sandbox_id] = record
            self._interfaces[sandbox_id] = interface
            self._stats[network_id] = NetworkStats(last_updated=datetime.utcnow())

        logger.info(
            f"Created network {network_id} ({network}, "
            f"{'internal' if internal else 'external'}) for sandbox {sandbox_id}"
        )
        self._emit(
            'network_created',
            sandbox_id=sandbox_id,
            network_id=network_id,
            subnet=str(network),
            gateway=gateway,
            internal=internal,
        )
        return network_id

    def _release_subnet(self, subnet: str) -> None:
        with self._lock:
            self._reserved_subnets.pop(subnet, None)

    def connect_sandbox_to_network(
        self,
        sandbox_id: str,
        container_handle: str,
        network_id: Optional[str] = None,
        already_attached: bool = False,
    ) -> None:
        """
        Attach the sandbox's container to its network.

        `already_attached` records a container that was created directly on
        the network without issuing a connect command.
        """
        with self._lock:
            record = self._networks.get(sandbox_id)
        if record is None:
            raise NetworkNotConnectedError(f"Sandbox {sandbox_id} has no network")
        if network_id is not None and network_id != record.network_id:
            raise ConfigurationError(
                f"Sandbox {sandbox_id} can only join its own network {record.network_id}"
            )

        if not already_attached:
            self._runtime.network_connect(record.network_id, container_handle)

        with self._lock:
            record.container_handle = container_handle
            interface = self._interfaces.get(sandbox_id)
            if interface is not None:
                interface.status = InterfaceStatus.UP

        self.sync_interface(sandbox_id)
        logger.info(f"Connected sandbox {sandbox_id} to {record.network_id}")
        self._emit(
            'network_connected',
            sandbox_id=sandbox_id,
            network_id=record.network_id,
            container=container_handle,
        )

    def sync_interface(self, sandbox_id: str) -> Optional[NetworkInterface]:
        """Refresh the interface's IP and MAC from the runtime (best-effort)."""
        with self._lock:
            record = self._networks.get(sandbox_id)
            interface = self._interfaces.get(sandbox_id)
        if record is None or interface is None or not record.container_handle:
            return interface

        with safe_execute("inspect container network", ErrorCategory.NETWORK,
                          severity=ErrorSeverity.INFO):
            data = self._runtime.inspect(record.container_handle)
            networks = data.get('NetworkSettings', {}).get('Networks', {}) or {}
            endpoint = networks.get(record.network_id) or {}
            with self._lock:
                if endpoint.get('IPAddress'):
                    interface.ip = endpoint['IPAddress']
                if endpoint.get('MacAddress'):
                    interface.mac = endpoint['MacAddress']
        return interface

    def disconnect_sandbox_from_network(self, sandbox_id: str,
                                        network_id: Optional[str] = None) -> bool:
        """Detach the container from its network. Best-effort; never raises."""
        with self._lock:
            record = self._networks.get(sandbox_id)
            handle = record.container_handle if record else None
        if record is None or not handle:
            return False

        network_id = network_id or record.network_id
        detached = True
        try:
            self._runtime.network_disconnect(network_id, handle)
        except ExternalToolError as e:
            detached = False
            if 'not connected' in e.stderr.lower() or 'no such' in e.stderr.lower():
                logger.debug(f"Sandbox {sandbox_id} was not connected to {network_id}")
            else:
                log_external_error(e, "disconnect sandbox network",
                                   sandbox_id=sandbox_id, network_id=network_id)
        except Exception as e:
            detached = False
            log_network_error(e, "disconnect sandbox network",
                              sandbox_id=sandbox_id, network_id=network_id)

        with self._lock:
            record.container_handle = None
            interface = self._interfaces.get(sandbox_id)
            if interface is not None:
                interface.status = InterfaceStatus.DOWN

        self._emit('network_disconnected', sandbox_id=sandbox_id, network_id=network_id)
        return detached

    def cleanup_sandbox_network(self, sandbox_id: str) -> bool:
        """
        Tear down everything owned by the sandbox's network.

        Disconnect, remove the network, delete the filter chain, then purge
        bookkeeping. Each step is best-effort.

        Returns:
            False if the sandbox had no network
        """
        with self._lock:
            record = self._networks.get(sandbox_id)
        if record is None:
            return False

        with safe_execute("disconnect sandbox network", ErrorCategory.NETWORK,
                          severity=ErrorSeverity.WARNING):
            self.disconnect_sandbox_from_network(sandbox_id)

        with safe_execute("remove sandbox network", ErrorCategory.NETWORK,
                          severity=ErrorSeverity.WARNING,
                          additional_context={'network_id': record.network_id}):
            self._runtime.network_remove(record.network_id)

        with safe_execute("delete filter chain", ErrorCategory.NETWORK,
                          severity=ErrorSeverity.WARNING,
                          additional_context={'chain': record.chain}):
            self._filter.delete_chain(record.chain, record.subnet)

        with self._lock:
            self._networks.pop(sandbox_id, None)
            self._interfaces.pop(sandbox_id, None)
            self._stats.pop(record.network_id, None)
            self._reserved_subnets.pop(record.subnet, None)
            policy = self._active_policies.pop(sandbox_id, None)
            # Generated per-sandbox policies die with the network
            if policy is not None and policy.id in (f"isolate-{sandbox_id}",
                                                     f"access-{sandbox_id}"):
                self._policies.pop(policy.id, None)

        logger.info(f"Cleaned up network {record.network_id} for sandbox {sandbox_id}")
        self._emit('network_cleanup', sandbox_id=sandbox_id, network_id=record.network_id)
        return True

    def cleanup_all(self) -> int:
        with self._lock:
            sandbox_ids = list(self._networks.keys())
        return sum(1 for sandbox_id in sandbox_ids if self.cleanup_sandbox_network(sandbox_id))

    # -------------------------------------------------------------------------
    # Policies
    # -------------------------------------------------------------------------

    def create_network_policy(
        self,
        name: str,
        inbound: Optional[List[NetworkRule]] = None,
        outbound: Optional[List[NetworkRule]] = None,
        enable_logging: bool = False,
        enable_metrics: bool = True,
        description: str = "",
        policy_id: Optional[str] = None,
    ) -> NetworkPolicy:
        policy = NetworkPolicy(
            id=policy_id or f"policy-{uuid.uuid4().hex[:12]}",
            name=name,
            inbound=list(inbound or []),
            outbound=list(outbound or []),
            enable_logging=enable_logging,
            enable_metrics=enable_metrics,
            description=description,
        )
        with self._lock:
            self._policies[policy.id] = policy

        logger.info(f"Created network policy {policy.id} ({name})")
        self._emit('policy_created', policy_id=policy.id, policy_name=name)
        return policy

    def get_network_policy(self, policy_id: str) -> Optional[NetworkPolicy]:
        with self._lock:
            return self._policies.get(policy_id)

    def list_network_policies(self) -> List[NetworkPolicy]:
        with self._lock:
            return list(self._policies.values())

    def apply_network_policy(self, sandbox_id: str, policy: NetworkPolicy) -> None:
        """
        Replace the sandbox's filter chain with `policy`.

        The ordered rules and the trailing DROP replace the chain contents
        in one packet filter transaction. If the filter rejects the rule
        set the chain is reset to the default DROP and the error re-raised.

        Raises:
            NetworkNotConnectedError: the sandbox has no network
            ExternalToolError: the packet filter rejected a rule
        """
        with self._lock:
            record = self._networks.get(sandbox_id)
        if record is None:
            raise NetworkNotConnectedError(
                f"Sandbox {sandbox_id} is not connected to a network"
            )

        inbound = order_rules(policy.inbound)
        outbound = order_rules(policy.outbound)

        entries = [(Direction.INBOUND, rule) for rule in inbound]
        entries.extend((Direction.OUTBOUND, rule) for rule in outbound)

        try:
            self._filter.load_rules(record.chain, record.subnet, entries)
        except ExternalToolError as e:
            logger.error(f"Failed to apply policy {policy.id} to {sandbox_id}: {e}")
            with safe_execute("reset filter chain", ErrorCategory.NETWORK,
                              severity=ErrorSeverity.WARNING):
                self._filter.load_rules(record.chain, record.subnet, [])
            with self._lock:
                self._active_policies.pop(sandbox_id, None)
            raise

        with self._lock:
            self._policies[policy.id] = policy
            self._active_policies[sandbox_id] = policy

        logger.info(
            f"Applied policy {policy.id} to {sandbox_id} "
            f"({len(inbound)} inbound, {len(outbound)} outbound rules)"
        )
        self._emit(
            'policy_applied',
            sandbox_id=sandbox_id,
            policy_id=policy.id,
            network_id=record.network_id,
            enforced=self._filter.is_available,
        )

    def get_active_policy(self, sandbox_id: str) -> Optional[NetworkPolicy]:
        with self._lock:
            return self._active_policies.get(sandbox_id)

    def isolate_sandbox(self, sandbox_id: str) -> bool:
        """
        Cut the sandbox off: loopback-only inbound, deny all outbound.

        Returns:
            False if the sandbox has no network
        """
        with self._lock:
            has_network = sandbox_id in self._networks
        if not has_network:
            logger.warning(f"Cannot isolate {sandbox_id}: no sandbox network")
            return False

        self.apply_network_policy(sandbox_id, build_isolation_policy(sandbox_id))
        logger.warning(f"Sandbox {sandbox_id} network isolated")
        self._emit('sandbox_isolated', sandbox_id=sandbox_id)
        return True

    def allow_network_access(self, sandbox_id: str,
                             destinations: List[Destination]) -> bool:
        """Replace the sandbox's policy with allow rules for `destinations`."""
        with self._lock:
            has_network = sandbox_id in self._networks
        if not has_network:
            logger.warning(f"Cannot grant network access to {sandbox_id}: no sandbox network")
            return False

        policy = build_access_policy(sandbox_id, destinations)
        self.apply_network_policy(sandbox_id, policy)
        self._emit(
            'network_access_allowed',
            sandbox_id=sandbox_id,
            destinations=[
                {'host': d.host, 'port': d.port, 'protocol': d.protocol.value}
                for d in destinations
            ],
        )
        return True

    def check_traffic(
        self,
        sandbox_id: str,
        direction: Direction,
        host: str,
        port: Optional[int] = None,
        protocol: Protocol = Protocol.TCP,
    ) -> TrafficDecision:
        """
        Evaluate traffic against the sandbox's active policy.

        Uses the same order as the installed chain; anything unmatched hits
        the default deny.
        """
        if not isinstance(direction, Direction):
            direction = Direction(direction)
        if not isinstance(protocol, Protocol):
            protocol = Protocol(protocol)

        with self._lock:
            record = self._networks.get(sandbox_id)
            policy = self._active_policies.get(sandbox_id)

        if record is None:
            return TrafficDecision(allowed=False, action=RuleAction.DENY,
                                   reason="sandbox has no network")

        decision = TrafficDecision(allowed=False, action=RuleAction.DENY,
                                   reason="default deny")
        if policy is not None:
            for rule in order_rules(policy.rules_for(direction)):
                if not rule.matches(direction, host, port, protocol):
                    continue
                if rule.action == RuleAction.LOG:
                    decision.logged = True
                    continue
                decision.allowed = rule.action == RuleAction.ALLOW
                decision.action = rule.action
                decision.rule_id = rule.id
                decision.reason = f"matched rule {rule.id}"
                break

        with self._lock:
            stats = self._stats.get(record.network_id)
            if stats is not None:
                stats.total_connections += 1
                if decision.allowed:
                    stats.allowed_connections += 1
                else:
                    stats.blocked_connections += 1
                if protocol.value in stats.by_protocol:
                    stats.by_protocol[protocol.value] += 1

        if decision.logged or (policy is not None and policy.enable_logging and not decision.allowed):
            logger.info(
                f"Traffic {direction.value} {sandbox_id} <-> {host}:{port} "
                f"{protocol.value}: {decision.action.value} ({decision.reason})"
            )
        return decision

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_sandbox_network(self, sandbox_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._networks.get(sandbox_id)
            if record is None:
                return None
            interface = self._interfaces.get(sandbox_id)
            policy = self._active_policies.get(sandbox_id)
            stats = self._stats.get(record.network_id)
            return {
                'network_id': record.network_id,
                'network': record.to_dict(),
                'interface': interface.to_dict() if interface else None,
                'policy': policy.to_dict() if policy else None,
                'stats': stats.to_dict() if stats else None,
            }

    def get_network_interfaces(self) -> List[NetworkInterface]:
        with self._lock:
            return list(self._interfaces.values())

    def get_network_stats(self, sandbox_id: Optional[str] = None) -> Any:
        """Stats for one sandbox's network, or a network_id -> stats dict."""
        with self._lock:
            if sandbox_id is not None:
                record = self._networks.get(sandbox_id)
                if record is None:
                    return None
                return self._stats.get(record.network_id)
            return dict(self._stats)

    def get_network_topology(self) -> Dict[str, Any]:
        with self._lock:
            networks = []
            for sandbox_id, record in self._networks.items():
                policy = self._active_policies.get(sandbox_id)
                interface = self._interfaces.get(sandbox_id)
                networks.append({
                    'network_id': record.network_id,
                    'sandbox_id': sandbox_id,
                    'subnet': record.subnet,
                    'gateway': record.gateway,
                    'internal': record.internal,
                    'connected': record.container_handle is not None,
                    'ip': interface.ip if interface else None,
                    'policy_id': policy.id if policy else None,
                })
            return {
                'subnet_pool': str(self._pool),
                'filtering_available': self._filter.is_available,
                'network_count': len(self._networks),
                'connected_count': sum(1 for n in networks if n['connected']),
                'policy_count': len(self._policies),
                'networks': networks,
            }

    # -------------------------------------------------------------------------
    # Stats polling
    # -------------------------------------------------------------------------

    def poll_network_stats(self) -> None:
        """One pass: refresh per-network connection counts from the runtime."""
        with self._lock:
            records = list(self._networks.values())

        for record in records:
            try:
                data = self._runtime.network_inspect(record.network_id)
            except Exception as e:
                log_network_error(e, "poll network stats", network_id=record.network_id)
                continue

            containers = data.get('Containers') or {}
            with self._lock:
                stats = self._stats.get(record.network_id)
                if stats is None:
                    continue
                stats.active_connections = len(containers)
                stats.last_updated = datetime.utcnow()
                snapshot = stats.to_dict()

            self._emit(
                'network_stats_updated',
                sandbox_id=record.sandbox_id,
                network_id=record.network_id,
                stats=snapshot,
            )

    def _stats_loop(self) -> None:
        while not self._stop_event.wait(self._stats_interval):
            self.poll_network_stats()

    def start(self) -> None:
        if self._stats_thread is not None and self._stats_thread.is_alive():
            return
        self._stop_event.clear()
        self._stats_thread = threading.Thread(
            target=self._stats_loop,
            daemon=True,
            name="network-stats",
        )
        self._stats_thread.start()
        logger.debug("Network stats polling started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._stats_thread is not None:
            self._stats_thread.join(timeout=Timeouts.THREAD_JOIN_DEFAULT)
            self._stats_thread = None

    @property
    def is_polling(self) -> bool:
        return self._stats_thread is not None and self._stats_thread.is_alive()
