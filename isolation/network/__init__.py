"""
Network Module for the Sandbox Isolation Engine

Per-sandbox isolated networks with ordered allow/deny/log policies.

Components:
- models: NetworkRule, NetworkPolicy, NetworkInterface, NetworkStats
- packet_filter: per-network iptables chains (default DROP)
- network_isolation: network lifecycle, policy application, traffic checks
"""

from .models import (
    RuleAction,
    Protocol,
    Direction,
    InterfaceStatus,
    NetworkRule,
    NetworkPolicy,
    Destination,
    NetworkInterface,
    NetworkStats,
    TrafficDecision,
    SandboxNetwork,
    order_rules,
)

from .packet_filter import (
    PacketFilter,
    IptablesPacketFilter,
    chain_name,
)

from .network_isolation import (
    NetworkIsolationManager,
    build_isolation_policy,
    build_access_policy,
)

__all__ = [
    # Models
    'RuleAction',
    'Protocol',
    'Direction',
    'InterfaceStatus',
    'NetworkRule',
    'NetworkPolicy',
    'Destination',
    'NetworkInterface',
    'NetworkStats',
    'TrafficDecision',
    'SandboxNetwork',
    'order_rules',
    # Packet filter
    'PacketFilter',
    'IptablesPacketFilter',
    'chain_name',
    # Manager
    'NetworkIsolationManager',
    'build_isolation_policy',
    'build_access_policy',
]
