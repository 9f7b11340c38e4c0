"""
Network isolation data model: rules, policies, interfaces and stats.
"""

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RuleAction(Enum):
    """Action taken on traffic matching a rule."""
    ALLOW = "allow"
    DENY = "deny"
    LOG = "log"


class Protocol(Enum):
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ALL = "all"


class Direction(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class InterfaceStatus(Enum):
    UP = "up"
    DOWN = "down"


def _coerce_protocol(value: Any) -> Protocol:
    if isinstance(value, Protocol):
        return value
    return Protocol(str(value or 'all').lower())


def host_matches(pattern: str, host: str) -> bool:
    """
    Match a rule host against a traffic host.

    IP addresses and CIDR blocks are compared by membership; anything else
    is compared case-insensitively as a hostname.
    """
    if not pattern:
        return True
    if not host:
        return False
    try:
        network = ipaddress.ip_network(pattern, strict=False)
    except ValueError:
        return pattern.lower() == host.lower()
    try:
        return ipaddress.ip_address(host) in network
    except ValueError:
        return False


@dataclass
class NetworkRule:
    """
    One filter rule.

    For outbound rules the destination side names the remote peer; for
    inbound rules the source side does.
    """
    id: str
    action: RuleAction
    protocol: Protocol = Protocol.ALL
    source_host: Optional[str] = None
    source_port: Optional[int] = None
    destination_host: Optional[str] = None
    destination_port: Optional[int] = None
    enabled: bool = True
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.action, RuleAction):
            self.action = RuleAction(str(self.action).lower())
        self.protocol = _coerce_protocol(self.protocol)

    @property
    def is_terminal(self) -> bool:
        return self.action != RuleAction.LOG

    @property
    def specificity(self) -> int:
        """host (4) + port (2) + protocol (1); higher is more specific."""
        score = 0
        if self.source_host or self.destination_host:
            score += 4
        if self.source_port is not None or self.destination_port is not None:
            score += 2
        if self.protocol != Protocol.ALL:
            score += 1
        return score

    def matches(self, direction: Direction, host: str, port: Optional[int],
                protocol: Protocol) -> bool:
        """Whether traffic to/from the remote `host` matches this rule."""
        if not self.enabled:
            return False
        if self.protocol != Protocol.ALL and self.protocol != protocol:
            return False

        if direction == Direction.OUTBOUND:
            remote_host, remote_port = self.destination_host, self.destination_port
        else:
            remote_host, remote_port = self.source_host, self.source_port

        if remote_host and not host_matches(remote_host, host):
            return False
        if remote_port is not None and remote_port != port:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'action': self.action.value,
            'protocol': self.protocol.value,
            'source_host': self.source_host,
            'source_port': self.source_port,
            'destination_host': self.destination_host,
            'destination_port': self.destination_port,
            'enabled': self.enabled,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkRule':
        return cls(
            id=data.get('id') or f"rule-{uuid.uuid4().hex[:8]}",
            action=RuleAction(data['action']),
            protocol=_coerce_protocol(data.get('protocol', 'all')),
            source_host=data.get('source_host'),
            source_port=data.get('source_port'),
            destination_host=data.get('destination_host'),
            destination_port=data.get('destination_port'),
            enabled=data.get('enabled', True),
            description=data.get('description', ''),
        )


@dataclass
class NetworkPolicy:
    """Ordered inbound/outbound rule lists applied to one sandbox network."""
    id: str
    name: str
    inbound: List[NetworkRule] = field(default_factory=list)
    outbound: List[NetworkRule] = field(default_factory=list)
    enable_logging: bool = False
    enable_metrics: bool = True
    description: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)

    def rules_for(self, direction: Direction) -> List[NetworkRule]:
        return self.inbound if direction == Direction.INBOUND else self.outbound

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'inbound': [r.to_dict() for r in self.inbound],
            'outbound': [r.to_dict() for r in self.outbound],
            'enable_logging': self.enable_logging,
            'enable_metrics': self.enable_metrics,
            'description': self.description,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkPolicy':
        return cls(
            id=data.get('id') or f"policy-{uuid.uuid4().hex[:8]}",
            name=data.get('name', 'unnamed'),
            inbound=[NetworkRule.from_dict(r) for r in data.get('inbound', [])],
            outbound=[NetworkRule.from_dict(r) for r in data.get('outbound', [])],
            enable_logging=data.get('enable_logging', False),
            enable_metrics=data.get('enable_metrics', True),
            description=data.get('description', ''),
        )


@dataclass
class Destination:
    """Target of an allow_network_access() grant."""
    host: str
    port: Optional[int] = None
    protocol: Protocol = Protocol.TCP

    def __post_init__(self):
        self.protocol = _coerce_protocol(self.protocol)


@dataclass
class NetworkInterface:
    """The single interface a sandbox has on its isolated network."""
    name: str
    network_id: str
    sandbox_id: str
    subnet: str
    gateway: str
    ip: Optional[str] = None
    mac: Optional[str] = None
    status: InterfaceStatus = InterfaceStatus.DOWN
    type: str = "bridge"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'network_id': self.network_id,
            'sandbox_id': self.sandbox_id,
            'subnet': self.subnet,
            'gateway': self.gateway,
            'ip': self.ip,
            'mac': self.mac,
            'status': self.status.value,
            'type': self.type,
        }


@dataclass
class NetworkStats:
    """Per-network traffic counters."""
    total_connections: int = 0
    active_connections: int = 0
    blocked_connections: int = 0
    allowed_connections: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0
    by_protocol: Dict[str, int] = field(
        default_factory=lambda: {'tcp': 0, 'udp': 0, 'icmp': 0}
    )
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_connections': self.total_connections,
            'active_connections': self.active_connections,
            'blocked_connections': self.blocked_connections,
            'allowed_connections': self.allowed_connections,
            'bytes_in': self.bytes_in,
            'bytes_out': self.bytes_out,
            'packets_in': self.packets_in,
            'packets_out': self.packets_out,
            'by_protocol': dict(self.by_protocol),
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class TrafficDecision:
    """Result of evaluating traffic against a sandbox's active policy."""
    allowed: bool
    action: RuleAction
    rule_id: Optional[str] = None
    logged: bool = False
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'action': self.action.value,
            'rule_id': self.rule_id,
            'logged': self.logged,
            'reason': self.reason,
        }


@dataclass
class SandboxNetwork:
    """Bookkeeping for one per-sandbox isolated network."""
    network_id: str
    sandbox_id: str
    subnet: str
    gateway: str
    internal: bool
    chain: str
    runtime_id: Optional[str] = None
    container_handle: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'network_id': self.network_id,
            'sandbox_id': self.sandbox_id,
            'subnet': self.subnet,
            'gateway': self.gateway,
            'internal': self.internal,
            'chain': self.chain,
            'runtime_id': self.runtime_id,
            'container_handle': self.container_handle,
            'created_at': self.created_at.isoformat(),
        }


def order_rules(rules: List[NetworkRule]) -> List[NetworkRule]:
    """
    Deterministic evaluation order for one direction.

    Enabled `log` rules come first in declaration order (they do not
    terminate evaluation). Terminal rules follow, most specific first, deny
    before allow at equal specificity, declaration order as the final
    tie-break. The chain's default deny is implicit after the last rule.
    """
    enabled = [(index, rule) for index, rule in enumerate(rules) if rule.enabled]
    log_rules = [rule for _, rule in enabled if rule.action == RuleAction.LOG]
    terminal = [(index, rule) for index, rule in enabled if rule.is_terminal]
    terminal.sort(key=lambda item: (
        -item[1].specificity,
        0 if item[1].action == RuleAction.DENY else 1,
        item[0],
    ))
    return log_rules + [rule for _, rule in terminal]
