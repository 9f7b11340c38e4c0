"""
Security data model: profiles, capabilities, constraints and audit events.

Profiles are templates; a profile is never mutated once registered. Audit
events are immutable records produced through SecurityEvent.create().
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventType(Enum):
    VIOLATION = "violation"
    AUDIT = "audit"
    WARNING = "warning"
    INFO = "info"


class EventCategory(Enum):
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    PROCESS = "process"
    RESOURCE = "resource"
    COMPLIANCE = "compliance"


class EventAction(Enum):
    BLOCKED = "blocked"
    LOGGED = "logged"
    ALERTED = "alerted"
    ISOLATED = "isolated"


class ConstraintType(Enum):
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    PROCESS = "process"
    MEMORY = "memory"
    TIME = "time"


@dataclass(frozen=True)
class SecurityCapability:
    """A named operation class a profile allows or denies."""
    name: str
    allowed: bool
    restrictions: List[str] = field(default_factory=list)
    audit: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'allowed': self.allowed,
            'restrictions': list(self.restrictions),
            'audit': self.audit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityCapability':
        return cls(
            name=data['name'],
            allowed=data['allowed'],
            restrictions=list(data.get('restrictions') or []),
            audit=data.get('audit', True),
        )


@dataclass(frozen=True)
class SecurityConstraint:
    id: str
    name: str
    type: ConstraintType
    limit: Union[int, float, str, bool]
    description: str = ""
    enforce: bool = True
    severity: Severity = Severity.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type.value,
            'limit': self.limit,
            'description': self.description,
            'enforce': self.enforce,
            'severity': self.severity.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityConstraint':
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            type=ConstraintType(data['type']),
            limit=data['limit'],
            description=data.get('description', ''),
            enforce=data.get('enforce', True),
            severity=Severity(data.get('severity', 'medium')),
        )


@dataclass(frozen=True)
class NetworkSecurityPolicy:
    allow_external_network: bool = False
    allowed_hosts: List[str] = field(default_factory=list)
    allowed_ports: List[int] = field(default_factory=list)
    blocked_hosts: List[str] = field(default_factory=list)
    blocked_ports: List[int] = field(default_factory=list)
    allow_dns: bool = False
    allow_http: bool = False
    allow_https: bool = False
    max_connections: int = 10
    connection_timeout: int = 30

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allow_external_network': self.allow_external_network,
            'allowed_hosts': list(self.allowed_hosts),
            'allowed_ports': list(self.allowed_ports),
            'blocked_hosts': list(self.blocked_hosts),
            'blocked_ports': list(self.blocked_ports),
            'allow_dns': self.allow_dns,
            'allow_http': self.allow_http,
            'allow_https': self.allow_https,
            'max_connections': self.max_connections,
            'connection_timeout': self.connection_timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NetworkSecurityPolicy':
        defaults = cls()
        return cls(
            allow_external_network=data.get('allow_external_network', defaults.allow_external_network),
            allowed_hosts=list(data.get('allowed_hosts') or []),
            allowed_ports=[int(p) for p in data.get('allowed_ports') or []],
            blocked_hosts=list(data.get('blocked_hosts') or []),
            blocked_ports=[int(p) for p in data.get('blocked_ports') or []],
            allow_dns=data.get('allow_dns', defaults.allow_dns),
            allow_http=data.get('allow_http', defaults.allow_http),
            allow_https=data.get('allow_https', defaults.allow_https),
            max_connections=data.get('max_connections', defaults.max_connections),
            connection_timeout=data.get('connection_timeout', defaults.connection_timeout),
        )


@dataclass(frozen=True)
class ResourceSecurityPolicy:
    max_cpu_cores: float = 1.0
    max_memory_mb: int = 512
    max_disk_space_mb: int = 1024
    max_open_files: int = 100
    max_processes: int = 10
    max_execution_time: int = 300
    allow_disk_write: bool = True
    allow_exec: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_cpu_cores': self.max_cpu_cores,
            'max_memory_mb': self.max_memory_mb,
            'max_disk_space_mb': self.max_disk_space_mb,
            'max_open_files': self.max_open_files,
            'max_processes': self.max_processes,
            'max_execution_time': self.max_execution_time,
            'allow_disk_write': self.allow_disk_write,
            'allow_exec': self.allow_exec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResourceSecurityPolicy':
        defaults = cls()
        return cls(**{
            key: data.get(key, getattr(defaults, key))
            for key in defaults.to_dict()
        })


@dataclass(frozen=True)
class SecurityProfile:
    """Named bundle of capabilities, constraints and path/network/resource policy."""
    id: str
    name: str
    risk_level: RiskLevel
    capabilities: List[SecurityCapability] = field(default_factory=list)
    constraints: List[SecurityConstraint] = field(default_factory=list)
    allowed_paths: List[str] = field(default_factory=list)
    blocked_paths: List[str] = field(default_factory=list)
    network_policy: Optional[NetworkSecurityPolicy] = None
    resource_policy: Optional[ResourceSecurityPolicy] = None
    description: str = ""
    custom: bool = False

    def get_capability(self, name: str) -> Optional[SecurityCapability]:
        for capability in self.capabilities:
            if capability.name == name:
                return capability
        return None

    @property
    def capability_names(self) -> List[str]:
        return [c.name for c in self.capabilities]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'risk_level': self.risk_level.value,
            'capabilities': [c.to_dict() for c in self.capabilities],
            'constraints': [c.to_dict() for c in self.constraints],
            'allowed_paths': list(self.allowed_paths),
            'blocked_paths': list(self.blocked_paths),
            'network_policy': self.network_policy.to_dict() if self.network_policy else None,
            'resource_policy': self.resource_policy.to_dict() if self.resource_policy else None,
            'custom': self.custom,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityProfile':
        network = data.get('network_policy')
        resource = data.get('resource_policy')
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            description=data.get('description', ''),
            risk_level=RiskLevel(data.get('risk_level', 'medium')),
            capabilities=[SecurityCapability.from_dict(c) for c in data.get('capabilities') or []],
            constraints=[SecurityConstraint.from_dict(c) for c in data.get('constraints') or []],
            allowed_paths=list(data.get('allowed_paths') or []),
            blocked_paths=list(data.get('blocked_paths') or []),
            network_policy=NetworkSecurityPolicy.from_dict(network) if network else None,
            resource_policy=ResourceSecurityPolicy.from_dict(resource) if resource else None,
            custom=data.get('custom', False),
        )


@dataclass(frozen=True)
class SecurityEvent:
    """One audit-trail record."""
    id: str
    timestamp: datetime
    type: EventType
    severity: Severity
    category: EventCategory
    sandbox_id: str
    description: str
    action: EventAction
    details: Dict[str, Any] = field(default_factory=dict)
    policy: Optional[str] = None

    @classmethod
    def create(cls, type: EventType, severity: Severity, category: EventCategory,
               sandbox_id: str, description: str, action: EventAction,
               details: Optional[Dict[str, Any]] = None,
               policy: Optional[str] = None) -> 'SecurityEvent':
        """Build an event with a fresh id and timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.utcnow(),
            type=type,
            severity=severity,
            category=category,
            sandbox_id=sandbox_id,
            description=description,
            action=action,
            details=dict(details or {}),
            policy=policy,
        )

    @property
    def is_violation(self) -> bool:
        return self.type == EventType.VIOLATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'type': self.type.value,
            'severity': self.severity.value,
            'category': self.category.value,
            'sandbox_id': self.sandbox_id,
            'description': self.description,
            'details': dict(self.details),
            'policy': self.policy,
            'action': self.action.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityEvent':
        return cls(
            id=data['id'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            type=EventType(data['type']),
            severity=Severity(data['severity']),
            category=EventCategory(data['category']),
            sandbox_id=data.get('sandbox_id', 'unknown'),
            description=data.get('description', ''),
            action=EventAction(data['action']),
            details=dict(data.get('details') or {}),
            policy=data.get('policy'),
        )


@dataclass
class ExecutionContext:
    """What a sandboxed operation is about to touch."""
    file_path: Optional[str] = None
    network_target: Optional[str] = None
    process_count: Optional[int] = None
    memory_usage: Optional[int] = None     # bytes
    execution_time: Optional[float] = None
    command: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ExecutionContext':
        data = data or {}
        return cls(
            file_path=data.get('file_path'),
            network_target=data.get('network_target'),
            process_count=data.get('process_count'),
            memory_usage=data.get('memory_usage'),
            execution_time=data.get('execution_time'),
            command=data.get('command'),
        )


@dataclass
class ValidationResult:
    """Outcome of validate_execution(); allowed iff there are no violations."""
    allowed: bool
    violations: List[SecurityEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'violations': [v.to_dict() for v in self.violations],
        }


@dataclass
class SecuritySummary:
    sandbox_id: str
    profile: Optional[SecurityProfile]
    recent_events: List[SecurityEvent]
    violations: List[SecurityEvent]
    compliance_score: int
    risk_level: RiskLevel

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sandbox_id': self.sandbox_id,
            'profile': self.profile.id if self.profile else None,
            'recent_events': len(self.recent_events),
            'violations': len(self.violations),
            'compliance_score': self.compliance_score,
            'risk_level': self.risk_level.value,
        }


@dataclass
class SecurityAudit:
    """A point-in-time export of audit events with summary counts."""
    id: str
    timestamp: datetime
    events: List[SecurityEvent]
    summary: Dict[str, int]

    @classmethod
    def build(cls, events: List[SecurityEvent]) -> 'SecurityAudit':
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.utcnow(),
            events=list(events),
            summary={
                'total_events': len(events),
                'violations': sum(1 for e in events if e.type == EventType.VIOLATION),
                'warnings': sum(1 for e in events if e.type == EventType.WARNING),
                'critical': sum(1 for e in events if e.severity == Severity.CRITICAL),
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'events': [e.to_dict() for e in self.events],
            'summary': dict(self.summary),
        }
