"""
Security Module for the Sandbox Isolation Engine

Risk profiles, per-operation validation and the audit trail.

Components:
- models: SecurityProfile, SecurityCapability, SecurityEvent and policies
- profiles: built-in low/medium/high risk profiles, YAML profile files
- capabilities: explicit operation to capability table
- policy_store: durable profiles and (optionally signed) audit events
- audit_report: JSON/CSV/HTML audit export
- security_manager: profile binding, validation, compliance monitoring
"""

from .models import (
    RiskLevel,
    Severity,
    EventType,
    EventCategory,
    EventAction,
    ConstraintType,
    SecurityCapability,
    SecurityConstraint,
    NetworkSecurityPolicy,
    ResourceSecurityPolicy,
    SecurityProfile,
    SecurityEvent,
    ExecutionContext,
    ValidationResult,
    SecuritySummary,
    SecurityAudit,
)

from .profiles import (
    BUILTIN_PROFILE_IDS,
    builtin_profiles,
    validate_profile,
    load_profile_file,
    load_profile_paths,
)

from .capabilities import (
    OPERATION_CAPABILITIES,
    capability_for_operation,
)

from .policy_store import (
    PolicyStore,
    load_or_create_signing_key,
)

from .audit_report import (
    CSV_HEADER,
    render_audit,
)

from .security_manager import (
    SecurityManager,
    calculate_compliance_score,
    derive_risk_level,
)

__all__ = [
    # Models
    'RiskLevel',
    'Severity',
    'EventType',
    'EventCategory',
    'EventAction',
    'ConstraintType',
    'SecurityCapability',
    'SecurityConstraint',
    'NetworkSecurityPolicy',
    'ResourceSecurityPolicy',
    'SecurityProfile',
    'SecurityEvent',
    'ExecutionContext',
    'ValidationResult',
    'SecuritySummary',
    'SecurityAudit',
    # Profiles
    'BUILTIN_PROFILE_IDS',
    'builtin_profiles',
    'validate_profile',
    'load_profile_file',
    'load_profile_paths',
    # Capabilities
    'OPERATION_CAPABILITIES',
    'capability_for_operation',
    # Storage
    'PolicyStore',
    'load_or_create_signing_key',
    # Reports
    'CSV_HEADER',
    'render_audit',
    # Manager
    'SecurityManager',
    'calculate_compliance_score',
    'derive_risk_level',
]
