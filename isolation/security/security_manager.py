"""
Security Manager for the Sandbox Isolation Engine

Binds security profiles to sandboxes and checks operations against them:
1. Profile registry (built-in, persisted custom, declarative YAML)
2. Per-call validation of filesystem, network, resource and capability use
3. Bounded in-memory audit trail mirrored to the Policy Store
4. Per-sandbox compliance monitoring (score, warning, isolation trigger)
5. Periodic security reports and pruning of old events
6. Audit export as JSON, CSV or HTML

Violations are returned as data and never raised; the caller decides how
to enforce them. A critical violation, or too many violations at a
compliance pass, signals `sandbox_isolation_triggered`. Acting on that
belongs to whoever owns the sandbox (the IsolationEngine).

Usage:
    from isolation.security import SecurityManager, PolicyStore

    security = SecurityManager(store=PolicyStore("/var/lib/isolation/security-db"))
    security.apply_profile_to_sandbox("sbx-1", "medium-risk")

    result = security.validate_execution("sbx-1", "write", {"file_path": "/etc/passwd"})
    if not result.allowed:
        ...
"""

import fnmatch
import ipaddress
import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional, Union
from urllib.parse import urlsplit

from ..constants import Intervals, Limits, Timeouts
from ..errors import ConfigurationError
from ..events import EventBus
from ..logging_config import SECURITY
from ..utils.error_handling import log_filesystem_error
from ..utils.paths import first_match
from .audit_report import render_audit
from .capabilities import capability_for_operation, category_for_capability
from .models import (
    EventAction,
    EventCategory,
    EventType,
    ExecutionContext,
    RiskLevel,
    SecurityAudit,
    SecurityEvent,
    SecurityProfile,
    SecuritySummary,
    Severity,
    ValidationResult,
)
from .policy_store import PolicyStore
from .profiles import (
    BUILTIN_PROFILE_IDS,
    builtin_profiles,
    load_profile_paths,
    validate_profile,
)

logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024


def parse_network_host(target: str) -> str:
    """Extract the host from a URL, host:port, [v6]:port or bare host."""
    target = (target or '').strip()
    if not target:
        return ''
    if '://' in target:
        return (urlsplit(target).hostname or '').lower()
    # Bare IPv6 address
    if target.count(':') > 1 and not target.startswith('['):
        return target.lower()
    try:
        return (urlsplit('//' + target).hostname or target).lower()
    except ValueError:
        return target.lower()


def is_loopback_host(host: str) -> bool:
    if host == 'localhost':
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def calculate_compliance_score(events: List[SecurityEvent]) -> int:
    """100 minus the violation percentage, rounded; 100 with no events."""
    if not events:
        return 100
    violations = sum(1 for e in events if e.is_violation)
    return int(round(max(0.0, 100 - (violations / len(events) * 100))))


def derive_risk_level(events: List[SecurityEvent]) -> RiskLevel:
    high = sum(1 for e in events if e.severity == Severity.HIGH)
    if any(e.severity == Severity.CRITICAL for e in events):
        return RiskLevel.CRITICAL
    if high > Limits.HIGH_RISK_EVENT_THRESHOLD:
        return RiskLevel.HIGH
    if high > 0:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class SecurityManager:
    """
    Profile registry, execution validator and audit trail.

    Args:
        store: Durable storage for custom profiles and events (optional)
        event_bus: Receives security notifications
        profile_files: YAML files or directories of declarative profiles
        compliance_interval: Seconds between compliance passes per sandbox
        report_interval: Seconds between security reports
        prune_interval: Seconds between pruning of old in-memory events
        max_events: Size of the in-memory audit ring
    """

    def __init__(
        self,
        store: Optional[PolicyStore] = None,
        event_bus: Optional[EventBus] = None,
        profile_files: Iterable[str] = (),
        compliance_interval: float = Intervals.COMPLIANCE_CHECK,
        report_interval: float = Intervals.SECURITY_REPORT,
        prune_interval: float = Intervals.EVENT_PRUNE,
        max_events: int = Limits.MAX_AUDIT_EVENTS,
    ):
        self._store = store
        self._event_bus = event_bus
        self._compliance_interval = compliance_interval
        self._report_interval = report_interval
        self._prune_interval = prune_interval

        self._lock = threading.RLock()
        self._profiles: Dict[str, SecurityProfile] = {}
        self._active: Dict[str, SecurityProfile] = {}
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)

        self._monitors: Dict[str, threading.Event] = {}
        self._monitor_threads: Dict[str, threading.Thread] = {}

        self._stop_event = threading.Event()
        self._background_thread: Optional[threading.Thread] = None
        self._last_prune = time.monotonic()

        for profile in builtin_profiles():
            self.register_profile(profile)
        self._load_custom_profiles()
        for profile in load_profile_paths(profile_files):
            self.register_profile(profile)

    def _emit(self, name: str, /, **payload: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(name, **payload)

    def _load_custom_profiles(self) -> None:
        if self._store is None:
            return
        try:
            profiles = self._store.load_profiles()
        except OSError as e:
            logger.warning(f"Failed to load custom security profiles: {e}")
            return
        for profile in profiles:
            self.register_profile(profile)
        if profiles:
            logger.info(f"Loaded {len(profiles)} custom security profiles")

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    def register_profile(self, profile: SecurityProfile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile
        logger.debug(f"Registered security profile {profile.id}")
        self._emit('profile_registered', profile_id=profile.id, profile_name=profile.name)

    def create_custom_profile(self, config: Union[Dict[str, Any], SecurityProfile]) -> SecurityProfile:
        """
        Register and persist a new profile with a generated `custom-` id.

        `config` is a profile dict (any `id` is ignored) or a template profile.
        """
        data = config.to_dict() if isinstance(config, SecurityProfile) else dict(config)
        data['id'] = f"custom-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        data['custom'] = True
        try:
            profile = SecurityProfile.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid custom profile: {e}") from e

        self.register_profile(profile)
        if self._store is not None:
            self._store.save_profile(profile)

        logger.info(f"Created custom security profile {profile.id} ({profile.name})")
        self._emit('custom_profile_created', profile_id=profile.id, profile_name=profile.name)
        return profile

    def get_security_profile(self, profile_id: str) -> Optional[SecurityProfile]:
        with self._lock:
            return self._profiles.get(profile_id)

    def list_profiles(self) -> List[SecurityProfile]:
        with self._lock:
            return list(self._profiles.values())

    def remove_profile(self, profile_id: str) -> bool:
        """
        Remove a custom profile from the registry and the store.

        Raises:
            ConfigurationError: built-in profile, or profile still in use
        """
        if profile_id in BUILTIN_PROFILE_IDS:
            raise ConfigurationError(f"Cannot remove built-in profile {profile_id}")

        with self._lock:
            if profile_id not in self._profiles:
                return False
            in_use = [sid for sid, p in self._active.items() if p.id == profile_id]
            if in_use:
                raise ConfigurationError(
                    f"Profile {profile_id} is active on sandboxes: {', '.join(in_use)}"
                )
            del self._profiles[profile_id]

        if self._store is not None:
            self._store.delete_profile(profile_id)

        logger.info(f"Removed security profile {profile_id}")
        self._emit('profile_removed', profile_id=profile_id)
        return True

    # -------------------------------------------------------------------------
    # Sandbox policies
    # -------------------------------------------------------------------------

    def apply_profile_to_sandbox(self, sandbox_id: str, profile_id: str) -> None:
        """
        Activate a profile for a sandbox and start compliance monitoring.

        Raises:
            ConfigurationError: unknown profile or out-of-range limits
        """
        profile = self.get_security_profile(profile_id)
        if profile is None:
            raise ConfigurationError(f"Security profile not found: {profile_id}")

        validate_profile(profile)

        with self._lock:
            self._active[sandbox_id] = profile
        self._start_monitor(sandbox_id)

        logger.info(f"Applied security profile {profile_id} to sandbox {sandbox_id}")
        self._emit('profile_applied', sandbox_id=sandbox_id, profile_id=profile_id)

    def get_active_profile(self, sandbox_id: str) -> Optional[SecurityProfile]:
        with self._lock:
            return self._active.get(sandbox_id)

    def get_active_policies(self) -> Dict[str, SecurityProfile]:
        with self._lock:
            return dict(self._active)

    def remove_policy(self, sandbox_id: str) -> bool:
        """Deactivate the sandbox's profile and stop its compliance monitor."""
        self._stop_monitor(sandbox_id)
        with self._lock:
            removed = self._active.pop(sandbox_id, None) is not None
        if removed:
            logger.info(f"Removed security policy from sandbox {sandbox_id}")
            self._emit('policy_removed', sandbox_id=sandbox_id)
        return removed

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_execution(
        self,
        sandbox_id: str,
        operation: str,
        context: Union[ExecutionContext, Dict[str, Any], None] = None,
    ) -> ValidationResult:
        """
        Check an operation against the sandbox's active profile.

        Every violation is audited and returned; nothing is raised for a
        policy mismatch. Allowed operations on audited capabilities produce
        an `audit` event.
        """
        if not isinstance(context, ExecutionContext):
            context = ExecutionContext.from_dict(context)

        profile = self.get_active_profile(sandbox_id)
        if profile is None:
            violation = SecurityEvent.create(
                EventType.VIOLATION, Severity.HIGH, EventCategory.COMPLIANCE,
                sandbox_id,
                f"No security profile applied to sandbox: {operation} denied",
                EventAction.BLOCKED,
                details={'operation': operation},
            )
            recorded = self._record_violations(sandbox_id, [violation])
            return ValidationResult(allowed=False, violations=recorded)

        violations: List[SecurityEvent] = []

        if context.file_path:
            event = self._check_filesystem(profile, sandbox_id, context.file_path, operation)
            if event is not None:
                violations.append(event)

        if context.network_target:
            event = self._check_network(profile, sandbox_id, context.network_target)
            if event is not None:
                violations.append(event)

        if context.process_count is not None or context.memory_usage is not None:
            violations.extend(self._check_resources(profile, sandbox_id, context))

        capability_name = capability_for_operation(operation, profile.capability_names)
        capability = profile.get_capability(capability_name) if capability_name else None
        if capability is not None and not capability.allowed:
            violations.append(SecurityEvent.create(
                EventType.VIOLATION, Severity.MEDIUM, EventCategory.COMPLIANCE,
                sandbox_id,
                f"Capability not allowed: {capability.name}",
                EventAction.BLOCKED,
                details={'capability': capability.name, 'operation': operation},
                policy=profile.id,
            ))

        if violations:
            recorded = self._record_violations(sandbox_id, violations)
            return ValidationResult(allowed=False, violations=recorded)

        if capability is not None and capability.audit:
            self.audit_event(SecurityEvent.create(
                EventType.AUDIT, Severity.LOW, category_for_capability(capability.name),
                sandbox_id,
                f"Audited operation: {operation}",
                EventAction.LOGGED,
                details={'capability': capability.name, 'operation': operation},
                policy=profile.id,
            ))

        return ValidationResult(allowed=True, violations=[])

    def _record_violations(self, sandbox_id: str,
                           violations: List[SecurityEvent]) -> List[SecurityEvent]:
        recorded = []
        for violation in violations:
            event = self.audit_event(violation)
            recorded.append(event)
            self._emit('security_violation', sandbox_id=sandbox_id, event=event.to_dict())

        critical = [e for e in recorded if e.severity == Severity.CRITICAL]
        if critical:
            logger.log(SECURITY, f"Critical violation in sandbox {sandbox_id}, isolating")
            self._emit(
                'sandbox_isolation_triggered',
                sandbox_id=sandbox_id,
                reason='critical_violation',
                violation_count=len(critical),
            )
        return recorded

    def _check_filesystem(self, profile: SecurityProfile, sandbox_id: str,
                          file_path: str, operation: str) -> Optional[SecurityEvent]:
        blocked = first_match(file_path, profile.blocked_paths)
        if blocked is not None:
            return SecurityEvent.create(
                EventType.VIOLATION, Severity.HIGH, EventCategory.FILESYSTEM,
                sandbox_id,
                f"Blocked filesystem access: {operation} on {file_path}",
                EventAction.BLOCKED,
                details={'file_path': file_path, 'operation': operation,
                         'blocked_path': blocked},
                policy=profile.id,
            )

        if first_match(file_path, profile.allowed_paths) is not None:
            return None

        return SecurityEvent.create(
            EventType.VIOLATION, Severity.MEDIUM, EventCategory.FILESYSTEM,
            sandbox_id,
            f"Unallowed filesystem access: {operation} on {file_path}",
            EventAction.BLOCKED,
            details={'file_path': file_path, 'operation': operation,
                     'allowed_paths': list(profile.allowed_paths)},
            policy=profile.id,
        )

    def _check_network(self, profile: SecurityProfile, sandbox_id: str,
                       target: str) -> Optional[SecurityEvent]:
        policy = profile.network_policy
        if policy is None:
            return None

        host = parse_network_host(target)
        allowed_hosts = {h.lower() for h in policy.allowed_hosts}

        for blocked in policy.blocked_hosts:
            if '*' in blocked:
                # Explicitly allowed hosts are exempt from wildcard blocks
                matched = host not in allowed_hosts and fnmatch.fnmatch(host, blocked.lower())
            else:
                matched = blocked.lower() in target.lower()
            if matched:
                return SecurityEvent.create(
                    EventType.VIOLATION, Severity.HIGH, EventCategory.NETWORK,
                    sandbox_id,
                    f"Blocked network access to: {target}",
                    EventAction.BLOCKED,
                    details={'target': target, 'blocked_host': blocked},
                    policy=profile.id,
                )

        if not policy.allow_external_network and not is_loopback_host(host):
            return SecurityEvent.create(
                EventType.VIOLATION, Severity.HIGH, EventCategory.NETWORK,
                sandbox_id,
                f"External network access not allowed to: {target}",
                EventAction.BLOCKED,
                details={'target': target},
                policy=profile.id,
            )
        return None

    def _check_resources(self, profile: SecurityProfile, sandbox_id: str,
                         context: ExecutionContext) -> List[SecurityEvent]:
        policy = profile.resource_policy
        if policy is None:
            return []

        violations = []
        if context.process_count is not None and context.process_count > policy.max_processes:
            violations.append(SecurityEvent.create(
                EventType.VIOLATION, Severity.HIGH, EventCategory.RESOURCE,
                sandbox_id,
                f"Process count limit exceeded: {context.process_count} > {policy.max_processes}",
                EventAction.BLOCKED,
                details={'actual': context.process_count, 'limit': policy.max_processes},
                policy=profile.id,
            ))

        limit_bytes = policy.max_memory_mb * _BYTES_PER_MB
        if context.memory_usage is not None and context.memory_usage > limit_bytes:
            violations.append(SecurityEvent.create(
                EventType.VIOLATION, Severity.CRITICAL, EventCategory.RESOURCE,
                sandbox_id,
                f"Memory limit exceeded: {round(context.memory_usage / _BYTES_PER_MB)}MB "
                f"> {policy.max_memory_mb}MB",
                EventAction.BLOCKED,
                details={'actual_bytes': context.memory_usage, 'limit_bytes': limit_bytes},
                policy=profile.id,
            ))
        return violations

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    def audit_event(self, event: SecurityEvent) -> SecurityEvent:
        """
        Record an event: in-memory ring, Policy Store, subscribers.

        The event is re-stamped with a fresh id and timestamp.
        """
        event = SecurityEvent.create(
            event.type, event.severity, event.category, event.sandbox_id,
            event.description, event.action, event.details, event.policy,
        )

        with self._lock:
            self._events.append(event)

        if self._store is not None:
            try:
                self._store.log_event(event)
            except OSError as e:
                log_filesystem_error(e, "persist_security_event", event_id=event.id)

        if event.severity == Severity.CRITICAL:
            logger.log(
                SECURITY,
                f"Critical security event for {event.sandbox_id}: {event.description}",
            )
        elif event.is_violation:
            logger.warning(f"Security violation in {event.sandbox_id}: {event.description}")
        else:
            logger.debug(f"Security event for {event.sandbox_id}: {event.description}")

        self._emit('security_event', sandbox_id=event.sandbox_id, event=event.to_dict())
        if event.severity == Severity.CRITICAL:
            self._emit('critical_security_event', sandbox_id=event.sandbox_id,
                       event=event.to_dict())
        return event

    def get_security_events(self, sandbox_id: Optional[str] = None,
                            limit: Optional[int] = None) -> List[SecurityEvent]:
        """In-memory events, oldest first; `limit` keeps the most recent."""
        with self._lock:
            events = [e for e in self._events if sandbox_id is None or e.sandbox_id == sandbox_id]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def get_security_summary(self, sandbox_id: str) -> SecuritySummary:
        recent = self.get_security_events(sandbox_id, limit=Limits.COMPLIANCE_WINDOW)
        return SecuritySummary(
            sandbox_id=sandbox_id,
            profile=self.get_active_profile(sandbox_id),
            recent_events=recent,
            violations=[e for e in recent if e.is_violation],
            compliance_score=calculate_compliance_score(recent),
            risk_level=derive_risk_level(recent),
        )

    def export_audit_report(self, sandbox_id: Optional[str] = None, fmt: str = 'json') -> str:
        """
        Render the in-memory audit trail.

        Raises:
            ConfigurationError: unsupported format
        """
        audit = SecurityAudit.build(self.get_security_events(sandbox_id))
        return render_audit(audit, fmt)

    # -------------------------------------------------------------------------
    # Compliance monitoring
    # -------------------------------------------------------------------------

    def check_compliance(self, sandbox_id: str) -> SecuritySummary:
        """
        One compliance pass for a sandbox.

        A score below the warning threshold audits a warning; more
        violations than the isolation threshold audits a critical event and
        emits `sandbox_isolation_triggered`.
        """
        summary = self.get_security_summary(sandbox_id)

        if summary.compliance_score < Limits.COMPLIANCE_WARNING_THRESHOLD:
            self.audit_event(SecurityEvent.create(
                EventType.WARNING, Severity.HIGH, EventCategory.COMPLIANCE,
                sandbox_id,
                f"Low compliance score detected: {summary.compliance_score}%",
                EventAction.ALERTED,
                details={'compliance_score': summary.compliance_score},
                policy=summary.profile.id if summary.profile else None,
            ))

        if len(summary.violations) > Limits.ISOLATION_VIOLATION_THRESHOLD:
            self.audit_event(SecurityEvent.create(
                EventType.VIOLATION, Severity.CRITICAL, EventCategory.COMPLIANCE,
                sandbox_id,
                "Too many violations detected - isolating sandbox",
                EventAction.ISOLATED,
                details={'violation_count': len(summary.violations)},
                policy=summary.profile.id if summary.profile else None,
            ))
            logger.log(SECURITY, f"Isolation triggered for sandbox {sandbox_id}")
            self._emit(
                'sandbox_isolation_triggered',
                sandbox_id=sandbox_id,
                reason='violation_threshold',
                violation_count=len(summary.violations),
            )

        return summary

    def _start_monitor(self, sandbox_id: str) -> None:
        self._stop_monitor(sandbox_id)

        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._monitor_loop,
            args=(sandbox_id, stop_event),
            daemon=True,
            name=f"compliance-{sandbox_id[:12]}",
        )
        with self._lock:
            self._monitors[sandbox_id] = stop_event
            self._monitor_threads[sandbox_id] = thread
        thread.start()

    def _monitor_loop(self, sandbox_id: str, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._compliance_interval):
            try:
                self.check_compliance(sandbox_id)
            except Exception as e:
                logger.error(f"Compliance check failed for {sandbox_id}: {e}", exc_info=True)

    def _stop_monitor(self, sandbox_id: str) -> None:
        with self._lock:
            stop_event = self._monitors.pop(sandbox_id, None)
            thread = self._monitor_threads.pop(sandbox_id, None)

        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=Timeouts.THREAD_JOIN_SHORT)

    def is_monitoring(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._monitors

    # -------------------------------------------------------------------------
    # Reports and pruning
    # -------------------------------------------------------------------------

    def generate_security_report(self) -> Dict[str, Any]:
        with self._lock:
            events = list(self._events)
            active_count = len(self._active)

        report = {
            'timestamp': datetime.utcnow().isoformat(),
            'total_events': len(events),
            'by_severity': {
                severity.value: sum(1 for e in events if e.severity == severity)
                for severity in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW)
            },
            'by_category': {
                category.value: sum(1 for e in events if e.category == category)
                for category in EventCategory
            },
            'active_sandbox_count': active_count,
        }
        self._emit('security_report', report=report)
        return report

    def prune_events(self, max_age_seconds: float = Limits.EVENT_RETENTION_SECONDS) -> int:
        """Drop in-memory events older than `max_age_seconds`."""
        cutoff = datetime.utcnow() - timedelta(seconds=max_age_seconds)
        with self._lock:
            before = len(self._events)
            kept = [e for e in self._events if e.timestamp > cutoff]
            self._events.clear()
            self._events.extend(kept)
            removed = before - len(kept)
        if removed:
            logger.debug(f"Pruned {removed} security events older than {max_age_seconds}s")
        return removed

    def _background_loop(self) -> None:
        while not self._stop_event.wait(self._report_interval):
            try:
                self.generate_security_report()
                if time.monotonic() - self._last_prune >= self._prune_interval:
                    self.prune_events()
                    self._last_prune = time.monotonic()
            except Exception as e:
                logger.error(f"Security background task failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._background_thread is not None and self._background_thread.is_alive():
            return
        self._stop_event.clear()
        self._last_prune = time.monotonic()
        self._background_thread = threading.Thread(
            target=self._background_loop,
            daemon=True,
            name="security-reports",
        )
        self._background_thread.start()
        logger.debug("Security monitoring started")

    def stop(self) -> None:
        """Stop the report loop and every compliance monitor."""
        self._stop_event.set()
        if self._background_thread is not None:
            self._background_thread.join(timeout=Timeouts.THREAD_JOIN_DEFAULT)
            self._background_thread = None

        with self._lock:
            sandbox_ids = list(self._monitors.keys())
        for sandbox_id in sandbox_ids:
            self._stop_monitor(sandbox_id)
