"""
Warn-and-continue helpers for teardown and monitoring paths.

A failure on these paths must not abort the steps after it. It is
categorized, counted in a process-wide aggregator and logged with its
context, and the caller carries on. The aggregator summary is what
`IsolationEngine.get_status()` reports under `errors`.

USAGE:
    from isolation.utils.error_handling import ErrorCategory, ErrorSeverity, safe_execute

    with safe_execute("remove container", ErrorCategory.EXTERNAL,
                      severity=ErrorSeverity.WARNING):
        runtime.remove(handle)
"""

import logging
import threading
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Which part of the engine a failure came from."""
    SECURITY = "security"       # audit trail, signing key
    NETWORK = "network"         # sandbox networks, packet filter
    FILESYSTEM = "filesystem"   # policy store files
    SYSTEM = "system"
    CONFIG = "configuration"
    RESOURCE = "resource"       # ledger admission
    EXTERNAL = "external"       # container runtime CLI
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """One handled failure and where it happened."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace:
            self.stack_trace = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'timestamp': self.timestamp,
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        lines = [
            f"{self.operation} failed [{self.severity.value}/{self.category.value}]: "
            f"{type(self.error).__name__}: {self.error}",
        ]
        for key, value in self.additional_context.items():
            lines.append(f"  {key}: {value}")

        if self.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
            trace_lines = [line for line in self.stack_trace.split('\n') if line.strip()]
            if trace_lines and trace_lines != ['NoneType: None']:
                lines.extend(f"  {line}" for line in trace_lines)

        return '\n'.join(lines)


class ErrorAggregator:
    """
    Bounded, thread-safe record of handled failures.

    The same (category, type, operation) within `dedup_window_seconds` is
    counted but not stored again.
    """

    def __init__(self, max_errors: int = 1000, dedup_window_seconds: int = 60):
        self._errors: List[ErrorContext] = []
        self._lock = threading.Lock()
        self._max_errors = max_errors
        self._dedup_window = dedup_window_seconds
        self._error_counts: Dict[str, int] = {}
        self._last_seen: Dict[str, float] = {}

    def add_error(self, context: ErrorContext) -> bool:
        """Store `context`; False when it was only counted as a repeat."""
        key = f"{context.category.value}:{type(context.error).__name__}:{context.operation}"
        now = time.time()

        with self._lock:
            self._error_counts[key] = self._error_counts.get(key, 0) + 1
            if now - self._last_seen.get(key, 0) < self._dedup_window:
                return False

            self._last_seen[key] = now
            self._errors.append(context)
            if len(self._errors) > self._max_errors:
                self._errors = self._errors[-self._max_errors:]
            return True

    def get_error_summary(self) -> Dict[str, Any]:
        """Totals by category and severity, repeat counts and the latest failure."""
        with self._lock:
            by_category: Dict[str, int] = {}
            by_severity: Dict[str, int] = {}
            for ctx in self._errors:
                by_category[ctx.category.value] = by_category.get(ctx.category.value, 0) + 1
                by_severity[ctx.severity.value] = by_severity.get(ctx.severity.value, 0) + 1

            return {
                'total_errors': len(self._errors),
                'by_category': by_category,
                'by_severity': by_severity,
                'deduplicated_counts': dict(self._error_counts),
                'last_error': self._errors[-1].to_dict() if self._errors else None,
            }

    def clear(self):
        with self._lock:
            self._errors.clear()
            self._error_counts.clear()
            self._last_seen.clear()


_global_aggregator = ErrorAggregator()


def get_error_aggregator() -> ErrorAggregator:
    return _global_aggregator


def determine_severity(error: Exception, category: ErrorCategory) -> ErrorSeverity:
    """Default severity when the caller does not pick one."""
    if category == ErrorCategory.SECURITY:
        return ErrorSeverity.CRITICAL if 'tamper' in str(error).lower() else ErrorSeverity.ERROR

    if category == ErrorCategory.RESOURCE:
        return ErrorSeverity.CRITICAL

    if isinstance(error, FileNotFoundError):
        return ErrorSeverity.WARNING

    if 'timeout' in type(error).__name__.lower() or 'timeout' in str(error).lower():
        return ErrorSeverity.WARNING

    return ErrorSeverity.ERROR


_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def handle_error(
    error: Exception,
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    reraise: bool = False,
) -> ErrorContext:
    """
    Record and log a failure.

    Args:
        error: The exception that occurred
        operation: What was being done, e.g. "remove container"
        category: Engine area the failure belongs to
        severity: Log severity (derived from error and category if omitted)
        additional_context: Identifiers to log alongside, e.g. the sandbox id
        reraise: Re-raise `error` after recording it

    Returns:
        The recorded ErrorContext
    """
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        additional_context=additional_context or {},
    )

    level = _LOG_LEVELS.get(severity, logging.ERROR)
    if _global_aggregator.add_error(context):
        logger.log(level, context.format_log_message())
    else:
        logger.log(level, f"(repeated) {operation}: {type(error).__name__}: {error}")

    if reraise:
        raise error

    return context


@contextmanager
def safe_execute(
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    default_return: Any = None,
    reraise: bool = False,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
):
    """
    Run the block, handing any exception to handle_error().

    Usage:
        with safe_execute("disconnect network", ErrorCategory.NETWORK) as result:
            result.value = runtime.network_disconnect(net, handle)
        if not result.success:
            ...
    """
    class Result:
        def __init__(self):
            self.value = default_return
            self.error: Optional[ErrorContext] = None
            self.success = True

    result = Result()

    try:
        yield result
    except Exception as e:
        result.success = False
        result.error = handle_error(
            e,
            operation,
            category=category,
            severity=severity,
            additional_context=additional_context,
            reraise=reraise,
        )
        result.value = default_return


def log_security_error(error: Exception, operation: str, **context) -> ErrorContext:
    """Signing key and audit failures are always critical."""
    return handle_error(error, operation, category=ErrorCategory.SECURITY,
                        severity=ErrorSeverity.CRITICAL, additional_context=context)


def log_network_error(error: Exception, operation: str, **context) -> ErrorContext:
    return handle_error(error, operation, category=ErrorCategory.NETWORK,
                        severity=ErrorSeverity.WARNING, additional_context=context)


def log_filesystem_error(error: Exception, operation: str, **context) -> ErrorContext:
    return handle_error(error, operation, category=ErrorCategory.FILESYSTEM,
                        additional_context=context)


def log_external_error(error: Exception, operation: str, **context) -> ErrorContext:
    """Container runtime failures on teardown paths are warnings."""
    return handle_error(error, operation, category=ErrorCategory.EXTERNAL,
                        severity=ErrorSeverity.WARNING, additional_context=context)


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'get_error_aggregator',
    'handle_error',
    'safe_execute',
    'determine_severity',
    'log_security_error',
    'log_network_error',
    'log_filesystem_error',
    'log_external_error',
]
