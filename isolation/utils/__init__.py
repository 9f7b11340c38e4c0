"""Shared utilities for the Sandbox Isolation Engine."""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ErrorAggregator,
    get_error_aggregator,
    handle_error,
    safe_execute,
    log_security_error,
    log_network_error,
    log_filesystem_error,
    log_external_error,
)

__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'get_error_aggregator',
    'handle_error',
    'safe_execute',
    'log_security_error',
    'log_network_error',
    'log_filesystem_error',
    'log_external_error',
]
