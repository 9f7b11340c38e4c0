"""
Operation to capability mapping.

An operation name is normalized (lowercase, non-alphanumerics to '_') and
looked up in an explicit table. An operation that already names a
capability maps to itself. Operations not in the table map to nothing and
are allowed by the capability check.
"""

import re
from typing import Dict, Iterable, Optional

from .models import EventCategory

FILESYSTEM_READ = "filesystem_read"
FILESYSTEM_WRITE = "filesystem_write"
NETWORK_OUTBOUND = "network_outbound"
NETWORK_INBOUND = "network_inbound"
PROCESS_CREATE = "process_create"
EXEC = "exec"

KNOWN_CAPABILITIES = (
    FILESYSTEM_READ,
    FILESYSTEM_WRITE,
    NETWORK_OUTBOUND,
    NETWORK_INBOUND,
    PROCESS_CREATE,
    EXEC,
)

OPERATION_CAPABILITIES: Dict[str, str] = {
    # Filesystem reads
    'read': FILESYSTEM_READ,
    'file_read': FILESYSTEM_READ,
    'read_file': FILESYSTEM_READ,
    'open': FILESYSTEM_READ,
    'stat': FILESYSTEM_READ,
    'list_dir': FILESYSTEM_READ,
    # Filesystem writes
    'write': FILESYSTEM_WRITE,
    'file_write': FILESYSTEM_WRITE,
    'write_file': FILESYSTEM_WRITE,
    'append': FILESYSTEM_WRITE,
    'delete': FILESYSTEM_WRITE,
    'remove': FILESYSTEM_WRITE,
    'unlink': FILESYSTEM_WRITE,
    'rename': FILESYSTEM_WRITE,
    'mkdir': FILESYSTEM_WRITE,
    'chmod': FILESYSTEM_WRITE,
    # Outbound network
    'connect': NETWORK_OUTBOUND,
    'http_request': NETWORK_OUTBOUND,
    'network_request': NETWORK_OUTBOUND,
    'dns_lookup': NETWORK_OUTBOUND,
    'download': NETWORK_OUTBOUND,
    'upload': NETWORK_OUTBOUND,
    # Inbound network
    'listen': NETWORK_INBOUND,
    'bind': NETWORK_INBOUND,
    'accept': NETWORK_INBOUND,
    'serve': NETWORK_INBOUND,
    # Processes
    'spawn': PROCESS_CREATE,
    'fork': PROCESS_CREATE,
    'create_process': PROCESS_CREATE,
    # Exec
    'execute': EXEC,
    'exec_command': EXEC,
    'run_command': EXEC,
    'shell': EXEC,
}

_CATEGORY_BY_CAPABILITY = {
    FILESYSTEM_READ: EventCategory.FILESYSTEM,
    FILESYSTEM_WRITE: EventCategory.FILESYSTEM,
    NETWORK_OUTBOUND: EventCategory.NETWORK,
    NETWORK_INBOUND: EventCategory.NETWORK,
    PROCESS_CREATE: EventCategory.PROCESS,
    EXEC: EventCategory.PROCESS,
}

_NON_ALNUM = re.compile(r'[^a-z0-9]')


def normalize_operation(operation: str) -> str:
    return _NON_ALNUM.sub('_', (operation or '').lower())


def capability_for_operation(operation: str,
                             profile_capabilities: Iterable[str] = ()) -> Optional[str]:
    """
    Capability name governing `operation`, or None if it is unmapped.

    `profile_capabilities` lets a profile's own capability names (including
    custom ones) match by exact name.
    """
    name = normalize_operation(operation)
    if name in KNOWN_CAPABILITIES or name in set(profile_capabilities):
        return name
    return OPERATION_CAPABILITIES.get(name)


def category_for_capability(capability: str) -> EventCategory:
    return _CATEGORY_BY_CAPABILITY.get(capability, EventCategory.COMPLIANCE)
