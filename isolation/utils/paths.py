"""Path prefix matching shared by config validation and the security manager."""

import posixpath
from typing import Iterable, Optional


def normalize_path(path: str) -> str:
    """Collapse `..`, duplicate slashes and trailing slashes."""
    if not path:
        return path
    normalized = posixpath.normpath(path)
    # normpath keeps a leading '//' as POSIX allows it
    if normalized.startswith('//'):
        normalized = '/' + normalized.lstrip('/')
    return normalized


def is_under(path: str, prefix: str) -> bool:
    """
    True if `path` equals `prefix` or lies below it.

    Matching is per path component: '/etc' covers '/etc/passwd' but not
    '/etcetera'.
    """
    path = normalize_path(path)
    prefix = normalize_path(prefix)
    if not path or not prefix:
        return False
    if prefix == '/':
        return path.startswith('/')
    return path == prefix or path.startswith(prefix + '/')


def first_match(path: str, prefixes: Iterable[str]) -> Optional[str]:
    """Return the first prefix in `prefixes` that covers `path`."""
    for prefix in prefixes:
        if is_under(path, prefix):
            return prefix
    return None
