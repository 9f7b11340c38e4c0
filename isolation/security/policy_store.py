"""
Policy Store - durable storage for custom security profiles and audit events.

Layout under the store directory:
    profiles/<profile_id>.json
    events/<event_id>.json

Every record is written atomically (temp file + rename) with owner-only
permissions. When a signing key is configured, each event record carries
an Ed25519 signature over the canonical JSON of the event so exported audit
trails can be verified independently of this process.

Missing directories are not an error: loading from an empty or absent
store returns an empty list.
"""

import json
import logging
import os
import re
import tempfile
import threading
from typing import Any, Dict, List, Optional

import nacl.encoding
import nacl.exceptions
import nacl.signing

from ..constants import Paths, Permissions
from ..errors import ConfigurationError
from ..utils.error_handling import log_security_error
from .models import SecurityEvent, SecurityProfile

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')


def canonical_json(data: Dict[str, Any]) -> bytes:
    """Stable serialization used for signing."""
    return json.dumps(data, sort_keys=True, separators=(',', ':')).encode()


def load_or_create_signing_key(path: str) -> nacl.signing.SigningKey:
    """Load an Ed25519 key from `path`, generating it (mode 0600) if absent."""
    if os.path.exists(path):
        try:
            with open(path, 'rb') as f:
                key_bytes = f.read()
            signing_key = nacl.signing.SigningKey(key_bytes)
            logger.info(f"Loaded signing key from {path}")
            return signing_key
        except (OSError, ValueError, nacl.exceptions.CryptoError) as e:
            log_security_error(e, "load_signing_key", key_path=path)
            raise ConfigurationError(f"Unusable signing key at {path}: {e}") from e

    signing_key = nacl.signing.SigningKey.generate()

    key_dir = os.path.dirname(path)
    if key_dir:
        os.makedirs(key_dir, mode=Permissions.SECURE_DIR, exist_ok=True)

    # Opened 0600 before any bytes are written
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, Permissions.SECURE_FILE)
    try:
        os.write(fd, bytes(signing_key))
    finally:
        os.close(fd)

    logger.info(f"Generated new signing key at {path}")
    logger.info(
        "Public key (for verification): "
        f"{signing_key.verify_key.encode(encoder=nacl.encoding.HexEncoder).decode()}"
    )
    return signing_key


class PolicyStore:
    """
    File-backed store for profiles and events.

    Args:
        base_dir: Store root (created on first write)
        signing_key_path: Optional Ed25519 key file; events are signed when set
    """

    def __init__(self, base_dir: str = Paths.POLICY_STORE_DIR,
                 signing_key_path: Optional[str] = None):
        self.base_dir = base_dir
        self.profiles_dir = os.path.join(base_dir, Paths.PROFILES_SUBDIR)
        self.events_dir = os.path.join(base_dir, Paths.EVENTS_SUBDIR)
        self._lock = threading.Lock()

        self._signing_key: Optional[nacl.signing.SigningKey] = None
        if signing_key_path:
            self._signing_key = load_or_create_signing_key(signing_key_path)

    @property
    def signing_enabled(self) -> bool:
        return self._signing_key is not None

    @property
    def verify_key_hex(self) -> Optional[str]:
        if self._signing_key is None:
            return None
        return self._signing_key.verify_key.encode(encoder=nacl.encoding.HexEncoder).decode()

    @staticmethod
    def _record_name(record_id: str) -> str:
        if not _SAFE_ID.match(record_id or ''):
            raise ConfigurationError(f"Unsafe record id: {record_id!r}")
        return f"{record_id}.json"

    def _write_atomic(self, directory: str, record_id: str, data: Dict[str, Any]) -> str:
        path = os.path.join(directory, self._record_name(record_id))
        os.makedirs(directory, mode=Permissions.SECURE_DIR, exist_ok=True)

        # mkstemp creates the file 0600
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-', suffix='.json')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return path

    def _read_all(self, directory: str) -> List[Dict[str, Any]]:
        if not os.path.isdir(directory):
            return []

        records = []
        for name in sorted(os.listdir(directory)):
            if not name.endswith('.json') or name.startswith('.'):
                continue
            path = os.path.join(directory, name)
            try:
                with open(path, 'r') as f:
                    records.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable record {path}: {e}")
        return records

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    def save_profile(self, profile: SecurityProfile) -> str:
        with self._lock:
            path = self._write_atomic(self.profiles_dir, profile.id, profile.to_dict())
        logger.debug(f"Saved profile {profile.id} to {path}")
        return path

    def load_profiles(self) -> List[SecurityProfile]:
        with self._lock:
            records = self._read_all(self.profiles_dir)

        profiles = []
        for record in records:
            try:
                profiles.append(SecurityProfile.from_dict(record))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed profile record {record.get('id')}: {e}")
        return profiles

    def delete_profile(self, profile_id: str) -> bool:
        path = os.path.join(self.profiles_dir, self._record_name(profile_id))
        with self._lock:
            try:
                os.unlink(path)
                return True
            except FileNotFoundError:
                return False

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def log_event(self, event: SecurityEvent) -> Dict[str, Any]:
        """Persist one event; returns the stored record."""
        event_data = event.to_dict()
        record: Dict[str, Any] = {'event': event_data}

        if self._signing_key is not None:
            signed = self._signing_key.sign(canonical_json(event_data))
            record['signature'] = signed.signature.hex()
            record['public_key'] = self.verify_key_hex

        with self._lock:
            self._write_atomic(self.events_dir, event.id, record)
        return record

    def load_event_records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._read_all(self.events_dir)

    def load_events(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        """Persisted events, newest first."""
        events = []
        for record in self.load_event_records():
            data = record.get('event', record)
            try:
                events.append(SecurityEvent.from_dict(data))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed event record {data.get('id')}: {e}")

        events.sort(key=lambda e: e.timestamp, reverse=True)
        if limit is not None:
            events = events[:limit]
        return events

    @staticmethod
    def verify_event(record: Dict[str, Any]) -> bool:
        """Check a stored event record's signature against its embedded key."""
        signature = record.get('signature')
        public_key = record.get('public_key')
        event_data = record.get('event')
        if not signature or not public_key or event_data is None:
            return False

        try:
            verify_key = nacl.signing.VerifyKey(public_key, encoder=nacl.encoding.HexEncoder)
            verify_key.verify(canonical_json(event_data), bytes.fromhex(signature))
            return True
        except nacl.exceptions.BadSignatureError:
            logger.warning(f"Invalid signature on event {event_data.get('id')}")
            return False
        except (ValueError, TypeError, nacl.exceptions.CryptoError) as e:
            logger.warning(f"Could not verify event {event_data.get('id')}: {e}")
            return False
