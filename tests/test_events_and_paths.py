"""
Tests for the event bus and path prefix matching.
"""

import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from isolation.events import EventBus
from isolation.utils.paths import first_match, is_under, normalize_path


# ===========================================================================
# EventBus Tests
# ===========================================================================

class TestEventBus:

    @pytest.mark.unit
    def test_named_and_wildcard_delivery(self):
        bus = EventBus()
        named, everything = [], []
        bus.subscribe('sandbox_created', named.append)
        bus.subscribe_all(everything.append)

        bus.emit('sandbox_created', sandbox_id='sbx-1')
        bus.emit('sandbox_cleaned', sandbox_id='sbx-1')

        assert [e.get('sandbox_id') for e in named] == ['sbx-1']
        assert [e.name for e in everything] == ['sandbox_created', 'sandbox_cleaned']

    @pytest.mark.unit
    def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe('policy_applied', broken)
        bus.subscribe('policy_applied', received.append)

        event = bus.emit('policy_applied', profile_id='high-risk')

        assert received == [event]
        stats = bus.get_stats()
        assert stats['events_emitted'] == 1
        assert stats['callback_errors'] == 1

    @pytest.mark.unit
    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe('security_event', received.append)

        assert bus.unsubscribe('security_event', received.append) is True
        assert bus.unsubscribe('security_event', received.append) is False

        bus.emit('security_event')
        assert received == []
        assert bus.get_stats()['subscriptions'] == {'security_event': 0}

    @pytest.mark.unit
    def test_payload_may_carry_name(self):
        event = EventBus().emit('policy_created', name="Isolation policy")
        assert event.name == 'policy_created'
        assert event.get('name') == "Isolation policy"

    @pytest.mark.unit
    def test_event_to_dict(self):
        event = EventBus().emit('network_created', network_id='net-1')
        data = event.to_dict()
        assert data['payload'] == {'network_id': 'net-1'}
        assert data['timestamp'].endswith('Z')


# ===========================================================================
# Path Matching Tests
# ===========================================================================

class TestPaths:

    @pytest.mark.unit
    @pytest.mark.parametrize("path,expected", [
        ("/etc/../root//x/", "/root/x"),
        ("//etc", "/etc"),
        ("", ""),
    ])
    def test_normalize(self, path, expected):
        assert normalize_path(path) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("path,prefix,expected", [
        ("/etc/passwd", "/etc", True),
        ("/etc", "/etc/", True),
        ("/etcetera", "/etc", False),
        ("/tmp/../etc/shadow", "/etc", True),
        ("/anything", "/", True),
        ("relative", "/", False),
        ("", "/etc", False),
    ])
    def test_is_under(self, path, prefix, expected):
        assert is_under(path, prefix) is expected

    @pytest.mark.unit
    def test_first_match(self):
        assert first_match("/var/log/app", ["/etc", "/var", "/var/log"]) == "/var"
        assert first_match("/home/user", ["/etc", "/var"]) is None
