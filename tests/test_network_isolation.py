"""
Tests for the Network Isolation Manager.

Tests subnet allocation, network lifecycle, policy application order,
isolation, traffic evaluation and best-effort teardown.
"""

import ipaddress
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from isolation.errors import (
    ConfigurationError,
    ExternalToolError,
    NetworkNotConnectedError,
    ResourceExhaustionError,
)
from isolation.network.models import (
    Destination,
    Direction,
    InterfaceStatus,
    NetworkRule,
    Protocol,
    RuleAction,
)
from isolation.network.network_isolation import NetworkIsolationManager
from isolation.network.packet_filter import chain_name

from fakes import FakePacketFilter, make_config


def _container(runtime, sandbox_id="sbx-1"):
    """Create a fake container for `sandbox_id` and return its handle."""
    return runtime.create(make_config(sandbox_id))


def _tool_error(message: str) -> ExternalToolError:
    return ExternalToolError(['iptables'], 1, message)


# ===========================================================================
# Construction Tests
# ===========================================================================

class TestConstruction:
    """Subnet pool validation."""

    @pytest.mark.unit
    @pytest.mark.parametrize("pool", ["8.8.0.0/16", "not-a-network", "10.0.0.0/28"])
    def test_invalid_pools(self, runtime, packet_filter, pool):
        with pytest.raises(ConfigurationError):
            NetworkIsolationManager(runtime, packet_filter, subnet_pool=pool)

    @pytest.mark.unit
    def test_filtering_flag(self, runtime):
        manager = NetworkIsolationManager(runtime, FakePacketFilter(available=False))
        assert manager.filtering_available is False


# ===========================================================================
# Network Lifecycle Tests
# ===========================================================================

class TestNetworkLifecycle:
    """create / connect / disconnect / cleanup."""

    @pytest.mark.unit
    def test_create_network(self, network_manager, runtime, packet_filter, recorder):
        """A new network should be internal, on a private /24, with a DROP chain."""
        network_id = network_manager.create_sandbox_network("sbx-1")

        assert network_id == "sandbox-sbx-1"
        record = runtime.networks[network_id]
        subnet = ipaddress.ip_network(record['subnet'])
        assert subnet.prefixlen == 24
        assert subnet.is_private
        assert record['gateway'] == str(next(subnet.hosts()))
        assert record['internal'] is True
        assert record['options']['com.docker.network.bridge.enable_ip_masquerade'] == 'false'
        assert record['options']['com.docker.network.bridge.enable_icc'] == 'false'
        assert record['labels'] == {'isolation.sandbox': 'sbx-1'}
        assert packet_filter.rules(chain_name(network_id)) == [('default', None)]
        assert 'network_created' in recorder.names()

    @pytest.mark.unit
    def test_external_network(self, network_manager, runtime):
        network_manager.create_sandbox_network("sbx-1", internal=False, enable_icc=True)
        options = runtime.networks["sandbox-sbx-1"]['options']
        assert runtime.networks["sandbox-sbx-1"]['internal'] is False
        assert options['com.docker.network.bridge.enable_ip_masquerade'] == 'true'
        assert options['com.docker.network.bridge.enable_icc'] == 'true'

    @pytest.mark.unit
    def test_distinct_subnets(self, network_manager, runtime):
        """Each sandbox should get its own non-overlapping subnet."""
        subnets = []
        for i in range(5):
            network_manager.create_sandbox_network(f"sbx-{i}")
            subnets.append(ipaddress.ip_network(runtime.networks[f"sandbox-sbx-{i}"]['subnet']))

        for i, a in enumerate(subnets):
            for b in subnets[i + 1:]:
                assert not a.overlaps(b)

    @pytest.mark.unit
    def test_subnet_pool_exhaustion(self, runtime, packet_filter):
        manager = NetworkIsolationManager(runtime, packet_filter, subnet_pool="10.99.0.0/23")
        manager.create_sandbox_network("a")
        manager.create_sandbox_network("b")
        with pytest.raises(ResourceExhaustionError):
            manager.create_sandbox_network("c")

    @pytest.mark.unit
    def test_subnet_reused_after_cleanup(self, runtime, packet_filter):
        manager = NetworkIsolationManager(runtime, packet_filter, subnet_pool="10.99.0.0/24")
        manager.create_sandbox_network("a")
        manager.cleanup_sandbox_network("a")
        assert manager.create_sandbox_network("b") == "sandbox-b"

    @pytest.mark.unit
    def test_explicit_subnet_validation(self, network_manager):
        network_manager.create_sandbox_network("a", subnet="10.50.0.0/24")
        with pytest.raises(ConfigurationError, match="overlaps"):
            network_manager.create_sandbox_network("b", subnet="10.50.0.128/25")
        with pytest.raises(ConfigurationError, match="not a private range"):
            network_manager.create_sandbox_network("c", subnet="8.8.8.0/24")
        with pytest.raises(ConfigurationError, match="Gateway"):
            network_manager.create_sandbox_network("d", subnet="10.60.0.0/24", gateway="10.61.0.1")

    @pytest.mark.unit
    def test_one_network_per_sandbox(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        with pytest.raises(ConfigurationError):
            network_manager.create_sandbox_network("sbx-1")

    @pytest.mark.unit
    def test_runtime_failure_releases_subnet(self, runtime, packet_filter):
        manager = NetworkIsolationManager(runtime, packet_filter, subnet_pool="10.99.0.0/24")
        runtime.fail_on['network_create'] = ExternalToolError(['podman'], 125, "boom")
        with pytest.raises(ExternalToolError):
            manager.create_sandbox_network("a")

        runtime.fail_on.clear()
        assert manager.create_sandbox_network("a") == "sandbox-a"

    @pytest.mark.unit
    def test_chain_failure_removes_network(self, network_manager, runtime, packet_filter):
        packet_filter.fail_on['create_chain'] = _tool_error("permission denied")
        with pytest.raises(ExternalToolError):
            network_manager.create_sandbox_network("sbx-1")

        assert "sandbox-sbx-1" not in runtime.networks
        assert network_manager.get_sandbox_network("sbx-1") is None

    @pytest.mark.unit
    def test_connect_updates_interface(self, network_manager, runtime, recorder):
        network_manager.create_sandbox_network("sbx-1")
        handle = _container(runtime)

        network_manager.connect_sandbox_to_network("sbx-1", handle)

        interface = network_manager.get_network_interfaces()[0]
        assert interface.status == InterfaceStatus.UP
        assert interface.ip == "172.30.0.2"
        assert interface.mac == "02:42:ac:1e:00:02"
        assert handle in runtime.networks["sandbox-sbx-1"]['containers']
        assert 'network_connected' in recorder.names()

    @pytest.mark.unit
    def test_connect_already_attached(self, network_manager, runtime):
        """Containers created on the network need no connect command."""
        network_manager.create_sandbox_network("sbx-1")
        handle = _container(runtime)

        network_manager.connect_sandbox_to_network("sbx-1", handle, already_attached=True)

        assert runtime.count('network_connect') == 0
        assert network_manager.get_network_topology()['connected_count'] == 1

    @pytest.mark.unit
    def test_connect_without_network(self, network_manager):
        with pytest.raises(NetworkNotConnectedError):
            network_manager.connect_sandbox_to_network("sbx-1", "ctr-1")

    @pytest.mark.unit
    def test_connect_to_foreign_network(self, network_manager, runtime):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.create_sandbox_network("sbx-2")
        with pytest.raises(ConfigurationError):
            network_manager.connect_sandbox_to_network("sbx-1", _container(runtime),
                                                       network_id="sandbox-sbx-2")

    @pytest.mark.unit
    def test_disconnect_not_connected_is_quiet(self, network_manager, runtime):
        """A 'not connected' runtime error should not raise."""
        network_manager.create_sandbox_network("sbx-1")
        handle = _container(runtime)
        network_manager.connect_sandbox_to_network("sbx-1", handle)
        runtime.containers.pop(handle)

        assert network_manager.disconnect_sandbox_from_network("sbx-1") is False
        assert network_manager.get_network_interfaces()[0].status == InterfaceStatus.DOWN

    @pytest.mark.unit
    def test_disconnect_without_container(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        assert network_manager.disconnect_sandbox_from_network("sbx-1") is False

    @pytest.mark.unit
    def test_cleanup(self, network_manager, runtime, packet_filter, recorder):
        network_manager.create_sandbox_network("sbx-1")
        handle = _container(runtime)
        network_manager.connect_sandbox_to_network("sbx-1", handle)

        assert network_manager.cleanup_sandbox_network("sbx-1") is True
        assert network_manager.cleanup_sandbox_network("sbx-1") is False

        assert "sandbox-sbx-1" not in runtime.networks
        assert chain_name("sandbox-sbx-1") not in packet_filter.chains
        assert network_manager.get_sandbox_network("sbx-1") is None
        assert network_manager.get_network_stats() == {}
        assert recorder.names().count('network_cleanup') == 1

    @pytest.mark.unit
    def test_cleanup_is_best_effort(self, network_manager, runtime, packet_filter):
        """Every teardown step should run even if earlier ones fail."""
        network_manager.create_sandbox_network("sbx-1")
        runtime.fail_on['network_remove'] = ExternalToolError(['podman'], 1, "in use")
        packet_filter.fail_on['delete_chain'] = _tool_error("busy")

        assert network_manager.cleanup_sandbox_network("sbx-1") is True
        assert packet_filter.calls[-1][0] == 'delete_chain'
        assert network_manager.get_sandbox_network("sbx-1") is None

    @pytest.mark.unit
    def test_cleanup_all(self, network_manager):
        for i in range(3):
            network_manager.create_sandbox_network(f"sbx-{i}")
        assert network_manager.cleanup_all() == 3
        assert network_manager.get_network_topology()['network_count'] == 0


# ===========================================================================
# Policy Tests
# ===========================================================================

class TestPolicies:
    """Policy creation and application."""

    @pytest.mark.unit
    def test_create_policy_registers(self, network_manager, recorder):
        policy = network_manager.create_network_policy("web", description="web egress")
        assert network_manager.get_network_policy(policy.id) is policy
        assert policy in network_manager.list_network_policies()
        assert recorder.of('policy_created')[0].get('policy_name') == "web"

    @pytest.mark.unit
    def test_apply_installs_ordered_rules_then_deny(self, network_manager, packet_filter):
        network_manager.create_sandbox_network("sbx-1")
        policy = network_manager.create_network_policy(
            "web",
            inbound=[NetworkRule(id="in-deny", action=RuleAction.DENY)],
            outbound=[
                NetworkRule(id="deny-all", action=RuleAction.DENY),
                NetworkRule(id="log", action=RuleAction.LOG),
                NetworkRule(id="https", action=RuleAction.ALLOW, protocol=Protocol.TCP,
                            destination_port=443),
            ],
        )

        network_manager.apply_network_policy("sbx-1", policy)

        entries = packet_filter.rules(chain_name("sandbox-sbx-1"))
        assert [(d, r.id if r else None) for d, r in entries] == [
            ('inbound', 'in-deny'),
            ('outbound', 'log'),
            ('outbound', 'https'),
            ('outbound', 'deny-all'),
            ('default', None),
        ]
        assert network_manager.get_active_policy("sbx-1") is policy

    @pytest.mark.unit
    @pytest.mark.security
    def test_chain_never_without_deny(self, network_manager, packet_filter):
        """Every observable chain state during policy changes ends in DROP."""
        network_manager.create_sandbox_network("sbx-1")
        policy = network_manager.create_network_policy(
            "web", outbound=[NetworkRule(id="https", action=RuleAction.ALLOW,
                                         protocol=Protocol.TCP, destination_port=443)],
        )

        network_manager.apply_network_policy("sbx-1", policy)
        network_manager.isolate_sandbox("sbx-1")
        network_manager.apply_network_policy("sbx-1", policy)

        chain = chain_name("sandbox-sbx-1")
        states = [contents for name, contents in packet_filter.snapshots if name == chain]
        assert len(states) == 4
        assert all(contents[-1] == ('default', None) for contents in states)

    @pytest.mark.unit
    def test_apply_without_network(self, network_manager):
        policy = network_manager.create_network_policy("web")
        with pytest.raises(NetworkNotConnectedError):
            network_manager.apply_network_policy("missing", policy)

    @pytest.mark.unit
    def test_apply_failure_resets_to_deny(self, network_manager, packet_filter):
        network_manager.create_sandbox_network("sbx-1")
        policy = network_manager.create_network_policy(
            "web", outbound=[NetworkRule(id="r1", action=RuleAction.ALLOW)],
        )
        packet_filter.fail_on['load_rules'] = _tool_error("bad rule")

        with pytest.raises(ExternalToolError):
            network_manager.apply_network_policy("sbx-1", policy)

        assert packet_filter.rules(chain_name("sandbox-sbx-1")) == [('default', None)]
        assert network_manager.get_active_policy("sbx-1") is None

    @pytest.mark.unit
    def test_policy_applied_when_filter_unavailable(self, runtime, recorder, event_bus):
        """Policies should still be tracked without enforcement."""
        manager = NetworkIsolationManager(runtime, FakePacketFilter(available=False),
                                          event_bus=event_bus)
        manager.create_sandbox_network("sbx-1")
        manager.isolate_sandbox("sbx-1")

        event = recorder.of('policy_applied')[0]
        assert event.payload['enforced'] is False
        assert manager.get_active_policy("sbx-1").id == "isolate-sbx-1"


# ===========================================================================
# Isolation and Traffic Tests
# ===========================================================================

class TestIsolation:
    """isolate_sandbox(), allow_network_access() and check_traffic()."""

    @pytest.mark.unit
    def test_isolated_sandbox_denies_outbound(self, network_manager, recorder):
        network_manager.create_sandbox_network("sbx-1")
        assert network_manager.isolate_sandbox("sbx-1") is True

        for host in ("8.8.8.8", "10.0.0.5", "example.com"):
            decision = network_manager.check_traffic("sbx-1", Direction.OUTBOUND, host, 443)
            assert decision.allowed is False
            assert decision.action == RuleAction.DENY

        assert network_manager.check_traffic(
            "sbx-1", Direction.INBOUND, "127.0.0.1", 8080).allowed is True
        assert network_manager.check_traffic(
            "sbx-1", Direction.INBOUND, "203.0.113.7", 8080).allowed is False
        assert 'sandbox_isolated' in recorder.names()

    @pytest.mark.unit
    def test_isolate_without_network(self, network_manager):
        assert network_manager.isolate_sandbox("missing") is False

    @pytest.mark.unit
    def test_default_deny_without_policy(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        decision = network_manager.check_traffic("sbx-1", Direction.OUTBOUND, "1.1.1.1", 53,
                                                 Protocol.UDP)
        assert decision.allowed is False
        assert decision.reason == "default deny"

    @pytest.mark.unit
    def test_unknown_sandbox_denied(self, network_manager):
        decision = network_manager.check_traffic("missing", "outbound", "1.1.1.1")
        assert decision.allowed is False

    @pytest.mark.unit
    def test_allow_network_access(self, network_manager, packet_filter, recorder):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.isolate_sandbox("sbx-1")

        assert network_manager.allow_network_access("sbx-1", [
            Destination(host="10.20.0.0/16", port=5432),
            Destination(host="1.1.1.1", port=53, protocol=Protocol.UDP),
        ]) is True

        check = network_manager.check_traffic
        assert check("sbx-1", Direction.OUTBOUND, "10.20.3.4", 5432).allowed
        assert not check("sbx-1", Direction.OUTBOUND, "10.20.3.4", 22).allowed
        assert check("sbx-1", Direction.OUTBOUND, "1.1.1.1", 53, Protocol.UDP).allowed
        assert not check("sbx-1", Direction.OUTBOUND, "1.1.1.1", 53, Protocol.TCP).allowed

        entries = packet_filter.rules(chain_name("sandbox-sbx-1"))
        assert entries[-1] == ('default', None)
        assert recorder.of('network_access_allowed')[0].payload['destinations'][1] == {
            'host': '1.1.1.1', 'port': 53, 'protocol': 'udp',
        }

    @pytest.mark.unit
    def test_log_rule_does_not_terminate(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        policy = network_manager.create_network_policy("audit", outbound=[
            NetworkRule(id="log-all", action=RuleAction.LOG),
            NetworkRule(id="allow-web", action=RuleAction.ALLOW, destination_port=443,
                        protocol=Protocol.TCP),
        ])
        network_manager.apply_network_policy("sbx-1", policy)

        decision = network_manager.check_traffic("sbx-1", Direction.OUTBOUND, "9.9.9.9", 443)
        assert decision.allowed is True
        assert decision.logged is True
        assert decision.rule_id == "allow-web"

    @pytest.mark.unit
    def test_traffic_counters(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.allow_network_access("sbx-1", [Destination(host="10.0.0.1", port=80)])
        network_manager.check_traffic("sbx-1", Direction.OUTBOUND, "10.0.0.1", 80)
        network_manager.check_traffic("sbx-1", Direction.OUTBOUND, "10.0.0.2", 80)

        stats = network_manager.get_network_stats("sbx-1")
        assert stats.total_connections == 2
        assert stats.allowed_connections == 1
        assert stats.blocked_connections == 1
        assert stats.by_protocol['tcp'] == 2

    @pytest.mark.unit
    def test_generated_policy_removed_with_network(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.isolate_sandbox("sbx-1")
        network_manager.cleanup_sandbox_network("sbx-1")
        assert network_manager.get_network_policy("isolate-sbx-1") is None


# ===========================================================================
# Query and Polling Tests
# ===========================================================================

class TestQueries:
    """Topology, per-sandbox view and stats polling."""

    @pytest.mark.unit
    def test_get_sandbox_network(self, network_manager):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.isolate_sandbox("sbx-1")

        view = network_manager.get_sandbox_network("sbx-1")
        assert view['network_id'] == "sandbox-sbx-1"
        assert view['interface']['status'] == 'down'
        assert view['policy']['id'] == "isolate-sbx-1"
        assert view['stats']['total_connections'] == 0

    @pytest.mark.unit
    def test_topology(self, network_manager, runtime):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.create_sandbox_network("sbx-2")
        network_manager.connect_sandbox_to_network("sbx-1", _container(runtime, "sbx-1"))

        topology = network_manager.get_network_topology()
        assert topology['network_count'] == 2
        assert topology['connected_count'] == 1
        assert topology['filtering_available'] is True
        assert {n['sandbox_id'] for n in topology['networks']} == {"sbx-1", "sbx-2"}

    @pytest.mark.unit
    def test_poll_network_stats(self, network_manager, runtime, recorder):
        network_manager.create_sandbox_network("sbx-1")
        network_manager.connect_sandbox_to_network("sbx-1", _container(runtime))

        network_manager.poll_network_stats()

        assert network_manager.get_network_stats("sbx-1").active_connections == 1
        event = recorder.of('network_stats_updated')[0]
        assert event.payload['network_id'] == "sandbox-sbx-1"

    @pytest.mark.unit
    def test_poll_survives_inspect_failure(self, network_manager, runtime, recorder):
        network_manager.create_sandbox_network("sbx-1")
        runtime.fail_on['network_inspect'] = ExternalToolError(['podman'], 1, "gone")

        network_manager.poll_network_stats()

        assert recorder.of('network_stats_updated') == []

    @pytest.mark.unit
    def test_start_stop_polling(self, runtime, packet_filter):
        manager = NetworkIsolationManager(runtime, packet_filter, stats_interval=0.05)
        manager.start()
        assert manager.is_polling
        manager.stop()
        assert not manager.is_polling
