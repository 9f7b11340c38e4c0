"""
Tests for built-in security profiles, profile validation and YAML loading.
"""

import dataclasses
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from isolation.errors import ConfigurationError
from isolation.security.capabilities import (
    OPERATION_CAPABILITIES,
    capability_for_operation,
    category_for_capability,
    normalize_operation,
)
from isolation.security.models import (
    EventCategory,
    NetworkSecurityPolicy,
    ResourceSecurityPolicy,
    RiskLevel,
    SecurityCapability,
    SecurityProfile,
)
from isolation.security.profiles import (
    BUILTIN_PROFILE_IDS,
    builtin_profiles,
    load_profile_file,
    load_profile_paths,
    profiles_from_dict,
    validate_profile,
)


PROFILE_YAML = """
profiles:
  batch-jobs:
    name: Batch Jobs
    risk_level: medium
    capabilities:
      - {name: filesystem_read, allowed: true}
      - {name: network_outbound, allowed: false}
    allowed_paths: [/tmp, /task]
    blocked_paths: [/etc, /root]
    resource_policy:
      max_cpu_cores: 2
      max_memory_mb: 2048
      max_execution_time: 600
  scratch:
    risk_level: low
"""


def _profile(**kwargs) -> SecurityProfile:
    return SecurityProfile(id="p", name="P", risk_level=RiskLevel.LOW, **kwargs)


# ===========================================================================
# Built-in Profile Tests
# ===========================================================================

class TestBuiltinProfiles:
    """The three risk templates."""

    @pytest.mark.unit
    def test_ids_and_risk_levels(self):
        profiles = {p.id: p for p in builtin_profiles()}
        assert tuple(profiles) == BUILTIN_PROFILE_IDS
        assert profiles['low-risk'].risk_level == RiskLevel.LOW
        assert profiles['medium-risk'].risk_level == RiskLevel.MEDIUM
        assert profiles['high-risk'].risk_level == RiskLevel.HIGH

    @pytest.mark.unit
    def test_builtins_pass_validation(self):
        for profile in builtin_profiles():
            validate_profile(profile)

    @pytest.mark.unit
    def test_high_risk_is_strict(self):
        high = {p.id: p for p in builtin_profiles()}['high-risk']
        assert high.get_capability("filesystem_write").allowed is False
        assert high.get_capability("network_outbound").allowed is False
        assert high.network_policy.blocked_hosts == ["*"]
        assert high.resource_policy.max_processes == 5
        assert "/" not in high.blocked_paths
        assert "/tmp" in high.allowed_paths

    @pytest.mark.unit
    def test_fresh_instances(self):
        """Each call should build new profile objects."""
        assert builtin_profiles()[0] is not builtin_profiles()[0]


# ===========================================================================
# Validation Tests
# ===========================================================================

class TestValidateProfile:
    """Tests for validate_profile()."""

    @pytest.mark.unit
    @pytest.mark.parametrize("changes,message", [
        ({'max_cpu_cores': 0}, "Invalid CPU cores limit"),
        ({'max_cpu_cores': 9}, "Invalid CPU cores limit"),
        ({'max_memory_mb': 9000}, "Invalid memory limit"),
        ({'max_execution_time': 0}, "Invalid execution time limit"),
        ({'max_execution_time': 3601}, "Invalid execution time limit"),
    ])
    def test_resource_limits(self, changes, message):
        profile = _profile(resource_policy=dataclasses.replace(ResourceSecurityPolicy(), **changes))
        with pytest.raises(ConfigurationError, match=message):
            validate_profile(profile)

    @pytest.mark.unit
    @pytest.mark.parametrize("changes,message", [
        ({'max_connections': 0}, "Invalid max connections limit"),
        ({'max_connections': 101}, "Invalid max connections limit"),
        ({'connection_timeout': 301}, "Invalid connection timeout"),
    ])
    def test_network_limits(self, changes, message):
        profile = _profile(network_policy=dataclasses.replace(NetworkSecurityPolicy(), **changes))
        with pytest.raises(ConfigurationError, match=message):
            validate_profile(profile)

    @pytest.mark.unit
    def test_capability_must_be_bool(self):
        profile = _profile(capabilities=[SecurityCapability("exec", "yes")])
        with pytest.raises(ConfigurationError, match="Invalid capability setting for exec"):
            validate_profile(profile)

    @pytest.mark.unit
    def test_minimal_profile_is_valid(self):
        validate_profile(_profile())


# ===========================================================================
# YAML Loading Tests
# ===========================================================================

class TestProfileFiles:
    """Tests for load_profile_file() and load_profile_paths()."""

    @pytest.mark.unit
    def test_load_file(self, temp_dir):
        path = temp_dir / "profiles.yaml"
        path.write_text(PROFILE_YAML)

        profiles = {p.id: p for p in load_profile_file(path)}

        batch = profiles['batch-jobs']
        assert batch.name == "Batch Jobs"
        assert batch.get_capability("network_outbound").allowed is False
        assert batch.blocked_paths == ["/etc", "/root"]
        assert batch.resource_policy.max_memory_mb == 2048
        assert batch.resource_policy.max_processes == 10
        assert profiles['scratch'].name == "scratch"

    @pytest.mark.unit
    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigurationError, match="Cannot read profile file"):
            load_profile_file(temp_dir / "nope.yaml")

    @pytest.mark.unit
    def test_bad_yaml(self, temp_dir):
        path = temp_dir / "bad.yaml"
        path.write_text("profiles: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_profile_file(path)

    @pytest.mark.unit
    def test_empty_file(self, temp_dir):
        path = temp_dir / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="Empty profile file"):
            load_profile_file(path)

    @pytest.mark.unit
    def test_invalid_limits_rejected(self, temp_dir):
        path = temp_dir / "limits.yaml"
        path.write_text(
            "profiles:\n"
            "  greedy:\n"
            "    resource_policy: {max_memory_mb: 100000}\n"
        )
        with pytest.raises(ConfigurationError, match="Invalid memory limit"):
            load_profile_file(path)

    @pytest.mark.unit
    def test_profiles_mapping_required(self):
        with pytest.raises(ConfigurationError):
            profiles_from_dict({'profiles': ['a', 'b']})
        with pytest.raises(ConfigurationError, match="Invalid profile bad"):
            profiles_from_dict({'profiles': {'bad': {'risk_level': 'extreme'}}})

    @pytest.mark.unit
    def test_load_directory_skips_failures(self, temp_dir):
        (temp_dir / "a.yaml").write_text(PROFILE_YAML)
        (temp_dir / "b.yml").write_text("profiles: [unclosed")
        (temp_dir / "notes.txt").write_text("ignored")

        profiles = load_profile_paths([temp_dir])

        assert sorted(p.id for p in profiles) == ["batch-jobs", "scratch"]


# ===========================================================================
# Capability Mapping Tests
# ===========================================================================

class TestCapabilityMapping:
    """Tests for the operation -> capability table."""

    @pytest.mark.unit
    @pytest.mark.parametrize("operation,capability", [
        ("read", "filesystem_read"),
        ("Write", "filesystem_write"),
        ("http-request", "network_outbound"),
        ("listen", "network_inbound"),
        ("fork", "process_create"),
        ("execute", "exec"),
        ("exec", "exec"),
        ("filesystem_write", "filesystem_write"),
    ])
    def test_mapped_operations(self, operation, capability):
        assert capability_for_operation(operation) == capability

    @pytest.mark.unit
    def test_no_substring_matching(self):
        """'reader' and 'overwrite' are not filesystem operations."""
        assert capability_for_operation("reader") is None
        assert capability_for_operation("overwrite") is None
        assert capability_for_operation("compute") is None

    @pytest.mark.unit
    def test_profile_specific_capability(self):
        assert capability_for_operation("gpu_access") is None
        assert capability_for_operation("gpu_access", ["gpu_access"]) == "gpu_access"

    @pytest.mark.unit
    def test_normalize(self):
        assert normalize_operation("HTTP Request") == "http_request"
        assert normalize_operation(None) == ""

    @pytest.mark.unit
    def test_categories(self):
        assert category_for_capability("filesystem_read") == EventCategory.FILESYSTEM
        assert category_for_capability("network_inbound") == EventCategory.NETWORK
        assert category_for_capability("exec") == EventCategory.PROCESS
        assert category_for_capability("gpu_access") == EventCategory.COMPLIANCE

    @pytest.mark.unit
    def test_table_targets_known_capabilities(self):
        assert set(OPERATION_CAPABILITIES.values()) == {
            "filesystem_read", "filesystem_write", "network_outbound",
            "network_inbound", "process_create", "exec",
        }
