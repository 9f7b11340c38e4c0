"""
Tests for the Resource Ledger.

Tests admission, exhaustion, release accounting and concurrent reservations.
"""

import os
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from isolation.errors import IsolationError, ResourceExhaustionError
from isolation.sandbox.resource_ledger import ResourceLedger


# ===========================================================================
# Initialization Tests
# ===========================================================================

class TestLedgerInit:
    """Tests for ResourceLedger construction."""

    @pytest.mark.unit
    def test_fixed_totals(self):
        """Injected totals should be used as-is."""
        ledger = ResourceLedger(total_cpu=2.5, total_memory_mb=2048)
        assert ledger.total_cpu == 2.5
        assert ledger.total_memory_mb == 2048
        assert ledger.allocated_cpu == 0.0
        assert ledger.allocated_memory_mb == 0

    @pytest.mark.unit
    def test_totals_from_psutil(self):
        """Missing totals should come from the host via psutil."""
        memory = MagicMock(total=8 * 1024 * 1024 * 1024)
        with patch('isolation.sandbox.resource_ledger.psutil.cpu_count', return_value=6), \
                patch('isolation.sandbox.resource_ledger.psutil.virtual_memory', return_value=memory):
            ledger = ResourceLedger()
        assert ledger.total_cpu == 6.0
        assert ledger.total_memory_mb == 8192


# ===========================================================================
# Allocation Tests
# ===========================================================================

class TestAllocation:
    """Tests for try_allocate() and release()."""

    @pytest.mark.unit
    def test_allocate_reduces_available(self, ledger):
        """A reservation should be subtracted from the available totals."""
        allocation = ledger.try_allocate("sbx-1", 1.5, 1024)
        assert allocation.cpu == 1.5
        assert allocation.memory_mb == 1024
        assert ledger.available_cpu() == 2.5
        assert ledger.available_memory_mb() == 3072

    @pytest.mark.unit
    def test_exhaustion_raises_with_details(self, ledger):
        """A request that does not fit should raise and reserve nothing."""
        ledger.try_allocate("sbx-1", 3.0, 1024)
        with pytest.raises(ResourceExhaustionError) as exc_info:
            ledger.try_allocate("sbx-2", 2.0, 512)

        error = exc_info.value
        assert error.requested_cpu == 2.0
        assert error.available_cpu == 1.0
        assert error.available_memory_mb == 3072
        assert ledger.get_allocation("sbx-2") is None
        assert ledger.allocated_cpu == 3.0

    @pytest.mark.unit
    def test_memory_exhaustion(self, ledger):
        """Memory alone should be able to deny admission."""
        with pytest.raises(ResourceExhaustionError):
            ledger.try_allocate("sbx-1", 0.5, 5000)

    @pytest.mark.unit
    def test_exact_fit_is_admitted(self, ledger):
        """Reserving exactly the remaining capacity should succeed."""
        ledger.try_allocate("sbx-1", 4.0, 4096)
        assert ledger.available_cpu() == 0.0
        assert not ledger.can_allocate(0.1, 1)

    @pytest.mark.unit
    def test_duplicate_key_rejected(self, ledger):
        """A key may hold only one reservation."""
        ledger.try_allocate("sbx-1", 1.0, 256)
        with pytest.raises(IsolationError):
            ledger.try_allocate("sbx-1", 1.0, 256)
        assert ledger.allocated_cpu == 1.0

    @pytest.mark.unit
    def test_release_is_exactly_once(self, ledger):
        """Releasing twice should return the resources only once."""
        ledger.try_allocate("sbx-1", 1.0, 512)
        assert ledger.release("sbx-1") is True
        assert ledger.release("sbx-1") is False
        assert ledger.allocated_cpu == 0.0
        assert ledger.allocated_memory_mb == 0

    @pytest.mark.unit
    def test_release_unknown_key(self, ledger):
        """Releasing an unknown key should be a no-op."""
        assert ledger.release("never-allocated") is False

    @pytest.mark.unit
    def test_fractional_cpu_returns_to_zero(self, ledger):
        """Fractional CPU allocations should not leave rounding residue."""
        for i in range(10):
            ledger.try_allocate(f"sbx-{i}", 0.1, 64)
        for i in range(10):
            ledger.release(f"sbx-{i}")
        assert ledger.allocated_cpu == 0.0
        assert ledger.available_cpu() == 4.0

    @pytest.mark.unit
    def test_snapshot(self, ledger):
        """snapshot() should report totals and utilization."""
        ledger.try_allocate("sbx-1", 1.0, 1024)
        snap = ledger.snapshot()
        assert snap['total_cpu'] == 4.0
        assert snap['allocated_cpu'] == 1.0
        assert snap['available_memory_mb'] == 3072
        assert snap['cpu_utilization'] == 25.0
        assert snap['memory_utilization'] == 25.0


# ===========================================================================
# Concurrency Tests
# ===========================================================================

class TestLedgerConcurrency:
    """Concurrent admission must never overshoot the totals."""

    @pytest.mark.unit
    def test_concurrent_allocations_respect_totals(self, ledger):
        """Of many racing 1-core requests only four can be admitted."""
        admitted = []
        denied = []
        barrier = threading.Barrier(16)

        def worker(index):
            barrier.wait()
            try:
                ledger.try_allocate(f"sbx-{index}", 1.0, 128)
                admitted.append(index)
            except ResourceExhaustionError:
                denied.append(index)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 4
        assert len(denied) == 12
        assert ledger.allocated_cpu == 4.0

    @pytest.mark.unit
    def test_concurrent_allocate_release_balances(self, ledger):
        """Interleaved allocate/release cycles should end at zero."""
        def worker(index):
            for round_ in range(50):
                key = f"sbx-{index}-{round_}"
                try:
                    ledger.try_allocate(key, 0.25, 64)
                except ResourceExhaustionError:
                    continue
                ledger.release(key)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.allocated_cpu == 0.0
        assert ledger.allocated_memory_mb == 0
