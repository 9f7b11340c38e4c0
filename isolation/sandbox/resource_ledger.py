"""
Resource Ledger - admission control for sandbox CPU and memory.

Tracks what has been promised to live sandboxes against what the host can
provide. Admission is an atomic check-and-reserve so concurrent creations
cannot jointly overshoot the totals, and each reservation is keyed by
sandbox id so it can be released exactly once.

CPU is accounted in millicores internally so that a sequence of
allocations and releases returns to exactly the starting totals.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil

from ..errors import IsolationError, ResourceExhaustionError

logger = logging.getLogger(__name__)


def _to_millicores(cpu: float) -> int:
    return int(round(cpu * 1000))


@dataclass(frozen=True)
class Allocation:
    """Resources reserved for one sandbox at admission."""
    key: str
    cpu_millicores: int
    memory_mb: int

    @property
    def cpu(self) -> float:
        return self.cpu_millicores / 1000.0


class ResourceLedger:
    """
    Process-wide CPU/memory accounting.

    Totals default to the host's logical CPU count and physical memory as
    reported by psutil; tests inject fixed totals.
    """

    def __init__(self, total_cpu: Optional[float] = None,
                 total_memory_mb: Optional[int] = None):
        if total_cpu is None:
            total_cpu = float(psutil.cpu_count(logical=True) or 1)
        if total_memory_mb is None:
            total_memory_mb = int(psutil.virtual_memory().total // (1024 * 1024))

        self._total_cpu_m = _to_millicores(total_cpu)
        self._total_memory_mb = int(total_memory_mb)
        self._allocated_cpu_m = 0
        self._allocated_memory_mb = 0
        self._allocations: Dict[str, Allocation] = {}
        self._lock = threading.Lock()

        logger.debug(
            f"Resource ledger initialized: {total_cpu} CPU, {self._total_memory_mb}MB"
        )

    @property
    def total_cpu(self) -> float:
        return self._total_cpu_m / 1000.0

    @property
    def total_memory_mb(self) -> int:
        return self._total_memory_mb

    @property
    def allocated_cpu(self) -> float:
        with self._lock:
            return self._allocated_cpu_m / 1000.0

    @property
    def allocated_memory_mb(self) -> int:
        with self._lock:
            return self._allocated_memory_mb

    def available_cpu(self) -> float:
        with self._lock:
            return (self._total_cpu_m - self._allocated_cpu_m) / 1000.0

    def available_memory_mb(self) -> int:
        with self._lock:
            return self._total_memory_mb - self._allocated_memory_mb

    def _fits(self, cpu_m: int, memory_mb: int) -> bool:
        return (
            self._allocated_cpu_m + cpu_m <= self._total_cpu_m and
            self._allocated_memory_mb + memory_mb <= self._total_memory_mb
        )

    def can_allocate(self, cpu: float, memory_mb: int) -> bool:
        """Advisory check; use try_allocate() to actually reserve."""
        with self._lock:
            return self._fits(_to_millicores(cpu), int(memory_mb))

    def try_allocate(self, key: str, cpu: float, memory_mb: int) -> Allocation:
        """
        Reserve resources for `key`.

        Raises:
            ResourceExhaustionError: if the request does not fit
            IsolationError: if `key` already holds a reservation
        """
        cpu_m = _to_millicores(cpu)
        memory_mb = int(memory_mb)

        with self._lock:
            if key in self._allocations:
                raise IsolationError(f"Resources already allocated for {key}")

            if not self._fits(cpu_m, memory_mb):
                available_cpu = (self._total_cpu_m - self._allocated_cpu_m) / 1000.0
                available_mem = self._total_memory_mb - self._allocated_memory_mb
                raise ResourceExhaustionError(
                    f"Insufficient resources: requested {cpu} CPU / {memory_mb}MB, "
                    f"available {available_cpu} CPU / {available_mem}MB",
                    requested_cpu=cpu,
                    requested_memory_mb=memory_mb,
                    available_cpu=available_cpu,
                    available_memory_mb=available_mem,
                )

            allocation = Allocation(key=key, cpu_millicores=cpu_m, memory_mb=memory_mb)
            self._allocations[key] = allocation
            self._allocated_cpu_m += cpu_m
            self._allocated_memory_mb += memory_mb

        logger.debug(f"Allocated {cpu} CPU / {memory_mb}MB for {key}")
        return allocation

    def release(self, key: str) -> bool:
        """Return the reservation held by `key`. Returns False if none is held."""
        with self._lock:
            allocation = self._allocations.pop(key, None)
            if allocation is None:
                return False
            self._allocated_cpu_m -= allocation.cpu_millicores
            self._allocated_memory_mb -= allocation.memory_mb

        logger.debug(
            f"Released {allocation.cpu} CPU / {allocation.memory_mb}MB for {key}"
        )
        return True

    def get_allocation(self, key: str) -> Optional[Allocation]:
        with self._lock:
            return self._allocations.get(key)

    def snapshot(self) -> Dict[str, Any]:
        """Allocated vs. available totals with utilization percentages."""
        with self._lock:
            cpu_util = (
                self._allocated_cpu_m / self._total_cpu_m * 100
                if self._total_cpu_m else 0.0
            )
            mem_util = (
                self._allocated_memory_mb / self._total_memory_mb * 100
                if self._total_memory_mb else 0.0
            )
            return {
                'total_cpu': self._total_cpu_m / 1000.0,
                'allocated_cpu': self._allocated_cpu_m / 1000.0,
                'available_cpu': (self._total_cpu_m - self._allocated_cpu_m) / 1000.0,
                'total_memory_mb': self._total_memory_mb,
                'allocated_memory_mb': self._allocated_memory_mb,
                'available_memory_mb': self._total_memory_mb - self._allocated_memory_mb,
                'cpu_utilization': round(cpu_util, 2),
                'memory_utilization': round(mem_util, 2),
                'allocations': len(self._allocations),
            }
