"""
Sandbox Manager for the Sandbox Isolation Engine

Creates, starts, monitors and tears down container-backed sandboxes:
1. Admission against the ResourceLedger before any container command
2. Static validation of the security policy
3. Container create/start through a ContainerRuntime
4. Per-sandbox resource monitor threads (advisory limit events)
5. Idempotent cleanup that releases exactly what was admitted

Usage:
    from isolation.sandbox import SandboxManager, SandboxConfig, ResourceLedger
    from isolation.sandbox.container_runtime import CliContainerRuntime

    manager = SandboxManager(CliContainerRuntime(), ResourceLedger())

    # Run a command in an ephemeral sandbox (always cleaned up)
    result = manager.execute_in_sandbox("task-42", ["python3", "job.py"])

    # Or manage a sandbox explicitly
    sandbox_id = manager.create_sandbox(SandboxConfig(image="python:3.12-slim"))
    manager.cleanup_sandbox(sandbox_id)
"""

import dataclasses
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Deque, Dict, List, Optional

from ..constants import Intervals, Limits, Timeouts
from ..errors import (
    ConfigurationError,
    SandboxTimeoutError,
    UnexpectedExitError,
)
from ..events import EventBus
from ..utils.error_handling import (
    ErrorCategory,
    ErrorSeverity,
    handle_error,
    safe_execute,
)
from .config_validator import SecurityValidator
from .container_runtime import ContainerRuntime
from .models import (
    ACTIVE_STATUSES,
    ExecResult,
    SandboxConfig,
    SandboxMetrics,
    SandboxState,
    SandboxStatus,
)
from .resource_ledger import ResourceLedger

logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024


class SandboxManager:
    """
    Manages sandbox lifecycles.

    Operations on the same sandbox id are serialized by a per-id lock;
    operations on different ids proceed concurrently.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        ledger: ResourceLedger,
        event_bus: Optional[EventBus] = None,
        validator: Optional[SecurityValidator] = None,
        default_config: Optional[SandboxConfig] = None,
        poll_interval: float = Intervals.RESOURCE_POLL,
        readiness_timeout: float = Timeouts.READINESS,
        enable_monitoring: bool = True,
    ):
        self._runtime = runtime
        self._ledger = ledger
        self._event_bus = event_bus
        self._validator = validator or SecurityValidator()
        self._default_config = default_config or SandboxConfig()
        self._poll_interval = poll_interval
        self._readiness_timeout = readiness_timeout
        self._enable_monitoring = enable_monitoring

        self._sandboxes: Dict[str, SandboxState] = {}
        self._lock = threading.Lock()

        # sandbox_id -> [lock, waiters]
        self._id_locks: Dict[str, List[Any]] = {}
        self._id_locks_guard = threading.Lock()

        self._monitors: Dict[str, threading.Event] = {}
        self._monitor_threads: Dict[str, threading.Thread] = {}

        # Stats
        self._total_created = 0
        self._total_failed = 0
        self._peak_cpu_percent = 0.0
        self._peak_memory_bytes = 0
        self._execution_times: Deque[float] = deque(maxlen=Limits.EXECUTION_HISTORY)

    @property
    def ledger(self) -> ResourceLedger:
        return self._ledger

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    def _emit(self, name: str, /, **payload: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(name, **payload)

    @contextmanager
    def _id_guard(self, sandbox_id: str):
        """Serialize lifecycle operations on one sandbox id."""
        with self._id_locks_guard:
            entry = self._id_locks.get(sandbox_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._id_locks[sandbox_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._id_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._id_locks.pop(sandbox_id, None)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_sandbox(
        self,
        config: SandboxConfig,
        on_admitted: Optional[Callable[[SandboxConfig], SandboxConfig]] = None,
    ) -> str:
        """
        Admit, validate, create and start a sandbox.

        `on_admitted(config)` runs after the ledger reservation and
        validation succeed and before any container command; it returns
        the config to create. If it raises, the reservation is released
        and nothing is registered.

        Returns:
            The sandbox id

        Raises:
            ResourceExhaustionError: the ledger cannot cover the limits
                (no container command has been issued)
            ConfigurationError: invalid limits or security policy
            ExternalToolError: the container runtime failed; the sandbox is
                left registered as `failed` until cleaned up
        """
        sandbox_id = config.id

        with self._id_guard(sandbox_id):
            with self._lock:
                if sandbox_id in self._sandboxes:
                    raise ConfigurationError(f"Sandbox {sandbox_id} already exists")

            limits = config.resource_limits
            self._ledger.try_allocate(sandbox_id, limits.cpu, limits.memory_mb)

            try:
                self._validator.validate(config)
                if on_admitted is not None:
                    config = on_admitted(config)
            except Exception:
                self._ledger.release(sandbox_id)
                raise

            state = SandboxState(id=sandbox_id, config=config)
            with self._lock:
                self._sandboxes[sandbox_id] = state
                self._total_created += 1

            self._emit('sandbox_creating', sandbox_id=sandbox_id, config=config.to_dict())
            logger.info(f"Creating sandbox {sandbox_id} (image: {config.image})")

            try:
                handle = self._runtime.create(config)
                state.container_handle = handle
                self._runtime.start(handle)
                state.mark_running(handle, self._lookup_pid(handle))
            except Exception as e:
                self._fail_creation(state, e)
                raise

            self._emit(
                'sandbox_created',
                sandbox_id=sandbox_id,
                container_handle=state.container_handle,
                network=config.network,
            )
            logger.info(f"Sandbox {sandbox_id} running (container {state.container_handle})")

            if self._enable_monitoring:
                self._start_monitor(sandbox_id)

            return sandbox_id

    def _lookup_pid(self, handle: str) -> Optional[int]:
        try:
            pid = self._runtime.inspect(handle).get('State', {}).get('Pid')
            return int(pid) if pid else None
        except Exception as e:
            logger.debug(f"Could not inspect container {handle}: {e}")
            return None

    def _fail_creation(self, state: SandboxState, error: Exception) -> None:
        """Mark failed, roll back the ledger and any half-created container."""
        state.mark_finished(SandboxStatus.FAILED, str(error))
        with self._lock:
            self._total_failed += 1

        logger.error(f"Failed to create sandbox {state.id}: {error}")
        self._ledger.release(state.id)

        if state.container_handle:
            with safe_execute(
                f"remove container {state.container_handle} after failed start",
                ErrorCategory.EXTERNAL,
                severity=ErrorSeverity.WARNING,
            ):
                self._runtime.remove(state.container_handle)

        self._emit('sandbox_failed', sandbox_id=state.id, error=str(error))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute_in_sandbox(
        self,
        task_id: str,
        command: List[str],
        config: Optional[SandboxConfig] = None,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cleanup_on_exit: Optional[bool] = None,
        on_ready: Optional[Callable[[str, str], None]] = None,
        on_admitted: Optional[Callable[[SandboxConfig], SandboxConfig]] = None,
    ) -> ExecResult:
        """
        Run a command in an ephemeral sandbox scoped to `task_id`.

        The sandbox is created, awaited until running, the command executed
        with a hard wall-clock timeout, and the sandbox cleaned up on every
        exit path unless cleanup is disabled. `on_admitted` is passed to
        create_sandbox(). `on_ready(sandbox_id, handle)` runs once the sandbox
        is running and before the command; its errors abort the task.

        Raises:
            SandboxTimeoutError: the sandbox never became ready, or the
                command exceeded its budget and was killed
        """
        sandbox_config = self._build_task_config(task_id, command, config, environment)
        sandbox_id = sandbox_config.id
        cleanup = sandbox_config.cleanup_on_exit if cleanup_on_exit is None else cleanup_on_exit
        budget = timeout if timeout is not None else sandbox_config.resource_limits.max_duration_sec

        if self.get_sandbox_state(sandbox_id) is not None:
            raise ConfigurationError(f"Sandbox {sandbox_id} already exists")

        try:
            self.create_sandbox(sandbox_config, on_admitted=on_admitted)
            handle = self._wait_until_running(sandbox_id, self._readiness_timeout)
            if on_ready is not None:
                on_ready(sandbox_id, handle)

            logger.info(f"Executing task {task_id} in sandbox {sandbox_id}")
            result = self._runtime.exec(handle, list(command), timeout=budget)
            result.sandbox_id = sandbox_id

            with self._lock:
                state = self._sandboxes.get(sandbox_id)
                if state is not None:
                    state.exit_code = result.exit_code
                self._execution_times.append(result.duration_seconds)

            return result

        except SandboxTimeoutError:
            logger.warning(f"Task {task_id} timed out in sandbox {sandbox_id}")
            raise

        finally:
            if cleanup:
                self.cleanup_sandbox(sandbox_id)

    def _build_task_config(
        self,
        task_id: str,
        command: List[str],
        config: Optional[SandboxConfig],
        environment: Optional[Dict[str, str]],
    ) -> SandboxConfig:
        base = config or self._default_config
        env = dict(base.environment)
        env.update(environment or {})
        env['TASK_ID'] = task_id
        env['TASK_COMMAND'] = ' '.join(command)

        changes: Dict[str, Any] = {'environment': env}
        if config is None:
            changes['id'] = f"task-{task_id}-{uuid.uuid4().hex[:8]}"
            changes['name'] = f"task-{task_id}"
        if not base.command:
            # Keep the container alive so the task can be exec'd into it
            changes['command'] = ('sleep', str(base.resource_limits.max_duration_sec))

        return dataclasses.replace(base, **changes)

    def _wait_until_running(self, sandbox_id: str, timeout: float) -> str:
        """Poll until the sandbox is running; returns its container handle."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                state = self._sandboxes.get(sandbox_id)
                status = state.status if state else None
                handle = state.container_handle if state else None

            if status == SandboxStatus.RUNNING and handle:
                return handle
            if status in (SandboxStatus.FAILED, SandboxStatus.EXITED, None):
                raise UnexpectedExitError(
                    f"Sandbox {sandbox_id} is not available (status: "
                    f"{status.value if status else 'missing'})"
                )
            if time.monotonic() >= deadline:
                raise SandboxTimeoutError(
                    f"Sandbox {sandbox_id} not ready within {timeout}s",
                    timeout=timeout,
                )
            time.sleep(Timeouts.READINESS_POLL)

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def _start_monitor(self, sandbox_id: str) -> None:
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._monitor_loop,
            args=(sandbox_id, stop_event),
            daemon=True,
            name=f"sandbox-monitor-{sandbox_id[:12]}",
        )
        with self._lock:
            self._monitors[sandbox_id] = stop_event
            self._monitor_threads[sandbox_id] = thread
        thread.start()

    def _monitor_loop(self, sandbox_id: str, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._poll_interval):
            if not self.poll_sandbox(sandbox_id):
                break

    def _stop_monitor(self, sandbox_id: str) -> None:
        """Stop the monitor for `sandbox_id`; safe to call more than once."""
        with self._lock:
            stop_event = self._monitors.pop(sandbox_id, None)
            thread = self._monitor_threads.pop(sandbox_id, None)

        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=Timeouts.THREAD_JOIN_SHORT)

    def poll_sandbox(self, sandbox_id: str) -> bool:
        """
        One resource-monitor pass.

        Updates ResourceUsage and emits advisory `resource_limit_exceeded`
        events. If the container can no longer be read the sandbox is marked
        `exited` and monitoring stops.

        Returns:
            False when monitoring for this sandbox should stop
        """
        with self._lock:
            state = self._sandboxes.get(sandbox_id)
        if state is None or state.status != SandboxStatus.RUNNING or not state.container_handle:
            return False

        try:
            usage = self._runtime.stats(state.container_handle)
        except Exception as e:
            with self._lock:
                still_registered = self._sandboxes.get(sandbox_id) is state
            if not still_registered or state.status != SandboxStatus.RUNNING:
                return False

            error = UnexpectedExitError(
                f"Container {state.container_handle} for sandbox {sandbox_id} "
                f"is no longer available: {e}"
            )
            state.mark_finished(SandboxStatus.EXITED, str(error))
            logger.warning(str(error))
            self._stop_monitor(sandbox_id)
            self._emit('sandbox_exited', sandbox_id=sandbox_id, error=str(error))
            return False

        state.usage = usage
        with self._lock:
            self._peak_cpu_percent = max(self._peak_cpu_percent, usage.cpu_percent)
            self._peak_memory_bytes = max(self._peak_memory_bytes, usage.memory_bytes)

        limits = state.config.resource_limits
        if usage.cpu_percent > limits.cpu * 100:
            logger.warning(
                f"Sandbox {sandbox_id} CPU {usage.cpu_percent:.1f}% exceeds "
                f"limit {limits.cpu * 100:.0f}%"
            )
            self._emit(
                'resource_limit_exceeded',
                sandbox_id=sandbox_id,
                category='cpu',
                value=usage.cpu_percent,
                limit=limits.cpu * 100,
            )

        memory_limit = limits.memory_mb * _BYTES_PER_MB
        if usage.memory_bytes > memory_limit:
            logger.warning(
                f"Sandbox {sandbox_id} memory {usage.memory_bytes // _BYTES_PER_MB}MB "
                f"exceeds limit {limits.memory_mb}MB"
            )
            self._emit(
                'resource_limit_exceeded',
                sandbox_id=sandbox_id,
                category='memory',
                value=usage.memory_bytes,
                limit=memory_limit,
            )

        self._emit('sandbox_metrics_updated', sandbox_id=sandbox_id, usage=usage.to_dict())
        return True

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def cleanup_sandbox(self, sandbox_id: str) -> bool:
        """
        Stop and remove a sandbox and release its resources.

        Idempotent: unknown ids are a no-op. Container stop/remove errors
        are logged, never raised.

        Returns:
            True if a registered sandbox was cleaned up
        """
        with self._id_guard(sandbox_id):
            with self._lock:
                state = self._sandboxes.get(sandbox_id)
            if state is None:
                logger.debug(f"Cleanup of unknown sandbox {sandbox_id} ignored")
                return False

            self._stop_monitor(sandbox_id)

            handle = state.container_handle
            if handle and state.status != SandboxStatus.FAILED:
                with safe_execute(
                    f"stop container {handle}",
                    ErrorCategory.EXTERNAL,
                    severity=ErrorSeverity.WARNING,
                ):
                    self._runtime.stop(handle)
                with safe_execute(
                    f"remove container {handle}",
                    ErrorCategory.EXTERNAL,
                    severity=ErrorSeverity.WARNING,
                ):
                    self._runtime.remove(handle)

            released = self._ledger.release(sandbox_id)

            if state.status in ACTIVE_STATUSES:
                state.mark_finished(SandboxStatus.STOPPED)

            with self._lock:
                self._sandboxes.pop(sandbox_id, None)

            logger.info(f"Cleaned up sandbox {sandbox_id} (status: {state.status.value})")
            self._emit(
                'sandbox_cleanup',
                sandbox_id=sandbox_id,
                status=state.status.value,
                released=released,
                network=state.config.network,
            )
            return True

    def _cleanup_quietly(self, sandbox_id: str) -> bool:
        try:
            return self.cleanup_sandbox(sandbox_id)
        except Exception as e:
            handle_error(e, f"cleanup sandbox {sandbox_id}", ErrorCategory.SYSTEM)
            return False

    def cleanup_all(self) -> int:
        """Clean up every registered sandbox concurrently. Returns the count cleaned."""
        with self._lock:
            sandbox_ids = list(self._sandboxes.keys())

        if not sandbox_ids:
            return 0

        logger.info(f"Cleaning up {len(sandbox_ids)} sandboxes")
        with ThreadPoolExecutor(
            max_workers=min(32, len(sandbox_ids)),
            thread_name_prefix="sandbox-cleanup",
        ) as pool:
            results = list(pool.map(self._cleanup_quietly, sandbox_ids))

        return sum(1 for cleaned in results if cleaned)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_sandbox_state(self, sandbox_id: str) -> Optional[SandboxState]:
        with self._lock:
            return self._sandboxes.get(sandbox_id)

    def list_sandboxes(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [state.to_dict() for state in self._sandboxes.values()]

    def is_monitoring(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._monitors

    def get_metrics(self) -> SandboxMetrics:
        """Aggregate counts, execution time, peaks and ledger utilization."""
        with self._lock:
            by_status: Dict[str, int] = {}
            for state in self._sandboxes.values():
                by_status[state.status.value] = by_status.get(state.status.value, 0) + 1

            times = list(self._execution_times)
            average = sum(times) / len(times) if times else 0.0

            return SandboxMetrics(
                total_sandboxes=self._total_created,
                active_sandboxes=by_status.get(SandboxStatus.RUNNING.value, 0),
                failed_sandboxes=self._total_failed,
                average_execution_time=average,
                peak_cpu_percent=self._peak_cpu_percent,
                peak_memory_bytes=self._peak_memory_bytes,
                resource_utilization=self._ledger.snapshot(),
                by_status=by_status,
            )

    def shutdown(self) -> int:
        return self.cleanup_all()
