"""
Capture Scheduler for the proxy tracker.

The root driver. Each iteration checks the monitored instance for a restart,
captures for a fixed window, merges the window, runs whichever periodic
maintenance tasks are due, then idles. A window is always merged and
persisted before the next capture starts, and a stop request is honoured
only between iterations or during the idle sleep.
"""

import asyncio
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from fractions import Fraction
from typing import Awaitable, Callable, Optional

from .aggregator import TrafficAggregator, duty_cycle_multiplier
from .audit_logger import AuditLogger
from .config import CaptureConfig
from .enums import LogLevel, RestartOutcome
from .exceptions import PersistenceError, TrackerError
from .instances import InstanceController, fetch_peer_counts
from .models import CaptureResult, CycleReport, PeerCount
from .sampler import PacketSampler
from .state_lifecycle import StateLifecycleManager


@dataclass
class PeriodicTask:
    """A maintenance task run at most once per interval."""

    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[None]]
    last_run: Optional[float] = None
    enabled: bool = True

    def is_due(self, now: float) -> bool:
        if not self.enabled:
            return False
        return self.last_run is None or now - self.last_run >= self.interval_seconds


class CaptureScheduler:
    """
    Duty-cycled capture loop with interval-gated maintenance tasks.

    Maintenance tasks run in registration order after the merge of the
    window. A task that raises is logged and the loop carries on.
    """

    COMPONENT = "CaptureScheduler"

    def __init__(
        self,
        capture_config: CaptureConfig,
        sampler: PacketSampler,
        aggregator: TrafficAggregator,
        lifecycle: Optional[StateLifecycleManager] = None,
        controller: Optional[InstanceController] = None,
        primary_instance: Optional[str] = None,
        max_concurrent_queries: int = 4,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._capture_config = capture_config
        self._sampler = sampler
        self._aggregator = aggregator
        self._lifecycle = lifecycle
        self._controller = controller
        self._primary_instance = primary_instance
        self._max_concurrent_queries = max_concurrent_queries
        self._logger = logger
        self._clock = clock
        self._tasks: dict[str, PeriodicTask] = {}
        self._multiplier = duty_cycle_multiplier(
            capture_config.capture_seconds, capture_config.idle_seconds
        )
        self._running = False
        self._iterations = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._capture_future: Optional[Future] = None

    @property
    def multiplier(self) -> Fraction:
        return self._multiplier

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def capture_in_progress(self) -> bool:
        return self._capture_future is not None and not self._capture_future.done()

    def schedule(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        run_immediately: bool = True,
    ) -> PeriodicTask:
        """
        Register a periodic task.

        Args:
            name: Unique task name
            interval_seconds: Minimum time between two runs
            callback: Async function to call when due
            run_immediately: If False the first run waits a full interval

        Raises:
            ValueError: If a task with the same name already exists
        """
        if name in self._tasks:
            raise ValueError(f"Task '{name}' already exists")
        task = PeriodicTask(
            name=name,
            interval_seconds=interval_seconds,
            callback=callback,
            last_run=None if run_immediately else self._clock(),
        )
        self._tasks[name] = task
        return task

    def get_task(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[PeriodicTask]:
        return list(self._tasks.values())

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run iterations until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        self._running = True
        self._log(
            LogLevel.INFO,
            "Tracker started",
            {
                "capture_seconds": self._capture_config.capture_seconds,
                "idle_seconds": self._capture_config.idle_seconds,
                "multiplier": str(self._multiplier),
                "tasks": [t.name for t in self._tasks.values()],
            },
        )

        try:
            while self._running and not stop_event.is_set():
                await self.run_once()
                if stop_event.is_set():
                    break
                try:
                    await asyncio.wait_for(
                        stop_event.wait(), timeout=self._capture_config.idle_seconds
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.close()
            self._log(LogLevel.INFO, "Tracker stopped", {"iterations": self._iterations})

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def close(self) -> None:
        """Stop a capture still in progress and release the capture thread."""
        if self.capture_in_progress:
            self._sampler.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def run_once(self) -> CycleReport:
        """Run a single capture, merge and maintenance iteration."""
        report = CycleReport(started_at=self._clock())

        await self._check_restart(report)

        result = await self._capture()
        report.deltas = len(result.deltas)
        report.bytes_observed = sum(d.bytes for d in result.deltas)
        report.capture_error = result.error

        if result.deltas:
            merge = self._aggregator.merge(result.deltas, self._multiplier)
            report.merged = merge.persisted
            report.errors.extend(merge.errors)
        elif not self._aggregator.pending.is_empty():
            report.merged = self._aggregator.flush()

        now = self._clock()
        for task in self._tasks.values():
            if not task.is_due(now):
                continue
            task.last_run = now
            try:
                await task.callback()
                report.tasks_run.append(task.name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                report.errors.append(f"{task.name}: {e}")
                self._log_error(f"Maintenance task '{task.name}' failed", e)

        self._iterations += 1
        return report

    async def collect_peer_counts(self) -> dict[str, Optional[PeerCount]]:
        """Peer counts of every monitored instance, queried concurrently."""
        if self._controller is None:
            return {}
        instance_ids = await self._controller.list_instances()
        return await fetch_peer_counts(
            self._controller, instance_ids, self._max_concurrent_queries
        )

    async def _check_restart(self, report: CycleReport) -> None:
        if self._lifecycle is None or self._controller is None:
            return

        try:
            instance_id = self._primary_instance
            if instance_id is None:
                instances = await self._controller.list_instances()
                instance_id = instances[0] if instances else None
            marker = (
                await self._controller.get_start_marker(instance_id)
                if instance_id
                else None
            )
        except TrackerError as e:
            self._log_error("Cannot fetch start marker", e)
            marker = None

        try:
            outcome = self._lifecycle.check_restart(marker)
        except PersistenceError as e:
            report.errors.append(f"restart check: {e.message}")
            self._log_error("Restart handling failed, will retry", e)
            return

        if outcome not in (RestartOutcome.UNCHANGED, RestartOutcome.UNKNOWN_MARKER):
            report.tasks_run.append(f"restart_check:{outcome.value}")

    async def _capture(self) -> CaptureResult:
        # Capture phases never overlap
        if self.capture_in_progress:
            self._log(
                LogLevel.WARN,
                "Previous capture still running, window skipped",
                {},
            )
            return CaptureResult(error="previous capture still running")

        duration = self._capture_config.capture_seconds
        timeout = duration + self._capture_config.timeout_grace_seconds
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")
        self._capture_future = self._executor.submit(
            self._sampler.capture,
            duration,
            self._capture_config.exclude_filter,
        )
        try:
            return await asyncio.wait_for(
                asyncio.wrap_future(self._capture_future),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._sampler.stop()
            self._log(
                LogLevel.WARN,
                "Capture exceeded its time limit, window discarded",
                {"timeout_seconds": timeout},
            )
            return CaptureResult(duration_seconds=timeout, error="capture timed out")

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error)
