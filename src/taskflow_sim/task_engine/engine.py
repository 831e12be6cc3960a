"""Execution engine: simulated runs, stall watchdog, retries and task controls.

The engine wraps :class:`TaskStore` with the task lifecycle:

    PENDING -> IN_PROGRESS -> COMPLETED
                           -> PENDING   (failed run, retries left)
                           -> FAILED    (failed run, retries exhausted)
                           -> BLOCKED   (stall watchdog fired)
    PENDING / IN_PROGRESS  -> CANCELLED (external)

A run is a timer, not real work: after ``duration`` ms a random draw decides
success (``success_rate``) or failure.  Every run re-reads the live task at
each checkpoint and abandons its own effects when the task has moved on
(deleted, cancelled, blocked, rescheduled); cancellation is cooperative and
never interrupts the timer itself.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from loguru import logger

from ..alerts import AlertBus
from ..clock import Clock, RandomSource, SystemClock, seeded_random
from ..config import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_STALL_FACTOR,
    DEFAULT_SUCCESS_RATE,
    OrchestratorConfig,
)
from ..errors import ConfigError, SimulatedTaskFailure
from .model import CANCELLABLE_STATES, MAX_RETRIES, Task, TaskState
from .store import TaskStore


class ExecutionEngine:
    """Run tasks from a :class:`TaskStore` under a fixed concurrency budget.

    Parameters
    ----------
    store:
        The authoritative task table.
    alerts:
        Bus receiving transition alerts.
    clock, rng:
        Injectable time and randomness sources.
    """

    def __init__(
        self,
        store: TaskStore,
        alerts: AlertBus,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[RandomSource] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        success_rate: float = DEFAULT_SUCCESS_RATE,
        stall_factor: float = DEFAULT_STALL_FACTOR,
    ) -> None:
        if not 0 <= max_retries <= MAX_RETRIES:
            raise ConfigError(f"max_retries must be between 0 and {MAX_RETRIES}, got {max_retries}")
        self._store = store
        self._alerts = alerts
        self._clock = clock or SystemClock()
        self._rng = rng or seeded_random()
        self._max_concurrency = max_concurrency
        self._max_retries = max_retries
        self._success_rate = success_rate
        self._stall_factor = stall_factor
        self._active: set[str] = set()
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._watchdogs: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def from_config(
        cls,
        store: TaskStore,
        alerts: AlertBus,
        config: OrchestratorConfig,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[RandomSource] = None,
    ) -> "ExecutionEngine":
        return cls(
            store,
            alerts,
            clock=clock,
            rng=rng,
            max_concurrency=config.max_concurrency,
            max_retries=config.max_retries,
            success_rate=config.success_rate,
            stall_factor=config.stall_factor,
        )

    # -- capacity -----------------------------------------------------------

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def active_count(self) -> int:
        return len(self._active)

    def has_capacity(self) -> bool:
        return len(self._active) < self._max_concurrency

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    # -- dispatch -----------------------------------------------------------

    def dispatch(self, task_id: str) -> Optional[asyncio.Task[None]]:
        """Start a simulated run of *task_id*.

        Silent no-op (returns ``None``) unless the task exists, is PENDING,
        is not already running and a capacity slot is free.  Otherwise the
        slot is reserved and the task marked IN_PROGRESS before this returns;
        the returned handle resolves once the outcome has been applied.

        Starting a run needs a running event loop; the no-op checks do not.
        """
        task = self._store.get(task_id)
        if task is None or task.state != TaskState.PENDING or task_id in self._active or not self.has_capacity():
            logger.debug("Dispatch of {} skipped", task_id)
            return None

        loop = asyncio.get_running_loop()
        self._active.add(task_id)
        started = task.with_state(TaskState.IN_PROGRESS)
        self._watchdogs[task_id] = loop.create_task(self._watch(started), name=f"watchdog-{task_id}")
        run = loop.create_task(self._run(started), name=f"run-{task_id}")
        run.add_done_callback(self._log_unexpected_error)
        self._runs[task_id] = run
        logger.info("Task {} ({}) started, {} of {} slots in use", task_id, task.title, len(self._active), self._max_concurrency)
        self._store.replace(started)
        return run

    async def _run(self, task: Task) -> None:
        task_id = task.id
        try:
            await self._clock.sleep(task.duration)

            current = self._store.get(task_id)
            if current is None:
                logger.info("Task {} disappeared mid-run; abandoning", task_id)
                return
            if current.state == TaskState.CANCELLED:
                self._alerts.info(f"Task {current.title} cancelled", task_id=task_id)
                return
            if current.state != TaskState.IN_PROGRESS:
                logger.info("Task {} left in-progress ({}) before its run ended; abandoning", task_id, current.state.value)
                return

            try:
                self._simulate_outcome(current)
            except SimulatedTaskFailure as exc:
                logger.info("Task {} run failed: {}", task_id, exc)
                self._on_failure(current)
            else:
                self._on_success(current)
        finally:
            self._finish(task_id)

    def _simulate_outcome(self, task: Task) -> None:
        draw = self._rng.random()
        if draw >= self._success_rate:
            raise SimulatedTaskFailure(f"random failure (draw={draw:.3f})")

    def _on_success(self, task: Task) -> None:
        done = task.with_state(TaskState.COMPLETED)
        self._store.replace(done)
        for other in self._store.snapshot():
            if task.id in other.dependency_ids:
                self._store.replace_dependency_snapshot(other.id, task.id, done)
        logger.info("Task {} completed", task.id)
        self._alerts.success(f"Completed {task.title}", task_id=task.id)

    def _on_failure(self, task: Task) -> None:
        attempt = task.retries + 1
        if attempt <= self._max_retries:
            self._store.replace(task.with_state(TaskState.PENDING, retries=attempt))
            self._alerts.info(f"Retrying {task.title}", f"Attempt {attempt}/{self._max_retries + 1}", task.id)
        else:
            self._store.replace(task.with_state(TaskState.FAILED))
            self._alerts.error(f"Failed {task.title}", "No more retries", task.id)

    def _finish(self, task_id: str) -> None:
        watchdog = self._watchdogs.pop(task_id, None)
        if watchdog is not None:
            watchdog.cancel()
        self._active.discard(task_id)
        self._runs.pop(task_id, None)
        # Re-emit so the scheduler sees the freed slot even if nothing changed.
        self._store.republish()

    async def _watch(self, task: Task) -> None:
        threshold_ms = task.duration * self._stall_factor
        shown = round(threshold_ms)
        await self._clock.sleep(threshold_ms)
        current = self._store.get(task.id)
        if current is None or current.state != TaskState.IN_PROGRESS:
            return
        logger.warning("Task {} stalled past {}ms; marking blocked", task.id, shown)
        self._store.replace(current.with_state(TaskState.BLOCKED))
        self._alerts.warn(f"Task {current.title} blocked", f"Exceeded {shown}ms", current.id)

    @staticmethod
    def _log_unexpected_error(run: "asyncio.Task[None]") -> None:
        if run.cancelled():
            return
        exc = run.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Run {} raised unexpected error", run.get_name())

    # -- controls -----------------------------------------------------------

    def cancel(self, task_id: str) -> bool:
        """PENDING / IN_PROGRESS -> CANCELLED; any other state is a no-op.

        The alert intentionally reuses the exhausted-retries wording.
        """
        current = self._store.get(task_id)
        if current is None or current.state not in CANCELLABLE_STATES:
            return False
        self._store.replace(current.with_state(TaskState.CANCELLED))
        self._alerts.error(f"Failed {current.title}", "No more retries", task_id)
        return True

    def retry(self, task_id: str) -> bool:
        """FAILED -> PENDING with a fixed ``retries = 1``; any other state is a no-op."""
        current = self._store.get(task_id)
        if current is None or current.state != TaskState.FAILED:
            return False
        attempt = 1
        self._store.replace(current.with_state(TaskState.PENDING, retries=attempt))
        self._alerts.info(f"Retrying {current.title}", f"Attempt {attempt}/{self._max_retries + 1}", task_id)
        return True

    def delete(self, task_id: str) -> bool:
        """Remove the task in any state; an in-flight run abandons itself."""
        return self._store.delete(task_id)

    def reschedule(self, task_id: str, start_at: Optional[datetime]) -> bool:
        """Set a new start time and force the task back to PENDING.

        Ignored for COMPLETED, FAILED and CANCELLED tasks.
        """
        current = self._store.get(task_id)
        if current is None or current.is_terminal:
            return False
        self._store.replace(current.with_state(TaskState.PENDING, start_at=start_at))
        return True

    # -- lifecycle ----------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel every in-flight run and watchdog and wait for them to unwind."""
        pending = list(self._runs.values()) + list(self._watchdogs.values())
        for handle in pending:
            handle.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._runs.clear()
        self._watchdogs.clear()
        self._active.clear()
