"""Reactive scheduler: dispatches eligible tasks whenever the table changes.

The scheduler never polls.  It subscribes to :class:`TaskStore` snapshots and,
for each one:

1. Filters the eligible tasks (PENDING, dependencies completed, start time
   reached) with the predicate shared with the store's idle check.
2. Sorts them by ascending priority, keeping snapshot order for ties.
3. Dispatches in that order, re-checking engine capacity before each one and
   stopping at the first refusal.

Tasks whose ``start_at`` lies in the future would otherwise wait for an
unrelated mutation, so after each pass one wake-up timer is armed for the
earliest such start time.  When it fires the store re-publishes and the
normal pass runs again.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .clock import Clock, SystemClock
from .task_engine.engine import ExecutionEngine
from .task_engine.model import Task, TaskState, eligible_tasks
from .task_engine.store import TaskStore


class Scheduler:
    """Priority-ordered, capacity-gated dispatcher driven by store snapshots."""

    def __init__(self, store: TaskStore, engine: ExecutionEngine, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._engine = engine
        self._clock = clock or SystemClock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False
        self._wakeup: Optional[asyncio.Task[None]] = None
        self._wakeup_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Subscribe to the store.  Calling it again while running is a no-op."""
        if self._running:
            return
        logger.debug("Scheduler started")
        # subscribe() delivers the current table synchronously; that delivery
        # must already count as a pass.
        self._running = True
        self._unsubscribe = self._store.subscribe(self._on_snapshot)

    def stop(self) -> None:
        """Unsubscribe and drop the pending wake-up timer."""
        if not self._running:
            return
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_wakeup()
        logger.debug("Scheduler stopped")

    # -- passes -------------------------------------------------------------

    def _on_snapshot(self, snapshot: list[Task]) -> None:
        if not self._running:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Runs need a loop; the next publication inside one picks these up.
            logger.debug("Scheduler pass deferred: no running event loop")
            return

        now = self._clock.now()
        for task in eligible_tasks(snapshot, now):
            if not self._engine.has_capacity():
                break
            if self._engine.dispatch(task.id) is not None:
                logger.debug("Scheduler dispatched {} (priority {})", task.id, task.priority)

        self._arm_wakeup(snapshot, now)

    # -- start-time wake-up -------------------------------------------------

    def _arm_wakeup(self, snapshot: list[Task], now: datetime) -> None:
        upcoming = [
            t.start_at
            for t in snapshot
            if t.state == TaskState.PENDING and t.start_at is not None and t.start_at > now
        ]
        if not upcoming:
            return
        earliest = min(upcoming)
        if self._wakeup is not None and not self._wakeup.done() and self._wakeup_at is not None:
            if self._wakeup_at <= earliest:
                return
            self._wakeup.cancel()
        delay_ms = (earliest - now).total_seconds() * 1000.0
        self._wakeup_at = earliest
        self._wakeup = asyncio.get_running_loop().create_task(self._wake_after(delay_ms), name="scheduler-wakeup")

    async def _wake_after(self, delay_ms: float) -> None:
        await self._clock.sleep(delay_ms)
        self._wakeup = None
        self._wakeup_at = None
        if self._running:
            self._store.republish()

    def _cancel_wakeup(self) -> None:
        if self._wakeup is not None and not self._wakeup.done():
            self._wakeup.cancel()
        self._wakeup = None
        self._wakeup_at = None
