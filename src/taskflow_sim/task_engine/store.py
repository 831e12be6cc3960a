"""In-memory task store with snapshot publishing.

The store is the single authoritative mapping of task id -> :class:`Task`.
Every mutation goes through it and, once applied, the *full* table (never a
delta) is published to every subscriber.  After each publication the store
re-derives two system-level conditions and raises at most one alert per
condition per cooldown window.

Serialization: a re-entrant lock guards the table, and deliveries are queued
and drained by the outermost publisher.  A subscriber that mutates the store
while handling a snapshot (the scheduler dispatching a task) therefore never
re-enters another subscriber mid-delivery; its snapshot is delivered next.
"""

from __future__ import annotations

import dataclasses
import threading
from collections import deque
from typing import Callable, Optional

from loguru import logger

from ..alerts import AlertBus, AlertSeverity
from ..clock import Clock, SystemClock, now_ms
from ..config import DEFAULT_HIGH_PRIORITY_THRESHOLD, DEFAULT_SYSTEM_ALERT_COOLDOWN_MS
from ..errors import DuplicateTaskError
from .model import Task, TaskState, index_by_id, is_eligible

SnapshotListener = Callable[[list[Task]], None]

HIGH_PRIORITY = 1

_BACKLOG_CONDITION = "high_priority_backlog"
_IDLE_CONDITION = "system_idle"


class TaskStore:
    """Thread-safe, in-memory store for :class:`Task` records.

    Parameters
    ----------
    alerts:
        Bus that receives the system-level alerts.
    clock:
        Time source for start-time eligibility and alert cooldowns.
    """

    def __init__(
        self,
        alerts: AlertBus,
        clock: Optional[Clock] = None,
        *,
        high_priority_threshold: int = DEFAULT_HIGH_PRIORITY_THRESHOLD,
        system_alert_cooldown_ms: float = DEFAULT_SYSTEM_ALERT_COOLDOWN_MS,
    ) -> None:
        self._alerts = alerts
        self._clock = clock or SystemClock()
        self._high_priority_threshold = high_priority_threshold
        self._cooldown_ms = system_alert_cooldown_ms
        # dicts keep insertion order; replacing a value keeps its position.
        self._tasks: dict[str, Task] = {}
        self._listeners: list[SnapshotListener] = []
        self._lock = threading.RLock()
        self._pending: deque[tuple[list[Task], Optional[SnapshotListener]]] = deque()
        self._publishing = False
        self._last_system_alert: dict[str, float] = {}

    # -- lookups ------------------------------------------------------------

    def snapshot(self) -> list[Task]:
        with self._lock:
            return list(self._tasks.values())

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register *listener*; it immediately receives the current table.

        Returns a callable that unsubscribes the listener.
        """
        with self._lock:
            self._listeners.append(listener)
            current = list(self._tasks.values())
        self._deliver(current, only=listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    # -- mutations ----------------------------------------------------------

    def add(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise DuplicateTaskError(task.id)
            self._tasks[task.id] = task
        logger.debug("Added task {} ({})", task.id, task.title)
        self._publish()
        return task

    def replace(self, task: Task) -> bool:
        """Swap in *task* by id; silently ignored if the id is unknown."""
        with self._lock:
            if task.id not in self._tasks:
                return False
            self._tasks[task.id] = task
        self._publish()
        return True

    def replace_dependency_snapshot(self, parent_id: str, dep_id: str, snapshot: Task) -> bool:
        """Refresh the cached copy of *dep_id* inside *parent_id*'s dependencies.

        Display convenience only: completion checks always use the live table.
        """
        with self._lock:
            parent = self._tasks.get(parent_id)
            if parent is None or dep_id not in parent.dependency_ids:
                return False
            deps = tuple(snapshot if d.id == dep_id else d for d in parent.dependencies)
            self._tasks[parent_id] = dataclasses.replace(parent, dependencies=deps)
        self._publish()
        return True

    def delete(self, task_id: str) -> bool:
        """Remove *task_id* and strip it from every dependency list."""
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            for other_id, other in list(self._tasks.items()):
                self._tasks[other_id] = other.without_dependency(task_id)
        logger.debug("Deleted task {}", task_id)
        self._publish()
        return True

    def republish(self) -> None:
        """Re-emit the current table even though nothing changed."""
        self._publish()

    # -- publishing ---------------------------------------------------------

    def _publish(self) -> None:
        self._deliver(self.snapshot(), only=None)

    def _deliver(self, snapshot: list[Task], only: Optional[SnapshotListener]) -> None:
        with self._lock:
            self._pending.append((snapshot, only))
            if self._publishing:
                return
            self._publishing = True
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._publishing = False
                        return
                    current, target = self._pending.popleft()
                    listeners = [target] if target is not None else list(self._listeners)
                if target is None:
                    self._evaluate_system_alerts(current)
                for listener in listeners:
                    self._safe_invoke(listener, current)
        except BaseException:
            with self._lock:
                self._publishing = False
            raise

    @staticmethod
    def _safe_invoke(listener: SnapshotListener, snapshot: list[Task]) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("Task snapshot listener {} failed", listener)

    # -- system alerts ------------------------------------------------------

    def _evaluate_system_alerts(self, snapshot: list[Task]) -> None:
        high_priority_pending = sum(
            1 for t in snapshot if t.state == TaskState.PENDING and t.priority == HIGH_PRIORITY
        )
        if high_priority_pending >= self._high_priority_threshold:
            self._emit_system_alert(
                _BACKLOG_CONDITION,
                AlertSeverity.WARN,
                "Too many high-priority tasks pending",
                f"{high_priority_pending} tasks pending",
            )

        now = self._clock.now()
        by_id = index_by_id(snapshot)
        running = any(t.state == TaskState.IN_PROGRESS for t in snapshot)
        if not running and not any(is_eligible(t, by_id, now) for t in snapshot):
            self._emit_system_alert(_IDLE_CONDITION, AlertSeverity.INFO, "System idle")

    def _emit_system_alert(
        self,
        condition: str,
        severity: AlertSeverity,
        summary: str,
        detail: Optional[str] = None,
    ) -> None:
        ts = now_ms(self._clock)
        last = self._last_system_alert.get(condition)
        if last is not None and ts - last < self._cooldown_ms:
            return
        self._last_system_alert[condition] = ts
        self._alerts.emit(severity, summary, detail)
