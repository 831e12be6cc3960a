from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

from loguru import logger

from .alerts import AlertBus
from .clock import Clock, RandomSource, SystemClock, seeded_random
from .config import OrchestratorConfig
from .scheduler import Scheduler
from .task_engine.engine import ExecutionEngine
from .task_engine.model import Task, TaskState, index_by_id, is_eligible
from .task_engine.store import SnapshotListener, TaskStore

DEFAULT_SETTLE_STEP_MS = 50.0


class TaskOrchestrator:
    """Wires the alert bus, store, engine and scheduler around one clock."""

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[RandomSource] = None,
    ) -> None:
        self.config = (config or OrchestratorConfig()).validate()
        self.clock: Clock = clock or SystemClock()
        self.rng: RandomSource = rng or seeded_random()

        self.alerts = AlertBus(self.clock, dedup_window_ms=self.config.dedup_window_ms)
        self.store = TaskStore(
            self.alerts,
            self.clock,
            high_priority_threshold=self.config.high_priority_threshold,
            system_alert_cooldown_ms=self.config.system_alert_cooldown_ms,
        )
        self.engine = ExecutionEngine.from_config(self.store, self.alerts, self.config, clock=self.clock, rng=self.rng)
        self.scheduler = Scheduler(self.store, self.engine, self.clock)

    # -- task operations ----------------------------------------------------

    def add_task(self, task: Task) -> Task:
        return self.store.add(task)

    def add_tasks(self, tasks: Iterable[Task]) -> list[Task]:
        return [self.store.add(task) for task in tasks]

    def cancel_task(self, task_id: str) -> bool:
        return self.engine.cancel(task_id)

    def retry_task(self, task_id: str) -> bool:
        return self.engine.retry(task_id)

    def delete_task(self, task_id: str) -> bool:
        return self.engine.delete(task_id)

    def update_start_time(self, task: Task) -> bool:
        """Apply ``task.start_at`` to the stored record with the same id."""
        return self.engine.reschedule(task.id, task.start_at)

    def subscribe_tasks(self, listener: SnapshotListener) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def tasks(self) -> list[Task]:
        return self.store.snapshot()

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.store.get(task_id)

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def is_settled(self) -> bool:
        """No run in flight and nothing PENDING that could still be dispatched."""
        if self.engine.active_count:
            return False
        snapshot = self.store.snapshot()
        now = self.clock.now()
        by_id = index_by_id(snapshot)
        for task in snapshot:
            if task.state != TaskState.PENDING:
                continue
            if is_eligible(task, by_id, now):
                return False
            if task.start_at is not None and task.start_at > now:
                return False
        return True

    async def run_until_settled(
        self,
        timeout_ms: Optional[float] = None,
        step_ms: float = DEFAULT_SETTLE_STEP_MS,
    ) -> bool:
        """Let clock time pass until :meth:`is_settled`; ``False`` on timeout.

        Starts the scheduler if needed.  With a :class:`ManualClock` this
        fast-forwards virtual time; with the system clock it really waits.
        """
        if self.scheduler.running:
            # Picks up tasks added before the event loop was running.
            self.store.republish()
        else:
            self.start()

        elapsed = 0.0
        while not self.is_settled():
            if timeout_ms is not None and elapsed >= timeout_ms:
                logger.warning("Simulation did not settle within {:g}ms", timeout_ms)
                return False
            await self.clock.advance(step_ms)
            elapsed += step_ms
        logger.info("Simulation settled after {:g}ms", elapsed)
        return True

    def status(self) -> dict[str, Any]:
        counts = {state.value: 0 for state in TaskState}
        for task in self.store.snapshot():
            counts[task.state.value] += 1
        return {
            "tasks": counts,
            "total": sum(counts.values()),
            "active_slots": self.engine.active_count,
            "max_concurrency": self.engine.max_concurrency,
            "scheduler_running": self.scheduler.running,
            "alerts": len(self.alerts.history()),
        }

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.engine.shutdown()
