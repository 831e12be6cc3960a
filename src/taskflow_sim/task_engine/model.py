"""Task model for the execution simulator.

Tasks are immutable value records: every update builds a new record with
:func:`dataclasses.replace` and the store swaps it in whole, so readers never
observe a half-applied change.  Dependencies are *snapshots* of other tasks
captured at creation time; completion checks always resolve them by id
against the live table (see :func:`dependencies_met`).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from ..errors import InvalidTaskError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskState(str, Enum):
    """Lifecycle state of a simulated task."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


# FAILED can still be retried explicitly, it is terminal only for the
# scheduler.
TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})
CANCELLABLE_STATES = frozenset({TaskState.PENDING, TaskState.IN_PROGRESS})

MIN_PRIORITY = 1
MAX_PRIORITY = 5
# Retry ceiling: a task gets at most MAX_RETRIES + 1 runs.
MAX_RETRIES = 2


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------

def _generate_id() -> str:
    """Short human-friendly task ID: ``task-<8hex>``."""
    return f"task-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Task:
    """One unit of simulated work."""

    id: str = field(default_factory=_generate_id)
    title: str = ""
    priority: int = 3  # 1 = highest
    duration: int = 1000  # ms
    start_at: Optional[datetime] = None
    dependencies: tuple["Task", ...] = ()
    state: TaskState = TaskState.PENDING
    retries: int = 0
    completed: bool = False

    def __post_init__(self) -> None:
        # Accept any iterable from callers; always store a tuple.
        if not isinstance(self.dependencies, tuple):
            object.__setattr__(self, "dependencies", tuple(self.dependencies))
        if not isinstance(self.state, TaskState):
            try:
                object.__setattr__(self, "state", TaskState(str(self.state)))
            except ValueError as exc:
                raise InvalidTaskError(f"Task {self.id}: unknown state {self.state!r}") from exc
        # completed mirrors the state, whatever the caller passed.
        object.__setattr__(self, "completed", self.state == TaskState.COMPLETED)
        errors = self.validate()
        if errors:
            raise InvalidTaskError(f"Task {self.id or '<no id>'}: " + "; ".join(errors))

    def validate(self) -> list[str]:
        """Return structural problems with this record (empty = valid)."""
        errors: list[str] = []
        if not isinstance(self.id, str) or not self.id.strip():
            errors.append("'id' is required and must be a non-empty string")
        if not isinstance(self.title, str) or not self.title.strip():
            errors.append("'title' is required and must be non-empty")
        if isinstance(self.priority, bool) or not isinstance(self.priority, int) or not (
            MIN_PRIORITY <= self.priority <= MAX_PRIORITY
        ):
            errors.append(f"'priority' must be an integer {MIN_PRIORITY}..{MAX_PRIORITY}, got {self.priority!r}")
        if isinstance(self.duration, bool) or not isinstance(self.duration, int) or self.duration <= 0:
            errors.append(f"'duration' must be a positive integer (ms), got {self.duration!r}")
        if self.start_at is not None:
            if not isinstance(self.start_at, datetime):
                errors.append("'start_at' must be a datetime")
            elif self.start_at.tzinfo is None:
                errors.append("'start_at' must be timezone-aware")
        if isinstance(self.retries, bool) or not isinstance(self.retries, int) or not 0 <= self.retries <= MAX_RETRIES:
            errors.append(f"'retries' must be an integer 0..{MAX_RETRIES}, got {self.retries!r}")
        for dep in self.dependencies:
            if not isinstance(dep, Task):
                errors.append("'dependencies' must contain Task snapshots")
                break
            if dep.id == self.id:
                errors.append("a task cannot depend on itself")
        return errors

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict (ISO dates, nested dependency dicts)."""
        return {
            "id": self.id,
            "title": self.title,
            "priority": self.priority,
            "duration": self.duration,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "state": self.state.value,
            "retries": self.retries,
            "completed": self.completed,
        }

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    @property
    def dependency_ids(self) -> list[str]:
        return [d.id for d in self.dependencies]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def with_state(self, state: TaskState, **changes: Any) -> "Task":
        """Return a copy in *state*, keeping ``completed`` consistent."""
        return replace(self, state=state, completed=state == TaskState.COMPLETED, **changes)

    def without_dependency(self, dep_id: str) -> "Task":
        if dep_id not in self.dependency_ids:
            return self
        return replace(self, dependencies=tuple(d for d in self.dependencies if d.id != dep_id))


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

def index_by_id(tasks: Iterable[Task]) -> dict[str, Task]:
    return {t.id: t for t in tasks}


def dependencies_met(task: Task, by_id: Mapping[str, Task]) -> bool:
    """True if every dependency still in the table is COMPLETED.

    A dependency id that is no longer present counts as satisfied.
    """
    for dep in task.dependencies:
        live = by_id.get(dep.id)
        if live is not None and live.state != TaskState.COMPLETED:
            return False
    return True


def is_eligible(task: Task, by_id: Mapping[str, Task], now: datetime) -> bool:
    """PENDING, dependencies satisfied, and start time reached.

    Shared by the scheduler (dispatch) and the store (idle detection) so both
    agree on exactly the same predicate.
    """
    if task.state != TaskState.PENDING:
        return False
    if not dependencies_met(task, by_id):
        return False
    return task.start_at is None or task.start_at <= now


def eligible_tasks(tasks: list[Task], now: datetime) -> list[Task]:
    """Eligible tasks of a snapshot, stable-sorted by ascending priority."""
    by_id = index_by_id(tasks)
    eligible = [t for t in tasks if is_eligible(t, by_id, now)]
    # sorted() is stable: equal priorities keep snapshot order.
    return sorted(eligible, key=lambda t: t.priority)
