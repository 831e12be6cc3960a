"""Tests for the task model and the shared eligibility predicate."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taskflow_sim.errors import InvalidTaskError
from taskflow_sim.task_engine.model import (
    Task,
    TaskState,
    dependencies_met,
    eligible_tasks,
    index_by_id,
    is_eligible,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestTask:
    def test_defaults(self) -> None:
        task = Task(title="Hello")
        assert task.id.startswith("task-")
        assert len(task.id) == len("task-") + 8
        assert task.state == TaskState.PENDING
        assert task.priority == 3
        assert task.retries == 0
        assert task.completed is False
        assert task.dependencies == ()

    def test_dependencies_are_stored_as_tuple(self) -> None:
        dep = Task(id="a", title="A")
        task = Task(id="b", title="B", dependencies=[dep])
        assert task.dependencies == (dep,)
        assert task.dependency_ids == ["a"]

    def test_state_string_is_coerced(self) -> None:
        assert Task(id="a", title="A", state="in-progress").state == TaskState.IN_PROGRESS

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"title": ""},
            {"priority": 0},
            {"priority": 6},
            {"duration": 0},
            {"retries": -1},
            {"retries": 3},
            {"retries": True},
            {"start_at": datetime(2024, 1, 1)},
            {"state": "sleeping"},
        ],
    )
    def test_invalid_fields_raise(self, kwargs) -> None:
        fields = {"id": "a", "title": "A"}
        fields.update(kwargs)
        with pytest.raises(InvalidTaskError):
            Task(**fields)

    def test_invalid_task_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            Task(id="a", title="A", priority=9)

    def test_self_dependency_rejected(self) -> None:
        with pytest.raises(InvalidTaskError, match="depend on itself"):
            Task(id="a", title="A", dependencies=[Task(id="a", title="A")])

    def test_with_state_keeps_completed_consistent(self) -> None:
        task = Task(id="a", title="A")
        done = task.with_state(TaskState.COMPLETED)
        assert done.completed is True
        assert done.with_state(TaskState.PENDING, retries=1).completed is False
        assert task.state == TaskState.PENDING  # source record untouched

    def test_is_terminal(self) -> None:
        assert Task(id="a", title="A", state=TaskState.FAILED).is_terminal
        assert not Task(id="a", title="A", state=TaskState.BLOCKED).is_terminal

    def test_without_dependency(self) -> None:
        a, b = Task(id="a", title="A"), Task(id="b", title="B")
        task = Task(id="c", title="C", dependencies=(a, b))
        assert task.without_dependency("a").dependency_ids == ["b"]
        assert task.without_dependency("zzz") is task

    def test_completed_is_derived_from_state(self) -> None:
        assert Task(id="a", title="A", state=TaskState.PENDING, completed=True).completed is False
        assert Task(id="a", title="A", state=TaskState.COMPLETED, completed=False).completed is True

    def test_retry_ceiling_is_accepted(self) -> None:
        assert Task(id="a", title="A", retries=2).retries == 2

    def test_to_dict(self) -> None:
        dep = Task(id="a", title="A", state=TaskState.COMPLETED)
        task = Task(id="b", title="B", priority=1, duration=250, start_at=NOW, dependencies=(dep,), retries=2)
        data = task.to_dict()
        assert data["start_at"] == NOW.isoformat()
        assert data["dependencies"][0]["state"] == "completed"
        assert data["dependencies"][0]["completed"] is True
        assert data["retries"] == 2
        assert data["completed"] is False


class TestEligibility:
    def test_missing_dependency_counts_as_satisfied(self) -> None:
        task = Task(id="b", title="B", dependencies=(Task(id="gone", title="Gone"),))
        assert dependencies_met(task, index_by_id([task]))

    def test_live_state_wins_over_cached_snapshot(self) -> None:
        cached = Task(id="a", title="A", state=TaskState.COMPLETED)
        live = Task(id="a", title="A", state=TaskState.PENDING)
        task = Task(id="b", title="B", dependencies=(cached,))
        assert not dependencies_met(task, index_by_id([live, task]))

    def test_future_start_is_not_eligible(self) -> None:
        task = Task(id="a", title="A", start_at=NOW + timedelta(seconds=1))
        assert not is_eligible(task, {}, NOW)
        assert is_eligible(task, {}, NOW + timedelta(seconds=1))

    def test_only_pending_is_eligible(self) -> None:
        for state in TaskState:
            task = Task(id="a", title="A", state=state)
            assert is_eligible(task, {}, NOW) is (state == TaskState.PENDING)

    def test_sorted_by_priority(self) -> None:
        tasks = [
            Task(id="p5", title="P5", priority=5),
            Task(id="p1", title="P1", priority=1),
            Task(id="p3", title="P3", priority=3),
        ]
        assert [t.priority for t in eligible_tasks(tasks, NOW)] == [1, 3, 5]

    def test_ties_keep_snapshot_order(self) -> None:
        tasks = [Task(id=f"t{i}", title=f"T{i}", priority=2) for i in range(4)]
        assert [t.id for t in eligible_tasks(tasks, NOW)] == ["t0", "t1", "t2", "t3"]

    def test_blocked_dependency_gates(self) -> None:
        a = Task(id="a", title="A", state=TaskState.BLOCKED)
        b = Task(id="b", title="B", dependencies=(a,))
        assert [t.id for t in eligible_tasks([a, b], NOW)] == []
