"""End-to-end tests through the TaskOrchestrator facade."""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import timedelta

import pytest

from taskflow_sim.clock import FixedRandom, ManualClock
from taskflow_sim.config import OrchestratorConfig
from taskflow_sim.container import TaskOrchestrator
from taskflow_sim.errors import ConfigError
from taskflow_sim.task_engine.model import Task, TaskState


def _orchestrator(draws=0.0, **config) -> TaskOrchestrator:
    return TaskOrchestrator(OrchestratorConfig(**config), clock=ManualClock(), rng=FixedRandom(draws))


def test_all_tasks_complete() -> None:
    orch = _orchestrator()
    a = orch.add_task(Task(id="a", title="Fetch", priority=2, duration=300))
    b = orch.add_task(Task(id="b", title="Build", priority=1, duration=200, dependencies=(a,)))
    orch.add_task(Task(id="c", title="Ship", priority=3, duration=100, dependencies=(a, b)))

    async def _run() -> bool:
        settled = await orch.run_until_settled(timeout_ms=10_000)
        await orch.shutdown()
        return settled

    assert asyncio.run(_run()) is True
    assert all(t.state == TaskState.COMPLETED for t in orch.tasks())
    completed = [e.summary for e in orch.alerts.history() if e.summary.startswith("Completed")]
    assert completed == ["Completed Fetch", "Completed Build", "Completed Ship"]
    assert "System idle" in [e.summary for e in orch.alerts.history()]


def test_cold_start_settles_without_explicit_start() -> None:
    orch = _orchestrator()
    orch.add_task(Task(id="a", title="A", duration=20))

    async def _run() -> bool:
        return await orch.run_until_settled(timeout_ms=5_000)

    assert asyncio.run(_run()) is True
    assert orch.get_task("a").state == TaskState.COMPLETED
    assert orch.status()["scheduler_running"] is True


def test_always_failing_task_exhausts_retries() -> None:
    orch = _orchestrator(0.99)
    orch.add_task(Task(id="t", title="Flaky", duration=100))

    async def _run() -> bool:
        return await orch.run_until_settled(timeout_ms=10_000)

    assert asyncio.run(_run()) is True
    task = orch.get_task("t")
    assert task.state == TaskState.FAILED
    assert task.retries == 2
    assert [(e.summary, e.detail) for e in orch.alerts.history() if e.task_id == "t"] == [
        ("Retrying Flaky", "Attempt 1/3"),
        ("Retrying Flaky", "Attempt 2/3"),
        ("Failed Flaky", "No more retries"),
    ]


def test_timeout_with_far_future_start() -> None:
    orch = _orchestrator()
    orch.add_task(Task(id="later", title="Later", start_at=orch.clock.now() + timedelta(hours=1)))

    async def _run() -> bool:
        settled = await orch.run_until_settled(timeout_ms=1_000)
        await orch.shutdown()
        return settled

    assert asyncio.run(_run()) is False
    assert orch.get_task("later").state == TaskState.PENDING


def test_update_start_time_brings_task_forward() -> None:
    orch = _orchestrator()
    task = orch.add_task(Task(id="a", title="A", duration=50, start_at=orch.clock.now() + timedelta(hours=1)))

    async def _run() -> bool:
        orch.start()
        orch.update_start_time(dataclasses.replace(task, start_at=orch.clock.now()))
        return await orch.run_until_settled(timeout_ms=1_000)

    assert asyncio.run(_run()) is True
    assert orch.get_task("a").state == TaskState.COMPLETED


def test_controls_through_facade() -> None:
    orch = _orchestrator(0.99, max_retries=0)
    orch.add_tasks([Task(id="a", title="A", duration=50), Task(id="b", title="B", duration=50)])

    async def _run() -> None:
        orch.start()
        assert orch.cancel_task("b") is True
        await orch.run_until_settled(timeout_ms=1_000)
        assert orch.get_task("a").state == TaskState.FAILED

        assert orch.retry_task("a") is True
        assert orch.delete_task("b") is True
        await orch.run_until_settled(timeout_ms=1_000)

    asyncio.run(_run())
    assert [t.id for t in orch.tasks()] == ["a"]
    assert orch.get_task("a").state == TaskState.FAILED
    assert orch.get_task("a").retries == 1


def test_subscribe_tasks_streams_snapshots() -> None:
    orch = _orchestrator()
    seen: list[list[str]] = []
    unsubscribe = orch.subscribe_tasks(lambda snap: seen.append([t.id for t in snap]))
    orch.add_task(Task(id="a", title="A"))
    unsubscribe()
    orch.add_task(Task(id="b", title="B"))
    assert seen == [[], ["a"]]


def test_status_counts() -> None:
    orch = _orchestrator()
    orch.add_tasks(
        [
            Task(id="a", title="A"),
            Task(id="b", title="B", state=TaskState.FAILED),
            Task(id="c", title="C", state=TaskState.FAILED),
        ]
    )
    status = orch.status()
    assert status["tasks"]["pending"] == 1
    assert status["tasks"]["failed"] == 2
    assert status["total"] == 3
    assert status["active_slots"] == 0
    assert status["max_concurrency"] == 3
    assert status["scheduler_running"] is False


def test_invalid_config_rejected() -> None:
    with pytest.raises(ConfigError):
        TaskOrchestrator(OrchestratorConfig(max_concurrency=0))


def test_started_outside_loop_runs_once_loop_is_up() -> None:
    orch = _orchestrator()
    orch.add_task(Task(id="a", title="A", duration=10))
    orch.start()
    assert orch.get_task("a").state == TaskState.PENDING

    async def _run() -> bool:
        return await orch.run_until_settled(timeout_ms=1_000)

    assert asyncio.run(_run()) is True
    assert orch.get_task("a").state == TaskState.COMPLETED
