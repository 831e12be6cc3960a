from __future__ import annotations

import sys
from pathlib import Path

import pytest
from loguru import logger

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from taskflow_sim.alerts import AlertBus  # noqa: E402
from taskflow_sim.clock import ManualClock  # noqa: E402
from taskflow_sim.task_engine.store import TaskStore  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_loguru():
    yield
    # The CLI swaps in a sink bound to the captured stderr of one test.
    logger.remove()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def alerts(clock: ManualClock) -> AlertBus:
    return AlertBus(clock)


@pytest.fixture
def store(alerts: AlertBus, clock: ManualClock) -> TaskStore:
    return TaskStore(alerts, clock)

