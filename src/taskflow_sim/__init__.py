"""Provide the public `taskflow_sim` package exports."""

from __future__ import annotations

from .alerts import AlertBus, AlertEvent, AlertSeverity
from .config import OrchestratorConfig, load_orchestrator_config
from .container import TaskOrchestrator
from .loader import load_seed_tasks
from .task_engine.model import Task, TaskState

__all__ = [
    "AlertBus",
    "AlertEvent",
    "AlertSeverity",
    "OrchestratorConfig",
    "Task",
    "TaskOrchestrator",
    "TaskState",
    "load_orchestrator_config",
    "load_seed_tasks",
]
