"""Exceptions raised for contract violations.

Ordinary business conditions (unknown ids, wrong source state, exhausted
retries) never raise; they are modelled as no-ops or state transitions plus
an alert.  The classes below are reserved for programming errors and for
invalid input handed to the surrounding layers.
"""

from __future__ import annotations


class TaskflowError(Exception):
    """Base class for every error raised by ``taskflow_sim``."""


class DuplicateTaskError(TaskflowError, ValueError):
    """A task with the same id is already present in the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} already exists")
        self.task_id = task_id


class InvalidTaskError(TaskflowError, ValueError):
    """A task record is structurally invalid (missing or out-of-range fields)."""


class SeedFileError(TaskflowError, ValueError):
    """A seed file could not be read or failed validation."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = message + ":\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


class ConfigError(TaskflowError, ValueError):
    """Configuration values are out of range."""


class SimulatedTaskFailure(TaskflowError):
    """Injected execution failure; always handled inside the engine."""
