"""Seed-file loader.

A seed file is JSON or YAML holding either a list of task records or a
mapping with a ``tasks`` key.  Records use the wire shape of the task feed:
camelCase ``startAt`` as an ISO-8601 string and dependencies as nested,
complete task records::

    [
      {"id": "a", "title": "Fetch", "priority": 1, "duration": 800},
      {"id": "b", "title": "Build", "priority": 2, "duration": 1200,
       "startAt": "2024-01-01T09:00:00Z",
       "dependencies": [{"id": "a", "title": "Fetch", "priority": 1,
                         "duration": 800}]}
    ]

Date strings are converted recursively, including inside nested
dependencies.  Timestamps without an offset are read as UTC.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidTaskError, SeedFileError
from .task_engine.model import MAX_PRIORITY, MAX_RETRIES, MIN_PRIORITY, Task, TaskState


class TaskSeed(BaseModel):
    """One task record as it appears in a seed file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    priority: int = Field(default=3, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    duration: int = Field(default=1000, gt=0)
    start_at: Optional[datetime] = Field(default=None, alias="startAt")
    dependencies: list["TaskSeed"] = Field(default_factory=list)
    state: TaskState = TaskState.PENDING
    retries: int = Field(default=0, ge=0, le=MAX_RETRIES)

    @field_validator("start_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            title=self.title,
            priority=self.priority,
            duration=self.duration,
            start_at=self.start_at,
            dependencies=tuple(dep.to_task() for dep in self.dependencies),
            state=self.state,
            retries=self.retries,
        )


TaskSeed.model_rebuild()


def _format_loc(prefix: str, loc: tuple[Any, ...]) -> str:
    parts = [prefix]
    for item in loc:
        parts.append(f"[{item}]" if isinstance(item, int) else f".{item}")
    return "".join(parts)


def parse_seed_tasks(data: Any, known_ids: Iterable[str] = ()) -> list[Task]:
    """Validate already-decoded seed data and build :class:`Task` records.

    Raises:
        SeedFileError: listing every problem found, not just the first.
    """
    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        raise SeedFileError("Seed data must be a list of tasks or a mapping with a 'tasks' list")

    problems: list[str] = []
    tasks: list[Task] = []
    for index, raw in enumerate(data):
        prefix = f"tasks[{index}]"
        try:
            seed = TaskSeed.model_validate(raw)
        except ValidationError as exc:
            for err in exc.errors():
                problems.append(f"{_format_loc(prefix, tuple(err['loc']))}: {err['msg']}")
            continue
        try:
            tasks.append(seed.to_task())
        except InvalidTaskError as exc:
            problems.append(f"{prefix}: {exc}")

    available = set(known_ids)
    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            problems.append(f"duplicate task id {task.id!r}")
        seen.add(task.id)
    available |= seen
    for task in tasks:
        for dep_id in task.dependency_ids:
            if dep_id not in available:
                problems.append(f"task {task.id!r} depends on unknown task {dep_id!r}")

    if problems:
        raise SeedFileError("Invalid seed tasks", problems)
    return tasks


def load_seed_tasks(path: Path, known_ids: Iterable[str] = ()) -> list[Task]:
    """Read *path* (``.json``, ``.yaml`` or ``.yml``) and return its tasks in file order."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise SeedFileError(f"Cannot read seed file {path}: {exc}") from exc

    try:
        if Path(path).suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise SeedFileError(f"Cannot parse seed file {path}: {exc}") from exc

    try:
        tasks = parse_seed_tasks(data, known_ids)
    except SeedFileError as exc:
        raise SeedFileError(f"Invalid seed file {path}", exc.problems or [str(exc)]) from exc
    logger.debug("Loaded {} seed tasks from {}", len(tasks), path)
    return tasks
