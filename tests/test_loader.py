from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from taskflow_sim.errors import SeedFileError
from taskflow_sim.loader import TaskSeed, load_seed_tasks, parse_seed_tasks
from taskflow_sim.task_engine.model import TaskState

FETCH = {"id": "a", "title": "Fetch", "priority": 1, "duration": 800, "startAt": "2024-01-01T09:00:00Z"}


def _write_json(tmp_path: Path, data: object) -> Path:
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_json_with_nested_dependencies(tmp_path: Path) -> None:
    path = _write_json(
        tmp_path,
        [
            FETCH,
            {"id": "b", "title": "Build", "priority": 2, "duration": 1200, "dependencies": [FETCH]},
        ],
    )

    tasks = load_seed_tasks(path)

    assert [t.id for t in tasks] == ["a", "b"]
    expected = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert tasks[0].start_at == expected
    assert tasks[1].start_at is None
    dep = tasks[1].dependencies[0]
    assert dep.id == "a"
    assert dep.start_at == expected
    assert all(t.state == TaskState.PENDING for t in tasks)


def test_load_yaml_mapping(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        "tasks:\n"
        "  - id: a\n"
        "    title: Fetch\n"
        "    duration: 500\n"
        "  - id: b\n"
        "    title: Build\n"
        "    startAt: '2024-03-01T10:30:00'\n"
        "    dependencies:\n"
        "      - {id: a, title: Fetch}\n",
        encoding="utf-8",
    )

    tasks = load_seed_tasks(path)

    assert [t.id for t in tasks] == ["a", "b"]
    assert tasks[0].priority == 3
    # naive timestamps are read as UTC
    assert tasks[1].start_at == datetime(2024, 3, 1, 10, 30, tzinfo=timezone.utc)
    assert tasks[1].dependency_ids == ["a"]


def test_wire_state_values_are_accepted() -> None:
    tasks = parse_seed_tasks([{"id": "a", "title": "A", "state": "in-progress", "retries": 1}])
    assert tasks[0].state == TaskState.IN_PROGRESS
    assert tasks[0].retries == 1


def test_completed_flag_follows_state() -> None:
    tasks = parse_seed_tasks(
        [
            {"id": "a", "title": "A", "state": "pending", "completed": True},
            {"id": "b", "title": "B", "state": "completed", "completed": False},
        ]
    )
    assert [t.completed for t in tasks] == [False, True]


def test_retries_above_ceiling_rejected() -> None:
    with pytest.raises(SeedFileError) as excinfo:
        parse_seed_tasks([{"id": "a", "title": "A", "retries": 9}])
    assert any(problem.startswith("tasks[0].retries") for problem in excinfo.value.problems)


def test_snake_case_field_name_is_accepted() -> None:
    seed = TaskSeed.model_validate({"id": "a", "title": "A", "start_at": "2024-01-01T00:00:00+00:00"})
    assert seed.start_at is not None


def test_every_problem_is_reported() -> None:
    data = [
        {"id": "a", "title": "A", "priority": 9},
        {"id": "b", "title": "B", "dependencies": [{"id": "zzz", "title": "Ghost"}]},
        {"id": "b", "title": "B again"},
        {"id": "c"},
    ]
    with pytest.raises(SeedFileError) as excinfo:
        parse_seed_tasks(data)

    problems = excinfo.value.problems
    assert any(p.startswith("tasks[0].priority") for p in problems)
    assert any("unknown task 'zzz'" in p for p in problems)
    assert any("duplicate task id 'b'" in p for p in problems)
    assert any(p.startswith("tasks[3].title") for p in problems)


def test_known_ids_satisfy_external_dependencies() -> None:
    data = [{"id": "b", "title": "B", "dependencies": [{"id": "outside", "title": "Outside"}]}]
    with pytest.raises(SeedFileError):
        parse_seed_tasks(data)
    assert parse_seed_tasks(data, known_ids=["outside"])[0].dependency_ids == ["outside"]


def test_self_dependency_is_reported() -> None:
    with pytest.raises(SeedFileError, match="depend on itself"):
        parse_seed_tasks([{"id": "a", "title": "A", "dependencies": [{"id": "a", "title": "A"}]}])


def test_top_level_must_be_a_list() -> None:
    with pytest.raises(SeedFileError, match="list of tasks"):
        parse_seed_tasks({"items": []})


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(SeedFileError, match="Cannot read seed file"):
        load_seed_tasks(tmp_path / "missing.json")


def test_malformed_json(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("[{", encoding="utf-8")
    with pytest.raises(SeedFileError, match="Cannot parse seed file"):
        load_seed_tasks(path)


def test_file_errors_name_the_path(tmp_path: Path) -> None:
    path = _write_json(tmp_path, [{"id": "a", "title": ""}])
    with pytest.raises(SeedFileError) as excinfo:
        load_seed_tasks(path)
    assert str(path) in str(excinfo.value)
    assert excinfo.value.problems
