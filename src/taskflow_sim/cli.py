from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .alerts import AlertEvent, AlertSeverity
from .clock import Clock, ManualClock, SystemClock, seeded_random
from .config import OrchestratorConfig, load_orchestrator_config
from .container import TaskOrchestrator
from .errors import SeedFileError
from .loader import load_seed_tasks
from .task_engine.model import Task, TaskState

EXIT_SETTLED = 0
EXIT_LOAD_ERROR = 1
EXIT_TIMEOUT = 2

DEFAULT_TIMEOUT_MS = 120_000

_SEVERITY_STYLES = {
    AlertSeverity.SUCCESS: "green",
    AlertSeverity.INFO: "cyan",
    AlertSeverity.WARN: "yellow",
    AlertSeverity.ERROR: "bold red",
}

_STATE_STYLES = {
    TaskState.PENDING: "white",
    TaskState.IN_PROGRESS: "cyan",
    TaskState.COMPLETED: "green",
    TaskState.FAILED: "red",
    TaskState.CANCELLED: "magenta",
    TaskState.BLOCKED: "yellow",
}


def _configure_logging(level: str = "WARNING") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _print_alert(console: Console, event: AlertEvent) -> None:
    style = _SEVERITY_STYLES[event.severity]
    line = f"[{style}]{event.severity.value.upper():<7}[/{style}] {escape(event.summary)}"
    if event.detail:
        line += f" [dim]({escape(event.detail)})[/dim]"
    console.print(line, highlight=False)


def _task_table(tasks: list[Task]) -> Table:
    table = Table(title="Tasks")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Priority", justify="right")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Depends on")
    table.add_column("State")
    table.add_column("Retries", justify="right")
    for task in tasks:
        style = _STATE_STYLES[task.state]
        table.add_row(
            task.id,
            escape(task.title),
            str(task.priority),
            str(task.duration),
            ", ".join(task.dependency_ids) or "-",
            f"[{style}]{task.state.value}[/{style}]",
            str(task.retries),
        )
    return table


async def _simulate(
    config: OrchestratorConfig,
    tasks: list[Task],
    clock: Clock,
    seed: Optional[int],
    timeout_ms: Optional[float],
    console: Console,
) -> bool:
    orchestrator = TaskOrchestrator(config, clock=clock, rng=seeded_random(seed))
    orchestrator.alerts.subscribe(lambda event: _print_alert(console, event))
    orchestrator.add_tasks(tasks)
    try:
        settled = await orchestrator.run_until_settled(timeout_ms=timeout_ms)
    finally:
        await orchestrator.shutdown()
    console.print(_task_table(orchestrator.tasks()))
    status = orchestrator.status()
    summary = ", ".join(f"{state}={count}" for state, count in status["tasks"].items() if count)
    console.print(f"[bold]{status['total']} tasks[/bold]: {summary or 'none'}")
    return settled


def _run(args: argparse.Namespace) -> int:
    _configure_logging(args.log_level)
    config, error = load_orchestrator_config(Path(args.config) if args.config else None)
    if error:
        sys.stderr.write(error + "\n")
        return EXIT_LOAD_ERROR
    try:
        tasks = load_seed_tasks(Path(args.seed_file))
    except SeedFileError as exc:
        sys.stderr.write(f"{exc}\n")
        return EXIT_LOAD_ERROR

    clock: Clock = ManualClock(datetime.now(timezone.utc)) if args.virtual_time else SystemClock()
    console = Console()
    settled = asyncio.run(_simulate(config, tasks, clock, args.seed, args.timeout_ms, console))
    if not settled:
        sys.stderr.write(f"Simulation did not settle within {args.timeout_ms}ms\n")
        return EXIT_TIMEOUT
    return EXIT_SETTLED


def _validate(args: argparse.Namespace) -> int:
    _configure_logging(args.log_level)
    try:
        tasks = load_seed_tasks(Path(args.seed_file))
    except SeedFileError as exc:
        payload = {"valid": False, "error": str(exc).splitlines()[0], "problems": exc.problems}
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        return EXIT_LOAD_ERROR
    payload = {
        "valid": True,
        "count": len(tasks),
        "tasks": [t.to_dict() for t in tasks],
    }
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return EXIT_SETTLED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskflow-sim", description="Simulated task execution with priorities, dependencies and retries")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a seed file until every task settles")
    run.add_argument("seed_file", help="JSON or YAML file with the tasks to load")
    run.add_argument("--config", default=None, help="Optional YAML/JSON config with engine/alerts sections")
    run.add_argument("--seed", default=None, type=int, help="Seed for the outcome draws")
    run.add_argument("--virtual-time", action="store_true", help="Fast-forward on a virtual clock instead of waiting")
    run.add_argument("--timeout-ms", default=DEFAULT_TIMEOUT_MS, type=float, help=f"Give up after this much clock time (default: {DEFAULT_TIMEOUT_MS})")
    run.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    run.set_defaults(func=_run)

    validate = subparsers.add_parser("validate", help="Validate a seed file and print a JSON summary")
    validate.add_argument("seed_file")
    validate.add_argument("--log-level", default="WARNING")
    validate.set_defaults(func=_validate)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
