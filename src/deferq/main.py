"""CLI entrypoint for deferq."""

import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from deferq import __version__
from deferq.logging_setup import setup_logging
from deferq.storage.common import parse_utc_iso
from deferq.tasks.controllers import (
    CreateTaskCommand,
    ListTasksCommand,
    ShowTaskCommand,
    StorageUnavailableError,
    SweepCommand,
    TasksCliController,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
TASKS_CONTROLLER = TasksCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="deferq")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=lambda: os.getenv("DEFERQ_LOG_LEVEL", "INFO").upper(),
    show_default="INFO or DEFERQ_LOG_LEVEL",
    help="Logging verbosity for stderr output.",
)
def deferq(log_level: str) -> None:
    """Durable deferred task queue on SQLite."""

    setup_logging(log_level.upper())


@deferq.group()
def tasks() -> None:
    """Submit and inspect tasks."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Task type, resolved by the worker.")
@click.option(
    "--start-at",
    default=None,
    help="ISO-8601 start time with offset, for example 2026-01-01T09:00:00+00:00.",
)
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Start the task this many seconds from now.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt ceiling for this task (default: DEFERQ_MAX_ATTEMPTS).",
)
def tasks_create(
    db_path: Path | None,
    task_type: str,
    start_at: str | None,
    delay_seconds: float | None,
    max_attempts: int | None,
) -> None:
    """Create a task that becomes eligible at its start time."""

    _emit_lines(
        _run(
            lambda: TASKS_CONTROLLER.create_task(
                CreateTaskCommand(
                    db_path=db_path,
                    task_type=task_type,
                    start_at=_parse_start_at(start_at),
                    delay_seconds=delay_seconds,
                    max_attempts=max_attempts,
                ),
            ),
        ),
    )


@tasks.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its derived status and event history."""

    lines = _run(
        lambda: TASKS_CONTROLLER.show_task(ShowTaskCommand(db_path=db_path, task_id=task_id)),
    )
    _emit_lines(lines)
    if lines and lines[0].startswith("Task not found"):
        raise SystemExit(1)


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["scheduled", "ready", "claimed", "completed", "failed"]),
    default=None,
    help="Filter by derived status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks, newest first."""

    _emit_lines(
        _run(
            lambda: TASKS_CONTROLLER.list_tasks(
                ListTasksCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@deferq.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Process at most one task and exit.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after processing this many tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls.",
)
@click.option(
    "--handlers",
    default=None,
    help="Handler registry import path, `package.module:attribute` (default: DEFERQ_HANDLERS).",
)
@click.option("--worker-id", default=None, help="Claimant id (default: DEFERQ_WORKER_ID).")
@click.option(
    "--with-sweeper",
    is_flag=True,
    default=False,
    help="Also run a lease recovery sweep before every poll.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    handlers: str | None,
    worker_id: str | None,
    with_sweeper: bool,
) -> None:
    """Claim and execute eligible tasks until stopped."""

    _emit_lines(
        _run(
            lambda: TASKS_CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                    handlers=handlers,
                    worker_id=worker_id,
                    with_sweeper=with_sweeper,
                ),
            ),
        ),
    )


@deferq.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--loop",
    is_flag=True,
    default=False,
    help="Keep sweeping every DEFERQ_SWEEP_INTERVAL_SECONDS until stopped.",
)
@click.option(
    "--max-sweeps",
    type=click.IntRange(min=1),
    default=None,
    help="With --loop, exit after this many sweeps.",
)
def sweep(db_path: Path | None, loop: bool, max_sweeps: int | None) -> None:
    """Return expired leases to the pending pool."""

    _emit_lines(
        _run(
            lambda: TASKS_CONTROLLER.sweep(
                SweepCommand(db_path=db_path, loop=loop, max_sweeps=max_sweeps),
            ),
        ),
    )


def _parse_start_at(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as error:
        raise click.BadParameter(
            f"Invalid ISO-8601 datetime: {value!r}",
            param_hint="--start-at",
        ) from error
    if parsed.tzinfo is None:
        raise click.BadParameter(
            "Start time must include a UTC offset, for example +00:00.",
            param_hint="--start-at",
        )
    return parse_utc_iso(value)


def _run(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except StorageUnavailableError as error:
        raise click.ClickException(f"Storage unavailable: {error}") from error
    except (ValueError, TypeError, ImportError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    deferq()
