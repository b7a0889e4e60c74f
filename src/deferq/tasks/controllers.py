"""Controllers for task queue CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError

from deferq.config import Settings
from deferq.tasks.eligibility import derive_status
from deferq.tasks.handlers import HandlerRegistry, builtin_registry, load_registry
from deferq.tasks.models import TaskStatus, TaskView
from deferq.tasks.repository import TaskRepository
from deferq.tasks.services import SubmitTask, TaskService
from deferq.tasks.sweeper import RecoverySweeper
from deferq.tasks.worker import TaskWorker

T = TypeVar("T")


class StorageUnavailableError(RuntimeError):
    """The task store could not be reached or refused the operation."""


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for task creation."""

    db_path: Path | None
    task_type: str
    start_at: datetime | None
    delay_seconds: float | None
    max_attempts: int | None


@dataclass(slots=True)
class ShowTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None
    handlers: str | None
    worker_id: str | None
    with_sweeper: bool


@dataclass(slots=True)
class SweepCommand:
    """CLI input for the recovery sweeper."""

    db_path: Path | None
    loop: bool
    max_sweeps: int | None


class TasksCliController:
    """Coordinates submission, inspection, worker and sweeper CLI operations."""

    def create_task(self, command: CreateTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            service = TaskService(
                repository=repository,
                default_max_attempts=settings.worker.max_attempts,
            )
            task = _storage_call(
                lambda: service.submit(
                    SubmitTask(
                        task_type=command.task_type,
                        start_at=command.start_at,
                        delay_seconds=command.delay_seconds,
                        max_attempts=command.max_attempts,
                    ),
                ),
            )
        return [
            f"Task created: task_id={task.task_id} type={task.task_type} "
            f"start_at={task.start_at.isoformat()} max_attempts={task.max_attempts}",
        ]

    def show_task(self, command: ShowTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = _storage_call(lambda: repository.get_task_details(task_id=command.task_id))
            now = _storage_call(repository.current_time)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {derive_status(task, now).value}",
            f"Created: {task.created_at.isoformat()}",
            f"Start at: {task.start_at.isoformat()}",
            f"Attempt: {task.attempt_count}/{task.max_attempts}",
            f"Claimant: {task.claimant_id or '-'}",
            f"Lease expires: {_iso_or_dash(task.lease_expires_at)}",
            f"Completed: {_iso_or_dash(task.completed_at)}",
            f"Failed: {_iso_or_dash(task.failed_at)}",
            f"Last error: {task.last_error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"attempt={event.attempt if event.attempt is not None else '-'} "
                f"claimant={event.claimant_id or '-'}",
            )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            now = _storage_call(repository.current_time)
            tasks = _storage_call(
                lambda: repository.list_tasks(now=now, status=status_filter, limit=command.limit),
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task, now) for task in tasks)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        registry = _resolve_registry(command.handlers or settings.worker.handlers)
        with _repository(settings) as repository:
            sweeper = (
                RecoverySweeper(
                    repository=repository,
                    interval_seconds=settings.sweeper.interval_seconds,
                    batch_size=settings.sweeper.batch_size,
                )
                if command.with_sweeper
                else None
            )
            worker = TaskWorker(
                repository=repository,
                registry=registry,
                worker_id=command.worker_id or settings.worker.worker_id,
                lease_duration=timedelta(seconds=settings.worker.lease_seconds),
                retry_policy=settings.retry.build_policy(),
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                poll_jitter_seconds=settings.worker.poll_jitter_seconds,
                sweeper=sweeper,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            f"Worker summary: worker_id={worker.worker_id} "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"lost_claims={summary.lost_claims} idle_polls={summary.idle_polls} "
            f"storage_errors={summary.storage_errors}",
        ]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            sweeper = RecoverySweeper(
                repository=repository,
                interval_seconds=settings.sweeper.interval_seconds,
                batch_size=settings.sweeper.batch_size,
            )
            if command.loop:
                sweeper.run_loop(max_sweeps=command.max_sweeps)
            else:
                sweeper.run_once()
            summary = sweeper.summary

        return [
            f"Sweep summary: sweeps={summary.sweeps} reclaimed={summary.reclaimed} "
            f"failed={summary.failed} errors={summary.errors}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        _storage_call(repository.init_schema)
        yield repository
    finally:
        repository.close()


def _storage_call(func: Callable[[], T]) -> T:
    try:
        return func()
    except SQLAlchemyError as error:
        raise StorageUnavailableError(str(error.__cause__ or error)) from error


def _resolve_registry(import_path: str | None) -> HandlerRegistry:
    if import_path:
        return load_registry(import_path)
    return builtin_registry()


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported status filter: {value}") from error


def _task_line(task: TaskView, now: datetime) -> str:
    return (
        f"  {task.task_id} type={task.task_type} status={derive_status(task, now).value} "
        f"attempt={task.attempt_count}/{task.max_attempts} "
        f"start_at={task.start_at.isoformat()}"
    )


def _iso_or_dash(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
