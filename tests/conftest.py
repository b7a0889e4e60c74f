"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from deferq.tasks.models import TaskCreate, TaskView
from deferq.tasks.repository import TaskRepository

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock injected wherever ``now`` is read."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def create_task(repository: TaskRepository, clock: FakeClock) -> Callable[..., TaskView]:
    """Factory that inserts a task created at the fake clock's current time."""

    def _create(
        task_type: str = "noop",
        *,
        start_at: datetime | None = None,
        max_attempts: int = 5,
        task_id: str | None = None,
    ) -> TaskView:
        return repository.create_task(
            TaskCreate(
                task_type=task_type,
                start_at=start_at or clock(),
                max_attempts=max_attempts,
                task_id=task_id,
            ),
            now=clock(),
        )

    return _create
