"""Use-case services for task submission and lookup."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from deferq.tasks.models import TaskCreate, TaskView
from deferq.tasks.repository import MAX_TASK_TYPE_LENGTH, TaskRepository


@dataclass(slots=True)
class SubmitTask:
    """High-level command to submit a task."""

    task_type: str
    start_at: datetime | None = None
    delay_seconds: float | None = None
    max_attempts: int | None = None


class TaskService:
    """Validates submissions before they reach the store."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        default_max_attempts: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.default_max_attempts = default_max_attempts
        self.clock = clock or repository.current_time

    def submit(self, command: SubmitTask) -> TaskView:
        """Create a task that becomes eligible at its start time."""

        task_type = command.task_type.strip()
        if not task_type:
            raise ValueError("Task type is required.")
        if len(task_type) > MAX_TASK_TYPE_LENGTH:
            raise ValueError(f"Task type must be at most {MAX_TASK_TYPE_LENGTH} characters.")
        if command.start_at is not None and command.delay_seconds is not None:
            raise ValueError("Pass either a start time or a delay, not both.")
        if command.start_at is not None and command.start_at.tzinfo is None:
            raise ValueError("Start time must include a UTC offset.")
        if command.delay_seconds is not None and command.delay_seconds < 0:
            raise ValueError("Delay must be >= 0 seconds.")
        max_attempts = (
            command.max_attempts if command.max_attempts is not None else self.default_max_attempts
        )
        if max_attempts < 1:
            raise ValueError("Max attempts must be >= 1.")

        now = self.clock()
        if command.start_at is not None:
            start_at = command.start_at
        else:
            start_at = now + timedelta(seconds=command.delay_seconds or 0)
        return self.repository.create_task(
            TaskCreate(task_type=task_type, start_at=start_at, max_attempts=max_attempts),
            now=now,
        )

    def get(self, task_id: str) -> TaskView | None:
        return self.repository.get_task(task_id=task_id)
