"""Domain models for the task queue and its execution loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Derived task lifecycle states (never stored, see ``derive_status``)."""

    SCHEDULED = "scheduled"
    READY = "ready"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerState(str, Enum):
    """Execution loop states of a single worker."""

    IDLE = "idle"
    POLLING = "polling"
    EXECUTING = "executing"
    COMPLETING = "completing"
    RETRYING = "retrying"
    FAILING = "failing"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    task_type: str
    start_at: datetime
    max_attempts: int
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot used by the worker, sweeper and CLI."""

    task_id: str
    task_type: str
    created_at: datetime
    start_at: datetime
    worker_assigned_at: datetime | None
    claimant_id: str | None
    lease_expires_at: datetime | None
    attempt_count: int
    max_attempts: int
    completed_at: datetime | None
    failed_at: datetime | None
    last_error: str | None

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None or self.failed_at is not None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    claimant_id: str | None
    attempt: int | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(frozen=True, slots=True)
class Success:
    """Handler finished the task."""


@dataclass(frozen=True, slots=True)
class RetryableFailure:
    """Handler failed; the task may be attempted again."""

    reason: str


@dataclass(frozen=True, slots=True)
class FatalFailure:
    """Handler failed in a way no retry can fix."""

    reason: str


Outcome = Success | RetryableFailure | FatalFailure
