"""Persistent task store backed by SQLModel + SQLite.

Every state transition is one conditional UPDATE whose WHERE clause restates
the precondition the caller observed. A write that affects zero rows means
another actor got there first; methods report that by returning ``False`` or
``None`` rather than raising.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from deferq.storage.alembic_runner import upgrade_head
from deferq.storage.common import (
    build_sqlite_engine,
    from_db_datetime,
    from_db_datetime_or_none,
    read_storage_clock,
    to_db_datetime,
)
from deferq.storage.sqlmodel_models import TaskEventRecord, TaskRecord
from deferq.tasks.eligibility import derive_status
from deferq.tasks.models import (
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)

logger = logging.getLogger(__name__)

MAX_TASK_TYPE_LENGTH = 256


class TaskRepository:
    """Queue persistence facade: create, read, claim and guarded transitions."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def current_time(self) -> datetime:
        """Read "now" from the storage clock."""

        with self.engine.connect() as connection:
            return read_storage_clock(connection)

    # ---- gateway operations ----

    def create_task(self, payload: TaskCreate, *, now: datetime) -> TaskView:
        """Create a pending task."""

        if not payload.task_type or len(payload.task_type) > MAX_TASK_TYPE_LENGTH:
            raise ValueError(
                f"task_type must be 1..{MAX_TASK_TYPE_LENGTH} characters, "
                f"got {payload.task_type!r}",
            )
        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")

        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TaskRecord(
                id=task_id,
                created_at=to_db_datetime(now),
                task_type=payload.task_type,
                start_at=to_db_datetime(payload.start_at),
                attempt_count=0,
                max_attempts=payload.max_attempts,
            )
            session.add(row)
            # No ORM relationship orders the inserts; the event FK needs the task row first.
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                claimant_id=None,
                attempt=0,
                now=now,
                details={
                    "task_type": payload.task_type,
                    "start_at": from_db_datetime(payload.start_at).isoformat(),
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            logger.debug("Task created id=%s type=%s", task_id, payload.task_type)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        """Read-only lookup."""

        with Session(self.engine) as session:
            row = session.exec(select(TaskRecord).where(TaskRecord.id == task_id)).one_or_none()
            if row is None:
                return None
            return _to_task_view(row)

    def list_tasks(
        self,
        *,
        now: datetime,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by derived status."""

        statement = select(TaskRecord).order_by(col(TaskRecord.created_at).desc())
        if status is not None:
            statement = statement.where(_status_clause(status, to_db_datetime(now)))
        with Session(self.engine) as session:
            rows = session.exec(statement.limit(limit)).all()
            tasks = [_to_task_view(row) for row in rows]
        if status is not None:
            tasks = [task for task in tasks if derive_status(task, now) == status]
        return tasks

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(select(TaskRecord).where(TaskRecord.id == task_id)).one_or_none()
            if task is None:
                return None
            task_view = _to_task_view(task)
            event_rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.created_at).asc(), col(TaskEventRecord.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    claimant_id=row.claimant_id,
                    attempt=row.attempt,
                    created_at=from_db_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task_view, events=events)

    # ---- claim ----

    def claim_next(
        self,
        *,
        worker_id: str,
        now: datetime,
        lease_duration: timedelta,
    ) -> TaskView | None:
        """Atomically claim the oldest eligible task for ``worker_id``.

        The candidate is re-checked against the eligibility predicate inside
        the UPDATE itself. When that write misses because another worker won
        the row, the candidate is skipped and the next one is tried.
        """

        if lease_duration <= timedelta(0):
            raise ValueError(f"lease_duration must be positive, got {lease_duration}")

        db_now = to_db_datetime(now)
        lease_expires_at = to_db_datetime(now + lease_duration)
        skipped: set[str] = set()
        while True:
            with Session(self.engine) as session:
                statement = (
                    select(TaskRecord)
                    .where(_claimable_clause(db_now))
                    .order_by(
                        col(TaskRecord.start_at).asc(),
                        col(TaskRecord.created_at).asc(),
                        col(TaskRecord.id).asc(),
                    )
                    .limit(1)
                )
                if skipped:
                    statement = statement.where(col(TaskRecord.id).not_in(skipped))
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                candidate_id = candidate.id
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.id) == candidate_id,
                        _claimable_clause(db_now),
                    )
                    .values(
                        worker_assigned_at=db_now,
                        claimant_id=worker_id,
                        lease_expires_at=lease_expires_at,
                        attempt_count=col(TaskRecord.attempt_count) + 1,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    skipped.add(candidate_id)
                    logger.debug(
                        "Claim race lost worker=%s task=%s; trying next candidate",
                        worker_id,
                        candidate_id,
                    )
                    continue

                claimed = session.exec(
                    select(TaskRecord)
                    .where(TaskRecord.id == candidate_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    task_id=candidate_id,
                    event_type="claimed",
                    claimant_id=worker_id,
                    attempt=claimed.attempt_count,
                    now=now,
                    details={
                        "lease_expires_at": from_db_datetime(lease_expires_at).isoformat(),
                    },
                )
                session.commit()
                session.refresh(claimed)
                return _to_task_view(claimed)

    # ---- ownership-guarded transitions ----

    def complete_task(self, *, task: TaskView, worker_id: str, now: datetime) -> bool:
        """Mark a claimed task completed if ``worker_id`` still owns the claim."""

        return self._guarded_transition(
            task=task,
            worker_id=worker_id,
            now=now,
            values={"completed_at": to_db_datetime(now)},
            event_type="completed",
            details={},
        )

    def requeue_task(
        self,
        *,
        task: TaskView,
        worker_id: str,
        now: datetime,
        start_at: datetime,
        error: str,
    ) -> bool:
        """Release the claim so the task becomes eligible again at ``start_at``."""

        return self._guarded_transition(
            task=task,
            worker_id=worker_id,
            now=now,
            values={
                "worker_assigned_at": None,
                "claimant_id": None,
                "lease_expires_at": None,
                "start_at": to_db_datetime(start_at),
                "last_error": error,
            },
            event_type="retry_scheduled",
            details={
                "start_at": from_db_datetime(start_at).isoformat(),
                "error": error,
            },
        )

    def fail_task(self, *, task: TaskView, worker_id: str, now: datetime, error: str) -> bool:
        """Mark a claimed task terminally failed if ``worker_id`` still owns the claim."""

        return self._guarded_transition(
            task=task,
            worker_id=worker_id,
            now=now,
            values={"failed_at": to_db_datetime(now), "last_error": error},
            event_type="failed",
            details={"error": error},
        )

    # ---- stale lease recovery ----

    def list_stale_claims(self, *, now: datetime, limit: int = 100) -> list[TaskView]:
        """Claimed, non-terminal tasks whose lease has expired at ``now``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(_stale_lease_clause(to_db_datetime(now)))
                .order_by(col(TaskRecord.lease_expires_at).asc(), col(TaskRecord.id).asc())
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def reclaim_stale(self, *, task: TaskView, now: datetime) -> bool:
        """Return a stale claim to the pending pool."""

        return self._stale_transition(
            task=task,
            now=now,
            values={
                "worker_assigned_at": None,
                "claimant_id": None,
                "lease_expires_at": None,
                "last_error": "lease expired",
            },
            event_type="lease_reclaimed",
        )

    def fail_stale(self, *, task: TaskView, now: datetime) -> bool:
        """Fail a stale claim that already used its last attempt."""

        return self._stale_transition(
            task=task,
            now=now,
            values={
                "failed_at": to_db_datetime(now),
                "last_error": "lease expired after final attempt",
            },
            event_type="lease_exhausted",
        )

    # ---- internals ----

    def _guarded_transition(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        worker_id: str,
        now: datetime,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task.task_id,
                    col(TaskRecord.claimant_id) == worker_id,
                    col(TaskRecord.attempt_count) == task.attempt_count,
                    col(TaskRecord.completed_at).is_(None),
                    col(TaskRecord.failed_at).is_(None),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type=event_type,
                claimant_id=worker_id,
                attempt=task.attempt_count,
                now=now,
                details=details,
            )
            session.commit()
            return True

    def _stale_transition(
        self,
        *,
        task: TaskView,
        now: datetime,
        values: dict[str, Any],
        event_type: str,
    ) -> bool:
        claimant_clause = (
            col(TaskRecord.claimant_id).is_(None)
            if task.claimant_id is None
            else col(TaskRecord.claimant_id) == task.claimant_id
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task.task_id,
                    col(TaskRecord.attempt_count) == task.attempt_count,
                    claimant_clause,
                    _stale_lease_clause(to_db_datetime(now)),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type=event_type,
                claimant_id=task.claimant_id,
                attempt=task.attempt_count,
                now=now,
                details={},
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        claimant_id: str | None,
        attempt: int | None,
        now: datetime,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                claimant_id=claimant_id,
                attempt=attempt,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(now),
            ),
        )


def _not_terminal() -> ColumnElement[bool]:
    return and_(
        col(TaskRecord.completed_at).is_(None),
        col(TaskRecord.failed_at).is_(None),
    )


def _lease_lapsed(db_now: datetime) -> ColumnElement[bool]:
    return or_(
        col(TaskRecord.lease_expires_at).is_(None),
        col(TaskRecord.lease_expires_at) <= db_now,
    )


def _eligible_clause(db_now: datetime) -> ColumnElement[bool]:
    return and_(
        col(TaskRecord.start_at) <= db_now,
        _not_terminal(),
        or_(col(TaskRecord.worker_assigned_at).is_(None), _lease_lapsed(db_now)),
    )


def _claimable_clause(db_now: datetime) -> ColumnElement[bool]:
    return and_(
        _eligible_clause(db_now),
        col(TaskRecord.attempt_count) < col(TaskRecord.max_attempts),
    )


def _stale_lease_clause(db_now: datetime) -> ColumnElement[bool]:
    return and_(
        col(TaskRecord.worker_assigned_at).is_not(None),
        _not_terminal(),
        _lease_lapsed(db_now),
    )


def _status_clause(status: TaskStatus, db_now: datetime) -> ColumnElement[bool]:
    if status == TaskStatus.COMPLETED:
        return col(TaskRecord.completed_at).is_not(None)
    if status == TaskStatus.FAILED:
        return col(TaskRecord.failed_at).is_not(None)
    if status == TaskStatus.SCHEDULED:
        return and_(_not_terminal(), col(TaskRecord.start_at) > db_now)
    if status == TaskStatus.CLAIMED:
        return and_(
            _not_terminal(),
            col(TaskRecord.worker_assigned_at).is_not(None),
            or_(
                col(TaskRecord.lease_expires_at) > db_now,
                col(TaskRecord.attempt_count) >= col(TaskRecord.max_attempts),
            ),
        )
    return _claimable_clause(db_now)


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        task_id=row.id,
        task_type=row.task_type,
        created_at=from_db_datetime(row.created_at),
        start_at=from_db_datetime(row.start_at),
        worker_assigned_at=from_db_datetime_or_none(row.worker_assigned_at),
        claimant_id=row.claimant_id,
        lease_expires_at=from_db_datetime_or_none(row.lease_expires_at),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        completed_at=from_db_datetime_or_none(row.completed_at),
        failed_at=from_db_datetime_or_none(row.failed_at),
        last_error=row.last_error,
    )
