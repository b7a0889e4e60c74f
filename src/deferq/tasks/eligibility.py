"""Pure scheduling decisions over task snapshots.

Nothing here reads a clock or touches storage: ``now`` is always passed in,
so every rule is checkable in isolation. The repository issues SQL that
mirrors these predicates; the conditional writes are what enforce them.
"""

from __future__ import annotations

from datetime import datetime

from deferq.tasks.models import TaskStatus, TaskView


def is_eligible(task: TaskView, now: datetime) -> bool:
    """Return True when ``task`` may be claimed at ``now``.

    Eligible means: start time reached, not terminal, and either unclaimed
    or holding a lease that has expired.
    """

    if task.start_at > now:
        return False
    if task.is_terminal:
        return False
    if task.worker_assigned_at is None:
        return True
    return task.lease_expires_at is None or task.lease_expires_at <= now


def is_claimable(task: TaskView, now: datetime) -> bool:
    """Eligible and still below its attempt ceiling."""

    return is_eligible(task, now) and task.attempt_count < task.max_attempts


def has_stale_lease(task: TaskView, now: datetime) -> bool:
    """Claimed, non-terminal, and the lease has run out."""

    return (
        task.worker_assigned_at is not None
        and not task.is_terminal
        and (task.lease_expires_at is None or task.lease_expires_at <= now)
    )


def claim_order_key(task: TaskView) -> tuple[datetime, datetime, str]:
    """Oldest-eligible-first ordering used to pick among claimable tasks."""

    return (task.start_at, task.created_at, task.task_id)


def derive_status(task: TaskView, now: datetime) -> TaskStatus:
    """Operator-facing status of ``task`` at ``now``.

    A claim whose lease lapsed on the final attempt still reads ``claimed``:
    no worker may take it again, and it stays held until the sweeper fails it.
    """

    if task.completed_at is not None:
        return TaskStatus.COMPLETED
    if task.failed_at is not None:
        return TaskStatus.FAILED
    if task.worker_assigned_at is not None and (
        (task.lease_expires_at is not None and task.lease_expires_at > now)
        or task.attempt_count >= task.max_attempts
    ):
        return TaskStatus.CLAIMED
    if task.start_at > now:
        return TaskStatus.SCHEDULED
    return TaskStatus.READY
