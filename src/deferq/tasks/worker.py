"""Queue worker: poll, claim, execute, record the outcome."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from deferq.signals import stop_on_signals
from deferq.tasks.handlers import HandlerRegistry
from deferq.tasks.models import (
    FatalFailure,
    Outcome,
    RetryableFailure,
    Success,
    TaskView,
    WorkerState,
)
from deferq.tasks.repository import TaskRepository
from deferq.tasks.retry import RetryPolicy
from deferq.tasks.sweeper import RecoverySweeper

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    lost_claims: int = 0
    idle_polls: int = 0
    storage_errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.lost_claims += other.lost_claims
        self.idle_polls += other.idle_polls
        self.storage_errors += other.storage_errors


class TaskWorker:
    """Consumes eligible tasks and executes them via registered handlers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        registry: HandlerRegistry,
        worker_id: str,
        lease_duration: timedelta = timedelta(minutes=5),
        retry_policy: RetryPolicy | None = None,
        poll_interval_seconds: float = 1.0,
        poll_jitter_seconds: float = 0.5,
        clock: Callable[[], datetime] | None = None,
        sweeper: RecoverySweeper | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.lease_duration = lease_duration
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_jitter_seconds = poll_jitter_seconds
        self.clock = clock or repository.current_time
        self.sweeper = sweeper
        self.state = WorkerState.IDLE
        self._random = random.Random()  # noqa: S311
        self._stop = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, signal_name: str | None = None) -> None:
        """Ask the loop to exit after the in-flight task, if any, finishes."""

        if not self._stop.is_set():
            logger.info(
                "Worker %s stop requested%s state=%s",
                self.worker_id,
                f" by {signal_name}" if signal_name else "",
                self.state.value,
            )
        self._stop.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop.is_set():
            return summary

        if self.sweeper is not None:
            self.sweeper.run_once()

        self.state = WorkerState.POLLING
        try:
            task = self.repository.claim_next(
                worker_id=self.worker_id,
                now=self.clock(),
                lease_duration=self.lease_duration,
            )
        except SQLAlchemyError:
            logger.exception("Worker %s could not poll for tasks", self.worker_id)
            summary.storage_errors = 1
            summary.idle_polls = 1
            self.state = WorkerState.IDLE
            return summary

        if task is None:
            summary.idle_polls = 1
            self.state = WorkerState.IDLE
            return summary

        summary.processed = 1
        logger.info(
            "Claimed task id=%s type=%s attempt=%s/%s",
            task.task_id,
            task.task_type,
            task.attempt_count,
            task.max_attempts,
        )
        try:
            self.state = WorkerState.EXECUTING
            outcome = self._execute(task)
            self._record_outcome(task=task, outcome=outcome, summary=summary)
        except SQLAlchemyError:
            logger.exception(
                "Worker %s could not record outcome of task %s; lease expiry will recover it",
                self.worker_id,
                task.task_id,
            )
            summary.storage_errors = 1
        finally:
            self.state = WorkerState.IDLE
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_tasks`` processed, or the queue stays idle.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with stop_on_signals(self.request_stop):
            while not self._stop.is_set():
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._stop.wait(timeout=self._poll_delay())
                    continue
                consecutive_idle = 0
        return aggregate

    def _poll_delay(self) -> float:
        delay = max(0.0, self.poll_interval_seconds)
        if self.poll_jitter_seconds > 0:
            delay += self._random.uniform(0, self.poll_jitter_seconds)
        return delay

    def _execute(self, task: TaskView) -> Outcome:
        handler = self.registry.get(task.task_type)
        if handler is None:
            logger.warning(
                "No handler registered for task type %r (id=%s)",
                task.task_type,
                task.task_id,
            )
            return RetryableFailure(reason=f"no handler for task type {task.task_type!r}")
        try:
            result = handler.run(task)
        except Exception as error:  # noqa: BLE001
            logger.exception("Handler for %r crashed on task %s", task.task_type, task.task_id)
            return RetryableFailure(reason=f"handler crashed: {type(error).__name__}: {error}")
        return _normalize_outcome(result)

    def _record_outcome(
        self,
        *,
        task: TaskView,
        outcome: Outcome,
        summary: WorkerRunSummary,
    ) -> None:
        if isinstance(outcome, Success):
            self.state = WorkerState.COMPLETING
            if self.repository.complete_task(task=task, worker_id=self.worker_id, now=self.clock()):
                summary.succeeded = 1
                logger.info("Completed task id=%s", task.task_id)
            else:
                self._lost_claim(task=task, summary=summary)
            return

        if isinstance(outcome, RetryableFailure) and task.attempt_count < task.max_attempts:
            self.state = WorkerState.RETRYING
            now = self.clock()
            delay = self.retry_policy.delay_seconds(attempt=task.attempt_count)
            requeued = self.repository.requeue_task(
                task=task,
                worker_id=self.worker_id,
                now=now,
                start_at=now + timedelta(seconds=delay),
                error=outcome.reason,
            )
            if requeued:
                summary.retried = 1
                logger.info(
                    "Task id=%s attempt %s/%s failed (%s); retry in %.1fs",
                    task.task_id,
                    task.attempt_count,
                    task.max_attempts,
                    outcome.reason,
                    delay,
                )
            else:
                self._lost_claim(task=task, summary=summary)
            return

        self.state = WorkerState.FAILING
        reason = outcome.reason
        if isinstance(outcome, RetryableFailure):
            reason = f"attempts exhausted ({task.attempt_count}/{task.max_attempts}): {reason}"
        if self.repository.fail_task(
            task=task,
            worker_id=self.worker_id,
            now=self.clock(),
            error=reason,
        ):
            summary.failed = 1
            logger.warning("Task id=%s failed: %s", task.task_id, reason)
        else:
            self._lost_claim(task=task, summary=summary)

    def _lost_claim(self, *, task: TaskView, summary: WorkerRunSummary) -> None:
        summary.lost_claims = 1
        logger.info(
            "Claim on task id=%s attempt=%s already lapsed; result discarded",
            task.task_id,
            task.attempt_count,
        )


def _normalize_outcome(result: object) -> Outcome:
    if isinstance(result, (Success, RetryableFailure, FatalFailure)):
        return result
    if result is True:
        return Success()
    if result is False:
        return RetryableFailure(reason="handler reported the task incomplete")
    return RetryableFailure(reason=f"handler returned unsupported outcome {result!r}")
