"""Recovery sweeper that returns expired leases to the pending pool."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from deferq.signals import stop_on_signals
from deferq.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepSummary:
    """Aggregate sweeper counters for CLI reporting."""

    sweeps: int = 0
    reclaimed: int = 0
    failed: int = 0
    errors: int = 0


class RecoverySweeper:
    """Scans for stale claims on its own timer, independent of any worker.

    Correctness never depends on sweep cadence: each write re-checks the
    exact stale state it observed, so a worker finishing at the same instant
    wins and the sweep write becomes a no-op.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        interval_seconds: float = 30.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.clock = clock or repository.current_time
        self.summary = SweepSummary()
        self._stop = threading.Event()

    def sweep(self, now: datetime | None = None) -> int:
        """Resolve every stale claim visible at ``now``; return how many."""

        now = now or self.clock()
        stale = self.repository.list_stale_claims(now=now, limit=self.batch_size)
        reclaimed = failed = 0
        for task in stale:
            if task.attempt_count >= task.max_attempts:
                if self.repository.fail_stale(task=task, now=now):
                    failed += 1
                    logger.warning(
                        "Lease expired on final attempt; task failed id=%s claimant=%s attempt=%s",
                        task.task_id,
                        task.claimant_id,
                        task.attempt_count,
                    )
                continue
            if self.repository.reclaim_stale(task=task, now=now):
                reclaimed += 1
                logger.info(
                    "Reclaimed expired lease id=%s claimant=%s attempt=%s/%s",
                    task.task_id,
                    task.claimant_id,
                    task.attempt_count,
                    task.max_attempts,
                )
        self.summary.reclaimed += reclaimed
        self.summary.failed += failed
        if stale:
            logger.debug(
                "Sweep done stale=%d reclaimed=%d failed=%d",
                len(stale),
                reclaimed,
                failed,
            )
        return reclaimed + failed

    def run_once(self) -> int:
        """One timer tick: sweep, logging storage errors instead of raising."""

        self.summary.sweeps += 1
        try:
            return self.sweep()
        except SQLAlchemyError:
            self.summary.errors += 1
            logger.exception("Sweep failed; retrying on next tick")
            return 0

    def run_loop(self, *, max_sweeps: int | None = None) -> SweepSummary:
        """Sweep every ``interval_seconds`` until stopped."""

        with stop_on_signals(self.request_stop):
            sweeps = 0
            while not self._stop.is_set():
                self.run_once()
                sweeps += 1
                if max_sweeps is not None and sweeps >= max_sweeps:
                    break
                self._stop.wait(timeout=self.interval_seconds)
        return self.summary

    def request_stop(self, signal_name: str | None = None) -> None:
        if signal_name is not None:
            logger.info("Sweeper stop requested by %s", signal_name)
        self._stop.set()
