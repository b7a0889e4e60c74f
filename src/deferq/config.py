"""Runtime configuration for the queue worker, retry policy and sweeper."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from deferq.tasks.retry import BackoffKind, RetryPolicy


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class WorkerSettings:
    """Polling, leasing and attempt ceiling."""

    worker_id: str = field(default_factory=_default_worker_id)
    poll_interval_seconds: float = 1.0
    poll_jitter_seconds: float = 0.5
    lease_seconds: int = 300
    max_attempts: int = 5
    handlers: str | None = None


@dataclass(slots=True)
class RetrySettings:
    """Backoff applied when a task is requeued after a retryable failure."""

    policy: BackoffKind = BackoffKind.EXPONENTIAL
    base_seconds: float = 5.0
    max_seconds: float = 600.0
    jitter: bool = True

    def build_policy(self) -> RetryPolicy:
        return RetryPolicy(
            kind=self.policy,
            base_seconds=self.base_seconds,
            max_seconds=self.max_seconds,
            jitter=self.jitter,
        )


@dataclass(slots=True)
class SweeperSettings:
    """Recovery sweeper cadence."""

    interval_seconds: float = 30.0
    batch_size: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".deferq.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    sweeper: SweeperSettings = field(default_factory=SweeperSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DEFERQ_DB_PATH", ".deferq.db")),
            sqlite_busy_timeout_ms=int(os.getenv("DEFERQ_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                worker_id=os.getenv("DEFERQ_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=float(os.getenv("DEFERQ_POLL_INTERVAL_SECONDS", "1.0")),
                poll_jitter_seconds=float(os.getenv("DEFERQ_POLL_JITTER_SECONDS", "0.5")),
                lease_seconds=int(os.getenv("DEFERQ_LEASE_SECONDS", "300")),
                max_attempts=int(os.getenv("DEFERQ_MAX_ATTEMPTS", "5")),
                handlers=os.getenv("DEFERQ_HANDLERS", "").strip() or None,
            ),
            retry=RetrySettings(
                policy=_parse_backoff(os.getenv("DEFERQ_RETRY_POLICY", "exponential")),
                base_seconds=float(os.getenv("DEFERQ_RETRY_BASE_SECONDS", "5")),
                max_seconds=float(os.getenv("DEFERQ_RETRY_MAX_SECONDS", "600")),
                jitter=_env_bool("DEFERQ_RETRY_JITTER", default=True),
            ),
            sweeper=SweeperSettings(
                interval_seconds=float(os.getenv("DEFERQ_SWEEP_INTERVAL_SECONDS", "30")),
                batch_size=int(os.getenv("DEFERQ_SWEEP_BATCH_SIZE", "100")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DEFERQ_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.worker.worker_id:
            raise ValueError("DEFERQ_WORKER_ID must not be empty.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("DEFERQ_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.poll_jitter_seconds < 0:
            raise ValueError("DEFERQ_POLL_JITTER_SECONDS must be >= 0.")
        if self.worker.lease_seconds <= 0:
            raise ValueError("DEFERQ_LEASE_SECONDS must be > 0.")
        if self.worker.max_attempts < 1:
            raise ValueError("DEFERQ_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_seconds < 0:
            raise ValueError("DEFERQ_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError("DEFERQ_RETRY_MAX_SECONDS must be >= DEFERQ_RETRY_BASE_SECONDS.")
        if self.sweeper.interval_seconds <= 0:
            raise ValueError("DEFERQ_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.sweeper.batch_size <= 0:
            raise ValueError("DEFERQ_SWEEP_BATCH_SIZE must be > 0.")


def _parse_backoff(value: str) -> BackoffKind:
    normalized = value.strip().lower()
    try:
        return BackoffKind(normalized)
    except ValueError as error:
        choices = ", ".join(kind.value for kind in BackoffKind)
        raise ValueError(
            f"Invalid DEFERQ_RETRY_POLICY value: {value!r}. Expected one of: {choices}.",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
