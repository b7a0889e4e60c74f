"""Retry backoff policy for requeued tasks."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum

# 2**62 seconds exceeds any sane cap; larger attempt counts would overflow float.
_MAX_EXPONENT = 62


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(slots=True)
class RetryPolicy:
    """Delay before a failed attempt becomes eligible again.

    ``fixed`` waits ``base_seconds`` every time. ``exponential`` doubles from
    ``base_seconds`` per attempt. Both are capped at ``max_seconds``; with
    ``jitter`` the delay is drawn uniformly from ``[0, cap]``.
    """

    kind: BackoffKind = BackoffKind.EXPONENTIAL
    base_seconds: float = 5.0
    max_seconds: float = 600.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False)  # noqa: S311

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError(f"base_seconds must be >= 0, got {self.base_seconds}")
        if self.max_seconds < 0:
            raise ValueError(f"max_seconds must be >= 0, got {self.max_seconds}")

    def delay_seconds(self, *, attempt: int) -> float:
        """Backoff after the ``attempt``-th claim failed (1-based)."""

        if self.kind == BackoffKind.FIXED:
            max_delay = min(self.max_seconds, self.base_seconds)
        else:
            exponent = min(max(attempt - 1, 0), _MAX_EXPONENT)
            max_delay = min(self.max_seconds, self.base_seconds * (2.0**exponent))
        if not self.jitter:
            return max_delay
        return self.rng.uniform(0, max_delay)
