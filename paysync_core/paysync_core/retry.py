"""Payment retry policy and the retry-job state machine.

One policy governs every automated payment retry.  The delay for the
attempt numbered *n* (1-based) is::

    min(max_delay, initial_delay * multiplier ** (n - 1))

scaled by a uniform jitter factor in ``[1 - ratio, 1 + ratio]`` and then
clamped to ``max_delay`` again so the cap holds after jitter.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from paysync_core.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Job state machine
# ---------------------------------------------------------------------------


class RetryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: frozenset[RetryStatus] = frozenset(
    {RetryStatus.PENDING, RetryStatus.PROCESSING, RetryStatus.RETRYING}
)

TERMINAL_STATUSES: frozenset[RetryStatus] = frozenset(
    {
        RetryStatus.SUCCEEDED,
        RetryStatus.FAILED,
        RetryStatus.REQUIRES_ACTION,
        RetryStatus.CANCELLED,
    }
)

_TRANSITIONS: dict[RetryStatus, frozenset[RetryStatus]] = {
    RetryStatus.PENDING: frozenset({RetryStatus.PROCESSING, RetryStatus.CANCELLED}),
    RetryStatus.PROCESSING: frozenset(
        {
            RetryStatus.SUCCEEDED,
            RetryStatus.RETRYING,
            RetryStatus.REQUIRES_ACTION,
            RetryStatus.FAILED,
        }
    ),
    RetryStatus.RETRYING: frozenset({RetryStatus.PENDING, RetryStatus.FAILED}),
}


class InvalidTransition(ValueError):
    """Raised when a retry job is moved along an edge the state machine lacks."""

    def __init__(self, current: RetryStatus | str, target: RetryStatus | str) -> None:
        self.current = RetryStatus(current)
        self.target = RetryStatus(target)
        super().__init__(f"Illegal retry job transition {self.current.value} -> {self.target.value}")


def check_transition(current: RetryStatus | str, target: RetryStatus | str) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is allowed."""
    current = RetryStatus(current)
    target = RetryStatus(target)
    if target not in _TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)


# ---------------------------------------------------------------------------
# Backoff policy
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Tuneable parameters for payment retries."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts allowed before a job becomes terminally failed.",
    )
    initial_delay_ms: int = Field(
        default=5000,
        gt=0,
        description="Delay after the first failed attempt, in milliseconds.",
    )
    max_delay_ms: int = Field(
        default=300_000,
        gt=0,
        description="Upper bound on any delay, in milliseconds.",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Growth factor applied per attempt.",
    )
    jitter_ratio: float = Field(
        default=0.1,
        ge=0.0,
        lt=1.0,
        description="Relative jitter; 0.1 means +/-10%.",
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of due jobs processed per sweep.",
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_ratio=settings.retry_jitter_ratio,
            batch_size=settings.retry_batch_size,
        )

    def base_delay_ms(self, attempt: int) -> float:
        """Return the un-jittered delay for *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        raw = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return float(min(self.max_delay_ms, raw))

    def compute_delay_ms(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Return the jittered delay for *attempt*, never above ``max_delay_ms``."""
        base = self.base_delay_ms(attempt)
        if self.jitter_ratio:
            uniform = rng.uniform if rng is not None else random.uniform
            base *= uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)  # noqa: S311
        return min(float(self.max_delay_ms), base)

    def next_retry_at(self, attempt: int, now: datetime, *, rng: random.Random | None = None) -> datetime:
        """Return when the job should run again after *attempt* fails."""
        return now + timedelta(milliseconds=self.compute_delay_ms(attempt, rng=rng))

    def is_exhausted(self, attempt: int) -> bool:
        """True when a failure of *attempt* leaves no attempts in the budget."""
        return attempt >= self.max_attempts
