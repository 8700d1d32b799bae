"""Retry policy: attempt budget, claim lock window and backoff table."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from herald.core.clock import ensure_utc

MAX_ATTEMPTS = 5

# Soft claim lock for events, keyed off processing.last_attempt_at
LOCK_WINDOW = timedelta(minutes=2)

# Indexed by attempt count, clamped to the last entry
BACKOFF_TABLE: tuple[timedelta, ...] = (
    timedelta(0),
    timedelta(seconds=30),
    timedelta(minutes=2),
    timedelta(minutes=10),
    timedelta(minutes=30),
)


def backoff(attempts: int, table: tuple[timedelta, ...] = BACKOFF_TABLE) -> timedelta:
    """Return the minimum delay after ``attempts`` tries before the next claim."""
    if not table:
        return timedelta(0)
    index = min(max(attempts, 0), len(table) - 1)
    return table[index]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and timing gates shared by the processor and dispatcher.

    Attributes:
        max_attempts: Attempts after which a record is terminal.
        lock_window: Minimum age of ``last_attempt_at`` before a record can be
            claimed again by another worker.
        backoff_table: Per-attempt delay between job deliveries.
    """

    max_attempts: int = MAX_ATTEMPTS
    lock_window: timedelta = LOCK_WINDOW
    backoff_table: tuple[timedelta, ...] = field(default=BACKOFF_TABLE)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.lock_window < timedelta(0):
            raise ValueError("lock_window must not be negative")
        if any(delay < timedelta(0) for delay in self.backoff_table):
            raise ValueError("backoff_table entries must not be negative")

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def backoff(self, attempts: int) -> timedelta:
        return backoff(attempts, self.backoff_table)

    def is_locked(self, last_attempt_at: datetime | None, now: datetime) -> bool:
        """True while another worker may still own a claim taken at ``last_attempt_at``."""
        last = ensure_utc(last_attempt_at)
        if last is None:
            return False
        return now - last < self.lock_window

    def in_backoff(self, attempts: int, last_attempt_at: datetime | None, now: datetime) -> bool:
        last = ensure_utc(last_attempt_at)
        if last is None:
            return False
        return now - last < self.backoff(attempts)
