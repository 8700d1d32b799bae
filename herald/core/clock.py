"""Time source and numeric guards for persisted time arithmetic."""

import math
import time
from datetime import UTC, datetime
from typing import Protocol

INT32_MAX = 2**31 - 1


class Clock(Protocol):
    """Source of wall-clock and monotonic time.

    Components take a Clock instead of calling ``datetime.now`` so tests can
    drive claims, backoff and run budgets deterministically.
    """

    def now(self) -> datetime: ...
    def monotonic(self) -> float: ...


class SystemClock:
    """Clock backed by the real system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def clamp_int(value: float | int | None, default: int = 0, maximum: int = INT32_MAX) -> int:
    """Clamp a computed integer into ``[0, maximum]`` before it is persisted.

    Negative, NaN, infinite and overflowing results of time arithmetic
    (hours remaining, days elapsed, durations) become a valid bounded value.
    """
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    if math.isinf(number):
        return maximum if number > 0 else 0
    return max(0, min(maximum, int(number)))


def safe_positive_int(value: object, default: int, maximum: int = INT32_MAX) -> int:
    """Coerce a caller-supplied limit into ``[1, maximum]``, or ``default``."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return default
    clamped = clamp_int(value, default=default, maximum=maximum)
    return clamped if clamped >= 1 else default
