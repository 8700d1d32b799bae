"""Per-user, per-channel send ceilings.

Counters are documents keyed by user, channel and fixed UTC window (the
hour and the day), so a window resets when the clock enters the next one.
They are read and incremented inside the caller's transaction, together
with the job write they guard: a job that is not written consumes nothing.
"""

import logging
from datetime import datetime, timedelta

from herald.core.models import JobKind
from herald.core.rules import RateLimit
from herald.store.base import Transaction

logger = logging.getLogger("herald.ratelimit")

RATE_LIMITS_COLLECTION = "notificationRateLimits"


def window_ids(user_id: str, kind: JobKind, now: datetime) -> tuple[str, str]:
    """Counter document ids of the hour and the day containing ``now``."""
    return (
        f"{user_id}_{kind.value}_h{now:%Y%m%d%H}",
        f"{user_id}_{kind.value}_d{now:%Y%m%d}",
    )


class RateLimiter:
    """Checks and consumes per-user send allowances."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    async def acquire(
        self,
        tx: Transaction,
        user_id: str,
        kind: JobKind,
        limit: RateLimit | None,
        now: datetime,
    ) -> bool:
        """Consume one send for ``user_id`` on ``kind`` if both windows allow it.

        Returns False, consuming nothing, if either window is full.
        """
        if not self.enabled or limit is None:
            return True

        hour_start = now.replace(minute=0, second=0, microsecond=0)
        day_start = hour_start.replace(hour=0)
        windows = []
        for doc_id, ceiling, expires_at in zip(
            window_ids(user_id, kind, now),
            (limit.per_hour, limit.per_day),
            (hour_start + timedelta(hours=1), day_start + timedelta(days=1)),
            strict=True,
        ):
            current = await tx.get(RATE_LIMITS_COLLECTION, doc_id)
            count = int((current or {}).get("count", 0))
            if ceiling and count >= ceiling:
                logger.info(
                    f"Rate limit reached for {user_id} on {kind.value}: {count}/{ceiling}",
                    extra={"user_id": user_id, "kind": kind.value},
                )
                return False
            windows.append((doc_id, count, expires_at))

        for doc_id, count, expires_at in windows:
            tx.set(
                RATE_LIMITS_COLLECTION,
                doc_id,
                {
                    "user_id": user_id,
                    "channel": kind.value,
                    "count": count + 1,
                    "expires_at": expires_at.isoformat(),
                },
            )
        return True