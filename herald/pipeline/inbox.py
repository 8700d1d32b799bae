"""In-app notification feed.

Each recipient has a feed collection. The processor writes one entry per
event, keyed by the event id or by the handler's collapse key, so that
reprocessing an event rewrites nothing and a burst of messages on one thread
updates a single entry in place.
"""

import logging

from herald.core.clock import Clock, SystemClock
from herald.core.models import Event, InAppNotification, feed_collection
from herald.pipeline.handlers import InAppMessage
from herald.store.base import DocumentStore, Transaction

logger = logging.getLogger("herald.inbox")


class InAppNotifier:
    """Writes feed entries for processed events."""

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    async def notify(
        self, event: Event, user_id: str, category: str, message: InAppMessage
    ) -> bool:
        """Write the feed entry of ``event`` for ``user_id``.

        Returns False if the entry already reflects this event. A collapsed
        entry last written by another event is overwritten and marked unread.
        """
        entry = InAppNotification(
            id=message.collapse_key or event.id,
            user_id=user_id,
            category=category,
            type=message.type,
            title=message.title,
            body=message.body,
            deep_link_url=message.link_url,
            link_label=message.link_label,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            event_id=event.id,
            event_type=event.type,
            metadata=message.metadata,
            created_at=self._clock.now(),
            test=event.test,
        )
        collection = feed_collection(user_id)

        async def write(tx: Transaction) -> bool:
            current = await tx.get(collection, entry.id)
            if current is not None and current.get("event_id") == event.id:
                return False
            tx.set(collection, entry.id, entry.to_document(), merge=True)
            return True

        written = await self._store.run_transaction(write)
        if written:
            logger.info(
                f"Feed entry {entry.id} written for {user_id}",
                extra={"event_id": event.id, "event_type": event.type.value},
            )
        return written

    async def entries(self, user_id: str, limit: int = 50) -> list[InAppNotification]:
        """Unread feed entries of ``user_id``, newest first."""
        rows = await self._store.query(
            feed_collection(user_id), "read", False, order_by="created_at", limit=limit, descending=True
        )
        return [InAppNotification.from_document(data) for _, data in rows]