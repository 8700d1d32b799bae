"""Event emission with idempotency keys."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from herald.core.clock import Clock, SystemClock
from herald.core.errors import UnknownEventTypeError, ValidationError
from herald.core.event_key import build_event_key, event_id_for_key
from herald.core.models import EVENTS_COLLECTION, EntityType, Event
from herald.core.payloads import EventType, validate_payload
from herald.store.base import DocumentStore

if TYPE_CHECKING:
    from herald.pipeline.processor import EventProcessor, ProcessResult

logger = logging.getLogger("herald.emitter")


@dataclass(frozen=True)
class EmitResult:
    created: bool
    event_id: str
    event_key: str


class EventEmitter:
    """Creates Event documents, at most one per logical occurrence.

    Re-emitting the same ``(type, entity_id, optional_hash)`` is a no-op that
    returns ``created=False`` with the same ``event_id``, so callers may
    retry freely.
    """

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    def build_event(
        self,
        type: EventType | str,
        actor_id: str | None,
        entity_type: EntityType | str,
        entity_id: str,
        target_user_ids: Sequence[str],
        payload: Any,
        optional_hash: str | None = None,
        test: bool = False,
    ) -> Event:
        """Validate the inputs and build the Event without writing it.

        Raises:
            UnknownEventTypeError: If ``type`` is not a known event type.
            ValidationError: If the payload or any other field is invalid.
        """
        try:
            event_type = EventType(type)
        except ValueError as e:
            raise UnknownEventTypeError(f"unknown event type {type!r}") from e

        result = validate_payload(event_type.value, payload)
        if not result.ok:
            raise ValidationError(f"invalid payload for {event_type.value}", errors=result.errors)

        event_key = build_event_key(event_type.value, entity_id, optional_hash)
        try:
            return Event(
                id=event_id_for_key(event_key),
                type=event_type,
                actor_id=actor_id,
                entity_type=entity_type,
                entity_id=entity_id,
                target_user_ids=list(target_user_ids),
                payload=result.data,
                event_key=event_key,
                created_at=self._clock.now(),
                test=test,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid event {event_type.value}", errors=e.errors(include_url=False)
            ) from e

    async def emit(
        self,
        type: EventType | str,
        actor_id: str | None,
        entity_type: EntityType | str,
        entity_id: str,
        target_user_ids: Sequence[str],
        payload: Any,
        optional_hash: str | None = None,
        test: bool = False,
    ) -> EmitResult:
        """Create the Event if no Event with the same key exists.

        Exactly one document write; no jobs are created here.

        Raises:
            UnknownEventTypeError: If ``type`` is not a known event type.
            ValidationError: If the payload does not match its schema. Nothing
                is written in that case.
        """
        event = self.build_event(
            type, actor_id, entity_type, entity_id, target_user_ids, payload, optional_hash, test
        )
        created = await self._store.create_if_absent(
            EVENTS_COLLECTION, event.id, event.to_document()
        )
        logger.info(
            f"{'Emitted' if created else 'Already emitted'} {event.type.value} for {event.entity_id}",
            extra={"event_id": event.id, "event_type": event.type.value},
        )
        return EmitResult(created=created, event_id=event.id, event_key=event.event_key)

    async def emit_for_user(
        self,
        type: EventType | str,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        payload: Any,
        actor_id: str | None = None,
        optional_hash: str | None = None,
        test: bool = False,
    ) -> EmitResult:
        """Emit an event targeted at a single user."""
        return await self.emit(
            type, actor_id, entity_type, entity_id, [user_id], payload, optional_hash, test
        )

    async def emit_and_process(
        self,
        processor: "EventProcessor",
        type: EventType | str,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        payload: Any,
        actor_id: str | None = None,
        optional_hash: str | None = None,
        test: bool = False,
    ) -> tuple[EmitResult, "ProcessResult | None"]:
        """Emit for one user, then process the event right away.

        Emission errors propagate. Processing failures never do: the event
        stays pending for the next sweep and the failed result is returned.
        """
        emitted = await self.emit_for_user(
            type, user_id, entity_type, entity_id, payload, actor_id, optional_hash, test
        )
        try:
            processed = await processor.process_event(emitted.event_id)
        except Exception as e:
            logger.error(
                f"Inline processing failed: {e}",
                extra={"event_id": emitted.event_id, "event_type": str(type)},
            )
            processed = None
        return emitted, processed
