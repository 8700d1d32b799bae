"""Document models persisted by the pipeline.

Documents are stored as plain JSON-compatible dicts (``to_document``) and
parsed back with ``from_document``; the store never sees model instances.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, field_validator, model_validator

from herald.core.clock import ensure_utc
from herald.core.payloads import EntityType, EventPayload, EventType

EVENTS_COLLECTION = "events"
PIPELINE_STATUS_COLLECTION = "pipelineStatus"


def feed_collection(user_id: str) -> str:
    """Collection holding the in-app notification feed of one user."""
    return f"users/{user_id}/notifications"


class EventStatus(StrEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class JobStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobKind(StrEnum):
    EMAIL = "email"
    SMS = "sms"

    @property
    def collection(self) -> str:
        return f"{self.value}Jobs"


class DeadLetterKind(StrEnum):
    EVENT = "event"
    EMAIL = "email"
    SMS = "sms"

    @property
    def collection(self) -> str:
        if self is DeadLetterKind.EVENT:
            return "notificationDeadLetters"
        return f"{self.value}JobDeadLetters"

    @property
    def primary_collection(self) -> str:
        if self is DeadLetterKind.EVENT:
            return EVENTS_COLLECTION
        return JobKind(self.value).collection


class _Document(BaseModel):
    model_config = {"extra": "ignore", "validate_assignment": True}

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> Self:
        return cls.model_validate(data)


class ProcessingState(BaseModel):
    """Claim bookkeeping of an event."""

    attempts: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    error: str | None = None

    @field_validator("last_attempt_at")
    @classmethod
    def normalize_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class Event(_Document):
    """Durable record of a domain occurrence awaiting processing."""

    id: str
    type: EventType
    actor_id: str | None = None
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    target_user_ids: list[str] = Field(min_length=1)
    payload: EventPayload
    event_key: str = Field(min_length=1)
    status: EventStatus = EventStatus.PENDING
    processing: ProcessingState = Field(default_factory=ProcessingState)
    created_at: datetime
    test: bool = False

    @field_validator("created_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def payload_matches_type(self) -> Self:
        if self.payload.type != self.type.value:
            raise ValueError(
                f"payload type {self.payload.type!r} does not match event type {self.type.value!r}"
            )
        return self


class Job(_Document):
    """One unit of outbound delivery work derived from an event."""

    id: str
    kind: JobKind
    event_id: str | None = None
    user_id: str | None = None
    to_address: str = ""
    template: str | None = None
    template_payload: dict[str, Any] = Field(default_factory=dict)
    body: str | None = None
    status: JobStatus = JobStatus.QUEUED
    attempts: int = Field(default=0, ge=0)
    last_attempt_at: datetime | None = None
    deliver_after_at: datetime | None = None
    error: str | None = None
    message_id: str | None = None
    created_at: datetime
    test: bool = False

    @field_validator("last_attempt_at", "deliver_after_at", "created_at")
    @classmethod
    def normalize_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class DeadLetterError(BaseModel):
    code: str | None = None
    message: str


class DeadLetter(_Document):
    """Terminal record of an event or job whose retry budget is exhausted."""

    id: str
    kind: DeadLetterKind
    record_type: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    user_ids: list[str] = Field(default_factory=list)
    attempts: int = 0
    error: DeadLetterError
    snapshot: dict[str, Any] = Field(default_factory=dict)
    suppressed: bool = False
    suppressed_reason: str | None = None
    manual_retry_count: int = 0
    last_manual_retry_at: datetime | None = None
    last_manual_retry_by: str | None = None
    created_at: datetime
    updated_at: datetime


class PipelineStatus(_Document):
    """Health record persisted after every run of one pipeline phase."""

    pipeline: str
    last_run_at: datetime
    scanned_count: int = 0
    processed_count: int = 0
    errors_count: int = 0
    last_error: str | None = None
    duration_ms: int = 0


class InAppNotification(_Document):
    """Entry in a user's in-app notification feed.

    The id is the event id, or a collapse key shared by events that update
    one entry in place (one entry per message thread).
    """

    id: str
    user_id: str
    category: str
    type: str
    title: str
    body: str
    read: bool = False
    deep_link_url: str | None = None
    link_label: str | None = None
    entity_type: EntityType
    entity_id: str
    event_id: str
    event_type: EventType
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    test: bool = False

    @field_validator("created_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
