"""Core types for the Herald notification pipeline.

Types:
    Event, Job, DeadLetter, PipelineStatus: Persisted documents.
    EventType, EventPayload: Closed set of event types and their payloads.
    NotificationPreferences: Per-user channel, category and quiet-hours settings.
    RetryPolicy: Attempt budget, claim lock window and backoff table.

Errors:
    HeraldError and its subclasses (ValidationError, ConfigurationError,
    PermanentDeliveryError, StoreError, ...).
"""

from herald.core.clock import Clock, SystemClock
from herald.core.errors import (
    ConfigurationError,
    HeraldError,
    NotFoundError,
    PermanentDeliveryError,
    RetryRefusedError,
    StoreError,
    StoreUnavailableError,
    TransactionConflictError,
    UnknownEventTypeError,
    ValidationError,
)
from herald.core.models import (
    DeadLetter,
    DeadLetterKind,
    Event,
    EventStatus,
    InAppNotification,
    Job,
    JobKind,
    JobStatus,
    PipelineStatus,
)
from herald.core.payloads import EntityType, EventPayload, EventType, validate_payload
from herald.core.policy import RetryPolicy
from herald.core.preferences import NotificationPreferences, default_preferences

__all__ = [
    "Clock",
    "SystemClock",
    # Documents
    "Event",
    "EventStatus",
    "Job",
    "JobKind",
    "JobStatus",
    "DeadLetter",
    "DeadLetterKind",
    "PipelineStatus",
    "InAppNotification",
    # Payloads
    "EntityType",
    "EventPayload",
    "EventType",
    "validate_payload",
    # Policy
    "NotificationPreferences",
    "RetryPolicy",
    "default_preferences",
    # Errors
    "HeraldError",
    "ValidationError",
    "UnknownEventTypeError",
    "ConfigurationError",
    "PermanentDeliveryError",
    "NotFoundError",
    "RetryRefusedError",
    "StoreError",
    "StoreUnavailableError",
    "TransactionConflictError",
]
