"""Pipeline stages: emit, process, dispatch, dead-letter, report."""

from herald.pipeline.channels import Channel, EmailChannel, SmsChannel
from herald.pipeline.deadletter import DeadLetterRecorder
from herald.pipeline.directory import (
    CachedRecipientDirectory,
    Contact,
    InMemoryDirectory,
    RecipientDirectory,
    StoreDirectory,
)
from herald.pipeline.dispatcher import JobDispatcher
from herald.pipeline.emitter import EmitResult, EventEmitter
from herald.pipeline.health import PipelineStatusRecorder
from herald.pipeline.inbox import InAppNotifier
from herald.pipeline.processor import EventProcessor
from herald.pipeline.ratelimit import RateLimiter
from herald.pipeline.runner import PipelineRunner, RunKind, RunReport

__all__ = [
    "CachedRecipientDirectory",
    "Channel",
    "Contact",
    "DeadLetterRecorder",
    "EmailChannel",
    "EmitResult",
    "EventEmitter",
    "EventProcessor",
    "InAppNotifier",
    "InMemoryDirectory",
    "JobDispatcher",
    "PipelineRunner",
    "PipelineStatusRecorder",
    "RateLimiter",
    "RecipientDirectory",
    "RunKind",
    "RunReport",
    "SmsChannel",
    "StoreDirectory",
]
