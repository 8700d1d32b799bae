"""Herald - asynchronous event-to-job notification pipeline."""

from herald.config import Settings, build_pipeline
from herald.core import (
    Event,
    EventType,
    HeraldError,
    Job,
    JobKind,
    RetryPolicy,
    ValidationError,
)
from herald.pipeline import (
    DeadLetterRecorder,
    EventEmitter,
    EventProcessor,
    JobDispatcher,
    PipelineRunner,
)
from herald.store import MemoryStore, RedisStore

__version__ = "0.1.0"

__all__ = [
    # Core
    "Event",
    "EventType",
    "Job",
    "JobKind",
    "RetryPolicy",
    # Pipeline
    "EventEmitter",
    "EventProcessor",
    "JobDispatcher",
    "DeadLetterRecorder",
    "PipelineRunner",
    # Stores
    "MemoryStore",
    "RedisStore",
    # Wiring
    "Settings",
    "build_pipeline",
    # Errors
    "HeraldError",
    "ValidationError",
    # Meta
    "__version__",
]
