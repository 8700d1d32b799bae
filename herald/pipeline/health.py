"""Per-pipeline health records for external monitoring."""

import logging

from herald.core.clock import Clock, SystemClock, clamp_int
from herald.core.models import PIPELINE_STATUS_COLLECTION, PipelineStatus
from herald.store.base import DocumentStore

logger = logging.getLogger("herald.health")

PIPELINES = ("events", "email", "sms")
MAX_ERROR_LENGTH = 2000


class PipelineStatusRecorder:
    """Writes one status document per pipeline after every run."""

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    async def record(
        self,
        pipeline: str,
        scanned: int = 0,
        processed: int = 0,
        errors: int = 0,
        last_error: str | None = None,
        duration_ms: float = 0,
    ) -> PipelineStatus:
        status = PipelineStatus(
            pipeline=pipeline,
            last_run_at=self._clock.now(),
            scanned_count=clamp_int(scanned),
            processed_count=clamp_int(processed),
            errors_count=clamp_int(errors),
            last_error=last_error[:MAX_ERROR_LENGTH] if last_error else None,
            duration_ms=clamp_int(duration_ms),
        )
        await self._store.set(PIPELINE_STATUS_COLLECTION, pipeline, status.to_document())
        return status

    async def get(self, pipeline: str) -> PipelineStatus | None:
        data = await self._store.get(PIPELINE_STATUS_COLLECTION, pipeline)
        return PipelineStatus.from_document(data) if data else None

    async def all(self) -> dict[str, PipelineStatus | None]:
        return {pipeline: await self.get(pipeline) for pipeline in PIPELINES}
