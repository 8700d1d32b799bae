"""Manual trigger: run one or all pipeline phases and report the counts."""

import logging
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

from herald.core.clock import Clock, SystemClock, clamp_int
from herald.core.models import JobKind
from herald.pipeline.dispatcher import JobDispatcher, JobRunStats
from herald.pipeline.health import PipelineStatusRecorder
from herald.pipeline.processor import EventProcessor, EventRunStats

logger = logging.getLogger("herald.runner")

DEFAULT_RUN_LIMIT = 30
MAX_RUN_LIMIT = 100


class RunKind(StrEnum):
    ALL = "all"
    EVENTS = "events"
    EMAIL = "email"
    SMS = "sms"


@dataclass
class PhaseReport:
    ok: bool
    scanned: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0
    recovered: int = 0
    budget_exhausted: bool = False
    last_error: str | None = None
    duration_ms: int = 0


@dataclass
class RunReport:
    ok: bool
    kind: RunKind
    limit: int
    events: PhaseReport | None = None
    email: PhaseReport | None = None
    sms: PhaseReport | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


def clamp_run_limit(limit: object) -> int:
    """Clamp ``limit`` into 1..100; anything non-numeric becomes the default."""
    if isinstance(limit, bool) or not isinstance(limit, int | float):
        return DEFAULT_RUN_LIMIT
    return max(1, clamp_int(limit, default=DEFAULT_RUN_LIMIT, maximum=MAX_RUN_LIMIT))


class PipelineRunner:
    """Runs the event sweep and the channel sweeps on demand.

    Each phase is isolated: a phase that raises is reported with ``ok=False``
    and the remaining phases still run. A status document is written after
    every phase.
    """

    def __init__(
        self,
        processor: EventProcessor,
        dispatchers: dict[JobKind, JobDispatcher],
        status: PipelineStatusRecorder,
        clock: Clock | None = None,
    ) -> None:
        self.processor = processor
        self.dispatchers = dispatchers
        self.status = status
        self._clock = clock or SystemClock()

    async def run(self, kind: RunKind | str = RunKind.ALL, limit: object = DEFAULT_RUN_LIMIT) -> RunReport:
        kind = RunKind(kind)
        limit = clamp_run_limit(limit)
        report = RunReport(ok=True, kind=kind, limit=limit)

        if kind in (RunKind.ALL, RunKind.EVENTS):
            report.events = await self._run_events(limit)
        for job_kind in (JobKind.EMAIL, JobKind.SMS):
            if kind in (RunKind.ALL, RunKind(job_kind.value)):
                setattr(report, job_kind.value, await self._run_jobs(job_kind, limit))

        # immediate dispatches scheduled during the event sweep
        for dispatcher in self.dispatchers.values():
            await dispatcher.drain()

        phases = [p for p in (report.events, report.email, report.sms) if p is not None]
        failed = [p for p in phases if not p.ok]
        if failed:
            report.ok = False
            report.error = failed[0].last_error
        return report

    async def _run_events(self, limit: int) -> PhaseReport:
        started = self._clock.monotonic()
        try:
            stats: EventRunStats = await self.processor.run(limit)
        except Exception as e:
            logger.error(f"Event sweep failed: {e}")
            phase = PhaseReport(ok=False, last_error=f"{type(e).__name__}: {e}")
        else:
            phase = PhaseReport(
                ok=True,
                scanned=stats.scanned,
                processed=stats.processed,
                failed=stats.failed,
                skipped=stats.skipped,
                budget_exhausted=stats.budget_exhausted,
                last_error=stats.last_error,
            )
        phase.duration_ms = self._elapsed_ms(started)
        await self._record("events", phase)
        return phase

    async def _run_jobs(self, kind: JobKind, limit: int) -> PhaseReport:
        started = self._clock.monotonic()
        dispatcher = self.dispatchers.get(kind)
        if dispatcher is None:
            phase = PhaseReport(ok=False, last_error=f"no {kind.value} dispatcher configured")
        else:
            try:
                stats: JobRunStats = await dispatcher.run(limit)
            except Exception as e:
                logger.error(f"{kind.value} sweep failed: {e}")
                phase = PhaseReport(ok=False, last_error=f"{type(e).__name__}: {e}")
            else:
                phase = PhaseReport(
                    ok=True,
                    scanned=stats.scanned,
                    processed=stats.sent,
                    failed=stats.failed,
                    skipped=stats.skipped,
                    requeued=stats.requeued,
                    recovered=stats.recovered,
                    budget_exhausted=stats.budget_exhausted,
                    last_error=stats.last_error,
                )
        phase.duration_ms = self._elapsed_ms(started)
        await self._record(kind.value, phase)
        return phase

    async def _record(self, pipeline: str, phase: PhaseReport) -> None:
        try:
            await self.status.record(
                pipeline,
                scanned=phase.scanned,
                processed=phase.processed,
                errors=phase.failed + (0 if phase.ok else 1),
                last_error=phase.last_error,
                duration_ms=phase.duration_ms,
            )
        except Exception as e:
            logger.error(f"Could not record {pipeline} status: {e}")

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock.monotonic() - started) * 1000))
