"""Event processor: claim pending events, build jobs, finalize.

Processing one event is three steps:

1. Claim, in one transaction on the event document. Missing or non-pending
   events are left alone; exhausted events become ``failed`` and are
   dead-lettered; events attempted within the lock window are left to the
   worker that claimed them. Otherwise ``attempts`` is incremented and
   ``last_attempt_at`` set.
2. Execute, outside any transaction: each recipient gets an in-app feed
   entry, and the event type's handler plans the message written as a job
   per enabled channel. Each job is created in its own transaction together
   with the recipient's rate-limit counters; a job over the limit is skipped.
3. Finalize, in a second transaction: ``processed`` on success; on failure
   the error is recorded and the event stays ``pending`` until its attempts
   are exhausted, at which point it becomes ``failed`` and is dead-lettered.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from herald.core.clock import Clock, SystemClock, safe_positive_int
from herald.core.errors import ValidationError
from herald.core.event_key import fanout_job_id
from herald.core.models import (
    EVENTS_COLLECTION,
    DeadLetterError,
    DeadLetterKind,
    Event,
    EventStatus,
    Job,
    JobKind,
    JobStatus,
    ProcessingState,
)
from herald.core.policy import RetryPolicy
from herald.core.rules import RateLimit, decide_channels
from herald.pipeline.channels import Channel
from herald.pipeline.deadletter import DeadLetterRecorder
from herald.pipeline.directory import RecipientDirectory
from herald.pipeline.handlers import get_handler
from herald.pipeline.inbox import InAppNotifier
from herald.pipeline.ratelimit import RateLimiter
from herald.pipeline.templates import validate_template_payload
from herald.store.base import DocumentStore, Transaction

if TYPE_CHECKING:
    from herald.pipeline.dispatcher import JobDispatcher

logger = logging.getLogger("herald.processor")

DEFAULT_BATCH_LIMIT = 50
DEFAULT_RUN_BUDGET = 45.0


class JobWrite(StrEnum):
    CREATED = "created"
    EXISTS = "exists"
    RATE_LIMITED = "rate_limited"


class Outcome(StrEnum):
    PROCESSED = "processed"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProcessResult:
    event_id: str
    ok: bool
    outcome: Outcome
    error: str | None = None
    jobs: list[str] = field(default_factory=list)


@dataclass
class EventRunStats:
    scanned: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    budget_exhausted: bool = False
    last_error: str | None = None


@dataclass
class _Claim:
    outcome: Outcome
    snapshot: dict[str, Any] | None = None


class EventProcessor:
    """Turns pending events into jobs."""

    def __init__(
        self,
        store: DocumentStore,
        directory: RecipientDirectory,
        channels: list[Channel],
        deadletters: DeadLetterRecorder | None = None,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        dispatchers: dict[JobKind, "JobDispatcher"] | None = None,
        run_budget: float = DEFAULT_RUN_BUDGET,
        rate_limiter: RateLimiter | None = None,
        inbox: InAppNotifier | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._channels = {channel.kind: channel for channel in channels}
        self._clock = clock or SystemClock()
        self._deadletters = deadletters or DeadLetterRecorder(store, self._clock)
        self.policy = policy or RetryPolicy()
        self._dispatchers = dispatchers or {}
        self.run_budget = run_budget
        self._rate_limiter = rate_limiter or RateLimiter()
        self._inbox = inbox or InAppNotifier(store, self._clock)

    async def claim(self, event_id: str) -> _Claim:
        now = self._clock.now()

        async def attempt(tx: Transaction) -> _Claim:
            data = await tx.get(EVENTS_COLLECTION, event_id)
            if data is None or data.get("status") != EventStatus.PENDING:
                return _Claim(Outcome.SKIPPED)

            state = ProcessingState.model_validate(data.get("processing") or {})
            if self.policy.exhausted(state.attempts):
                error = state.error or f"exhausted {state.attempts} attempts"
                await self._fail(tx, event_id, data, state, error)
                return _Claim(Outcome.FAILED)

            if self.policy.is_locked(state.last_attempt_at, now):
                return _Claim(Outcome.SKIPPED)

            claimed = ProcessingState(
                attempts=state.attempts + 1, last_attempt_at=now, error=state.error
            )
            tx.set(
                EVENTS_COLLECTION,
                event_id,
                {**data, "processing": claimed.model_dump(mode="json")},
            )
            return _Claim(Outcome.PROCESSED, snapshot=data)

        return await self._store.run_transaction(attempt)

    async def _fail(
        self,
        tx: Transaction,
        event_id: str,
        data: dict[str, Any],
        state: ProcessingState,
        error: str,
    ) -> None:
        state = state.model_copy(update={"error": error})
        failed = {
            **data,
            "status": EventStatus.FAILED.value,
            "processing": state.model_dump(mode="json"),
        }
        tx.set(EVENTS_COLLECTION, event_id, failed)
        await self._deadletters.record(
            DeadLetterKind.EVENT,
            event_id,
            failed,
            DeadLetterError(code="max_attempts", message=error),
            tx=tx,
        )

    async def execute(self, event: Event) -> list[tuple[JobKind, str]]:
        """Write the jobs for ``event``.

        Returns ``(kind, job_id)`` for each newly created job that should be
        handed to the immediate dispatch shortcut.
        """
        handler = get_handler(event.type)
        now = self._clock.now()
        immediate: list[tuple[JobKind, str]] = []

        for index, user_id in enumerate(event.target_user_ids):
            prefs = await self._directory.get_preferences(user_id)
            decision = decide_channels(event.type, event.payload, prefs, now)
            if not decision.allow:
                logger.info(
                    f"Suppressed for {user_id}: {decision.suppressed_reason}",
                    extra={"event_id": event.id, "event_type": event.type.value},
                )
                continue

            if decision.in_app:
                await self._inbox.notify(
                    event, user_id, decision.rule.category.value, handler.in_app(event.payload)
                )

            contact = await self._directory.get_contact(user_id)
            if contact is None:
                logger.warning(
                    f"Unknown recipient {user_id}",
                    extra={"event_id": event.id, "event_type": event.type.value},
                )
                continue

            plan = handler.build(event, contact)
            checked = validate_template_payload(plan.template, plan.template_payload)
            if not checked.ok:
                raise ValidationError(
                    f"{type(handler).__name__} built an invalid {plan.template} payload",
                    errors=checked.errors,
                )

            job_id = event.id if index == 0 else fanout_job_id(event.id, user_id)
            for kind, channel in self._channels.items():
                choice = decision.channel(kind)
                if not choice.enabled or not channel.address_of(contact):
                    continue
                job = channel.build_job(job_id, event, contact, plan, choice.deliver_after_at, now)
                written = await self._write_job(
                    channel, job, user_id, decision.rule.rate_limit(kind), now
                )
                if written is JobWrite.RATE_LIMITED:
                    logger.info(
                        f"Skipped {kind.value} job {job.id}: rate limit reached for {user_id}",
                        extra={"event_id": event.id, "job_id": job.id, "kind": kind.value},
                    )
                if written is not JobWrite.CREATED:
                    continue
                logger.info(
                    f"Queued {kind.value} job {job.id} ({job.status.value})",
                    extra={"event_id": event.id, "job_id": job.id, "kind": kind.value},
                )
                if (
                    decision.rule.immediate
                    and job.status is JobStatus.QUEUED
                    and job.deliver_after_at is None
                ):
                    immediate.append((kind, job.id))

        return immediate

    async def _write_job(
        self,
        channel: Channel,
        job: Job,
        user_id: str,
        limit: RateLimit | None,
        now: datetime,
    ) -> JobWrite:
        async def attempt(tx: Transaction) -> JobWrite:
            if await tx.get(channel.collection, job.id) is not None:
                return JobWrite.EXISTS
            if not await self._rate_limiter.acquire(tx, user_id, channel.kind, limit, now):
                return JobWrite.RATE_LIMITED
            tx.set(channel.collection, job.id, job.to_document())
            return JobWrite.CREATED

        return await self._store.run_transaction(attempt)

    async def finalize(self, event_id: str, error: str | None) -> EventStatus | None:
        async def attempt(tx: Transaction) -> EventStatus | None:
            data = await tx.get(EVENTS_COLLECTION, event_id)
            if data is None or data.get("status") != EventStatus.PENDING:
                return None

            state = ProcessingState.model_validate(data.get("processing") or {})
            if error is None:
                state = state.model_copy(update={"error": None})
                tx.set(
                    EVENTS_COLLECTION,
                    event_id,
                    {
                        **data,
                        "status": EventStatus.PROCESSED.value,
                        "processing": state.model_dump(mode="json"),
                    },
                )
                return EventStatus.PROCESSED

            if self.policy.exhausted(state.attempts):
                await self._fail(tx, event_id, data, state, error)
                return EventStatus.FAILED

            state = state.model_copy(update={"error": error})
            tx.set(EVENTS_COLLECTION, event_id, {**data, "processing": state.model_dump(mode="json")})
            return EventStatus.PENDING

        return await self._store.run_transaction(attempt)

    async def process_event(self, event_id: str) -> ProcessResult:
        """Claim, execute and finalize one event.

        Handler failures are caught and reported in the result; only store
        failures propagate.
        """
        claim = await self.claim(event_id)
        if claim.snapshot is None:
            return ProcessResult(event_id, ok=claim.outcome is Outcome.SKIPPED, outcome=claim.outcome)

        error: str | None = None
        immediate: list[tuple[JobKind, str]] = []
        event_type = claim.snapshot.get("type")
        try:
            event = Event.from_document(claim.snapshot)
            immediate = await self.execute(event)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(
                f"Handler failed for {event_type}: {e}",
                extra={"event_id": event_id, "event_type": event_type},
            )

        status = await self.finalize(event_id, error)

        if error is None:
            for kind, job_id in immediate:
                dispatcher = self._dispatchers.get(kind)
                if dispatcher is not None:
                    dispatcher.schedule_dispatch_now(job_id)
            return ProcessResult(
                event_id, ok=True, outcome=Outcome.PROCESSED, jobs=[job_id for _, job_id in immediate]
            )

        outcome = Outcome.FAILED if status is EventStatus.FAILED else Outcome.RETRY
        return ProcessResult(event_id, ok=False, outcome=outcome, error=error)

    async def run(self, limit: int = DEFAULT_BATCH_LIMIT) -> EventRunStats:
        """Process pending events, oldest first, within the run budget.

        A failure on one event never stops the batch. Store failures while
        querying propagate to the caller.
        """
        limit = safe_positive_int(limit, DEFAULT_BATCH_LIMIT)
        started = self._clock.monotonic()
        stats = EventRunStats()

        rows = await self._store.query(
            EVENTS_COLLECTION, "status", EventStatus.PENDING.value, order_by="created_at", limit=limit
        )
        stats.scanned = len(rows)

        for event_id, _ in rows:
            if self._clock.monotonic() - started >= self.run_budget:
                stats.budget_exhausted = True
                logger.warning(f"Run budget of {self.run_budget}s exhausted, stopping early")
                break
            try:
                result = await self.process_event(event_id)
            except Exception as e:
                stats.failed += 1
                stats.last_error = f"{event_id}: {e}"
                logger.error(f"Processing {event_id} failed: {e}", extra={"event_id": event_id})
                continue

            if result.outcome is Outcome.PROCESSED:
                stats.processed += 1
            elif result.outcome is Outcome.SKIPPED:
                stats.skipped += 1
            else:
                stats.failed += 1
                stats.last_error = f"{event_id}: {result.error or result.outcome.value}"

        logger.info(
            f"Event sweep: scanned={stats.scanned} processed={stats.processed} "
            f"failed={stats.failed} skipped={stats.skipped}"
        )
        return stats
