"""Job dispatcher: batch sweep and immediate dispatch over one state machine.

::

    queued --(claim)--> processing --(deliver ok)--> sent
    processing --(soft failure / exception)--> queued (backoff)
    queued --(attempts >= max at claim)--> failed (+ dead letter)
    queued --(invalid address or payload at claim)--> failed
    processing --(claim older than lock window)--> queued (recovered)

The sweep (``run``) and the immediate shortcut (``dispatch_now``) both go
through ``dispatch``; whichever claims a job first delivers it.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import StrEnum

from pydantic import ValidationError as PydanticValidationError

from herald.core.clock import Clock, SystemClock, safe_positive_int
from herald.core.errors import PermanentDeliveryError
from herald.core.models import DeadLetterError, DeadLetterKind, Job, JobKind, JobStatus
from herald.core.policy import RetryPolicy
from herald.pipeline.channels import Channel
from herald.pipeline.deadletter import DeadLetterRecorder
from herald.store.base import DocumentStore, Transaction

logger = logging.getLogger("herald.dispatcher")

DEFAULT_BATCH_LIMIT = 50
DEFAULT_RUN_BUDGET = 45.0
DEFAULT_IMMEDIATE_BUDGET = 5.0
WAIT_FOR_JOB_TIMEOUT = 2.0
WAIT_FOR_JOB_INTERVAL = 0.1
MAX_ERROR_LENGTH = 2000


class Delivery(StrEnum):
    SENT = "sent"
    REQUEUED = "requeued"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DispatchResult:
    job_id: str
    outcome: Delivery
    error: str | None = None
    message_id: str | None = None


@dataclass
class JobRunStats:
    scanned: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0
    recovered: int = 0
    budget_exhausted: bool = False
    last_error: str | None = None


class JobDispatcher:
    """Delivers the queued jobs of one channel."""

    def __init__(
        self,
        store: DocumentStore,
        channel: Channel,
        deadletters: DeadLetterRecorder | None = None,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        run_budget: float = DEFAULT_RUN_BUDGET,
        immediate_budget: float = DEFAULT_IMMEDIATE_BUDGET,
        wait_for_job_timeout: float = WAIT_FOR_JOB_TIMEOUT,
        wait_for_job_interval: float = WAIT_FOR_JOB_INTERVAL,
    ) -> None:
        self._store = store
        self.channel = channel
        self._clock = clock or SystemClock()
        self._deadletters = deadletters or DeadLetterRecorder(store, self._clock)
        self.policy = policy or RetryPolicy()
        self.run_budget = run_budget
        self.immediate_budget = immediate_budget
        self._wait_timeout = wait_for_job_timeout
        self._wait_interval = wait_for_job_interval
        self._pending: set[asyncio.Task] = set()

    @property
    def kind(self) -> JobKind:
        return self.channel.kind

    @property
    def collection(self) -> str:
        return self.channel.collection

    def _log_extra(self, job: Job) -> dict:
        return {
            "job_id": job.id,
            "kind": self.kind.value,
            "attempts": job.attempts,
            "event_id": job.event_id,
        }

    # -- claim -------------------------------------------------------------

    async def claim(self, job_id: str) -> Job | DispatchResult:
        """Claim ``job_id`` for delivery.

        Returns the claimed job, or a ``DispatchResult`` saying why it was
        not claimed.
        """
        now = self._clock.now()

        async def attempt(tx: Transaction) -> Job | DispatchResult:
            data = await tx.get(self.collection, job_id)
            if data is None or data.get("status") != JobStatus.QUEUED:
                return DispatchResult(job_id, Delivery.SKIPPED)

            try:
                job = Job.from_document(data)
            except PydanticValidationError as e:
                error = f"malformed job: {e.error_count()} errors"
                tx.set(
                    self.collection,
                    job_id,
                    {"status": JobStatus.FAILED.value, "error": error},
                    merge=True,
                )
                return DispatchResult(job_id, Delivery.FAILED, error=error)

            if self.policy.exhausted(job.attempts):
                failed = job.model_copy(
                    update={"status": JobStatus.FAILED, "error": job.error or "max attempts reached"}
                )
                tx.set(self.collection, job_id, failed.to_document())
                await self._deadletters.record(
                    DeadLetterKind(self.kind.value),
                    job_id,
                    failed.to_document(),
                    DeadLetterError(code="max_attempts", message=failed.error or ""),
                    tx=tx,
                )
                return DispatchResult(job_id, Delivery.FAILED, error=failed.error)

            if job.deliver_after_at is not None and job.deliver_after_at > now:
                return DispatchResult(job_id, Delivery.SKIPPED)
            if self.policy.in_backoff(job.attempts, job.last_attempt_at, now):
                return DispatchResult(job_id, Delivery.SKIPPED)

            try:
                self.channel.validate(job)
            except PermanentDeliveryError as e:
                failed = job.model_copy(
                    update={"status": JobStatus.FAILED, "error": f"{e.code}: {e}"[:MAX_ERROR_LENGTH]}
                )
                tx.set(self.collection, job_id, failed.to_document())
                logger.warning(
                    f"Permanent failure at claim: {e}", extra={**self._log_extra(job), "status": "failed"}
                )
                return DispatchResult(job_id, Delivery.FAILED, error=failed.error)

            claimed = job.model_copy(
                update={
                    "status": JobStatus.PROCESSING,
                    "attempts": job.attempts + 1,
                    "last_attempt_at": now,
                }
            )
            tx.set(self.collection, job_id, claimed.to_document())
            return claimed

        return await self._store.run_transaction(attempt)

    # -- outcome -----------------------------------------------------------

    async def record_outcome(
        self,
        job: Job,
        status: JobStatus,
        error: str | None = None,
        message_id: str | None = None,
    ) -> bool:
        """Write the delivery outcome if ``job`` still holds its claim.

        Returns False when another worker has taken the job over since.
        """

        async def attempt(tx: Transaction) -> bool:
            data = await tx.get(self.collection, job.id)
            if (
                data is None
                or data.get("status") != JobStatus.PROCESSING
                or data.get("attempts") != job.attempts
            ):
                return False
            update: dict = {
                "status": status.value,
                "error": error[:MAX_ERROR_LENGTH] if error else None,
            }
            if message_id is not None:
                update["message_id"] = message_id
            tx.set(self.collection, job.id, update, merge=True)
            return True

        written = await self._store.run_transaction(attempt)
        if not written:
            logger.warning(
                f"Claim on {job.id} was superseded, {status.value} outcome not recorded",
                extra=self._log_extra(job),
            )
        return written

    # -- delivery ----------------------------------------------------------

    async def deliver(self, job: Job) -> DispatchResult:
        """Render and send a claimed job, then record the outcome."""
        try:
            message = self.channel.render(job)
        except PermanentDeliveryError as e:
            error = f"{e.code}: {e}"
            await self.record_outcome(job, JobStatus.FAILED, error=error)
            logger.error(f"Render failed, job is terminal: {e}", extra=self._log_extra(job))
            return DispatchResult(job.id, Delivery.FAILED, error=error)

        try:
            result = await self.channel.send(job, message)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"Send raised, requeueing: {error}", extra=self._log_extra(job))
            try:
                await self.record_outcome(job, JobStatus.QUEUED, error=error)
            except Exception as write_error:
                logger.error(
                    f"Requeue after send error failed: {write_error} (send error: {error})",
                    extra=self._log_extra(job),
                )
            return DispatchResult(job.id, Delivery.REQUEUED, error=error)

        if result.success:
            await self.record_outcome(job, JobStatus.SENT, message_id=result.message_id)
            logger.info(f"Sent {job.id}", extra={**self._log_extra(job), "status": "sent"})
            return DispatchResult(job.id, Delivery.SENT, message_id=result.message_id)

        error = result.error or "send failed"
        await self.record_outcome(job, JobStatus.QUEUED, error=error)
        logger.warning(f"Send failed, requeued: {error}", extra=self._log_extra(job))
        return DispatchResult(job.id, Delivery.REQUEUED, error=error)

    async def dispatch(self, job_id: str) -> DispatchResult:
        """Claim and deliver one job. Store failures propagate."""
        claimed = await self.claim(job_id)
        if isinstance(claimed, DispatchResult):
            return claimed
        return await self.deliver(claimed)

    # -- immediate shortcut ------------------------------------------------

    async def dispatch_now(self, job_id: str, wait_for_job: bool = False) -> DispatchResult | None:
        """Try to deliver ``job_id`` right away. Never raises.

        With ``wait_for_job`` the job document is polled for up to
        ``wait_for_job_timeout`` seconds before giving up. Returns None if the
        job never appeared or an error occurred; the sweep will pick it up.
        """
        try:
            if wait_for_job and not await self._wait_for(job_id):
                logger.info(f"Job {job_id} did not appear, leaving it to the sweep")
                return None
            return await self.dispatch(job_id)
        except Exception as e:
            logger.warning(f"Immediate dispatch of {job_id} failed: {e}", extra={"job_id": job_id})
            return None

    async def _wait_for(self, job_id: str) -> bool:
        polls = max(1, math.ceil(self._wait_timeout / self._wait_interval))
        for i in range(polls):
            if await self._store.get(self.collection, job_id) is not None:
                return True
            if i < polls - 1:
                await asyncio.sleep(self._wait_interval)
        return False

    def schedule_dispatch_now(self, job_id: str) -> asyncio.Task:
        """Fire the immediate shortcut for ``job_id`` in the background.

        ``immediate_budget`` bounds only the wait for the job document to
        appear. A claimed delivery is never cancelled: it runs to completion
        so its outcome is recorded exactly as the sweep would record it.
        """
        task = asyncio.create_task(self._dispatch_in_background(job_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _dispatch_in_background(self, job_id: str) -> DispatchResult | None:
        try:
            visible = await asyncio.wait_for(self._wait_for(job_id), self.immediate_budget)
        except TimeoutError:
            visible = False
        except Exception as e:
            logger.warning(f"Immediate dispatch of {job_id} failed: {e}", extra={"job_id": job_id})
            return None
        if not visible:
            logger.info(
                f"Job {job_id} not visible within {self.immediate_budget}s, leaving it to the sweep",
                extra={"job_id": job_id},
            )
            return None
        return await self.dispatch_now(job_id)

    async def drain(self) -> None:
        """Wait for every scheduled immediate dispatch to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- sweep -------------------------------------------------------------

    async def recover_stale(self, limit: int = DEFAULT_BATCH_LIMIT) -> int:
        """Requeue ``processing`` jobs whose claim is older than the lock window.

        A worker that crashed mid-delivery leaves its job ``processing``;
        returning it to ``queued`` lets the regular claim path retry it.
        """
        now = self._clock.now()
        rows = await self._store.query(
            self.collection, "status", JobStatus.PROCESSING.value, order_by="created_at", limit=limit
        )
        recovered = 0
        for job_id, _ in rows:

            async def attempt(tx: Transaction, job_id: str = job_id) -> bool:
                data = await tx.get(self.collection, job_id)
                if data is None or data.get("status") != JobStatus.PROCESSING:
                    return False
                job = Job.from_document(data)
                if self.policy.is_locked(job.last_attempt_at, now):
                    return False
                tx.set(
                    self.collection,
                    job_id,
                    {"status": JobStatus.QUEUED.value, "error": job.error or "claim expired"},
                    merge=True,
                )
                return True

            try:
                if await self._store.run_transaction(attempt):
                    recovered += 1
                    logger.warning(f"Recovered stale claim on {job_id}", extra={"job_id": job_id})
            except PydanticValidationError as e:
                logger.error(f"Cannot recover malformed job {job_id}: {e}", extra={"job_id": job_id})
        return recovered

    async def run(self, limit: int = DEFAULT_BATCH_LIMIT) -> JobRunStats:
        """Deliver queued jobs, oldest first, within the run budget.

        A failure on one job never stops the batch. Store failures while
        querying propagate to the caller.
        """
        limit = safe_positive_int(limit, DEFAULT_BATCH_LIMIT)
        started = self._clock.monotonic()
        stats = JobRunStats()

        stats.recovered = await self.recover_stale(limit)
        rows = await self._store.query(
            self.collection, "status", JobStatus.QUEUED.value, order_by="created_at", limit=limit
        )
        stats.scanned = len(rows)

        for job_id, _ in rows:
            if self._clock.monotonic() - started >= self.run_budget:
                stats.budget_exhausted = True
                logger.warning(f"Run budget of {self.run_budget}s exhausted, stopping early")
                break
            try:
                result = await self.dispatch(job_id)
            except Exception as e:
                stats.failed += 1
                stats.last_error = f"{job_id}: {e}"
                logger.error(f"Dispatching {job_id} failed: {e}", extra={"job_id": job_id})
                continue

            if result.outcome is Delivery.SENT:
                stats.sent += 1
            elif result.outcome is Delivery.REQUEUED:
                stats.requeued += 1
                stats.last_error = f"{job_id}: {result.error}"
            elif result.outcome is Delivery.FAILED:
                stats.failed += 1
                stats.last_error = f"{job_id}: {result.error or 'failed'}"
            else:
                stats.skipped += 1

        logger.info(
            f"{self.kind.value} sweep: scanned={stats.scanned} sent={stats.sent} "
            f"failed={stats.failed} requeued={stats.requeued} skipped={stats.skipped} "
            f"recovered={stats.recovered}"
        )
        return stats
