"""Tests for JobDispatcher."""

import asyncio
from datetime import timedelta

import pytest

from herald.core.models import DeadLetterKind, Job, JobKind, JobStatus
from herald.pipeline.channels import EmailChannel
from herald.pipeline.dispatcher import Delivery, JobDispatcher
from herald.providers.base import SendResult
from herald.providers.memory import RecordingProvider
from tests.conftest import START

EMAIL_PAYLOAD = {
    "recipient_name": "Ada",
    "order_id": "O1",
    "listing_title": "Vintage Camera",
    "order_url": "https://example.com/orders/O1",
}


class SlowProvider(RecordingProvider):
    """Provider whose reply arrives ``delay`` seconds after the call."""

    def __init__(self, name: str, delay: float) -> None:
        super().__init__(name)
        self.delay = delay

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        await asyncio.sleep(self.delay)
        return await super().send(to, subject, body)


async def put_email_job(store, job_id="job_1", **overrides):
    fields = {
        "id": job_id,
        "kind": JobKind.EMAIL,
        "event_id": "evt_1",
        "user_id": "u1",
        "to_address": "buyer@example.com",
        "template": "order_delivered",
        "template_payload": EMAIL_PAYLOAD,
        "created_at": START,
    }
    fields.update(overrides)
    job = Job(**fields)
    await store.set(JobKind.EMAIL.collection, job_id, job.to_document())
    return job


async def put_sms_job(store, job_id="sms_1", **overrides):
    fields = {
        "id": job_id,
        "kind": JobKind.SMS,
        "event_id": "evt_1",
        "user_id": "u1",
        "to_address": "+15555550101",
        "template": "order_sla_overdue",
        "body": "Order O1 is 3h overdue.",
        "created_at": START,
    }
    fields.update(overrides)
    job = Job(**fields)
    await store.set(JobKind.SMS.collection, job_id, job.to_document())
    return job


async def email_job(store, job_id="job_1"):
    return await store.get(JobKind.EMAIL.collection, job_id)


class TestClaimAndDeliver:
    async def test_sends_queued_job(self, email_dispatcher, store, email_provider, clock):
        await put_email_job(store)
        result = await email_dispatcher.dispatch("job_1")

        assert result.outcome is Delivery.SENT
        assert result.message_id == "email-1"
        doc = await email_job(store)
        assert doc["status"] == "sent"
        assert doc["attempts"] == 1
        assert doc["message_id"] == "email-1"
        assert doc["error"] is None
        sent = email_provider.sent[0]
        assert sent.to == "buyer@example.com"
        assert sent.subject == "Delivered: Vintage Camera"
        assert "Hi Ada" in sent.body

    async def test_future_deliver_after_is_not_claimed(self, email_dispatcher, store, email_provider, clock):
        """A job due in 10 minutes is left alone by a sweep now."""
        await put_email_job(store, deliver_after_at=clock.now() + timedelta(minutes=10))
        stats = await email_dispatcher.run()

        assert stats.scanned == 1
        assert stats.skipped == 1
        assert email_provider.calls == 0
        doc = await email_job(store)
        assert doc["status"] == "queued"
        assert doc["attempts"] == 0

        clock.advance(minutes=10)
        assert (await email_dispatcher.run()).sent == 1

    async def test_soft_failure_requeues_with_error(self, email_dispatcher, store, email_provider):
        """rate_limited: back to queued, one attempt spent, error kept."""
        await put_email_job(store)
        email_provider.script(SendResult.failed("rate_limited"))

        stats = await email_dispatcher.run()

        assert stats.requeued == 1
        doc = await email_job(store)
        assert doc["status"] == "queued"
        assert doc["attempts"] == 1
        assert doc["error"] == "rate_limited"

    async def test_backoff_is_respected(self, email_dispatcher, store, email_provider, clock):
        await put_email_job(store)
        email_provider.script(SendResult.failed("rate_limited"))
        await email_dispatcher.run()

        stats = await email_dispatcher.run()
        assert stats.skipped == 1
        assert email_provider.calls == 1

        clock.advance(seconds=30)
        stats = await email_dispatcher.run()
        assert stats.sent == 1
        assert (await email_job(store))["attempts"] == 2

    async def test_invalid_address_fails_without_spending_attempts(
        self, email_dispatcher, store, email_provider
    ):
        await put_email_job(store, to_address="not-an-email")
        result = await email_dispatcher.dispatch("job_1")

        assert result.outcome is Delivery.FAILED
        assert "invalid_address" in result.error
        assert email_provider.calls == 0
        doc = await email_job(store)
        assert doc["status"] == "failed"
        assert doc["attempts"] == 0
        assert store.documents(DeadLetterKind.EMAIL.collection) == {}

    async def test_invalid_template_payload_fails_at_claim(self, email_dispatcher, store, email_provider):
        await put_email_job(store, template_payload={"order_id": "O1"})
        result = await email_dispatcher.dispatch("job_1")
        assert result.outcome is Delivery.FAILED
        assert "invalid_payload" in result.error
        assert email_provider.calls == 0

    async def test_send_exception_requeues(self, email_dispatcher, store, email_provider):
        await put_email_job(store)
        email_provider.script(TimeoutError("provider hung"))

        result = await email_dispatcher.dispatch("job_1")

        assert result.outcome is Delivery.REQUEUED
        doc = await email_job(store)
        assert doc["status"] == "queued"
        assert doc["attempts"] == 1
        assert doc["error"] == "TimeoutError: provider hung"

    async def test_non_queued_job_is_skipped(self, email_dispatcher, store, email_provider):
        await put_email_job(store, status=JobStatus.SENT)
        assert (await email_dispatcher.dispatch("job_1")).outcome is Delivery.SKIPPED
        assert (await email_dispatcher.dispatch("missing")).outcome is Delivery.SKIPPED
        assert email_provider.calls == 0

    async def test_malformed_job_fails(self, email_dispatcher, store):
        await store.set(JobKind.EMAIL.collection, "job_1", {"status": "queued", "attempts": "many"})
        result = await email_dispatcher.dispatch("job_1")
        assert result.outcome is Delivery.FAILED
        assert (await email_job(store))["status"] == "failed"

    async def test_sms_job_sends_body(self, sms_dispatcher, store, sms_provider):
        await put_sms_job(store)
        result = await sms_dispatcher.dispatch("sms_1")
        assert result.outcome is Delivery.SENT
        assert sms_provider.sent[0].to == "+15555550101"
        assert sms_provider.sent[0].body == "Order O1 is 3h overdue."

    async def test_sms_requires_e164_number(self, sms_dispatcher, store, sms_provider):
        await put_sms_job(store, to_address="555-0101")
        result = await sms_dispatcher.dispatch("sms_1")
        assert result.outcome is Delivery.FAILED
        assert sms_provider.calls == 0

    async def test_superseded_claim_does_not_overwrite(self, email_dispatcher, store):
        await put_email_job(store)
        claimed = await email_dispatcher.claim("job_1")
        assert isinstance(claimed, Job)

        # another worker re-claimed the job after the lock window
        await store.set(JobKind.EMAIL.collection, "job_1", {"attempts": 2}, merge=True)
        written = await email_dispatcher.record_outcome(claimed, JobStatus.SENT, message_id="late")

        assert not written
        doc = await email_job(store)
        assert doc["status"] == "processing"
        assert doc["attempts"] == 2
        assert doc.get("message_id") is None


class TestExhaustion:
    async def test_exhausted_job_fails_and_dead_letters(self, email_dispatcher, store, email_provider):
        await put_email_job(store, attempts=5, error="rate_limited")
        result = await email_dispatcher.dispatch("job_1")

        assert result.outcome is Delivery.FAILED
        assert email_provider.calls == 0
        assert (await email_job(store))["status"] == "failed"
        letter = store.documents(DeadLetterKind.EMAIL.collection)["job_1"]
        assert letter["kind"] == "email"
        assert letter["attempts"] == 5
        assert letter["error"] == {"code": "max_attempts", "message": "rate_limited"}
        assert letter["snapshot"]["to_address"] == "b***@example.com"
        assert "template_payload" not in letter["snapshot"]

    async def test_retries_until_exhausted(self, email_dispatcher, store, email_provider, clock, policy):
        await put_email_job(store)
        email_provider.script(*[SendResult.failed("rate_limited")] * 10)

        attempts = []
        for _ in range(8):
            await email_dispatcher.run()
            attempts.append((await email_job(store))["attempts"])
            clock.advance(hours=1)

        assert attempts == sorted(attempts)
        assert max(attempts) == policy.max_attempts
        assert email_provider.calls == policy.max_attempts
        assert (await email_job(store))["status"] == "failed"
        assert len(store.documents(DeadLetterKind.EMAIL.collection)) == 1


class TestStaleRecovery:
    async def test_stale_processing_job_is_recovered_and_sent(self, email_dispatcher, store, clock):
        await put_email_job(
            store,
            status=JobStatus.PROCESSING,
            attempts=1,
            last_attempt_at=clock.now() - timedelta(minutes=3),
        )
        stats = await email_dispatcher.run()
        assert stats.recovered == 1
        assert stats.sent == 1
        assert (await email_job(store))["attempts"] == 2

    async def test_recent_claim_is_left_alone(self, email_dispatcher, store, clock):
        await put_email_job(
            store, status=JobStatus.PROCESSING, attempts=1, last_attempt_at=clock.now()
        )
        stats = await email_dispatcher.run()
        assert stats.recovered == 0
        assert (await email_job(store))["status"] == "processing"


class TestImmediateDispatch:
    async def test_dispatch_now_sends(self, email_dispatcher, store, email_provider):
        await put_email_job(store)
        result = await email_dispatcher.dispatch_now("job_1")
        assert result.outcome is Delivery.SENT

    async def test_dispatch_now_honours_deliver_after(self, email_dispatcher, store, email_provider, clock):
        await put_email_job(store, deliver_after_at=clock.now() + timedelta(minutes=5))
        result = await email_dispatcher.dispatch_now("job_1")
        assert result.outcome is Delivery.SKIPPED
        assert email_provider.calls == 0

    async def test_missing_job_gives_up_quietly(self, email_dispatcher):
        assert await email_dispatcher.dispatch_now("nope", wait_for_job=True) is None

    async def test_dispatch_now_never_raises(self, email_dispatcher, store):
        async def broken_get(*args, **kwargs):
            raise ConnectionError("store down")

        store.get = broken_get
        assert await email_dispatcher.dispatch_now("job_1", wait_for_job=True) is None

    async def test_scheduled_dispatch_and_drain(self, email_dispatcher, store, email_provider):
        await put_email_job(store)
        task = email_dispatcher.schedule_dispatch_now("job_1")
        await email_dispatcher.drain()
        assert task.done()
        assert email_provider.calls == 1

    async def test_sweep_and_shortcut_deliver_once(self, email_dispatcher, store, email_provider):
        await put_email_job(store)
        email_dispatcher.schedule_dispatch_now("job_1")
        await email_dispatcher.run()
        await email_dispatcher.drain()
        assert email_provider.calls == 1
        assert (await email_job(store))["status"] == "sent"

    async def test_slow_delivery_outlives_budget_and_is_recorded(
        self, store, deadletters, policy, clock
    ):
        provider = SlowProvider("email", delay=0.2)
        dispatcher = JobDispatcher(
            store,
            EmailChannel(provider),
            deadletters,
            policy,
            clock,
            immediate_budget=0.05,
            wait_for_job_timeout=0.05,
            wait_for_job_interval=0.01,
        )
        await put_email_job(store)

        dispatcher.schedule_dispatch_now("job_1")
        await dispatcher.drain()
        job = await email_job(store)
        assert job["status"] == "sent"
        assert job["attempts"] == 1

        clock.advance(minutes=3)
        stats = await dispatcher.run()
        assert stats.recovered == 0
        assert len(provider.sent) == 1

    async def test_budget_bounds_wait_for_missing_job(self, store, deadletters, policy, clock):
        provider = RecordingProvider("email")
        dispatcher = JobDispatcher(
            store,
            EmailChannel(provider),
            deadletters,
            policy,
            clock,
            immediate_budget=0.02,
            wait_for_job_timeout=1.0,
            wait_for_job_interval=0.01,
        )
        task = dispatcher.schedule_dispatch_now("job_1")
        await dispatcher.drain()
        assert task.result() is None
        assert provider.calls == 0


@pytest.mark.parametrize("limit", [0, -1, None, "ten"])
async def test_invalid_limit_falls_back(email_dispatcher, store, limit):
    await put_email_job(store)
    stats = await email_dispatcher.run(limit=limit)
    assert stats.sent == 1
