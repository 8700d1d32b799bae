"""Tests for settings and pipeline wiring."""

from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from herald.config import (
    Settings,
    build_email_provider,
    build_pipeline,
    build_sms_provider,
    build_store,
)
from herald.core.models import JobKind
from herald.pipeline.directory import CachedRecipientDirectory
from herald.providers.base import UnconfiguredProvider
from herald.providers.memory import RecordingProvider
from herald.providers.sendgrid import SendGridProvider
from herald.providers.twilio import TwilioProvider
from herald.store.memory import MemoryStore
from herald.store.redis_store import RedisStore
from tests.conftest import order_payload


def make_settings(**kwargs):
    return Settings(_env_file=None, **kwargs)


class TestSettings:
    def test_defaults(self):
        settings = make_settings()
        assert settings.store_backend == "memory"
        assert settings.batch_limit == 50
        assert settings.run_budget_seconds == 45.0
        policy = settings.retry_policy()
        assert policy.max_attempts == 5
        assert policy.lock_window == timedelta(minutes=2)
        assert policy.backoff_table[-1] == timedelta(minutes=30)

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("HERALD_STORE_BACKEND", "redis")
        monkeypatch.setenv("HERALD_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("HERALD_BACKOFF_SECONDS", "[0, 10, 60]")
        monkeypatch.setenv("HERALD_LOCK_WINDOW_SECONDS", "30")
        settings = make_settings()
        assert settings.store_backend == "redis"
        policy = settings.retry_policy()
        assert policy.max_attempts == 3
        assert policy.backoff_table == (timedelta(0), timedelta(seconds=10), timedelta(minutes=1))
        assert policy.lock_window == timedelta(seconds=30)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"store_backend": "sqlite"},
            {"max_attempts": 0},
            {"backoff_seconds": [0, -1]},
            {"log_format": "xml"},
        ],
    )
    def test_invalid_settings(self, kwargs):
        with pytest.raises(PydanticValidationError):
            make_settings(**kwargs)


class TestBuilders:
    def test_unconfigured_providers(self):
        settings = make_settings()
        email = build_email_provider(settings)
        sms = build_sms_provider(settings)
        assert isinstance(email, UnconfiguredProvider) and not email.configured
        assert isinstance(sms, UnconfiguredProvider) and not sms.configured

    def test_configured_providers(self):
        settings = make_settings(
            sendgrid_api_key="key",
            email_from="noreply@example.com",
            twilio_account_sid="AC1",
            twilio_auth_token="token",
            twilio_from_number="+15550000000",
        )
        assert isinstance(build_email_provider(settings), SendGridProvider)
        assert isinstance(build_sms_provider(settings), TwilioProvider)

    def test_partial_twilio_credentials_are_unconfigured(self):
        settings = make_settings(twilio_account_sid="AC1")
        assert isinstance(build_sms_provider(settings), UnconfiguredProvider)

    def test_build_store(self):
        assert isinstance(build_store(make_settings()), MemoryStore)
        redis_store = build_store(make_settings(store_backend="redis", key_prefix="shop"))
        assert isinstance(redis_store, RedisStore)
        assert redis_store.doc_key("events", "e1") == "shop:events:e1"

    def test_pipeline_shares_one_store(self):
        pipeline = build_pipeline(make_settings())
        assert set(pipeline.dispatchers) == {JobKind.EMAIL, JobKind.SMS}
        assert pipeline.runner.processor is pipeline.processor
        assert isinstance(pipeline.store, MemoryStore)


async def test_pipeline_end_to_end():
    store = MemoryStore()
    await store.set("users", "u1", {"email": "buyer@example.com", "display_name": "Ada"})
    email = RecordingProvider("email")
    pipeline = build_pipeline(
        make_settings(), store=store, email_provider=email, sms_provider=RecordingProvider("sms")
    )
    assert isinstance(pipeline.processor._directory, CachedRecipientDirectory)

    emitted = await pipeline.emitter.emit("Order.Delivered", None, "order", "O1", ["u1"], order_payload())
    report = await pipeline.runner.run()
    await pipeline.aclose()

    assert report.ok
    assert report.events.processed == 1
    assert len(email.sent) == 1
    assert email.sent[0].body.startswith("Hi Ada")
    assert (await store.get("emailJobs", emitted.event_id))["status"] == "sent"
    entries = await pipeline.inbox.entries("u1")
    assert [entry.event_id for entry in entries] == [emitted.event_id]


def test_rate_limiting_can_be_switched_off(monkeypatch):
    monkeypatch.setenv("HERALD_RATE_LIMITING", "false")
    pipeline = build_pipeline(
        make_settings(), email_provider=RecordingProvider("email"), sms_provider=RecordingProvider("sms")
    )
    assert pipeline.processor._rate_limiter.enabled is False
    assert make_settings(rate_limiting=True).rate_limiting is True
