"""Pytest configuration, Hypothesis profiles and shared pipeline fixtures."""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import settings

from herald.core.models import JobKind
from herald.core.policy import RetryPolicy
from herald.pipeline.channels import EmailChannel, SmsChannel
from herald.pipeline.deadletter import DeadLetterRecorder
from herald.pipeline.directory import InMemoryDirectory
from herald.pipeline.dispatcher import JobDispatcher
from herald.pipeline.emitter import EventEmitter
from herald.pipeline.processor import EventProcessor
from herald.providers.memory import RecordingProvider
from herald.store.memory import MemoryStore

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")

# 15:00 UTC is 09:00 in America/Chicago: outside the default quiet hours
START = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float = 0, **kwargs: float) -> None:
        delta = timedelta(seconds=seconds, **kwargs)
        self._now += delta
        self._monotonic += delta.total_seconds()

    def set(self, moment: datetime) -> None:
        self._now = moment


def order_payload(**overrides):
    payload = {
        "order_id": "O1",
        "listing_id": "L1",
        "listing_title": "Vintage Camera",
        "order_url": "https://example.com/orders/O1",
    }
    payload.update(overrides)
    return payload


def outbid_payload(**overrides):
    payload = {
        "listing_id": "L1",
        "listing_title": "Vintage Camera",
        "listing_url": "https://example.com/listings/L1",
        "new_high_bid_amount": 125.0,
    }
    payload.update(overrides)
    return payload


def message_payload(**overrides):
    payload = {
        "listing_id": "L1",
        "listing_title": "Vintage Camera",
        "listing_url": "https://example.com/listings/L1",
        "thread_id": "T1",
        "thread_url": "https://example.com/messages/T1",
        "sender_role": "buyer",
        "preview": "Is this still available?",
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy()


@pytest.fixture
def directory() -> InMemoryDirectory:
    directory = InMemoryDirectory()
    directory.add_user("u1", email="buyer@example.com", phone="+15555550101", name="Ada")
    directory.add_user("u2", email="seller@example.com", phone="+15555550102", name="Grace")
    return directory


@pytest.fixture
def email_provider() -> RecordingProvider:
    return RecordingProvider("email")


@pytest.fixture
def sms_provider() -> RecordingProvider:
    return RecordingProvider("sms")


@pytest.fixture
def deadletters(store, clock) -> DeadLetterRecorder:
    return DeadLetterRecorder(store, clock)


@pytest.fixture
def email_dispatcher(store, email_provider, deadletters, policy, clock) -> JobDispatcher:
    return JobDispatcher(
        store,
        EmailChannel(email_provider),
        deadletters,
        policy,
        clock,
        wait_for_job_timeout=0.05,
        wait_for_job_interval=0.01,
    )


@pytest.fixture
def sms_dispatcher(store, sms_provider, deadletters, policy, clock) -> JobDispatcher:
    return JobDispatcher(
        store,
        SmsChannel(sms_provider),
        deadletters,
        policy,
        clock,
        wait_for_job_timeout=0.05,
        wait_for_job_interval=0.01,
    )


@pytest.fixture
def processor(store, directory, email_provider, sms_provider, deadletters, policy, clock) -> EventProcessor:
    """Processor without the immediate dispatch shortcut."""
    return EventProcessor(
        store,
        directory,
        [EmailChannel(email_provider), SmsChannel(sms_provider)],
        deadletters,
        policy,
        clock,
    )


@pytest.fixture
def wired_processor(
    store, directory, email_dispatcher, sms_dispatcher, deadletters, policy, clock
) -> EventProcessor:
    """Processor that hands immediate jobs to the dispatchers."""
    return EventProcessor(
        store,
        directory,
        [email_dispatcher.channel, sms_dispatcher.channel],
        deadletters,
        policy,
        clock,
        dispatchers={JobKind.EMAIL: email_dispatcher, JobKind.SMS: sms_dispatcher},
    )


@pytest.fixture
def emitter(store, clock) -> EventEmitter:
    return EventEmitter(store, clock)
