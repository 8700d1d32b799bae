"""Settings and wiring.

Settings are read from ``HERALD_*`` environment variables and an optional
``.env`` file. ``build_pipeline`` assembles the store, providers and
pipeline components from them.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from herald.core.clock import Clock, SystemClock
from herald.core.models import JobKind
from herald.core.policy import BACKOFF_TABLE, LOCK_WINDOW, MAX_ATTEMPTS, RetryPolicy
from herald.pipeline.channels import EmailChannel, SmsChannel
from herald.pipeline.deadletter import DeadLetterRecorder
from herald.pipeline.directory import CachedRecipientDirectory, RecipientDirectory, StoreDirectory
from herald.pipeline.dispatcher import DEFAULT_IMMEDIATE_BUDGET, JobDispatcher
from herald.pipeline.emitter import EventEmitter
from herald.pipeline.health import PipelineStatusRecorder
from herald.pipeline.inbox import InAppNotifier
from herald.pipeline.processor import DEFAULT_BATCH_LIMIT, DEFAULT_RUN_BUDGET, EventProcessor
from herald.pipeline.ratelimit import RateLimiter
from herald.pipeline.runner import PipelineRunner
from herald.providers.base import Provider, UnconfiguredProvider
from herald.providers.sendgrid import SendGridProvider
from herald.providers.twilio import TwilioProvider
from herald.store.base import DocumentStore
from herald.store.memory import MemoryStore
from herald.store.redis_store import RedisStore

logger = logging.getLogger("herald.config")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HERALD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "herald"
    redis_pool_size: int = Field(default=10, ge=1)

    batch_limit: int = Field(default=DEFAULT_BATCH_LIMIT, ge=1)
    run_budget_seconds: float = Field(default=DEFAULT_RUN_BUDGET, gt=0)
    immediate_budget_seconds: float = Field(default=DEFAULT_IMMEDIATE_BUDGET, gt=0)
    max_attempts: int = Field(default=MAX_ATTEMPTS, ge=1)
    lock_window_seconds: float = Field(default=LOCK_WINDOW.total_seconds(), ge=0)
    backoff_seconds: list[float] = Field(
        default_factory=lambda: [delay.total_seconds() for delay in BACKOFF_TABLE]
    )
    directory_cache_ttl: float = Field(default=60.0, ge=0)
    rate_limiting: bool = True

    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    sendgrid_api_key: str | None = None
    email_from: str | None = None
    email_from_name: str | None = None
    sendgrid_sandbox: bool = False

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    provider_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("backoff_seconds")
    @classmethod
    def non_negative_backoff(cls, value: list[float]) -> list[float]:
        if any(delay < 0 for delay in value):
            raise ValueError("backoff delays must not be negative")
        return value

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            lock_window=timedelta(seconds=self.lock_window_seconds),
            backoff_table=tuple(timedelta(seconds=delay) for delay in self.backoff_seconds),
        )


def build_email_provider(settings: Settings) -> Provider:
    if not settings.sendgrid_api_key or not settings.email_from:
        return UnconfiguredProvider("sendgrid", "HERALD_SENDGRID_API_KEY and HERALD_EMAIL_FROM are required")
    return SendGridProvider(
        api_key=settings.sendgrid_api_key,
        from_email=settings.email_from,
        from_name=settings.email_from_name,
        timeout=settings.provider_timeout_seconds,
        sandbox=settings.sendgrid_sandbox,
    )


def build_sms_provider(settings: Settings) -> Provider:
    if not (
        settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number
    ):
        return UnconfiguredProvider(
            "twilio",
            "HERALD_TWILIO_ACCOUNT_SID, HERALD_TWILIO_AUTH_TOKEN and "
            "HERALD_TWILIO_FROM_NUMBER are required",
        )
    return TwilioProvider(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        timeout=settings.provider_timeout_seconds,
    )


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "redis":
        return RedisStore(
            settings.redis_url, prefix=settings.key_prefix, pool_size=settings.redis_pool_size
        )
    return MemoryStore()


@dataclass
class Pipeline:
    """Every wired component, sharing one store and clock."""

    settings: Settings
    store: DocumentStore
    emitter: EventEmitter
    processor: EventProcessor
    inbox: InAppNotifier
    dispatchers: dict[JobKind, JobDispatcher]
    deadletters: DeadLetterRecorder
    status: PipelineStatusRecorder
    runner: PipelineRunner
    providers: list[Provider]

    async def aclose(self) -> None:
        for dispatcher in self.dispatchers.values():
            await dispatcher.drain()
        for provider in self.providers:
            await provider.aclose()
        await self.store.close()


def build_pipeline(
    settings: Settings | None = None,
    store: DocumentStore | None = None,
    directory: RecipientDirectory | None = None,
    email_provider: Provider | None = None,
    sms_provider: Provider | None = None,
    clock: Clock | None = None,
) -> Pipeline:
    """Wire a pipeline from ``settings``; any component may be passed in instead."""
    settings = settings or Settings()
    clock = clock or SystemClock()
    store = store or build_store(settings)
    if directory is None:
        directory = StoreDirectory(store)
        if settings.directory_cache_ttl > 0:
            directory = CachedRecipientDirectory(directory, ttl=settings.directory_cache_ttl)
    email_provider = email_provider or build_email_provider(settings)
    sms_provider = sms_provider or build_sms_provider(settings)
    for provider in (email_provider, sms_provider):
        if not provider.configured:
            logger.warning(f"{provider.name} provider not configured; its jobs will be skipped")

    policy = settings.retry_policy()
    deadletters = DeadLetterRecorder(store, clock)
    channels = [EmailChannel(email_provider), SmsChannel(sms_provider)]
    dispatchers = {
        channel.kind: JobDispatcher(
            store,
            channel,
            deadletters,
            policy,
            clock,
            run_budget=settings.run_budget_seconds,
            immediate_budget=settings.immediate_budget_seconds,
        )
        for channel in channels
    }
    inbox = InAppNotifier(store, clock)
    processor = EventProcessor(
        store,
        directory,
        channels,
        deadletters,
        policy,
        clock,
        dispatchers=dispatchers,
        run_budget=settings.run_budget_seconds,
        rate_limiter=RateLimiter(enabled=settings.rate_limiting),
        inbox=inbox,
    )
    status = PipelineStatusRecorder(store, clock)
    return Pipeline(
        settings=settings,
        store=store,
        emitter=EventEmitter(store, clock),
        processor=processor,
        inbox=inbox,
        dispatchers=dispatchers,
        deadletters=deadletters,
        status=status,
        runner=PipelineRunner(processor, dispatchers, status, clock),
        providers=[email_provider, sms_provider],
    )
