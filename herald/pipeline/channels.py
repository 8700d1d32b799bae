"""Delivery channels: job construction, claim-time validation and rendering."""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import ClassVar

from herald.core.errors import PermanentDeliveryError
from herald.core.models import Event, Job, JobKind, JobStatus
from herald.pipeline.directory import Contact
from herald.pipeline.handlers import MessagePlan
from herald.pipeline.templates import (
    TEMPLATES,
    RenderedMessage,
    render_template,
    validate_template_payload,
)
from herald.providers.base import Provider, SendResult

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")

SMS_MAX_LENGTH = 480


class Channel(ABC):
    """One outbound channel bound to its provider."""

    kind: ClassVar[JobKind]

    def __init__(self, provider: Provider) -> None:
        self.provider = provider

    @property
    def collection(self) -> str:
        return self.kind.collection

    @property
    def configured(self) -> bool:
        return bool(getattr(self.provider, "configured", True))

    @abstractmethod
    def address_of(self, contact: Contact) -> str | None: ...

    @abstractmethod
    def build_job(
        self,
        job_id: str,
        event: Event,
        contact: Contact,
        plan: MessagePlan,
        deliver_after_at: datetime | None,
        now: datetime,
    ) -> Job:
        """Build a queued job for ``contact``, or a skipped one if unconfigured."""
        ...

    @abstractmethod
    def validate(self, job: Job) -> None:
        """Reject jobs that can never be delivered.

        Raises:
            PermanentDeliveryError: On an invalid address or payload.
        """
        ...

    @abstractmethod
    def render(self, job: Job) -> RenderedMessage: ...

    async def send(self, job: Job, message: RenderedMessage) -> SendResult:
        return await self.provider.send(job.to_address, message.subject, message.body)

    def _initial_status(self) -> tuple[JobStatus, str | None]:
        if self.configured:
            return JobStatus.QUEUED, None
        return JobStatus.SKIPPED, f"{self.kind.value} provider not configured"


class EmailChannel(Channel):
    kind = JobKind.EMAIL

    def address_of(self, contact: Contact) -> str | None:
        return contact.email

    def build_job(
        self,
        job_id: str,
        event: Event,
        contact: Contact,
        plan: MessagePlan,
        deliver_after_at: datetime | None,
        now: datetime,
    ) -> Job:
        status, error = self._initial_status()
        return Job(
            id=job_id,
            kind=self.kind,
            event_id=event.id,
            user_id=contact.user_id,
            to_address=contact.email or "",
            template=plan.template,
            template_payload=plan.template_payload,
            status=status,
            error=error,
            deliver_after_at=deliver_after_at,
            created_at=now,
            test=event.test,
        )

    def validate(self, job: Job) -> None:
        if not EMAIL_RE.match(job.to_address or ""):
            raise PermanentDeliveryError(
                f"invalid email address {job.to_address!r}", code="invalid_address"
            )
        result = validate_template_payload(job.template, job.template_payload)
        if not result.ok:
            raise PermanentDeliveryError(
                f"invalid payload for template {job.template!r}: {result.errors}",
                code="invalid_payload",
            )

    def render(self, job: Job) -> RenderedMessage:
        return render_template(job.template, job.template_payload)


class SmsChannel(Channel):
    kind = JobKind.SMS

    def address_of(self, contact: Contact) -> str | None:
        return contact.phone

    def build_job(
        self,
        job_id: str,
        event: Event,
        contact: Contact,
        plan: MessagePlan,
        deliver_after_at: datetime | None,
        now: datetime,
    ) -> Job:
        status, error = self._initial_status()
        body = TEMPLATES[plan.template].render_sms(plan.template_payload)
        return Job(
            id=job_id,
            kind=self.kind,
            event_id=event.id,
            user_id=contact.user_id,
            to_address=contact.phone or "",
            template=plan.template,
            body=body[:SMS_MAX_LENGTH],
            status=status,
            error=error,
            deliver_after_at=deliver_after_at,
            created_at=now,
            test=event.test,
        )

    def validate(self, job: Job) -> None:
        if not E164_RE.match(job.to_address or ""):
            raise PermanentDeliveryError(
                f"invalid phone number {job.to_address!r}", code="invalid_address"
            )
        if not (job.body or "").strip():
            raise PermanentDeliveryError("empty SMS body", code="invalid_payload")

    def render(self, job: Job) -> RenderedMessage:
        return RenderedMessage(subject="", body=job.body or "")
