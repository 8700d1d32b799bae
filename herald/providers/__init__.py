"""Outbound delivery providers."""

from herald.providers.base import Provider, SendResult, UnconfiguredProvider
from herald.providers.memory import RecordingProvider
from herald.providers.sendgrid import SendGridProvider
from herald.providers.twilio import TwilioProvider

__all__ = [
    "Provider",
    "RecordingProvider",
    "SendGridProvider",
    "SendResult",
    "TwilioProvider",
    "UnconfiguredProvider",
]
