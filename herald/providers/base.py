"""Provider capability shared by every delivery channel."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from herald.core.errors import ConfigurationError


@dataclass(frozen=True)
class SendResult:
    """Outcome of one provider call.

    Ordinary delivery failures are reported with ``success=False``; only
    transport-level faults are raised.
    """

    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, message_id: str | None = None) -> "SendResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> "SendResult":
        return cls(success=False, error=error)


@runtime_checkable
class Provider(Protocol):
    """Outbound message transport."""

    name: str
    configured: bool

    async def send(self, to: str, subject: str, body: str) -> SendResult: ...

    async def aclose(self) -> None: ...


class UnconfiguredProvider:
    """Stand-in for a channel whose credentials are missing.

    Channels check ``configured`` up front; calling ``send`` anyway fails fast.
    """

    configured = False

    def __init__(self, name: str, reason: str = "not configured") -> None:
        self.name = name
        self.reason = reason

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        raise ConfigurationError(f"{self.name} provider {self.reason}")

    async def aclose(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"UnconfiguredProvider(name={self.name!r}, reason={self.reason!r})"
