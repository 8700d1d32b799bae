"""Recording provider for tests and dry runs."""

from collections import deque
from dataclasses import dataclass

from herald.providers.base import SendResult


@dataclass(frozen=True)
class SentMessage:
    to: str
    subject: str
    body: str
    message_id: str | None


class RecordingProvider:
    """Provider that records every call instead of delivering.

    Outcomes can be scripted with ``script``: each call consumes the next
    scripted ``SendResult`` (returned) or exception (raised). When the
    script is empty every call succeeds.
    """

    configured = True

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self.sent: list[SentMessage] = []
        self.calls = 0
        self._script: deque[SendResult | BaseException] = deque()

    def script(self, *outcomes: SendResult | BaseException) -> None:
        self._script.extend(outcomes)

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        self.calls += 1
        if self._script:
            outcome = self._script.popleft()
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome.success:
                self.sent.append(SentMessage(to, subject, body, outcome.message_id))
            return outcome
        message_id = f"{self.name}-{self.calls}"
        self.sent.append(SentMessage(to, subject, body, message_id))
        return SendResult.ok(message_id)

    async def aclose(self) -> None:
        pass
