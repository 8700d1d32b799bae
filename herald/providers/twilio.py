"""SMS delivery over the Twilio REST API."""

import logging

import httpx

from herald.providers.base import SendResult

logger = logging.getLogger("herald.providers.twilio")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioProvider:
    """Send SMS through Twilio's Messages resource.

    SMS has no subject line; ``send`` ignores ``subject``.
    """

    name = "twilio"
    configured = True

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.account_sid = account_sid
        self._auth_token = auth_token
        self.from_number = from_number
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def messages_url(self) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        try:
            response = await self._get_client().post(
                self.messages_url,
                auth=(self.account_sid, self._auth_token),
                data={"From": self.from_number, "To": to, "Body": body},
            )
        except httpx.TimeoutException:
            logger.warning("Twilio request timed out")
            return SendResult.failed("timeout")

        if response.status_code == 201:
            return SendResult.ok(response.json().get("sid"))
        if response.status_code == 429:
            return SendResult.failed("rate_limited")

        try:
            data = response.json()
            detail = f"{data.get('code')}: {data.get('message')}"
        except ValueError:
            detail = response.text[:200]
        logger.warning(f"Twilio rejected message: HTTP {response.status_code} {detail}")
        return SendResult.failed(f"http_{response.status_code}: {detail}")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
