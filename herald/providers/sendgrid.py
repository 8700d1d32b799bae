"""Email delivery over the SendGrid v3 mail API."""

import logging

import httpx

from herald.providers.base import SendResult

logger = logging.getLogger("herald.providers.sendgrid")

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridProvider:
    """Send plain-text email through SendGrid.

    Args:
        api_key: SendGrid API key.
        from_email: Verified sender address.
        from_name: Optional sender display name.
        timeout: Per-request timeout in seconds.
        sandbox: Ask SendGrid to validate without delivering.
        client: Optional shared ``httpx.AsyncClient``; one is created lazily
            and owned by the provider otherwise.
    """

    name = "sendgrid"
    configured = True

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str | None = None,
        timeout: float = 10.0,
        sandbox: bool = False,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.sandbox = sandbox
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def build_message(self, to: str, subject: str, body: str) -> dict:
        sender = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name
        message = {
            "personalizations": [{"to": [{"email": to}], "subject": subject}],
            "from": sender,
            "content": [{"type": "text/plain", "value": body}],
        }
        if self.sandbox:
            message["mail_settings"] = {"sandbox_mode": {"enable": True}}
        return message

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        try:
            response = await self._get_client().post(
                SENDGRID_SEND_URL,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=self.build_message(to, subject, body),
            )
        except httpx.TimeoutException:
            logger.warning("SendGrid request timed out")
            return SendResult.failed("timeout")

        if response.status_code == 202:
            return SendResult.ok(response.headers.get("X-Message-Id"))
        if response.status_code == 429:
            return SendResult.failed("rate_limited")

        try:
            errors = response.json().get("errors") or []
            detail = "; ".join(str(e.get("message", "")) for e in errors if isinstance(e, dict))
        except ValueError:
            detail = response.text[:200]
        logger.warning(f"SendGrid rejected message: HTTP {response.status_code} {detail}")
        return SendResult.failed(f"http_{response.status_code}: {detail}".rstrip(": "))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
