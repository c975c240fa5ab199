import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    """Fully rendered message handed to the transmission provider."""
    from_: str
    to: list[str]
    subject: str
    html: str
    text: str
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "from": self.from_,
            "to": self.to,
            "subject": self.subject,
            "html": self.html,
            "text": self.text,
        }
        if self.cc:
            payload["cc"] = self.cc
        if self.bcc:
            payload["bcc"] = self.bcc
        return payload


@dataclass
class TransmissionResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class TransmissionProvider(Protocol):
    async def send(self, email: OutgoingEmail) -> TransmissionResult: ...

    async def close(self) -> None: ...


class ResendProvider:
    """
    Resend HTTP API client.

    Never retries on its own and never raises for delivery problems: every
    outcome comes back as a TransmissionResult so the worker owns the retry
    decision.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return f"Resend API error (HTTP {response.status_code})"

    async def send(self, email: OutgoingEmail) -> TransmissionResult:
        try:
            resp = await self.client.post("/emails", json=email.to_payload())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            error = self._error_message(e.response)
            logger.warning(
                "Provider rejected email to=%s status=%s: %s",
                email.to,
                e.response.status_code,
                error,
            )
            return TransmissionResult(success=False, error=error)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Provider request failed for email to=%s: %s", email.to, e)
            return TransmissionResult(success=False, error=str(e) or type(e).__name__)

        message_id = data.get("id") if isinstance(data, dict) else None
        return TransmissionResult(success=True, message_id=message_id)

    async def close(self):
        await self.client.aclose()
