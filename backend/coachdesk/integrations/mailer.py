"""Email-delivery collaborator backed by the Resend REST API."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Protocol

import httpx

from ..settings import settings


DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)


class EmailDeliveryError(RuntimeError):
    pass


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html: str, *, sender_name: str | None = None) -> dict[str, Any]:
        ...


class ResendMailer:
    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        api_base: str = "https://api.resend.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    def _sender(self, sender_name: str | None) -> str:
        if sender_name:
            return f"{sender_name} via CoachDesk <{self.from_address}>"
        return f"CoachDesk <{self.from_address}>"

    async def send(self, to: str, subject: str, html: str, *, sender_name: str | None = None) -> dict[str, Any]:
        """Send one message and return the provider's confirmation payload."""
        if not self.api_key:
            raise EmailDeliveryError("COACHDESK_RESEND_API_KEY is not set")
        if not to:
            raise EmailDeliveryError("Recipient address is empty")
        payload = {
            "from": self._sender(sender_name),
            "to": [to],
            "subject": subject,
            "html": html,
        }
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.api_base}/emails",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
            except httpx.HTTPError as exc:
                raise EmailDeliveryError(f"Resend request failed: {exc}") from exc
        if response.status_code >= 400:
            raise EmailDeliveryError(f"Resend send failed {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError as exc:
            raise EmailDeliveryError("Resend returned a non-JSON response") from exc


@lru_cache
def get_mailer() -> Mailer:
    return ResendMailer(
        api_key=settings.resend_api_key,
        from_address=settings.email_from,
        api_base=settings.resend_api_base,
    )
