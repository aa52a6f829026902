"""Transactional email provider client (Resend HTTP API).

Security: the API key lives in settings, is sent only as a bearer token,
and is never logged.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from clientflow.errors import EmailProviderError, TransientEmailError

logger = logging.getLogger(__name__)

# HTTP status codes that are safe to retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class EmailProvider(Protocol):
    async def send(
        self, from_: str, to: str, subject: str, html: str, reply_to: str | None = None
    ) -> str:
        """Send one message and return the provider's message id."""
        ...


class ResendProvider:
    """Minimal async client for ``POST /emails``."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def send(
        self, from_: str, to: str, subject: str, html: str, reply_to: str | None = None
    ) -> str:
        if not self.is_configured:
            raise EmailProviderError("RESEND_API_KEY is not configured")

        payload = {"from": from_, "to": [to], "subject": subject, "html": html}
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    "/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TransportError as e:
            raise TransientEmailError(f"Email provider unreachable: {type(e).__name__}") from e

        if resp.status_code in RETRYABLE_STATUS_CODES:
            raise TransientEmailError(f"Email provider HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise EmailProviderError(f"Email provider HTTP {resp.status_code}: {resp.text[:200]}")

        message_id = resp.json().get("id")
        if not message_id:
            raise EmailProviderError("Email provider returned no message id")
        return message_id
