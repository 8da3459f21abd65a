"""Internal billing notifications delivered over signed HTTP.

Notifications are best-effort: delivery failures are logged and never
propagate into the payment paths that emit them.  Each POST carries an
HMAC-SHA256 signature of the body in ``X-PaySync-Signature``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class BillingNotification(BaseModel):
    """Payload sent to the billing notification endpoint."""

    type: str
    title: str
    body: str
    tenant_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class BillingNotifier:
    """Posts :class:`BillingNotification` objects to a configured URL.

    Parameters
    ----------
    url:
        Destination endpoint.  When ``None`` notifications are only logged.
    secret:
        Shared HMAC secret.  An empty secret sends an empty signature.
    client:
        Optional ``httpx.AsyncClient`` (injected in tests).
    timeout:
        Request timeout in seconds for the owned client.
    """

    def __init__(
        self,
        url: str | None = None,
        secret: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._url = url
        self._secret = secret
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def notify(self, notification: BillingNotification) -> bool:
        """Deliver *notification*; returns ``True`` on a 2xx response."""
        logger.info(
            "Billing notification %s: %s",
            notification.type,
            notification.title,
            extra={"tenant_id": notification.tenant_id},
        )
        if not self._url:
            return False

        body = notification.model_dump_json()
        headers = {
            "Content-Type": "application/json",
            "X-PaySync-Signature": self.sign(body, self._secret),
            "X-PaySync-Notification": notification.type,
        }
        try:
            response = await self._client.post(self._url, content=body, headers=headers)
        except httpx.TimeoutException:
            logger.warning("Billing notification timed out: url=%s type=%s", self._url, notification.type)
            return False
        except httpx.RequestError as exc:
            logger.warning("Billing notification error: url=%s error=%s", self._url, exc)
            return False

        if 200 <= response.status_code < 300:
            return True
        logger.warning(
            "Billing notification rejected: url=%s status=%d type=%s",
            self._url,
            response.status_code,
            notification.type,
        )
        return False

    @staticmethod
    def sign(body: str, secret: str) -> str:
        """Compute the HMAC-SHA256 signature of *body*."""
        if not secret:
            return ""
        return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def verify_signature(body: str, secret: str, signature: str) -> bool:
        """Verify a notification signature (for use by receivers)."""
        return hmac.compare_digest(BillingNotifier.sign(body, secret), signature)
