"""Fire-and-forget delivery of domain events to business webhooks.

Registered on the emitter with ``emitter.on_all(notifier)``. Delivery runs in
a background task so callers never wait on a merchant's endpoint; failures
are logged and dropped. The ledger write that produced the event has already
committed by the time the event is emitted.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import TYPE_CHECKING

import httpx

from paygate.database import session_scope
from paygate.models.business import Business

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paygate.events.types import DomainEvent

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-Paygate-Event"
SIGNATURE_HEADER = "X-Paygate-Signature"


def sign_payload(body: bytes, secret: str, timestamp: int) -> str:
    """Signature header value: ``t=<unix>,v1=<hex hmac-sha256>``.

    The MAC covers ``"<timestamp>." + body`` so receivers can reject replays.
    """
    mac = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("ascii") + body,
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={mac}"


class WebhookNotifier:
    """Posts signed JSON notifications to the business's webhook URL."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient,
        *,
        timeout: float = 10.0,
        enabled: bool = True,
    ):
        self.sessions = sessions
        self.http = http
        self.timeout = timeout
        self.enabled = enabled
        self._tasks: set[asyncio.Task[None]] = set()

    async def __call__(self, event: DomainEvent) -> None:
        await self.notify(event.business_id, event)

    async def notify(self, business_id: str, event: DomainEvent) -> None:
        """Schedule delivery and return immediately."""
        if not self.enabled:
            return
        task = asyncio.create_task(self._deliver_quietly(business_id, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def deliver(self, business_id: str, event: DomainEvent) -> bool:
        """Deliver one notification now.

        Returns:
            True if the endpoint accepted it, False if the business has no
            webhook configured.

        Raises:
            httpx.HTTPError: transport failure or non-2xx answer.
        """
        async with session_scope(self.sessions) as db:
            business = await db.get(Business, business_id)
        if business is None or not business.webhook_url:
            logger.debug("Business %s has no webhook; skipping %s", business_id, event.event_type)
            return False

        body = json.dumps(event.notification(), default=str, separators=(",", ":")).encode(
            "utf-8"
        )
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: event.notification_type,
        }
        if business.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_payload(
                body, business.webhook_secret, int(time.time())
            )

        response = await self.http.post(
            business.webhook_url,
            content=body,
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info(
            "Delivered %s for business %s (HTTP %s)",
            event.notification_type,
            business_id,
            response.status_code,
        )
        return True

    async def _deliver_quietly(self, business_id: str, event: DomainEvent) -> None:
        try:
            await self.deliver(business_id, event)
        except Exception:
            logger.exception(
                "Notification %s for business %s failed",
                event.notification_type,
                business_id,
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
