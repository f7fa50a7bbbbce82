"""Notification webhook client with exponential backoff retry logic"""

import asyncio
import logging
from typing import Iterable

import httpx

from bullion_gateway.config import settings
from bullion_gateway.domain.models import Notification
from bullion_gateway.infrastructure.observability.metrics import (
    notification_failure_counter,
    notification_latency_histogram,
)

logger = logging.getLogger(__name__)


class NotificationClient:
    """
    Client for the external notification sink.

    Delivery is fire-and-forget: a notification is only sent after the
    financial effect committed, and a delivery failure is logged, never raised.
    """

    def __init__(self, webhook_url: str | None = None, timeout: float | None = None):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base

    async def notify(self, notification: Notification) -> bool:
        """
        Send one notification with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^attempt)
        - Retries on 5xx errors and network failures
        - Tracks latency histogram and failure counter

        Returns:
            True when delivered, False after the final failed attempt
        """
        payload = {
            "user_id": notification.user_id,
            "title": notification.title,
            "message": notification.message,
            "type": notification.kind,
        }
        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while attempt < self.max_retries:
                try:
                    with notification_latency_histogram.time():
                        response = await client.post(self.webhook_url, json=payload)
                        response.raise_for_status()
                        return True

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    notification_failure_counter.inc()

                    if attempt >= self.max_retries:
                        logger.error(
                            f"Notification delivery failed after {attempt} attempts: {e}",
                            extra={"user_id": notification.user_id, "notification_type": notification.kind},
                        )
                        return False

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)
        return False

    async def notify_all(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            await self.notify(notification)
