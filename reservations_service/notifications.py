import logging
from typing import Any, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Fire-and-forget notifications about reservation decisions.

    Posts a small JSON document to a webhook when one is configured,
    otherwise only logs. Failures are logged and never propagated.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 5.0,
    ):
        self.webhook_url = webhook_url
        self.transport = transport
        self.timeout = timeout

    def notify(self, event: str, reservation: Any, actor: str, reason: Optional[str] = None) -> None:
        payload = {
            "event": event,
            "reservationId": reservation.id,
            "title": reservation.title,
            "status": reservation.status,
            "requestedBy": reservation.requested_by,
            "actor": actor,
            "reason": reason,
        }
        if not self.webhook_url:
            logger.info("Notification %s for reservation %s (no webhook configured)", event, reservation.id)
            return

        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    "Notification %s for reservation %s rejected with status %s",
                    event,
                    reservation.id,
                    response.status_code,
                )
        except httpx.HTTPError as exc:
            logger.warning("Notification %s for reservation %s failed: %s", event, reservation.id, exc)


def build_default_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(webhook_url=config.NOTIFICATION_WEBHOOK_URL)
