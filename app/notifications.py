import logging
from typing import Optional

import httpx

from app.config import NOTIFY_TIMEOUT_SECONDS, NOTIFY_WEBHOOK_URL

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default trigger when no delivery service is configured."""

    def on_reservation_confirmed(self, reservation_id: str) -> None:
        logger.info(f"📧 Reservation {reservation_id} confirmed (no notifier configured)")


class HttpNotifier:
    """Hands confirmed reservations to the e-mail/QR service over HTTP."""

    def __init__(self, url: str, timeout: float = NOTIFY_TIMEOUT_SECONDS,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def on_reservation_confirmed(self, reservation_id: str) -> None:
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.url, json={"reservation_id": reservation_id})
            response.raise_for_status()
        logger.info(f"📧 Confirmation for reservation {reservation_id} handed to {self.url}")


def default_notifier():
    if NOTIFY_WEBHOOK_URL:
        return HttpNotifier(NOTIFY_WEBHOOK_URL)
    return LoggingNotifier()
