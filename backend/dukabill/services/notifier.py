"""
Outbound notification senders.

Provides an abstract interface for delivering reminders and payment receipts
to store owners, plus:
- LoggingNotifier: logs instead of sending (development/tests)
- GatewayNotifier: posts to an HTTP messaging gateway (SMS/WhatsApp bridge)

Transport mechanics beyond the HTTP call are the gateway's concern.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from dukabill.billing.errors import TransientProviderError
from dukabill.integrations.retry import categorize_error

logger = logging.getLogger(__name__)

NOTIFICATION_GATEWAY_URL = os.getenv("NOTIFICATION_GATEWAY_URL")
NOTIFICATION_GATEWAY_TOKEN = os.getenv("NOTIFICATION_GATEWAY_TOKEN")
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))


@dataclass
class Notification:
    """A message to a store owner."""
    store_id: str
    recipient: Optional[str]
    kind: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationError(Exception):
    """Permanent delivery failure (not retried)."""


class Notifier(ABC):
    """Abstract notification sender."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """
        Deliver a notification.

        Raises:
            TransientProviderError: Retryable failure
            NotificationError: Permanent failure
        """


class LoggingNotifier(Notifier):
    """Notifier that only logs. Used when no gateway is configured."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "Notification (not sent, logging only)",
            extra={
                "store_id": notification.store_id,
                "recipient": notification.recipient,
                "kind": notification.kind,
                "notification_message": notification.message,
            },
        )


class GatewayNotifier(Notifier):
    """Posts notifications to an HTTP messaging gateway."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = NOTIFICATION_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or NOTIFICATION_GATEWAY_URL or "").rstrip("/")
        self.token = token or NOTIFICATION_GATEWAY_TOKEN
        self.timeout = timeout
        self._client = client

    def send(self, notification: Notification) -> None:
        if not notification.recipient:
            raise NotificationError(f"No recipient for store {notification.store_id}")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "to": notification.recipient,
            "message": notification.message,
            "kind": notification.kind,
            "metadata": {"store_id": notification.store_id, **notification.context},
        }

        try:
            if self._client is not None:
                response = self._client.post(
                    f"{self.base_url}/messages", json=payload, headers=headers
                )
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(
                        f"{self.base_url}/messages", json=payload, headers=headers
                    )
        except httpx.HTTPError as e:
            category = categorize_error(None, e)
            raise TransientProviderError(
                f"Notification gateway unreachable: {e}", category=category.value
            ) from e

        if response.status_code < 300:
            return

        category = categorize_error(response.status_code)
        if category.retryable:
            raise TransientProviderError(
                "Notification gateway error",
                status_code=response.status_code,
                category=category.value,
                retry_after=response.headers.get("Retry-After"),
            )
        raise NotificationError(
            f"Notification gateway rejected message: {response.status_code}"
        )


def get_notifier() -> Notifier:
    """Gateway notifier when configured, logging notifier otherwise."""
    if os.getenv("NOTIFICATION_GATEWAY_URL"):
        return GatewayNotifier(base_url=os.getenv("NOTIFICATION_GATEWAY_URL"))
    return LoggingNotifier()
