"""
Out-of-band delivery with bounded backoff, and payment receipts.

Receipts are dispatched after an APPLIED outcome via FastAPI BackgroundTasks.
Delivery failures are logged and never touch entitlement state.
"""

import logging
import time
from typing import Callable, Optional

from dukabill.billing.errors import TransientProviderError
from dukabill.integrations.retry import RetryPolicy, calculate_backoff
from dukabill.models.subscription import SubscriptionStatus
from dukabill.services.notifier import Notification, NotificationError, Notifier, get_notifier
from dukabill.services.reconciler import ApplyResult

logger = logging.getLogger(__name__)


def deliver_with_retry(
    notifier: Notifier,
    notification: Notification,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Send a notification, retrying transient failures with exponential backoff.

    Returns:
        True if delivered, False once retries are exhausted or the failure is permanent
    """
    for attempt in range(policy.max_retries + 1):
        try:
            notifier.send(notification)
            return True
        except NotificationError as e:
            logger.warning(
                "Notification rejected, not retrying",
                extra={"store_id": notification.store_id, "kind": notification.kind, "error": str(e)},
            )
            return False
        except TransientProviderError as e:
            if attempt >= policy.max_retries:
                logger.error(
                    "Notification failed after retries",
                    extra={
                        "store_id": notification.store_id,
                        "kind": notification.kind,
                        "attempts": attempt + 1,
                        "error": str(e),
                    },
                )
                return False
            retry_after = e.context.get("retry_after")
            delay = calculate_backoff(
                attempt,
                policy,
                retry_after=int(retry_after) if str(retry_after or "").isdigit() else None,
            )
            logger.info(
                "Notification failed, backing off",
                extra={"store_id": notification.store_id, "attempt": attempt + 1, "delay_seconds": delay},
            )
            sleep(delay)
    return False


def build_receipt(result: ApplyResult, recipient: Optional[str]) -> Notification:
    expires = result.new_expires_at.strftime("%d %b %Y") if result.new_expires_at else "-"
    if result.subscription_status == SubscriptionStatus.SUSPENDED.value:
        standing = (
            f"Your {result.plan_id} subscription is paid until {expires}, but the account "
            "is suspended. Contact support to have it reinstated."
        )
    else:
        standing = f"Your {result.plan_id} subscription is active until {expires}."
    return Notification(
        store_id=result.store_id,
        recipient=recipient,
        kind="PAYMENT_RECEIPT",
        message=f"Payment {result.external_id} received. {standing}",
        context={
            "external_id": result.external_id,
            "plan_id": result.plan_id,
            "subscription_status": result.subscription_status,
        },
    )


def send_payment_receipt(
    result: ApplyResult,
    recipient: Optional[str],
    notifier: Optional[Notifier] = None,
) -> bool:
    """Background task: confirm an applied payment to the store owner."""
    if result.store_id is None:
        return False
    return deliver_with_retry(notifier or get_notifier(), build_receipt(result, recipient))
