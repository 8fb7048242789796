"""Unit tests for notification senders and payment receipts."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from dukabill.billing.errors import TransientProviderError
from dukabill.services.notifier import (
    GatewayNotifier,
    LoggingNotifier,
    Notification,
    NotificationError,
    get_notifier,
)
from dukabill.services.payment_confirmation import build_receipt
from dukabill.services.reconciler import ApplyOutcome, ApplyResult


@pytest.fixture
def notification():
    return Notification(
        store_id="S1",
        recipient="254712345678",
        kind="PAYMENT_RECEIPT",
        message="Payment received",
        context={"external_id": "MPESA-AAA111"},
    )


def make_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), base_url="https://gateway.test")


class TestGatewayNotifier:

    def test_posts_message(self, notification):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"queued": True})

        notifier = GatewayNotifier(base_url="https://gateway.test", token="tok", client=make_client(handler))
        notifier.send(notification)

        assert seen["url"] == "https://gateway.test/messages"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"]["to"] == "254712345678"
        assert seen["body"]["metadata"]["store_id"] == "S1"
        assert seen["body"]["metadata"]["external_id"] == "MPESA-AAA111"

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_retryable_status_raises_transient(self, notification, status_code):
        notifier = GatewayNotifier(
            base_url="https://gateway.test",
            client=make_client(lambda r: httpx.Response(status_code)),
        )
        with pytest.raises(TransientProviderError) as exc_info:
            notifier.send(notification)
        assert exc_info.value.status_code == status_code

    def test_client_error_is_permanent(self, notification):
        notifier = GatewayNotifier(
            base_url="https://gateway.test",
            client=make_client(lambda r: httpx.Response(400)),
        )
        with pytest.raises(NotificationError):
            notifier.send(notification)

    def test_connection_error_is_transient(self, notification):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = GatewayNotifier(base_url="https://gateway.test", client=make_client(handler))
        with pytest.raises(TransientProviderError):
            notifier.send(notification)

    def test_missing_recipient(self, notification):
        notification.recipient = None
        with pytest.raises(NotificationError):
            GatewayNotifier(base_url="https://gateway.test").send(notification)


def test_logging_notifier_does_not_raise(notification):
    LoggingNotifier().send(notification)


def test_get_notifier_prefers_gateway(monkeypatch):
    monkeypatch.delenv("NOTIFICATION_GATEWAY_URL", raising=False)
    assert isinstance(get_notifier(), LoggingNotifier)

    monkeypatch.setenv("NOTIFICATION_GATEWAY_URL", "https://gateway.test")
    assert isinstance(get_notifier(), GatewayNotifier)


class TestPaymentReceipt:

    def make_result(self, status):
        return ApplyResult(
            outcome=ApplyOutcome.APPLIED,
            external_id="MPESA-AAA111",
            store_id="S1",
            plan_id="basic-monthly",
            new_expires_at=datetime(2026, 4, 7, 9, 0, tzinfo=timezone.utc),
            subscription_status=status,
        )

    def test_active_receipt(self):
        receipt = build_receipt(self.make_result("ACTIVE"), "254712345678")

        assert receipt.message == (
            "Payment MPESA-AAA111 received. "
            "Your basic-monthly subscription is active until 07 Apr 2026."
        )
        assert receipt.context["subscription_status"] == "ACTIVE"

    def test_suspended_receipt_does_not_claim_access(self):
        receipt = build_receipt(self.make_result("SUSPENDED"), "254712345678")

        assert "active until" not in receipt.message
        assert "paid until 07 Apr 2026" in receipt.message
        assert "suspended" in receipt.message
