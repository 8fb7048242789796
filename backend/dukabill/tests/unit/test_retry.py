"""
Unit tests for outbound retry policy and delivery with backoff.
"""

from unittest.mock import MagicMock

import httpx
import pytest

from dukabill.billing.errors import TransientProviderError
from dukabill.integrations.retry import (
    ErrorCategory,
    RetryPolicy,
    calculate_backoff,
    categorize_error,
    parse_retry_after,
)
from dukabill.services.notifier import Notification, NotificationError
from dukabill.services.payment_confirmation import deliver_with_retry


@pytest.fixture
def notification():
    return Notification(store_id="S1", recipient="254712345678", kind="PAYMENT_DUE", message="hi")


class TestCategorizeError:

    @pytest.mark.parametrize("status_code,category", [
        (400, ErrorCategory.CLIENT_ERROR),
        (401, ErrorCategory.CLIENT_ERROR),
        (404, ErrorCategory.CLIENT_ERROR),
        (429, ErrorCategory.RATE_LIMIT),
        (500, ErrorCategory.SERVER_ERROR),
        (503, ErrorCategory.SERVER_ERROR),
    ])
    def test_status_codes(self, status_code, category):
        assert categorize_error(status_code) == category

    def test_transport_errors(self):
        assert categorize_error(None, httpx.ReadTimeout("slow")) == ErrorCategory.TIMEOUT
        assert categorize_error(None, httpx.ConnectError("down")) == ErrorCategory.CONNECTION
        assert categorize_error(None, ValueError("x")) == ErrorCategory.UNKNOWN

    def test_only_client_errors_are_permanent(self):
        assert not ErrorCategory.CLIENT_ERROR.retryable
        assert ErrorCategory.SERVER_ERROR.retryable


class TestCalculateBackoff:

    def test_exponential_growth_within_jitter(self):
        policy = RetryPolicy(base_delay_seconds=2, max_delay_seconds=100, jitter_factor=0.25)
        for attempt in range(4):
            expected = 2 * (2 ** attempt)
            delay = calculate_backoff(attempt, policy)
            assert expected * 0.75 <= delay <= expected * 1.25

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay_seconds=10, max_delay_seconds=30, jitter_factor=0)
        assert calculate_backoff(10, policy) == 30

    def test_retry_after_wins(self):
        policy = RetryPolicy(base_delay_seconds=1, max_delay_seconds=60, jitter_factor=0)
        assert calculate_backoff(0, policy, retry_after=17) == 17

    def test_parse_retry_after(self):
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "5"})) == 5
        assert parse_retry_after(httpx.Response(429)) is None
        assert parse_retry_after(None) is None


class TestDeliverWithRetry:

    def test_delivers_first_time(self, notification):
        notifier = MagicMock()
        sleep = MagicMock()

        assert deliver_with_retry(notifier, notification, RetryPolicy(max_retries=3), sleep=sleep)
        notifier.send.assert_called_once_with(notification)
        sleep.assert_not_called()

    def test_retries_transient_then_succeeds(self, notification):
        notifier = MagicMock()
        notifier.send.side_effect = [
            TransientProviderError("gateway 503", status_code=503),
            TransientProviderError("gateway 503", status_code=503),
            None,
        ]
        sleep = MagicMock()

        assert deliver_with_retry(notifier, notification, RetryPolicy(max_retries=3), sleep=sleep)
        assert notifier.send.call_count == 3
        assert sleep.call_count == 2

    def test_gives_up_after_max_retries(self, notification):
        notifier = MagicMock()
        notifier.send.side_effect = TransientProviderError("down")
        sleep = MagicMock()

        assert not deliver_with_retry(notifier, notification, RetryPolicy(max_retries=2), sleep=sleep)
        assert notifier.send.call_count == 3
        assert sleep.call_count == 2

    def test_permanent_failure_is_not_retried(self, notification):
        notifier = MagicMock()
        notifier.send.side_effect = NotificationError("bad number")
        sleep = MagicMock()

        assert not deliver_with_retry(notifier, notification, RetryPolicy(max_retries=5), sleep=sleep)
        notifier.send.assert_called_once()
        sleep.assert_not_called()

    def test_honours_retry_after(self, notification):
        notifier = MagicMock()
        notifier.send.side_effect = [TransientProviderError("busy", status_code=429, retry_after="7"), None]
        sleep = MagicMock()

        deliver_with_retry(notifier, notification, RetryPolicy(max_retries=1, max_delay_seconds=60), sleep=sleep)
        sleep.assert_called_once_with(7.0)
