"""
Structured error classes for payment reconciliation and entitlement reads.

Each error carries the HTTP status it maps to and a to_dict() body, so routes
and the global handler can answer without re-classifying.
"""

from typing import Optional
from fastapi import status


class BillingError(Exception):
    """Base exception for billing errors."""

    code = "billing_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        body = {"error": self.code, "message": self.message}
        if self.context:
            body["details"] = self.context
        return body


class PaymentValidationError(BillingError):
    """Malformed payload or failed field validation. Never retried by us."""

    code = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None, **context):
        self.field = field
        if field:
            context["field"] = field
        super().__init__(message, **context)


class DuplicateEventError(BillingError):
    """
    external_id already recorded in the payment event log.

    Treated as success by callers; existing_event is the stored row.
    """

    code = "duplicate_event"
    http_status = status.HTTP_200_OK

    def __init__(self, external_id: str, existing_event=None):
        self.external_id = external_id
        self.existing_event = existing_event
        super().__init__(
            f"Payment event '{external_id}' already recorded",
            external_id=external_id,
        )


class ConcurrencyConflictError(BillingError):
    """Version check kept failing after the bounded retry."""

    code = "concurrency_conflict"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, store_id: str, attempts: int):
        self.store_id = store_id
        self.attempts = attempts
        super().__init__(
            f"Subscription for store '{store_id}' changed concurrently "
            f"({attempts} attempts)",
            store_id=store_id,
            attempts=attempts,
        )


class TransientProviderError(BillingError):
    """Outbound provider call failed in a retryable way."""

    code = "transient_provider_error"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, status_code: Optional[int] = None, **context):
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **context)


class StorageUnavailableError(BillingError):
    """Database unreachable. Entitlement reads fail closed."""

    code = "storage_unavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class StoreNotFoundError(BillingError):
    code = "store_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(f"Store '{store_id}' not found", store_id=store_id)


class SubscriptionNotFoundError(BillingError):
    code = "subscription_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__(f"No subscription for store '{store_id}'", store_id=store_id)


class PaymentEventNotFoundError(BillingError):
    code = "payment_event_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(
            f"Payment event '{external_id}' not found", external_id=external_id
        )


class UnknownPlanError(BillingError):
    code = "unknown_plan"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Unknown plan '{plan_id}'", plan_id=plan_id)


class InvalidTransitionError(BillingError):
    """Requested lifecycle or match-status change is not allowed."""

    code = "invalid_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current_status: Optional[str] = None, **context):
        self.current_status = current_status
        super().__init__(message, current_status=current_status, **context)
