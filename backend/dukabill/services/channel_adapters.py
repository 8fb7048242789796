"""
Channel adapters: one interface, one adapter per inbound payment channel.

Each adapter:
- verifies authenticity as far as the channel allows
- extracts the provider's own idempotency key (never invented locally)
- extracts the correlation hint used for matching
- normalizes the raw payload into a CanonicalEvent

SECURITY: secrets are compared with hmac.compare_digest.
"""

import hashlib
import hmac
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from dukabill.billing.errors import PaymentValidationError
from dukabill.models.payment_event import PaymentChannel

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = os.getenv("BILLING_CURRENCY", "KES")

CALLBACK_TOKEN_HEADER = "X-Callback-Token"
CHECKOUT_SIGNATURE_HEADER = "X-Checkout-Signature"

CHECKOUT_SUCCESS_CODES = {"COMPLETE", "COMPLETED", "SUCCESS", "PAID", "1"}

_REFERENCE_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*-\d{4,}$")


class CorrelationKind:
    """How a canonical event points at its store."""
    STORE = "store"          # explicit store_id (admin grant)
    INTENT = "intent"        # payment intent id -> store + plan
    REFERENCE = "reference"  # PREFIX-NNNN reference code
    NONE = "none"            # nothing; amount-range only


@dataclass(frozen=True)
class CorrelationHint:
    kind: str
    value: Optional[str] = None


@dataclass(frozen=True)
class CanonicalEvent:
    """Channel-independent payment notification."""
    external_id: str
    channel: PaymentChannel
    amount: Optional[Decimal]
    currency: str
    succeeded: bool
    correlation: CorrelationHint
    raw_reference: Optional[str] = None
    payer_phone: Optional[str] = None
    provider_status: Optional[str] = None
    store_id: Optional[str] = None
    plan_id: Optional[str] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def payload_hash(self) -> str:
        encoded = json.dumps(self.raw_payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


def normalize_reference(value: Optional[str]) -> Optional[str]:
    """Upper-case and strip a payer-typed reference; empty becomes None."""
    if value is None:
        return None
    cleaned = re.sub(r"\s+", "", str(value)).upper()
    return cleaned or None


def is_reference_code(value: Optional[str]) -> bool:
    return bool(value) and bool(_REFERENCE_PATTERN.match(value))


def normalize_phone(value: Optional[Any]) -> Optional[str]:
    """Normalize a Kenyan MSISDN to 2547XXXXXXXX form."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if not digits:
        return None
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    return digits


def parse_amount(value: Any, field_name: str, required: bool = True) -> Optional[Decimal]:
    """Parse a positive monetary amount."""
    if value is None or value == "":
        if required:
            raise PaymentValidationError(f"{field_name} is required", field=field_name)
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError(f"{field_name} is not a number", field=field_name)
    if not amount.is_finite() or amount <= 0:
        raise PaymentValidationError(f"{field_name} must be positive", field=field_name)
    return amount.quantize(Decimal("0.01"))


def require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or str(value).strip() == "":
        raise PaymentValidationError(f"{key} is required", field=key)
    return str(value).strip()


def _optional_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ChannelAdapter(ABC):
    """Interface every inbound payment channel implements."""

    channel: PaymentChannel

    @property
    def is_configured(self) -> bool:
        """Whether the secrets needed to verify this channel are present."""
        return True

    def verify(
        self,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Check authenticity of an inbound request. Default: trusted caller."""
        return True

    @abstractmethod
    def extract_idempotency_key(self, payload: Mapping[str, Any]) -> str:
        """Return the provider identifier that deduplicates this payment."""

    @abstractmethod
    def extract_correlation_hint(self, payload: Mapping[str, Any]) -> CorrelationHint:
        """Return what the payload says about which store paid."""

    @abstractmethod
    def normalize(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        """
        Normalize a raw payload.

        Raises:
            PaymentValidationError: If the payload is malformed
        """

    def _ensure_mapping(self, payload: Any) -> Mapping[str, Any]:
        if not isinstance(payload, Mapping):
            raise PaymentValidationError("Payload must be a JSON object")
        return payload


class _CallbackTokenMixin:
    """Shared-token authenticity for mobile-money callbacks."""

    callback_token: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.callback_token)

    def _token_matches(self, headers: Mapping[str, str], query: Mapping[str, str]) -> bool:
        if not self.callback_token:
            return False
        supplied = headers.get(CALLBACK_TOKEN_HEADER) or query.get("token")
        if not supplied:
            return False
        return hmac.compare_digest(str(supplied), self.callback_token)


class PushPaymentAdapter(_CallbackTokenMixin, ChannelAdapter):
    """
    Merchant-initiated push payment result callback.

    Correlates through the payment intent recorded when the push was sent.
    result_code 0 means the payer completed the payment.
    """

    channel = PaymentChannel.PUSH_PAYMENT

    def __init__(self, callback_token: Optional[str] = None, currency: str = DEFAULT_CURRENCY):
        self.callback_token = callback_token if callback_token is not None else os.getenv(
            "PUSH_PAYMENT_CALLBACK_TOKEN"
        )
        self.currency = currency

    def verify(self, body, headers, query, payload=None) -> bool:
        return self._token_matches(headers, query)

    def extract_idempotency_key(self, payload: Mapping[str, Any]) -> str:
        return require_str(payload, "checkout_request_id")

    def extract_correlation_hint(self, payload: Mapping[str, Any]) -> CorrelationHint:
        return CorrelationHint(CorrelationKind.INTENT, self.extract_idempotency_key(payload))

    def normalize(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        payload = self._ensure_mapping(payload)
        external_id = self.extract_idempotency_key(payload)

        result_code = payload.get("result_code")
        if result_code is None or str(result_code).strip() == "":
            raise PaymentValidationError("result_code is required", field="result_code")
        succeeded = str(result_code).strip() == "0"

        return CanonicalEvent(
            external_id=external_id,
            channel=self.channel,
            amount=parse_amount(payload.get("amount"), "amount", required=False),
            currency=self.currency,
            succeeded=succeeded,
            correlation=self.extract_correlation_hint(payload),
            raw_reference=_optional_str(payload, "receipt_number"),
            payer_phone=normalize_phone(payload.get("phone")),
            provider_status=str(result_code).strip(),
            notes=_optional_str(payload, "result_desc"),
            raw_payload=dict(payload),
        )


class CustomerPaymentAdapter(_CallbackTokenMixin, ChannelAdapter):
    """
    Customer-initiated paybill payment (validation and confirmation callbacks).

    The payer types the store's reference code as the account number, which
    arrives as bill_ref_number.
    """

    channel = PaymentChannel.CUSTOMER_PAYMENT

    def __init__(
        self,
        callback_token: Optional[str] = None,
        short_code: Optional[str] = None,
        currency: str = DEFAULT_CURRENCY,
    ):
        self.callback_token = callback_token if callback_token is not None else os.getenv(
            "CUSTOMER_PAYMENT_CALLBACK_TOKEN"
        )
        self.short_code = short_code if short_code is not None else os.getenv(
            "CUSTOMER_PAYMENT_SHORT_CODE"
        )
        self.currency = currency

    def verify(self, body, headers, query, payload=None) -> bool:
        if not self._token_matches(headers, query):
            return False
        if self.short_code and payload is not None:
            supplied = str(payload.get("business_short_code") or "").strip()
            if not hmac.compare_digest(supplied, str(self.short_code)):
                logger.warning(
                    "Customer payment for unexpected short code",
                    extra={"business_short_code": supplied},
                )
                return False
        return True

    def extract_idempotency_key(self, payload: Mapping[str, Any]) -> str:
        return require_str(payload, "trans_id")

    def extract_correlation_hint(self, payload: Mapping[str, Any]) -> CorrelationHint:
        reference = normalize_reference(payload.get("bill_ref_number"))
        if reference:
            return CorrelationHint(CorrelationKind.REFERENCE, reference)
        return CorrelationHint(CorrelationKind.NONE)

    def normalize(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        payload = self._ensure_mapping(payload)
        return CanonicalEvent(
            external_id=self.extract_idempotency_key(payload),
            channel=self.channel,
            amount=parse_amount(payload.get("trans_amount"), "trans_amount"),
            currency=self.currency,
            succeeded=True,
            correlation=self.extract_correlation_hint(payload),
            raw_reference=normalize_reference(payload.get("bill_ref_number")),
            payer_phone=normalize_phone(payload.get("msisdn")),
            raw_payload=dict(payload),
        )


class CheckoutProviderAdapter(ChannelAdapter):
    """
    Third-party hosted checkout callback.

    The provider signs the request with HMAC-SHA256 (hex) over the raw body,
    or over the sorted query string when the callback carries no body.
    subscription_id is the checkout session id recorded as a payment intent.
    """

    channel = PaymentChannel.CHECKOUT_PROVIDER

    def __init__(self, secret: Optional[str] = None, currency: str = DEFAULT_CURRENCY):
        self.secret = secret if secret is not None else os.getenv("CHECKOUT_PROVIDER_SECRET")
        self.currency = currency

    @property
    def is_configured(self) -> bool:
        return bool(self.secret)

    @staticmethod
    def signing_payload(body: bytes, query: Mapping[str, str]) -> bytes:
        if body:
            return body
        items = sorted((k, v) for k, v in query.items() if k != "signature")
        return urlencode(items).encode("utf-8")

    def sign(self, body: bytes, query: Optional[Mapping[str, str]] = None) -> str:
        return hmac.new(
            self.secret.encode("utf-8"),
            self.signing_payload(body, query or {}),
            hashlib.sha256,
        ).hexdigest()

    def verify(self, body, headers, query, payload=None) -> bool:
        if not self.secret:
            return False
        supplied = headers.get(CHECKOUT_SIGNATURE_HEADER) or query.get("signature")
        if not supplied:
            return False
        return hmac.compare_digest(self.sign(body, query), str(supplied).lower())

    def extract_idempotency_key(self, payload: Mapping[str, Any]) -> str:
        return require_str(payload, "reference")

    def extract_correlation_hint(self, payload: Mapping[str, Any]) -> CorrelationHint:
        session_id = _optional_str(payload, "subscription_id")
        if session_id:
            return CorrelationHint(CorrelationKind.INTENT, session_id)
        return CorrelationHint(CorrelationKind.NONE)

    def normalize(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        payload = self._ensure_mapping(payload)
        status_code = require_str(payload, "status_code").upper()
        return CanonicalEvent(
            external_id=self.extract_idempotency_key(payload),
            channel=self.channel,
            amount=parse_amount(payload.get("amount"), "amount", required=False),
            currency=str(payload.get("currency") or self.currency).upper(),
            succeeded=status_code in CHECKOUT_SUCCESS_CODES,
            correlation=self.extract_correlation_hint(payload),
            raw_reference=_optional_str(payload, "subscription_id"),
            provider_status=status_code,
            raw_payload=dict(payload),
        )


class AdminGrantAdapter(ChannelAdapter):
    """
    Manual grant issued by an operator.

    Authenticity comes from the admin JWT checked by the route; payment_ref is
    the operator-supplied receipt and deduplicates repeated submissions.
    """

    channel = PaymentChannel.ADMIN_MANUAL

    def __init__(self, currency: str = DEFAULT_CURRENCY):
        self.currency = currency

    def extract_idempotency_key(self, payload: Mapping[str, Any]) -> str:
        return require_str(payload, "payment_ref")

    def extract_correlation_hint(self, payload: Mapping[str, Any]) -> CorrelationHint:
        return CorrelationHint(CorrelationKind.STORE, require_str(payload, "store_id"))

    def normalize(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        payload = self._ensure_mapping(payload)
        return CanonicalEvent(
            external_id=self.extract_idempotency_key(payload),
            channel=self.channel,
            amount=parse_amount(payload.get("amount"), "amount", required=False),
            currency=self.currency,
            succeeded=True,
            correlation=self.extract_correlation_hint(payload),
            raw_reference=self.extract_idempotency_key(payload),
            store_id=require_str(payload, "store_id"),
            plan_id=require_str(payload, "plan_id"),
            actor_id=_optional_str(payload, "actor_id"),
            notes=_optional_str(payload, "reason"),
            raw_payload=dict(payload),
        )


def get_adapter(channel: PaymentChannel) -> ChannelAdapter:
    """Build the adapter for a channel from current environment settings."""
    adapters = {
        PaymentChannel.PUSH_PAYMENT: PushPaymentAdapter,
        PaymentChannel.CUSTOMER_PAYMENT: CustomerPaymentAdapter,
        PaymentChannel.CHECKOUT_PROVIDER: CheckoutProviderAdapter,
        PaymentChannel.ADMIN_MANUAL: AdminGrantAdapter,
    }
    return adapters[PaymentChannel(channel)]()
