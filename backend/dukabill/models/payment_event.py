"""
PaymentEvent model: the append-only payment event log.

CRITICAL REQUIREMENTS:
- external_id is the provider's own identifier and is UNIQUE at storage level
- Rows are never deleted
- match_status moves PENDING -> {MATCHED, UNMATCHED} -> APPLIED and never back
- FAILED is terminal and only reachable from PENDING (provider declined)
"""

from enum import Enum

from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Text, JSON, Index

from dukabill.models.base import Base, TimestampMixin, generate_uuid, utc_now


class PaymentChannel(str, Enum):
    """Inbound payment channels."""
    PUSH_PAYMENT = "PUSH_PAYMENT"
    CUSTOMER_PAYMENT = "CUSTOMER_PAYMENT"
    CHECKOUT_PROVIDER = "CHECKOUT_PROVIDER"
    ADMIN_MANUAL = "ADMIN_MANUAL"


class MatchStatus(str, Enum):
    """Reconciliation state of a payment event."""
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    UNMATCHED = "UNMATCHED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"


# Allowed forward transitions; anything else is a regression.
MATCH_TRANSITIONS = {
    MatchStatus.PENDING.value: {
        MatchStatus.MATCHED.value,
        MatchStatus.UNMATCHED.value,
        MatchStatus.FAILED.value,
    },
    MatchStatus.UNMATCHED.value: {MatchStatus.MATCHED.value},
    # MATCHED -> UNMATCHED only when the subscription was cancelled before apply
    MatchStatus.MATCHED.value: {MatchStatus.APPLIED.value, MatchStatus.UNMATCHED.value},
    MatchStatus.APPLIED.value: set(),
    MatchStatus.FAILED.value: set(),
}


class PaymentEvent(Base, TimestampMixin):
    """One inbound payment notification, deduplicated by external_id."""

    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    external_id = Column(
        String(128),
        nullable=False,
        unique=True,
        comment="Provider identifier (receipt, checkout request id, payment ref)"
    )
    channel = Column(String(32), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=False, default="KES")

    raw_reference = Column(String(128), nullable=True)
    payer_phone = Column(String(32), nullable=True)
    correlation_kind = Column(String(32), nullable=True)
    correlation_value = Column(String(128), nullable=True)
    provider_status = Column(String(64), nullable=True)
    succeeded = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Provider reported the payment as completed"
    )

    raw_payload = Column(JSON, nullable=True)
    payload_hash = Column(String(64), nullable=True)

    received_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    match_status = Column(
        String(20),
        nullable=False,
        default=MatchStatus.PENDING.value,
        index=True,
    )
    matched_store_id = Column(String(64), nullable=True, index=True)
    plan_id = Column(String(64), nullable=True)
    match_method = Column(String(32), nullable=True)
    unmatched_reason = Column(String(64), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)

    linked_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payment_events_store_applied", "matched_store_id", "applied_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.match_status in (MatchStatus.APPLIED.value, MatchStatus.FAILED.value)

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(external_id={self.external_id}, channel={self.channel}, "
            f"match_status={self.match_status})>"
        )
