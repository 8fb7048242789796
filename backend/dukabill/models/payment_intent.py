"""
PaymentIntent model.

Recorded when a store initiates a push payment or opens a checkout session, so
the provider's callback identifier resolves to an explicit store and plan.
"""

from enum import Enum

from sqlalchemy import Column, String, Numeric, ForeignKey

from dukabill.models.base import Base, TimestampMixin, generate_uuid


class IntentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentIntent(Base, TimestampMixin):
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    intent_id = Column(
        String(128),
        nullable=False,
        unique=True,
        comment="checkout_request_id or checkout session id"
    )
    channel = Column(String(32), nullable=False)
    store_id = Column(
        String(64),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(String(64), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="KES")
    phone = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, default=IntentStatus.PENDING.value)
