"""
Subscription model: the entitlement record for each store.

CRITICAL DESIGN:
- ONE subscription per store
- expires_at only moves forward (payments extend it, nothing shortens it)
- version increments on every mutation; payment writes are version-checked
- CANCELLED is terminal for automatic transitions
"""

from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Numeric, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from dukabill.models.base import Base, TimestampMixin, generate_uuid


class SubscriptionStatus(str, Enum):
    """Persisted subscription status values."""
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class Subscription(Base, TimestampMixin):
    """Entitlement state for one store."""

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    store_id = Column(
        String(64),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        comment="One subscription per store"
    )
    plan_id = Column(
        String(64),
        nullable=True,
        comment="Current plan; null while on the initial trial"
    )
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.TRIAL.value,
        index=True,
    )
    is_trial = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Last applied payment
    last_payment_ref = Column(String(128), nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_amount = Column(Numeric(12, 2), nullable=True)
    payment_method = Column(String(32), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency token"
    )

    store = relationship("Store", back_populates="subscription")

    __table_args__ = (
        Index("ix_subscriptions_status_expires", "status", "expires_at"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED.value

    def __repr__(self) -> str:
        return (
            f"<Subscription(store_id={self.store_id}, status={self.status}, "
            f"expires_at={self.expires_at}, version={self.version})>"
        )
