"""
BillingEvent model for the immutable subscription audit trail.

CRITICAL: This table is APPEND-ONLY.
Never update or delete billing events - only insert new ones.
"""

from sqlalchemy import Column, String, DateTime, Numeric, JSON

from dukabill.models.base import Base, generate_uuid, utc_now


class BillingEventType:
    """Billing event type constants."""
    TRIAL_STARTED = "trial_started"
    PAYMENT_APPLIED = "payment_applied"
    PAYMENT_UNMATCHED = "payment_unmatched"
    PAYMENT_LINKED = "payment_linked"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_REINSTATED = "subscription_reinstated"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


class ActorType:
    """Actor type constants."""
    ADMIN = "admin"
    SYSTEM = "system"
    WEBHOOK = "webhook"
    CRON = "cron"


class BillingEvent(Base):
    """
    One row per subscription mutation or reconciliation decision.

    Records previous and new expiry/status so any entitlement change can be
    explained from this table alone.
    """

    __tablename__ = "billing_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    store_id = Column(String(64), nullable=True, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)
    payment_event_id = Column(String(36), nullable=True, index=True)

    event_type = Column(String(40), nullable=False, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    previous_expires_at = Column(DateTime(timezone=True), nullable=True)
    new_expires_at = Column(DateTime(timezone=True), nullable=True)

    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    plan_id = Column(String(64), nullable=True)

    actor_type = Column(String(20), nullable=False, default=ActorType.SYSTEM)
    actor_id = Column(String(255), nullable=True)

    event_metadata = Column(JSON, nullable=True)
