"""
ReminderLog model.

The unique constraint on (subscription_id, reminder_type, bucket_date) is the
dedup guarantee for reminder sends: a row exists iff a send was attempted.
"""

from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Date, DateTime, Text, ForeignKey, UniqueConstraint
)

from dukabill.models.base import Base, generate_uuid, utc_now


class ReminderType(str, Enum):
    TRIAL_ENDING = "TRIAL_ENDING"
    PAYMENT_DUE = "PAYMENT_DUE"
    OVERDUE = "OVERDUE"
    SUSPENDED = "SUSPENDED"


class DeliveryStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


class ReminderLog(Base):
    __tablename__ = "reminder_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    store_id = Column(String(64), nullable=False, index=True)
    reminder_type = Column(String(32), nullable=False)
    bucket_date = Column(Date, nullable=False)
    days_to_expiry = Column(Integer, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    delivery_status = Column(String(16), nullable=False, default=DeliveryStatus.SENT.value)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "reminder_type", "bucket_date",
            name="uq_reminder_logs_subscription_type_bucket",
        ),
    )
