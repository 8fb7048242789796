"""
Store and store access code models.

A store is the tenant whose access is being sold. Every store owns exactly one
subscription and is reachable by payers through its payment code (PREFIX-NNNN)
or any active access code issued to it.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship

from dukabill.models.base import Base, TimestampMixin, generate_uuid


class Store(Base, TimestampMixin):
    """
    A store (tenant) that holds a subscription.

    payment_code is immutable once issued; payers quote it as the account
    reference on customer-initiated payments.
    """

    __tablename__ = "stores"

    id = Column(String(64), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    phone = Column(
        String(32),
        nullable=True,
        index=True,
        comment="Owner MSISDN, used for amount-range matching"
    )
    email = Column(String(255), nullable=True)
    payment_code = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="Primary reference code, e.g. DUKA-0001"
    )

    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspension_reason = Column(Text, nullable=True)

    subscription = relationship(
        "Subscription",
        back_populates="store",
        uselist=False,
    )
    access_codes = relationship(
        "StoreAccessCode",
        back_populates="store",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Store(id={self.id}, payment_code={self.payment_code})>"


class StoreAccessCode(Base, TimestampMixin):
    """Additional reference codes that resolve to a store."""

    __tablename__ = "store_access_codes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(32), nullable=False, unique=True)
    store_id = Column(
        String(64),
        ForeignKey("stores.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    label = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    store = relationship("Store", back_populates="access_codes")

    __table_args__ = (
        Index("ix_store_access_codes_store_active", "store_id", "is_active"),
    )
