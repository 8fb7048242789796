"""
Payment event log service.

Append-only, deduplicated record of every inbound payment notification.
The row is committed before any matching happens, so a crash after the
provider callback never loses money: the re-drive job picks it up.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.billing.errors import (
    DuplicateEventError,
    PaymentEventNotFoundError,
    StorageUnavailableError,
)
from dukabill.models.base import utc_now
from dukabill.models.payment_event import MatchStatus, PaymentEvent
from dukabill.services.channel_adapters import CanonicalEvent

logger = logging.getLogger(__name__)


class PaymentEventLog:
    """Durable store for canonical payment events."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utc_now):
        self.db = db_session
        self.clock = clock

    def append(self, event: CanonicalEvent) -> PaymentEvent:
        """
        Insert and commit a new payment event.

        Args:
            event: Normalized event from a channel adapter

        Returns:
            The persisted PaymentEvent (status PENDING)

        Raises:
            DuplicateEventError: external_id already recorded (carries the row)
            StorageUnavailableError: database unreachable
        """
        row = PaymentEvent(
            external_id=event.external_id,
            channel=event.channel.value,
            amount=event.amount,
            currency=event.currency,
            raw_reference=event.raw_reference,
            payer_phone=event.payer_phone,
            correlation_kind=event.correlation.kind,
            correlation_value=event.correlation.value,
            provider_status=event.provider_status,
            succeeded=event.succeeded,
            raw_payload=event.raw_payload,
            payload_hash=event.payload_hash,
            received_at=self.clock(),
            match_status=MatchStatus.PENDING.value,
            matched_store_id=event.store_id,
            plan_id=event.plan_id,
            linked_by=event.actor_id,
            notes=event.notes,
        )

        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find(event.external_id)
            if existing is None:
                raise
            if existing.payload_hash and existing.payload_hash != event.payload_hash:
                logger.warning(
                    "Redelivered payment event payload differs from stored copy",
                    extra={
                        "external_id": event.external_id,
                        "channel": event.channel.value,
                    },
                )
            logger.info(
                "Duplicate payment event ignored",
                extra={
                    "external_id": event.external_id,
                    "match_status": existing.match_status,
                },
            )
            raise DuplicateEventError(event.external_id, existing_event=existing)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to persist payment event",
                extra={"external_id": event.external_id, "error": str(e)},
            )
            raise StorageUnavailableError(
                "Payment event could not be stored", external_id=event.external_id
            ) from e

        logger.info(
            "Payment event recorded",
            extra={
                "external_id": row.external_id,
                "channel": row.channel,
                "amount": str(row.amount) if row.amount is not None else None,
            },
        )
        return row

    def find(self, external_id: str) -> Optional[PaymentEvent]:
        return (
            self.db.query(PaymentEvent)
            .populate_existing()
            .filter(PaymentEvent.external_id == external_id)
            .first()
        )

    def get(self, external_id: str) -> PaymentEvent:
        """
        Raises:
            PaymentEventNotFoundError: If no event has this external_id
        """
        row = self.find(external_id)
        if row is None:
            raise PaymentEventNotFoundError(external_id)
        return row

    def list_by_status(
        self,
        statuses: List[str],
        limit: int = 100,
        received_before: Optional[datetime] = None,
    ) -> List[PaymentEvent]:
        query = self.db.query(PaymentEvent).filter(PaymentEvent.match_status.in_(statuses))
        if received_before is not None:
            query = query.filter(PaymentEvent.received_at <= received_before)
        return (
            query
            .order_by(PaymentEvent.received_at.asc())
            .limit(limit)
            .all()
        )

    def list_applied_for_store(self, store_id: str, limit: int = 50) -> List[PaymentEvent]:
        return (
            self.db.query(PaymentEvent)
            .filter(
                PaymentEvent.matched_store_id == store_id,
                PaymentEvent.match_status == MatchStatus.APPLIED.value,
            )
            .order_by(PaymentEvent.applied_at.desc())
            .limit(limit)
            .all()
        )
