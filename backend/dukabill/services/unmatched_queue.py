"""
Unmatched payment queue.

Payments the reconciler could not attribute wait here for an operator.
Linking re-enters the reconciler's apply step with an explicit match.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from dukabill.models.payment_event import MatchStatus, PaymentEvent
from dukabill.services.payment_event_log import PaymentEventLog
from dukabill.services.reconciler import ApplyResult, PaymentReconciler

logger = logging.getLogger(__name__)


class UnmatchedQueue:
    def __init__(self, db_session: Session, reconciler: Optional[PaymentReconciler] = None):
        self.db = db_session
        self.reconciler = reconciler or PaymentReconciler(db_session)
        self.event_log = PaymentEventLog(db_session, clock=self.reconciler.clock)

    def list_unmatched(self, limit: int = 100, offset: int = 0) -> List[PaymentEvent]:
        """Unmatched events, oldest first."""
        return (
            self.db.query(PaymentEvent)
            .filter(PaymentEvent.match_status == MatchStatus.UNMATCHED.value)
            .order_by(PaymentEvent.received_at.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_unmatched(self) -> int:
        return (
            self.db.query(PaymentEvent)
            .filter(PaymentEvent.match_status == MatchStatus.UNMATCHED.value)
            .count()
        )

    def link(
        self,
        external_id: str,
        store_id: str,
        plan_id: str,
        actor_id: Optional[str] = None,
    ) -> ApplyResult:
        """
        Attribute an unmatched payment to a store and apply it.

        Linking an event that is already applied is a no-op.

        Raises:
            PaymentEventNotFoundError: Unknown external_id
            StoreNotFoundError: Unknown store
            UnknownPlanError: Unknown plan
        """
        event = self.event_log.get(external_id)
        result = self.reconciler.apply_explicit(event, store_id, plan_id, actor_id=actor_id)
        logger.info(
            "Unmatched payment linked",
            extra={
                "external_id": external_id,
                "store_id": store_id,
                "plan_id": plan_id,
                "outcome": result.outcome.value,
            },
        )
        return result
