"""
Payment intents.

A store records an intent when it sends a push payment request or opens a
checkout session. The provider's callback id then resolves to this store and
plan during matching.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dukabill.billing.errors import PaymentValidationError
from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.models.payment_event import PaymentChannel
from dukabill.models.payment_intent import IntentStatus, PaymentIntent
from dukabill.services.channel_adapters import normalize_phone
from dukabill.services.store_service import StoreService

logger = logging.getLogger(__name__)

INTENT_CHANNELS = {PaymentChannel.PUSH_PAYMENT.value, PaymentChannel.CHECKOUT_PROVIDER.value}


class PaymentIntentService:
    def __init__(self, db_session: Session, catalog: Optional[PlanCatalog] = None):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()

    def record_intent(
        self,
        intent_id: str,
        channel: str,
        store_id: str,
        plan_id: str,
        amount: Optional[Decimal] = None,
        phone: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Record (idempotently) a push payment or checkout session.

        Re-recording the same intent for the same store returns the stored row.

        Raises:
            PaymentValidationError: Unsupported channel or intent reused by another store
            StoreNotFoundError: Unknown store
            UnknownPlanError: Unknown plan
        """
        if channel not in INTENT_CHANNELS:
            raise PaymentValidationError(
                f"Intents are only recorded for {sorted(INTENT_CHANNELS)}", field="channel"
            )
        plan = self.catalog.get_plan(plan_id)
        StoreService(self.db, self.catalog).get(store_id)

        intent = PaymentIntent(
            intent_id=intent_id,
            channel=channel,
            store_id=store_id,
            plan_id=plan.id,
            amount=amount if amount is not None else plan.price,
            currency=self.catalog.currency,
            phone=normalize_phone(phone),
            status=IntentStatus.PENDING.value,
        )
        try:
            self.db.add(intent)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get(intent_id)
            if existing is None or existing.store_id != store_id:
                raise PaymentValidationError(
                    f"Intent '{intent_id}' already recorded", field="intent_id"
                )
            return existing

        logger.info(
            "Payment intent recorded",
            extra={"intent_id": intent_id, "channel": channel, "store_id": store_id, "plan_id": plan.id},
        )
        return intent

    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        return self.db.query(PaymentIntent).filter(PaymentIntent.intent_id == intent_id).first()
