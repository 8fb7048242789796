"""
Payment reconciler.

Matches a logged payment event to a store and applies it to that store's
subscription exactly once.

Matching precedence (first match wins):
1. explicit store (admin grant, or a payment intent for push/checkout)
2. reference code (store payment code or active access code)
3. amount range + payer phone, only when the payment carries no reference

Apply runs in one transaction:
- re-read event and subscription
- APPLIED event -> idempotent no-op
- new_expires_at = max(expires_at, now) + plan duration
- version-checked UPDATE of the subscription, guarded UPDATE of the event
- on a version conflict the whole apply is retried, bounded

SECURITY: This is the only payment write path to subscriptions. It is never
exposed on a router; webhook and admin handlers call it.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.billing.errors import (
    BillingError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    StorageUnavailableError,
    StoreNotFoundError,
    SubscriptionNotFoundError,
    UnknownPlanError,
)
from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.models.base import as_utc, utc_now
from dukabill.models.billing_event import ActorType, BillingEvent, BillingEventType
from dukabill.models.payment_event import MATCH_TRANSITIONS, MatchStatus, PaymentEvent
from dukabill.models.payment_intent import IntentStatus, PaymentIntent
from dukabill.models.store import Store, StoreAccessCode
from dukabill.models.subscription import Subscription, SubscriptionStatus
from dukabill.services.channel_adapters import CorrelationKind, is_reference_code

logger = logging.getLogger(__name__)

MAX_APPLY_ATTEMPTS = int(os.getenv("RECONCILER_MAX_APPLY_ATTEMPTS", "3"))


class ApplyOutcome(str, Enum):
    APPLIED = "APPLIED"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    UNMATCHED = "UNMATCHED"
    FAILED = "FAILED"


class MatchMethod:
    EXPLICIT_STORE = "explicit_store"
    PAYMENT_INTENT = "payment_intent"
    REFERENCE_CODE = "reference_code"
    AMOUNT_RANGE = "amount_range"
    MANUAL_LINK = "manual_link"


class UnmatchedReason:
    UNKNOWN_STORE = "unknown_store"
    UNKNOWN_INTENT = "unknown_intent"
    UNKNOWN_REFERENCE = "unknown_reference"
    INVALID_REFERENCE = "invalid_reference"
    NO_REFERENCE = "no_reference"
    AMBIGUOUS_PAYER = "ambiguous_payer"
    AMOUNT_OUT_OF_RANGE = "amount_out_of_range"
    UNKNOWN_PLAN = "unknown_plan"
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


@dataclass
class ApplyResult:
    """Result of processing one payment event."""
    outcome: ApplyOutcome
    external_id: str
    store_id: Optional[str] = None
    plan_id: Optional[str] = None
    match_method: Optional[str] = None
    previous_expires_at: Optional[datetime] = None
    new_expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    subscription_status: Optional[str] = None
    attempts: int = 0

    @property
    def processed(self) -> bool:
        return self.outcome in (ApplyOutcome.APPLIED, ApplyOutcome.ALREADY_APPLIED)


@dataclass
class MatchDecision:
    store_id: Optional[str] = None
    plan_id: Optional[str] = None
    method: Optional[str] = None
    reason: Optional[str] = None
    # Amount taken from a payment intent when the provider omitted it
    amount: Optional[Decimal] = None

    @property
    def matched(self) -> bool:
        return self.store_id is not None and self.reason is None


class _StaleWrite(Exception):
    """Version or status guard rejected the write; retry the apply."""


class PaymentReconciler:
    """Matches and applies payment events against subscriptions."""

    def __init__(
        self,
        db_session: Session,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: int = MAX_APPLY_ATTEMPTS,
    ):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()
        self.clock = clock
        self.max_attempts = max(1, max_attempts)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process(self, event: PaymentEvent) -> ApplyResult:
        """
        Match (if still pending) and apply a logged payment event.

        Safe to call any number of times for the same event, including from
        concurrent deliveries: every status change is guarded on the status
        this call loaded, and a lost race re-reads the event.

        Args:
            event: Persisted payment event

        Returns:
            ApplyResult describing the outcome

        Raises:
            ConcurrencyConflictError: Version check failed on every attempt
            StorageUnavailableError: Database error
        """
        event_id, external_id = event.id, event.external_id
        # PENDING is never re-entered, so a lost race settles on the next read.
        while True:
            try:
                event = self._reload_event(event_id)

                if event.match_status == MatchStatus.APPLIED.value:
                    return self._already_applied(event)
                if event.match_status == MatchStatus.FAILED.value:
                    return ApplyResult(
                        outcome=ApplyOutcome.FAILED,
                        external_id=event.external_id,
                        reason=event.provider_status,
                    )
                if event.match_status == MatchStatus.UNMATCHED.value:
                    return self._unmatched_result(event)
                if event.match_status == MatchStatus.MATCHED.value:
                    break

                if not event.succeeded:
                    result = self._mark_failed(event)
                else:
                    decision = self._resolve_match(event)
                    if not decision.matched:
                        result = self._mark_unmatched(event, decision.reason)
                    elif self._mark_matched(event, decision):
                        break
                    else:
                        result = None
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageUnavailableError(
                    "Payment event could not be matched", external_id=external_id
                ) from e

            if result is not None:
                return result
            logger.info(
                "Payment event moved by a concurrent delivery, re-reading",
                extra={"external_id": external_id},
            )

        return self._apply(event_id, operator=False)

    def apply_explicit(
        self,
        event: PaymentEvent,
        store_id: str,
        plan_id: str,
        actor_id: Optional[str] = None,
    ) -> ApplyResult:
        """
        Apply an event to an operator-chosen store and plan.

        Used by the unmatched queue link. Same idempotency as process():
        an already-applied event is a no-op, also when two links race.

        Raises:
            StoreNotFoundError: Store does not exist
            UnknownPlanError: Plan id not in the catalog
            InvalidTransitionError: Event failed at the provider
        """
        event_id = event.id
        for attempt in range(1, self.max_attempts + 1):
            event = self._reload_event(event_id)
            if event.match_status == MatchStatus.APPLIED.value:
                return self._already_applied(event)
            if event.match_status == MatchStatus.FAILED.value:
                raise InvalidTransitionError(
                    "A payment the provider reported as failed cannot be linked",
                    current_status=event.match_status,
                    external_id=event.external_id,
                )

            self.catalog.get_plan(plan_id)
            if self.db.get(Store, store_id) is None:
                raise StoreNotFoundError(store_id)

            try:
                # A matched-but-unapplied event is re-pointed; status stays MATCHED.
                linked = self._transition(
                    event,
                    MatchStatus.MATCHED,
                    matched_store_id=store_id,
                    plan_id=plan_id,
                    match_method=MatchMethod.MANUAL_LINK,
                    unmatched_reason=None,
                    linked_by=actor_id,
                )
                if not linked:
                    self.db.rollback()
                    logger.info(
                        "Payment event moved during link, re-reading",
                        extra={"external_id": event.external_id, "attempt": attempt},
                    )
                    continue
                self._audit(
                    BillingEventType.PAYMENT_LINKED,
                    store_id=store_id,
                    payment_event=event,
                    plan_id=plan_id,
                    actor_type=ActorType.ADMIN,
                    actor_id=actor_id,
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageUnavailableError(
                    "Payment event could not be linked", external_id=event.external_id
                ) from e
            break
        else:
            raise ConcurrencyConflictError(store_id, self.max_attempts)

        logger.info(
            "Payment event linked by operator",
            extra={
                "external_id": event.external_id,
                "store_id": store_id,
                "plan_id": plan_id,
                "actor_id": actor_id,
            },
        )
        return self._apply(event_id, operator=True, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _resolve_match(self, event: PaymentEvent) -> MatchDecision:
        decision = self._resolve_store(event)
        if decision.reason:
            return decision

        if decision.plan_id is None:
            plan = self.catalog.plan_for_amount(event.amount)
            if plan is None:
                return MatchDecision(
                    store_id=decision.store_id,
                    reason=UnmatchedReason.AMOUNT_OUT_OF_RANGE,
                )
            decision.plan_id = plan.id
        elif self.catalog.find_plan(decision.plan_id) is None:
            return MatchDecision(store_id=decision.store_id, reason=UnmatchedReason.UNKNOWN_PLAN)

        subscription = self._subscription_for(decision.store_id)
        if subscription is None:
            return MatchDecision(store_id=decision.store_id, reason=UnmatchedReason.NO_SUBSCRIPTION)
        if subscription.is_cancelled and event.correlation_kind != CorrelationKind.STORE:
            return MatchDecision(
                store_id=decision.store_id,
                reason=UnmatchedReason.SUBSCRIPTION_CANCELLED,
            )
        return decision

    def _resolve_store(self, event: PaymentEvent) -> MatchDecision:
        kind = event.correlation_kind

        if kind == CorrelationKind.STORE:
            store_id = event.matched_store_id or event.correlation_value
            if not store_id or self.db.get(Store, store_id) is None:
                return MatchDecision(reason=UnmatchedReason.UNKNOWN_STORE)
            return MatchDecision(
                store_id=store_id,
                plan_id=event.plan_id,
                method=MatchMethod.EXPLICIT_STORE,
            )

        if kind == CorrelationKind.INTENT:
            intent = (
                self.db.query(PaymentIntent)
                .filter(PaymentIntent.intent_id == event.correlation_value)
                .first()
            )
            if intent is None:
                return MatchDecision(reason=UnmatchedReason.UNKNOWN_INTENT)
            return MatchDecision(
                store_id=intent.store_id,
                plan_id=intent.plan_id,
                method=MatchMethod.PAYMENT_INTENT,
                amount=intent.amount if event.amount is None else None,
            )

        if kind == CorrelationKind.REFERENCE:
            reference = event.correlation_value
            if not is_reference_code(reference):
                return MatchDecision(reason=UnmatchedReason.INVALID_REFERENCE)
            store_id = self._store_for_reference(reference)
            if store_id is None:
                return MatchDecision(reason=UnmatchedReason.UNKNOWN_REFERENCE)
            return MatchDecision(store_id=store_id, method=MatchMethod.REFERENCE_CODE)

        return self._match_by_amount_range(event)

    def _store_for_reference(self, reference: str) -> Optional[str]:
        store = self.db.query(Store).filter(Store.payment_code == reference).first()
        if store is not None:
            return store.id
        code = (
            self.db.query(StoreAccessCode)
            .filter(
                StoreAccessCode.code == reference,
                StoreAccessCode.is_active.is_(True),
            )
            .first()
        )
        return code.store_id if code else None

    def _match_by_amount_range(self, event: PaymentEvent) -> MatchDecision:
        """Last resort: the payer's phone identifies exactly one store."""
        if not event.payer_phone or self.catalog.plan_for_amount(event.amount) is None:
            return MatchDecision(reason=UnmatchedReason.NO_REFERENCE)

        stores = (
            self.db.query(Store.id)
            .filter(Store.phone == event.payer_phone)
            .limit(2)
            .all()
        )
        if len(stores) != 1:
            return MatchDecision(
                reason=UnmatchedReason.AMBIGUOUS_PAYER if stores else UnmatchedReason.NO_REFERENCE
            )
        return MatchDecision(store_id=stores[0].id, method=MatchMethod.AMOUNT_RANGE)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _transition(self, event: PaymentEvent, new_status: MatchStatus, **values) -> bool:
        """
        Move an event from its loaded status to new_status.

        The UPDATE only matches while the row still has the loaded status, so
        when another session moved it first nothing is written and this
        returns False. The in-memory event is left untouched either way.

        Raises:
            InvalidTransitionError: new_status is not reachable from the loaded status
        """
        current = event.match_status
        if new_status.value != current and new_status.value not in MATCH_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(
                f"Cannot move payment event from {current} to {new_status.value}",
                current_status=current,
                external_id=event.external_id,
            )
        result = self.db.execute(
            update(PaymentEvent)
            .where(
                PaymentEvent.id == event.id,
                PaymentEvent.match_status == current,
            )
            .values(match_status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _mark_matched(self, event: PaymentEvent, decision: MatchDecision) -> bool:
        values = dict(
            matched_store_id=decision.store_id,
            plan_id=decision.plan_id,
            match_method=decision.method,
        )
        if decision.amount is not None:
            values["amount"] = decision.amount
        if not self._transition(event, MatchStatus.MATCHED, **values):
            self.db.rollback()
            return False
        self.db.commit()
        self.db.expire(event)
        logger.info(
            "Payment event matched",
            extra={
                "external_id": event.external_id,
                "store_id": decision.store_id,
                "plan_id": decision.plan_id,
                "match_method": decision.method,
            },
        )
        return True

    def _mark_unmatched(self, event: PaymentEvent, reason: str) -> Optional[ApplyResult]:
        if not self._transition(event, MatchStatus.UNMATCHED, unmatched_reason=reason):
            self.db.rollback()
            return None
        self._audit(
            BillingEventType.PAYMENT_UNMATCHED,
            store_id=None,
            payment_event=event,
            actor_type=ActorType.WEBHOOK,
            metadata={"reason": reason, "raw_reference": event.raw_reference},
        )
        self.db.commit()
        self.db.expire(event)
        logger.warning(
            "Payment event unmatched, queued for operator",
            extra={
                "external_id": event.external_id,
                "channel": event.channel,
                "reason": reason,
                "raw_reference": event.raw_reference,
            },
        )
        return self._unmatched_result(event, reason)

    def _mark_failed(self, event: PaymentEvent) -> Optional[ApplyResult]:
        if not self._transition(event, MatchStatus.FAILED):
            self.db.rollback()
            return None
        if event.correlation_kind == CorrelationKind.INTENT:
            self.db.execute(
                update(PaymentIntent)
                .where(
                    PaymentIntent.intent_id == event.correlation_value,
                    PaymentIntent.status == IntentStatus.PENDING.value,
                )
                .values(status=IntentStatus.FAILED.value)
                .execution_options(synchronize_session=False)
            )
        self._audit(
            BillingEventType.PAYMENT_FAILED,
            store_id=None,
            payment_event=event,
            actor_type=ActorType.WEBHOOK,
            metadata={"provider_status": event.provider_status, "notes": event.notes},
        )
        self.db.commit()
        self.db.expire(event)
        logger.info(
            "Payment reported as failed by provider",
            extra={
                "external_id": event.external_id,
                "channel": event.channel,
                "provider_status": event.provider_status,
            },
        )
        return ApplyResult(
            outcome=ApplyOutcome.FAILED,
            external_id=event.external_id,
            reason=event.provider_status,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply(
        self,
        event_id: str,
        operator: bool,
        actor_id: Optional[str] = None,
    ) -> ApplyResult:
        store_id = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self._apply_once(event_id, operator, actor_id)
                result.attempts = attempt
                self.db.commit()
            except _StaleWrite as e:
                self.db.rollback()
                store_id = str(e) or store_id
                logger.warning(
                    "Subscription version conflict, retrying apply",
                    extra={"payment_event_id": event_id, "attempt": attempt},
                )
                continue
            except BillingError:
                self.db.rollback()
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageUnavailableError(
                    "Payment could not be applied", payment_event_id=event_id
                ) from e

            self.db.expire_all()
            return result

        logger.error(
            "Giving up on payment apply after version conflicts",
            extra={"payment_event_id": event_id, "attempts": self.max_attempts},
        )
        raise ConcurrencyConflictError(store_id or "unknown", self.max_attempts)

    def _apply_once(
        self,
        event_id: str,
        operator: bool,
        actor_id: Optional[str],
    ) -> ApplyResult:
        event = self._reload_event(event_id)
        if event.match_status == MatchStatus.APPLIED.value:
            return self._already_applied(event)
        if event.match_status != MatchStatus.MATCHED.value:
            raise InvalidTransitionError(
                "Only matched payment events can be applied",
                current_status=event.match_status,
                external_id=event.external_id,
            )

        store_id = event.matched_store_id
        subscription = self._subscription_for(store_id)
        if subscription is None:
            raise SubscriptionNotFoundError(store_id)

        explicit = operator or event.correlation_kind == CorrelationKind.STORE
        if subscription.is_cancelled and not explicit:
            if not self._transition(
                event,
                MatchStatus.UNMATCHED,
                unmatched_reason=UnmatchedReason.SUBSCRIPTION_CANCELLED,
            ):
                raise _StaleWrite(store_id)
            self._audit(
                BillingEventType.PAYMENT_UNMATCHED,
                store_id=store_id,
                payment_event=event,
                subscription=subscription,
                actor_type=ActorType.SYSTEM,
                metadata={"reason": UnmatchedReason.SUBSCRIPTION_CANCELLED},
            )
            return self._unmatched_result(event, UnmatchedReason.SUBSCRIPTION_CANCELLED)

        plan = self.catalog.find_plan(event.plan_id)
        if plan is None:
            raise UnknownPlanError(event.plan_id)

        now = self.clock()
        previous_expires_at = as_utc(subscription.expires_at)
        previous_status = subscription.status
        new_expires_at = max(previous_expires_at, now) + timedelta(days=plan.duration_days)

        # A suspended store keeps its suspension; the payment still counts.
        if previous_status == SubscriptionStatus.SUSPENDED.value:
            new_status = SubscriptionStatus.SUSPENDED.value
        else:
            new_status = SubscriptionStatus.ACTIVE.value

        values = dict(
            expires_at=new_expires_at,
            status=new_status,
            is_trial=False,
            plan_id=plan.id,
            last_payment_ref=event.external_id,
            last_payment_at=now,
            last_payment_amount=event.amount,
            payment_method=event.channel,
            version=subscription.version + 1,
            updated_at=now,
        )
        if previous_status == SubscriptionStatus.CANCELLED.value:
            values["cancelled_at"] = None

        result = self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.version == subscription.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _StaleWrite(store_id)

        if not self._transition(event, MatchStatus.APPLIED, applied_at=now, updated_at=now):
            raise _StaleWrite(store_id)

        if event.correlation_kind == CorrelationKind.INTENT:
            self.db.execute(
                update(PaymentIntent)
                .where(
                    PaymentIntent.intent_id == event.correlation_value,
                    or_(
                        PaymentIntent.status == IntentStatus.PENDING.value,
                        PaymentIntent.status == IntentStatus.FAILED.value,
                    ),
                )
                .values(status=IntentStatus.COMPLETED.value)
                .execution_options(synchronize_session=False)
            )

        self._audit(
            BillingEventType.PAYMENT_APPLIED,
            store_id=store_id,
            payment_event=event,
            subscription=subscription,
            plan_id=plan.id,
            previous_status=previous_status,
            new_status=new_status,
            previous_expires_at=previous_expires_at,
            new_expires_at=new_expires_at,
            actor_type=ActorType.ADMIN if explicit and actor_id else ActorType.WEBHOOK,
            actor_id=actor_id,
            metadata={"match_method": event.match_method, "duration_days": plan.duration_days},
        )

        logger.info(
            "Payment applied",
            extra={
                "external_id": event.external_id,
                "store_id": store_id,
                "plan_id": plan.id,
                "previous_expires_at": previous_expires_at.isoformat(),
                "new_expires_at": new_expires_at.isoformat(),
            },
        )
        return ApplyResult(
            outcome=ApplyOutcome.APPLIED,
            external_id=event.external_id,
            store_id=store_id,
            plan_id=plan.id,
            match_method=event.match_method,
            previous_expires_at=previous_expires_at,
            new_expires_at=new_expires_at,
            subscription_status=new_status,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reload_event(self, event_id: str) -> PaymentEvent:
        return (
            self.db.query(PaymentEvent)
            .populate_existing()
            .filter(PaymentEvent.id == event_id)
            .one()
        )

    def _subscription_for(self, store_id: Optional[str]) -> Optional[Subscription]:
        if store_id is None:
            return None
        return (
            self.db.query(Subscription)
            .populate_existing()
            .filter(Subscription.store_id == store_id)
            .first()
        )

    def _already_applied(self, event: PaymentEvent) -> ApplyResult:
        subscription = self._subscription_for(event.matched_store_id)
        return ApplyResult(
            outcome=ApplyOutcome.ALREADY_APPLIED,
            external_id=event.external_id,
            store_id=event.matched_store_id,
            plan_id=event.plan_id,
            match_method=event.match_method,
            new_expires_at=as_utc(subscription.expires_at) if subscription else None,
            subscription_status=subscription.status if subscription else None,
        )

    @staticmethod
    def _unmatched_result(event: PaymentEvent, reason: Optional[str] = None) -> ApplyResult:
        return ApplyResult(
            outcome=ApplyOutcome.UNMATCHED,
            external_id=event.external_id,
            reason=reason or event.unmatched_reason,
        )

    def _audit(
        self,
        event_type: str,
        store_id: Optional[str],
        payment_event: Optional[PaymentEvent] = None,
        subscription: Optional[Subscription] = None,
        plan_id: Optional[str] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        previous_expires_at: Optional[datetime] = None,
        new_expires_at: Optional[datetime] = None,
        actor_type: str = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        self.db.add(BillingEvent(
            store_id=store_id,
            subscription_id=subscription.id if subscription else None,
            payment_event_id=payment_event.id if payment_event else None,
            event_type=event_type,
            occurred_at=self.clock(),
            previous_status=previous_status,
            new_status=new_status,
            previous_expires_at=previous_expires_at,
            new_expires_at=new_expires_at,
            amount=payment_event.amount if payment_event else None,
            currency=payment_event.currency if payment_event else None,
            plan_id=plan_id,
            actor_type=actor_type,
            actor_id=actor_id,
            event_metadata=metadata,
        ))
