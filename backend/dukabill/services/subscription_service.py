"""
Subscription lifecycle service.

Handles every subscription mutation that is not a payment:
- start_trial: created once with the store
- cancel / suspend / reinstate: explicit admin commands
- mark_expired: lazy persistence used by the reminder sweep

All mutations are version-checked and audited. Payments go through
PaymentReconciler instead.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.billing.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    StorageUnavailableError,
    SubscriptionNotFoundError,
)
from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.models.base import as_utc, utc_now
from dukabill.models.billing_event import ActorType, BillingEvent, BillingEventType
from dukabill.models.store import Store
from dukabill.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Non-payment subscription transitions."""

    def __init__(
        self,
        db_session: Session,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()
        self.clock = clock

    def get(self, store_id: str) -> Subscription:
        """
        Raises:
            SubscriptionNotFoundError: If the store has no subscription
        """
        subscription = (
            self.db.query(Subscription)
            .populate_existing()
            .filter(Subscription.store_id == store_id)
            .first()
        )
        if subscription is None:
            raise SubscriptionNotFoundError(store_id)
        return subscription

    def start_trial(self, store: Store) -> Subscription:
        """
        Create the store's TRIAL subscription. Caller commits.

        expires_at = now + trial length.
        """
        now = self.clock()
        subscription = Subscription(
            store_id=store.id,
            status=SubscriptionStatus.TRIAL.value,
            is_trial=True,
            plan_id=None,
            expires_at=now + timedelta(days=self.catalog.trial_days),
            version=1,
        )
        self.db.add(subscription)
        self.db.flush()
        self._audit(
            BillingEventType.TRIAL_STARTED,
            subscription,
            previous_status=None,
            new_status=SubscriptionStatus.TRIAL.value,
            previous_expires_at=None,
            new_expires_at=subscription.expires_at,
            actor_type=ActorType.SYSTEM,
        )
        logger.info(
            "Trial started",
            extra={"store_id": store.id, "expires_at": subscription.expires_at.isoformat()},
        )
        return subscription

    def cancel(self, store_id: str, reason: Optional[str] = None,
               actor_id: Optional[str] = None) -> Subscription:
        """Cancel a subscription. Terminal for automatic transitions."""
        subscription = self.get(store_id)
        if subscription.is_cancelled:
            return subscription
        now = self.clock()
        return self._transition(
            subscription,
            SubscriptionStatus.CANCELLED.value,
            BillingEventType.SUBSCRIPTION_CANCELLED,
            extra_values={"cancelled_at": now},
            reason=reason,
            actor_type=ActorType.ADMIN,
            actor_id=actor_id,
        )

    def suspend(self, store_id: str, reason: Optional[str] = None,
                actor_id: Optional[str] = None) -> Subscription:
        """Suspend a store. Tier reads EXPIRED while suspended."""
        subscription = self.get(store_id)
        if subscription.status == SubscriptionStatus.SUSPENDED.value:
            return subscription
        if subscription.is_cancelled:
            raise InvalidTransitionError(
                "Cancelled subscriptions cannot be suspended",
                current_status=subscription.status,
                store_id=store_id,
            )
        now = self.clock()
        store = self.db.get(Store, store_id)
        if store is not None:
            store.suspended_at = now
            store.suspension_reason = reason
        return self._transition(
            subscription,
            SubscriptionStatus.SUSPENDED.value,
            BillingEventType.SUBSCRIPTION_SUSPENDED,
            extra_values={"suspended_at": now},
            reason=reason,
            actor_type=ActorType.ADMIN,
            actor_id=actor_id,
        )

    def reinstate(self, store_id: str, actor_id: Optional[str] = None) -> Subscription:
        """
        Lift a suspension without touching expires_at.

        The subscription returns to TRIAL/ACTIVE if time remains, EXPIRED otherwise.
        """
        subscription = self.get(store_id)
        if subscription.status != SubscriptionStatus.SUSPENDED.value:
            raise InvalidTransitionError(
                "Only suspended subscriptions can be reinstated",
                current_status=subscription.status,
                store_id=store_id,
            )

        now = self.clock()
        if as_utc(subscription.expires_at) <= now:
            new_status = SubscriptionStatus.EXPIRED.value
        elif subscription.is_trial:
            new_status = SubscriptionStatus.TRIAL.value
        else:
            new_status = SubscriptionStatus.ACTIVE.value

        store = self.db.get(Store, store_id)
        if store is not None:
            store.suspended_at = None
            store.suspension_reason = None
        return self._transition(
            subscription,
            new_status,
            BillingEventType.SUBSCRIPTION_REINSTATED,
            extra_values={"suspended_at": None},
            actor_type=ActorType.ADMIN,
            actor_id=actor_id,
        )

    def mark_expired(self, subscription: Subscription) -> bool:
        """
        Persist EXPIRED for a lapsed TRIAL/ACTIVE subscription.

        Pure bookkeeping; reads already evaluate lapsed rows as EXPIRED.
        Returns False when the row changed underneath us or is not lapsed.
        """
        if subscription.status not in (
            SubscriptionStatus.TRIAL.value,
            SubscriptionStatus.ACTIVE.value,
        ):
            return False
        now = self.clock()
        if as_utc(subscription.expires_at) > now:
            return False

        try:
            self._transition(
                subscription,
                SubscriptionStatus.EXPIRED.value,
                BillingEventType.SUBSCRIPTION_EXPIRED,
                actor_type=ActorType.CRON,
                max_attempts=1,
            )
        except ConcurrencyConflictError:
            logger.info(
                "Skipped expiry persistence, subscription changed concurrently",
                extra={"store_id": subscription.store_id},
            )
            return False
        return True

    def _transition(
        self,
        subscription: Subscription,
        new_status: str,
        event_type: str,
        extra_values: Optional[dict] = None,
        reason: Optional[str] = None,
        actor_type: str = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        max_attempts: int = 1,
    ) -> Subscription:
        previous_status = subscription.status
        now = self.clock()
        values = dict(extra_values or {})
        values.update(status=new_status, version=subscription.version + 1, updated_at=now)

        try:
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
                self.db.rollback()
                raise ConcurrencyConflictError(subscription.store_id, max_attempts)

            self._audit(
                event_type,
                subscription,
                previous_status=previous_status,
                new_status=new_status,
                previous_expires_at=subscription.expires_at,
                new_expires_at=subscription.expires_at,
                actor_type=actor_type,
                actor_id=actor_id,
                metadata={"reason": reason} if reason else None,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailableError(
                "Subscription could not be updated", store_id=subscription.store_id
            ) from e

        logger.info(
            "Subscription status changed",
            extra={
                "store_id": subscription.store_id,
                "previous_status": previous_status,
                "new_status": new_status,
                "actor_id": actor_id,
            },
        )
        self.db.expire(subscription)
        return self.get(subscription.store_id)

    def _audit(self, event_type: str, subscription: Subscription, **fields) -> None:
        metadata = fields.pop("metadata", None)
        self.db.add(BillingEvent(
            store_id=subscription.store_id,
            subscription_id=subscription.id,
            event_type=event_type,
            occurred_at=self.clock(),
            plan_id=subscription.plan_id,
            event_metadata=metadata,
            **fields,
        ))
