"""
Reminder scheduler.

A periodic sweep that:
- maps each subscription's days-to-expiry to at most one reminder type
- claims the reminder with an atomic unique insert keyed by
  (subscription_id, reminder_type, bucket_date); only a successful claim sends
- lazily persists EXPIRED for lapsed TRIAL/ACTIVE rows

Overlapping sweeps are safe: the unique constraint makes a double send
impossible. On PostgreSQL an advisory lock additionally avoids duplicate work.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.entitlements.evaluator import days_until
from dukabill.integrations.retry import RetryPolicy
from dukabill.models.base import as_utc, utc_now
from dukabill.models.reminder_log import DeliveryStatus, ReminderLog, ReminderType
from dukabill.models.store import Store
from dukabill.models.subscription import Subscription, SubscriptionStatus
from dukabill.services.notifier import Notification, Notifier, get_notifier
from dukabill.services.payment_confirmation import deliver_with_retry
from dukabill.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

ADVISORY_LOCK_KEY = 48213077

REMINDER_MESSAGES = {
    ReminderType.TRIAL_ENDING: "Your free trial ends in {days} day(s). Pay with reference {code} to keep access.",
    ReminderType.PAYMENT_DUE: "Your subscription expires in {days} day(s). Pay with reference {code} to renew.",
    ReminderType.OVERDUE: "Your subscription expired {overdue} day(s) ago. Pay with reference {code} to restore access.",
    ReminderType.SUSPENDED: "Your account has been suspended. Pay with reference {code} or contact support.",
}


@dataclass
class SweepStats:
    """Statistics for a reminder sweep."""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lock_acquired: bool = False
    subscriptions_scanned: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0
    duplicates_skipped: int = 0
    expired_persisted: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "lock_acquired": self.lock_acquired,
            "subscriptions_scanned": self.subscriptions_scanned,
            "reminders_sent": self.reminders_sent,
            "reminders_failed": self.reminders_failed,
            "duplicates_skipped": self.duplicates_skipped,
            "expired_persisted": self.expired_persisted,
            "errors": self.errors[:10],
        }


class ReminderScheduler:
    def __init__(
        self,
        db_session: Session,
        notifier: Optional[Notifier] = None,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.db = db_session
        self.notifier = notifier or get_notifier()
        self.catalog = catalog or get_plan_catalog()
        self.clock = clock
        self.retry_policy = retry_policy
        self.sleep = sleep
        self._lock_conn = None

    def reminder_for(
        self, subscription: Subscription, now: datetime
    ) -> Optional[Tuple[ReminderType, int]]:
        """
        Pick the reminder (if any) due for a subscription today.

        Returns:
            (reminder_type, days_to_expiry) or None
        """
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            return None

        days = days_until(subscription.expires_at, now)
        grace = self.catalog.grace_days

        if subscription.status == SubscriptionStatus.SUSPENDED.value:
            suspended_at = as_utc(subscription.suspended_at)
            if suspended_at is not None and suspended_at.date() == now.date():
                return ReminderType.SUSPENDED, days
            return None

        if days >= 0:
            if subscription.is_trial:
                if days in self.catalog.trial_ending_days:
                    return ReminderType.TRIAL_ENDING, days
            elif days in self.catalog.payment_due_days:
                return ReminderType.PAYMENT_DUE, days
            return None

        if -grace <= days < 0:
            return ReminderType.OVERDUE, days
        if days == -(grace + 1):
            return ReminderType.SUSPENDED, days
        return None

    def run_sweep(self) -> SweepStats:
        """Run one sweep over all subscriptions near or past expiry."""
        stats = SweepStats(started_at=self.clock())

        if not self._try_lock():
            logger.info("Reminder sweep already running elsewhere, skipping")
            stats.completed_at = self.clock()
            return stats
        stats.lock_acquired = True

        try:
            now = self.clock()
            for subscription_id in self._candidate_ids(now):
                subscription = self.db.get(Subscription, subscription_id, populate_existing=True)
                if subscription is None:
                    continue
                stats.subscriptions_scanned += 1
                try:
                    self._process(subscription, now, stats)
                except SQLAlchemyError as e:
                    self.db.rollback()
                    stats.errors.append(f"{subscription.store_id}: {e}")
                    logger.error(
                        "Reminder sweep failed for subscription",
                        extra={"store_id": subscription.store_id, "error": str(e)},
                    )
        finally:
            self._unlock()

        stats.completed_at = self.clock()
        logger.info("Reminder sweep completed", extra=stats.to_dict())
        return stats

    def _candidate_ids(self, now: datetime) -> List[str]:
        horizon = max(self.catalog.trial_ending_days + self.catalog.payment_due_days + [0]) + 1
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status != SubscriptionStatus.CANCELLED.value,
                Subscription.expires_at <= now + timedelta(days=horizon),
                or_(
                    Subscription.expires_at >= now - timedelta(days=self.catalog.grace_days + 2),
                    Subscription.status.in_(
                        [SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value]
                    ),
                ),
            )
            .order_by(Subscription.expires_at.asc())
            .all()
        )
        suspended_today = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status == SubscriptionStatus.SUSPENDED.value,
                Subscription.suspended_at >= now - timedelta(days=1),
            )
            .all()
        )
        ids = [row.id for row in rows]
        ids.extend(row.id for row in suspended_today if row.id not in ids)
        return ids

    def _process(self, subscription: Subscription, now: datetime, stats: SweepStats) -> None:
        if subscription.status in (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value):
            if as_utc(subscription.expires_at) <= now:
                service = SubscriptionService(self.db, self.catalog, self.clock)
                if service.mark_expired(subscription):
                    stats.expired_persisted += 1
                subscription = self.db.get(Subscription, subscription.id, populate_existing=True)

        due = self.reminder_for(subscription, now)
        if due is None:
            return
        reminder_type, days = due

        log = self._claim(subscription, reminder_type, now.date(), days, now)
        if log is None:
            stats.duplicates_skipped += 1
            return

        store = self.db.get(Store, subscription.store_id)
        notification = Notification(
            store_id=subscription.store_id,
            recipient=store.phone if store else None,
            kind=reminder_type.value,
            message=REMINDER_MESSAGES[reminder_type].format(
                days=max(days, 0),
                overdue=abs(min(days, 0)),
                code=store.payment_code if store else "",
            ),
            context={"days_to_expiry": days},
        )
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        if deliver_with_retry(self.notifier, notification, self.retry_policy, **kwargs):
            stats.reminders_sent += 1
            return

        log.delivery_status = DeliveryStatus.FAILED.value
        log.error_message = "delivery failed"
        self.db.commit()
        stats.reminders_failed += 1

    def _claim(
        self,
        subscription: Subscription,
        reminder_type: ReminderType,
        bucket_date: date,
        days: int,
        now: datetime,
    ) -> Optional[ReminderLog]:
        """Atomically claim today's reminder. None means already claimed."""
        log = ReminderLog(
            subscription_id=subscription.id,
            store_id=subscription.store_id,
            reminder_type=reminder_type.value,
            bucket_date=bucket_date,
            days_to_expiry=days,
            sent_at=now,
            delivery_status=DeliveryStatus.SENT.value,
        )
        try:
            self.db.add(log)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug(
                "Reminder already claimed",
                extra={
                    "store_id": subscription.store_id,
                    "reminder_type": reminder_type.value,
                    "bucket_date": bucket_date.isoformat(),
                },
            )
            return None
        return log

    def _is_postgres(self) -> bool:
        return self.db.get_bind().dialect.name == "postgresql"

    def _try_lock(self) -> bool:
        """Session-level advisory lock held on a dedicated connection."""
        if not self._is_postgres():
            return True
        conn = self.db.get_bind().connect()
        acquired = bool(
            conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": ADVISORY_LOCK_KEY}
            ).scalar()
        )
        if not acquired:
            conn.close()
            return False
        self._lock_conn = conn
        return True

    def _unlock(self) -> None:
        conn = self._lock_conn
        if conn is None:
            return
        try:
            conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": ADVISORY_LOCK_KEY})
        finally:
            conn.close()
            self._lock_conn = None
