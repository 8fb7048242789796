"""
Pending payment re-drive job.

Re-processes payment events left PENDING or MATCHED, e.g. when the process
crashed between the durable write and the apply step, or the apply gave up
on a version conflict. Processing is idempotent, so overlapping runs are safe.

Usage:
    python -m dukabill.jobs.process_pending_payments
"""

import os
import sys
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from dukabill.billing.errors import BillingError
from dukabill.database.session import get_db_session_sync
from dukabill.models.base import utc_now
from dukabill.models.payment_event import MatchStatus
from dukabill.services.payment_event_log import PaymentEventLog
from dukabill.services.reconciler import ApplyOutcome, PaymentReconciler

logger = logging.getLogger(__name__)

# Leave fresh events to the webhook handler that is processing them inline.
MIN_EVENT_AGE_SECONDS = int(os.getenv("REDRIVE_MIN_EVENT_AGE_SECONDS", "120"))
MAX_EVENTS_PER_RUN = int(os.getenv("REDRIVE_MAX_EVENTS_PER_RUN", "200"))


class RedriveStats:
    """Track re-drive run statistics."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self.events_checked = 0
        self.applied = 0
        self.unmatched = 0
        self.failed = 0
        self.errors = 0
        self.start_time = clock()

    def to_dict(self) -> dict:
        duration = (self.clock() - self.start_time).total_seconds()
        return {
            "events_checked": self.events_checked,
            "applied": self.applied,
            "unmatched": self.unmatched,
            "failed": self.failed,
            "errors": self.errors,
            "duration_seconds": duration,
        }


def run_redrive(
    db: Session,
    reconciler: Optional[PaymentReconciler] = None,
    limit: int = MAX_EVENTS_PER_RUN,
    min_age_seconds: int = MIN_EVENT_AGE_SECONDS,
) -> dict:
    """
    Process stranded PENDING/MATCHED events once.

    Returns:
        Run statistics
    """
    reconciler = reconciler or PaymentReconciler(db)
    stats = RedriveStats(clock=reconciler.clock)
    cutoff = reconciler.clock() - timedelta(seconds=min_age_seconds)

    events = PaymentEventLog(db).list_by_status(
        [MatchStatus.PENDING.value, MatchStatus.MATCHED.value],
        limit=limit,
        received_before=cutoff,
    )
    for event in events:
        stats.events_checked += 1
        try:
            result = reconciler.process(event)
        except BillingError as e:
            stats.errors += 1
            logger.error(
                "Re-drive failed for payment event",
                extra={"external_id": event.external_id, "error": str(e)},
            )
            continue

        if result.outcome == ApplyOutcome.APPLIED:
            stats.applied += 1
        elif result.outcome == ApplyOutcome.UNMATCHED:
            stats.unmatched += 1
        elif result.outcome == ApplyOutcome.FAILED:
            stats.failed += 1

    logger.info("Pending payment re-drive completed", extra=stats.to_dict())
    return stats.to_dict()


def main():
    """Entry point for running the re-drive job from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        for db in get_db_session_sync():
            result = run_redrive(db)
        print(f"Re-drive completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Re-drive failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
