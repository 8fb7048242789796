"""
Daily reminder sweep.

Sends trial-ending, payment-due, overdue and suspension reminders at most
once per subscription, type and day, and persists EXPIRED for lapsed rows.

Usage:
    python -m dukabill.jobs.reminder_sweep
"""

import sys
import logging

from sqlalchemy.orm import Session

from dukabill.database.session import get_db_session_sync
from dukabill.services.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


def run_reminder_sweep(db: Session, scheduler: ReminderScheduler = None) -> dict:
    """Run one sweep and return its statistics."""
    scheduler = scheduler or ReminderScheduler(db)
    return scheduler.run_sweep().to_dict()


def main():
    """Entry point for running the sweep from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        for db in get_db_session_sync():
            result = run_reminder_sweep(db)
        print(f"Reminder sweep completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Reminder sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
