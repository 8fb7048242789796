"""
Payment ingestion pipeline shared by webhook and admin handlers.

adapter.normalize -> event log (durable) -> reconciler -> receipt (background)

Downstream failures after the durable write are logged and left for the
re-drive job; the caller still acknowledges the provider.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from dukabill.billing.errors import BillingError, DuplicateEventError
from dukabill.models.payment_event import PaymentEvent
from dukabill.models.store import Store
from dukabill.services.channel_adapters import CanonicalEvent, ChannelAdapter
from dukabill.services.payment_confirmation import send_payment_receipt
from dukabill.services.payment_event_log import PaymentEventLog
from dukabill.services.reconciler import ApplyOutcome, ApplyResult, PaymentReconciler

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    """Outcome of ingesting one inbound notification."""
    event: PaymentEvent
    duplicate: bool
    result: Optional[ApplyResult] = None
    error: Optional[str] = None
    # Set when processing was deferred; admin callers surface it
    exception: Optional[BillingError] = None

    @property
    def outcome(self) -> Optional[str]:
        return self.result.outcome.value if self.result else None


class PaymentIngestionService:
    def __init__(
        self,
        db_session: Session,
        reconciler: Optional[PaymentReconciler] = None,
        schedule: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            db_session: Database session
            reconciler: Reconciler to use (default built on db_session)
            schedule: Callable(func, *args) for out-of-band work,
                typically BackgroundTasks.add_task; None disables receipts
        """
        self.db = db_session
        self.reconciler = reconciler or PaymentReconciler(db_session)
        self.event_log = PaymentEventLog(db_session, clock=self.reconciler.clock)
        self.schedule = schedule

    def ingest(self, adapter: ChannelAdapter, payload: Mapping[str, Any],
               **overrides) -> IngestionResult:
        """
        Normalize, persist and process a raw payload.

        Raises:
            PaymentValidationError: Malformed payload (nothing persisted)
            StorageUnavailableError: Payload could not be persisted
        """
        canonical = adapter.normalize(payload)
        if overrides:
            canonical = replace(canonical, **overrides)
        return self.ingest_canonical(canonical)

    def ingest_canonical(self, canonical: CanonicalEvent) -> IngestionResult:
        duplicate = False
        try:
            event = self.event_log.append(canonical)
        except DuplicateEventError as dup:
            event = dup.existing_event
            duplicate = True

        ingestion = IngestionResult(event=event, duplicate=duplicate)
        try:
            ingestion.result = self.reconciler.process(event)
        except BillingError as e:
            ingestion.error = e.code
            ingestion.exception = e
            logger.error(
                "Payment processing deferred to re-drive",
                extra={
                    "external_id": canonical.external_id,
                    "channel": canonical.channel.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return ingestion

        if ingestion.result.outcome == ApplyOutcome.APPLIED:
            self._schedule_receipt(ingestion.result)
        return ingestion

    def _schedule_receipt(self, result: ApplyResult) -> None:
        if self.schedule is None:
            return
        store = self.db.get(Store, result.store_id)
        self.schedule(send_payment_receipt, result, store.phone if store else None)
