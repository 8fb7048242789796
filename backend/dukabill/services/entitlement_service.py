"""
Entitlement reads.

Wraps the pure expiry evaluator with storage access. Reads fail closed: any
database error surfaces as StorageUnavailableError and never as access.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.billing.errors import StorageUnavailableError
from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.entitlements.evaluator import EntitlementView, build_entitlement_view
from dukabill.models.base import utc_now
from dukabill.models.subscription import Subscription

logger = logging.getLogger(__name__)


class EntitlementService:
    def __init__(
        self,
        db_session: Session,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()
        self.clock = clock

    def get_entitlement(self, store_id: str) -> EntitlementView:
        """
        Effective tier for a store right now.

        Raises:
            StorageUnavailableError: Database unreachable (fail closed)
        """
        try:
            subscription = (
                self.db.query(Subscription)
                .filter(Subscription.store_id == store_id)
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(
                "Entitlement read failed, denying access",
                extra={"store_id": store_id, "error": str(e)},
            )
            raise StorageUnavailableError(
                "Entitlement state unavailable", store_id=store_id
            ) from e

        return build_entitlement_view(
            subscription, self.clock(), store_id=store_id, catalog=self.catalog
        )
