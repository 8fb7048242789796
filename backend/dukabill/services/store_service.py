"""
Store registration and reference codes.

A store is created together with its primary payment code and its TRIAL
subscription in one transaction.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.billing.errors import (
    InvalidTransitionError,
    PaymentValidationError,
    StorageUnavailableError,
    StoreNotFoundError,
)
from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.models.base import utc_now
from dukabill.models.store import Store, StoreAccessCode
from dukabill.services.channel_adapters import (
    is_reference_code,
    normalize_phone,
    normalize_reference,
)
from dukabill.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# Bounded retries when two registrations race for the same next code.
CODE_ALLOCATION_ATTEMPTS = 5


class StoreService:
    def __init__(
        self,
        db_session: Session,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()
        self.clock = clock

    def get(self, store_id: str) -> Store:
        store = self.db.get(Store, store_id)
        if store is None:
            raise StoreNotFoundError(store_id)
        return store

    def register_store(
        self,
        name: str,
        store_id: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        payment_code: Optional[str] = None,
    ) -> Store:
        """
        Create a store with its payment code and TRIAL subscription.

        Args:
            name: Display name
            store_id: Caller-chosen tenant id (generated when omitted)
            phone: Owner MSISDN
            email: Owner email
            payment_code: Explicit PREFIX-NNNN code (allocated when omitted)

        Raises:
            PaymentValidationError: Malformed code, or store/code already exists
            StorageUnavailableError: Database error
        """
        if payment_code is not None:
            payment_code = normalize_reference(payment_code)
            if not is_reference_code(payment_code):
                raise PaymentValidationError(
                    "payment_code must look like PREFIX-NNNN", field="payment_code"
                )
        if store_id and self.db.get(Store, store_id) is not None:
            raise PaymentValidationError(f"Store '{store_id}' already exists", field="store_id")
        if payment_code and self._code_in_use(payment_code):
            raise PaymentValidationError(
                f"Payment code '{payment_code}' already in use", field="payment_code"
            )

        attempts = 1 if payment_code else CODE_ALLOCATION_ATTEMPTS
        for attempt in range(attempts):
            code = payment_code or self._next_payment_code(offset=attempt)
            try:
                store = Store(
                    name=name,
                    phone=normalize_phone(phone),
                    email=email,
                    payment_code=code,
                )
                if store_id:
                    store.id = store_id
                self.db.add(store)
                self.db.flush()
                SubscriptionService(self.db, self.catalog, self.clock).start_trial(store)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if store_id and self.db.get(Store, store_id) is not None:
                    raise PaymentValidationError(
                        f"Store '{store_id}' already exists", field="store_id"
                    )
                if payment_code:
                    raise PaymentValidationError(
                        f"Payment code '{payment_code}' already in use", field="payment_code"
                    )
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StorageUnavailableError("Store could not be created") from e

            logger.info(
                "Store registered",
                extra={"store_id": store.id, "payment_code": store.payment_code},
            )
            return store

        raise StorageUnavailableError("Could not allocate a unique payment code")

    def _next_payment_code(self, offset: int = 0) -> str:
        prefix = self.catalog.reference_prefix
        number = self.db.query(Store).count() + 1 + offset
        while self._code_in_use(f"{prefix}-{number:04d}"):
            number += 1
        return f"{prefix}-{number:04d}"

    def _code_in_use(self, code: str) -> bool:
        """Payment codes and access codes share one namespace."""
        if self.db.query(Store.id).filter(Store.payment_code == code).first() is not None:
            return True
        return (
            self.db.query(StoreAccessCode.code).filter(StoreAccessCode.code == code).first()
            is not None
        )

    def add_access_code(self, store_id: str, code: str, label: Optional[str] = None) -> StoreAccessCode:
        """Issue an additional reference code for a store."""
        self.get(store_id)
        code = normalize_reference(code)
        if not is_reference_code(code):
            raise PaymentValidationError("code must look like PREFIX-NNNN", field="code")
        if self._code_in_use(code):
            raise PaymentValidationError(f"Code '{code}' already in use", field="code")

        access_code = StoreAccessCode(code=code, store_id=store_id, label=label, is_active=True)
        try:
            self.db.add(access_code)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise PaymentValidationError(f"Code '{code}' already in use", field="code")
        return access_code

    def deactivate_access_code(self, store_id: str, code: str) -> StoreAccessCode:
        access_code = (
            self.db.query(StoreAccessCode)
            .filter(
                StoreAccessCode.store_id == store_id,
                StoreAccessCode.code == normalize_reference(code),
            )
            .first()
        )
        if access_code is None:
            raise InvalidTransitionError(f"Code '{code}' is not issued to store '{store_id}'")
        access_code.is_active = False
        self.db.commit()
        return access_code

    def list_access_codes(self, store_id: str) -> List[StoreAccessCode]:
        return (
            self.db.query(StoreAccessCode)
            .filter(StoreAccessCode.store_id == store_id)
            .order_by(StoreAccessCode.created_at.asc())
            .all()
        )
