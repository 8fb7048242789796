"""
Entitlement read routes.

Read-only: clients never write entitlement state. A store user may read only
their own store; admins may read any store.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dukabill.database.session import get_db_session
from dukabill.entitlements.evaluator import EntitlementView
from dukabill.platform.auth_context import AuthContext, ensure_store_access, get_auth_context
from dukabill.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/entitlement", tags=["entitlement"])


class EntitlementResponse(BaseModel):
    store_id: str
    tier: str
    status: Optional[str] = None
    expires_at: Optional[datetime] = None
    days_remaining: int
    plan_id: Optional[str] = None
    is_trial: bool
    has_full_access: bool
    can_access_premium_features: bool


def to_entitlement_response(store_id: str, view: EntitlementView) -> EntitlementResponse:
    return EntitlementResponse(
        store_id=store_id,
        tier=view.tier.value,
        status=view.status,
        expires_at=view.expires_at,
        days_remaining=view.days_remaining,
        plan_id=view.plan_id,
        is_trial=view.is_trial,
        has_full_access=view.has_full_access,
        can_access_premium_features=view.can_access_premium_features,
    )


@router.get("/{store_id}", response_model=EntitlementResponse)
async def get_entitlement(
    store_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db_session),
):
    """
    Effective tier for a store, computed at read time.

    A lapsed subscription reads as EXPIRED even before any job has run.
    Storage failures return 503 rather than granting access.
    """
    ensure_store_access(auth, store_id)
    view = EntitlementService(db).get_entitlement(store_id)
    return to_entitlement_response(store_id, view)
