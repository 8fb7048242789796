"""
Paid-access guard for store-facing routes.

Usage:
    @router.get("/reports", dependencies=[Depends(require_paid_access)])
"""

import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from dukabill.billing.errors import StorageUnavailableError
from dukabill.database.session import get_db_session
from dukabill.entitlements.evaluator import EntitlementView
from dukabill.platform.auth_context import AuthContext, get_auth_context
from dukabill.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)


async def require_paid_access(
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db_session),
) -> EntitlementView:
    """
    Allow the request only while the caller's store has TRIAL/BASIC/PREMIUM.

    Fails closed: storage errors deny access with 503.
    """
    if not auth.store_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token is not bound to a store",
        )

    try:
        view = EntitlementService(db).get_entitlement(auth.store_id)
    except StorageUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.to_dict(),
        )

    if not view.has_access:
        logger.info(
            "Paid access denied",
            extra={"store_id": auth.store_id, "tier": view.tier.value},
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "subscription_required",
                "tier": view.tier.value,
                "status": view.status,
            },
        )
    return view
