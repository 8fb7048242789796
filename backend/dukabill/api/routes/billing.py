"""
Store-facing billing routes: plans, payment intents, payment history and the
paid-access check.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from sqlalchemy.orm import Session

from dukabill.config.plan_catalog import get_plan_catalog
from dukabill.database.session import get_db_session
from dukabill.entitlements.evaluator import EntitlementView
from dukabill.entitlements.guard import require_paid_access
from dukabill.models.base import as_utc
from dukabill.platform.auth_context import AuthContext, ensure_store_access, get_auth_context
from dukabill.services.payment_event_log import PaymentEventLog
from dukabill.services.payment_intent_service import PaymentIntentService
from dukabill.api.routes.entitlement import EntitlementResponse, to_entitlement_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class PlanResponse(BaseModel):
    id: str
    name: str
    tier: str
    duration_days: int
    price: Decimal
    currency: str


class CreateIntentRequest(BaseModel):
    intent_id: str = Field(..., min_length=1, max_length=128,
                           description="checkout_request_id or checkout session id")
    channel: str = Field(..., description="PUSH_PAYMENT or CHECKOUT_PROVIDER")
    store_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str = Field(..., min_length=1, max_length=64)
    amount: Optional[Decimal] = Field(None, gt=0)
    phone: Optional[str] = Field(None, max_length=32)


class IntentResponse(BaseModel):
    intent_id: str
    channel: str
    store_id: str
    plan_id: str
    amount: Decimal
    status: str


class PaymentHistoryItem(BaseModel):
    external_id: str
    channel: str
    amount: Optional[Decimal] = None
    currency: str
    plan_id: Optional[str] = None
    applied_at: Optional[datetime] = None


@router.get("/plans", response_model=List[PlanResponse])
async def list_plans():
    """Public plan catalog."""
    catalog = get_plan_catalog()
    return [
        PlanResponse(
            id=p.id,
            name=p.name,
            tier=p.tier,
            duration_days=p.duration_days,
            price=p.price,
            currency=catalog.currency,
        )
        for p in catalog.list_plans()
    ]


@router.post("/intents", response_model=IntentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    request: CreateIntentRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db_session),
):
    """Record a push payment request or checkout session for later matching."""
    ensure_store_access(auth, request.store_id)
    intent = PaymentIntentService(db).record_intent(
        intent_id=request.intent_id,
        channel=request.channel,
        store_id=request.store_id,
        plan_id=request.plan_id,
        amount=request.amount,
        phone=request.phone,
    )
    return IntentResponse(
        intent_id=intent.intent_id,
        channel=intent.channel,
        store_id=intent.store_id,
        plan_id=intent.plan_id,
        amount=intent.amount,
        status=intent.status,
    )


@router.get("/access", response_model=EntitlementResponse)
async def check_paid_access(
    auth: AuthContext = Depends(get_auth_context),
    view: EntitlementView = Depends(require_paid_access),
):
    """200 while the caller's store has access, 402 otherwise."""
    return to_entitlement_response(auth.store_id, view)


@router.get("/{store_id}/payments", response_model=List[PaymentHistoryItem])
async def get_payment_history(
    store_id: str,
    limit: int = Query(50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db_session),
):
    """Applied payments for a store, newest first."""
    ensure_store_access(auth, store_id)
    events = PaymentEventLog(db).list_applied_for_store(store_id, limit=limit)
    return [
        PaymentHistoryItem(
            external_id=e.external_id,
            channel=e.channel,
            amount=e.amount,
            currency=e.currency,
            plan_id=e.plan_id,
            applied_at=as_utc(e.applied_at),
        )
        for e in events
    ]
