"""
Admin billing routes: manual grants, unmatched queue, store and
subscription lifecycle.

SECURITY: All routes require an admin role.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dukabill.config.plan_catalog import get_plan_catalog
from dukabill.database.session import get_db_session
from dukabill.models.base import as_utc
from dukabill.models.payment_event import PaymentChannel, PaymentEvent
from dukabill.models.store import StoreAccessCode
from dukabill.platform.auth_context import AuthContext, require_admin
from dukabill.services.channel_adapters import get_adapter
from dukabill.services.payment_ingestion import PaymentIngestionService
from dukabill.services.payment_confirmation import send_payment_receipt
from dukabill.services.reconciler import ApplyOutcome, ApplyResult
from dukabill.services.store_service import StoreService
from dukabill.services.subscription_service import SubscriptionService
from dukabill.services.unmatched_queue import UnmatchedQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-billing"])


# Request/Response models

class GrantRequest(BaseModel):
    """Manual payment or complimentary grant."""
    store_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str = Field(..., min_length=1, max_length=64)
    payment_ref: str = Field(..., min_length=1, max_length=128, description="Receipt or grant reference")
    reason: Optional[str] = Field(None, max_length=2000)
    amount: Optional[Decimal] = Field(None, gt=0)


class LinkRequest(BaseModel):
    store_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str = Field(..., min_length=1, max_length=64)


class ApplyResponse(BaseModel):
    outcome: str
    external_id: str
    store_id: Optional[str] = None
    plan_id: Optional[str] = None
    match_method: Optional[str] = None
    previous_expires_at: Optional[datetime] = None
    new_expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class UnmatchedPaymentResponse(BaseModel):
    external_id: str
    channel: str
    amount: Optional[Decimal] = None
    currency: str
    raw_reference: Optional[str] = None
    payer_phone: Optional[str] = None
    unmatched_reason: Optional[str] = None
    received_at: datetime


class UnmatchedListResponse(BaseModel):
    items: List[UnmatchedPaymentResponse]
    total: int


class CreateStoreRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    store_id: Optional[str] = Field(None, min_length=1, max_length=64)
    phone: Optional[str] = Field(None, max_length=32)
    email: Optional[str] = Field(None, max_length=255)
    payment_code: Optional[str] = Field(None, max_length=32)


class StoreResponse(BaseModel):
    store_id: str
    name: str
    payment_code: str
    phone: Optional[str] = None
    subscription_status: Optional[str] = None
    expires_at: Optional[datetime] = None


class AccessCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    label: Optional[str] = Field(None, max_length=255)


class AccessCodeResponse(BaseModel):
    code: str
    store_id: str
    label: Optional[str] = None
    is_active: bool


class LifecycleRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class SubscriptionResponse(BaseModel):
    store_id: str
    status: str
    plan_id: Optional[str] = None
    is_trial: bool
    expires_at: datetime
    version: int


def _access_code_response(code: StoreAccessCode) -> AccessCodeResponse:
    return AccessCodeResponse(
        code=code.code, store_id=code.store_id, label=code.label, is_active=code.is_active
    )


def _apply_response(result: ApplyResult) -> ApplyResponse:
    return ApplyResponse(
        outcome=result.outcome.value,
        external_id=result.external_id,
        store_id=result.store_id,
        plan_id=result.plan_id,
        match_method=result.match_method,
        previous_expires_at=result.previous_expires_at,
        new_expires_at=result.new_expires_at,
        reason=result.reason,
    )


def _unmatched_response(event: PaymentEvent) -> UnmatchedPaymentResponse:
    return UnmatchedPaymentResponse(
        external_id=event.external_id,
        channel=event.channel,
        amount=event.amount,
        currency=event.currency,
        raw_reference=event.raw_reference,
        payer_phone=event.payer_phone,
        unmatched_reason=event.unmatched_reason,
        received_at=as_utc(event.received_at),
    )


def _subscription_response(subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        store_id=subscription.store_id,
        status=subscription.status,
        plan_id=subscription.plan_id,
        is_trial=subscription.is_trial,
        expires_at=as_utc(subscription.expires_at),
        version=subscription.version,
    )


# Routes

@router.post("/grant", response_model=ApplyResponse)
async def grant_subscription(
    request: GrantRequest,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """
    Manually grant (or record an offline payment for) a plan.

    Goes through the same apply step as provider payments; repeating a
    payment_ref is a no-op.
    """
    get_plan_catalog().get_plan(request.plan_id)
    StoreService(db).get(request.store_id)

    payload = request.model_dump(exclude_none=True, mode="json")
    ingestion = PaymentIngestionService(db, schedule=background_tasks.add_task).ingest(
        get_adapter(PaymentChannel.ADMIN_MANUAL),
        payload,
        actor_id=auth.user_id,
    )
    if ingestion.exception is not None:
        # The event is logged; the operator retries or the re-drive job applies it.
        raise ingestion.exception

    logger.info(
        "Admin grant processed",
        extra={
            "store_id": request.store_id,
            "plan_id": request.plan_id,
            "payment_ref": request.payment_ref,
            "admin_user_id": auth.user_id,
            "outcome": ingestion.outcome,
        },
    )
    return _apply_response(ingestion.result)


@router.get("/unmatched", response_model=UnmatchedListResponse)
async def list_unmatched_payments(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Payments waiting for an operator to attribute them."""
    queue = UnmatchedQueue(db)
    events = queue.list_unmatched(limit=limit, offset=offset)
    return UnmatchedListResponse(
        items=[_unmatched_response(e) for e in events],
        total=queue.count_unmatched(),
    )


@router.post("/unmatched/{external_id}/link", response_model=ApplyResponse)
async def link_unmatched_payment(
    external_id: str,
    request: LinkRequest,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Attribute an unmatched payment to a store and plan, then apply it."""
    result = UnmatchedQueue(db).link(
        external_id, request.store_id, request.plan_id, actor_id=auth.user_id
    )
    if result.outcome == ApplyOutcome.APPLIED:
        store = StoreService(db).get(request.store_id)
        background_tasks.add_task(send_payment_receipt, result, store.phone)
    return _apply_response(result)


@router.post("/stores", response_model=StoreResponse, status_code=status.HTTP_201_CREATED)
async def create_store(
    request: CreateStoreRequest,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Register a store; it starts on a free trial."""
    store = StoreService(db).register_store(
        name=request.name,
        store_id=request.store_id,
        phone=request.phone,
        email=request.email,
        payment_code=request.payment_code,
    )
    subscription = SubscriptionService(db).get(store.id)
    logger.info("Store created by admin", extra={"store_id": store.id, "admin_user_id": auth.user_id})
    return StoreResponse(
        store_id=store.id,
        name=store.name,
        payment_code=store.payment_code,
        phone=store.phone,
        subscription_status=subscription.status,
        expires_at=as_utc(subscription.expires_at),
    )


@router.post(
    "/stores/{store_id}/access-codes",
    response_model=AccessCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_access_code(
    store_id: str,
    request: AccessCodeRequest,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Issue an additional payment reference code for a store."""
    code = StoreService(db).add_access_code(store_id, request.code, label=request.label)
    return _access_code_response(code)


@router.get("/stores/{store_id}/access-codes", response_model=List[AccessCodeResponse])
async def list_access_codes(
    store_id: str,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    service = StoreService(db)
    service.get(store_id)
    return [_access_code_response(c) for c in service.list_access_codes(store_id)]


@router.post(
    "/stores/{store_id}/access-codes/{code}/deactivate",
    response_model=AccessCodeResponse,
)
async def deactivate_access_code(
    store_id: str,
    code: str,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Stop matching payments that quote this code; history is kept."""
    access_code = StoreService(db).deactivate_access_code(store_id, code)
    logger.info(
        "Access code deactivated",
        extra={"store_id": store_id, "code": access_code.code, "admin_user_id": auth.user_id},
    )
    return _access_code_response(access_code)


@router.post("/subscriptions/{store_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    store_id: str,
    request: LifecycleRequest,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    subscription = SubscriptionService(db).cancel(store_id, reason=request.reason, actor_id=auth.user_id)
    return _subscription_response(subscription)


@router.post("/subscriptions/{store_id}/suspend", response_model=SubscriptionResponse)
async def suspend_subscription(
    store_id: str,
    request: LifecycleRequest,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    subscription = SubscriptionService(db).suspend(store_id, reason=request.reason, actor_id=auth.user_id)
    return _subscription_response(subscription)


@router.post("/subscriptions/{store_id}/reinstate", response_model=SubscriptionResponse)
async def reinstate_subscription(
    store_id: str,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    subscription = SubscriptionService(db).reinstate(store_id, actor_id=auth.user_id)
    return _subscription_response(subscription)
