"""
Payment provider webhook handlers.

SECURITY: Every callback is authenticated before anything is persisted:
- push payment / customer payment: shared callback token
- checkout provider: HMAC-SHA256 signature

Handlers persist the raw notification durably, process it inline, and
acknowledge quickly regardless of the downstream outcome. Only malformed
payloads (400), failed authenticity (401) and an unreachable database (503)
are reported as errors so the provider retries what we could not store.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dukabill.billing.errors import PaymentValidationError
from dukabill.database.session import get_db_session
from dukabill.models.payment_event import PaymentChannel
from dukabill.services.channel_adapters import ChannelAdapter, get_adapter
from dukabill.services.payment_ingestion import IngestionResult, PaymentIngestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

CUSTOMER_PAYMENT_ACCEPTED = "0"
CUSTOMER_PAYMENT_REJECTED = "C2B00012"


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    message: str = "Webhook processed"
    outcome: Optional[str] = None
    duplicate: bool = False


class CustomerPaymentResponse(BaseModel):
    """Response body the customer-payment provider expects."""
    ResultCode: str = Field(CUSTOMER_PAYMENT_ACCEPTED)
    ResultDesc: str = Field("Accepted")


async def _read_payload(request: Request, allow_query: bool = False) -> Tuple[bytes, Dict[str, Any]]:
    body = await request.body()
    if not body and allow_query:
        return body, dict(request.query_params)
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Invalid JSON in webhook body", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body",
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a JSON object",
        )
    return body, payload


def _authenticate(adapter: ChannelAdapter, request: Request, body: bytes, payload: Dict[str, Any]) -> None:
    if not adapter.is_configured:
        logger.error("Webhook verification not configured", extra={"channel": adapter.channel.value})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )
    if not adapter.verify(body, request.headers, request.query_params, payload):
        logger.warning(
            "Webhook authentication failed",
            extra={"channel": adapter.channel.value, "path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook credentials",
        )


def _to_response(ingestion: IngestionResult) -> WebhookResponse:
    if ingestion.error:
        message = "Payment recorded, processing deferred"
    elif ingestion.duplicate:
        message = "Duplicate notification ignored"
    else:
        message = "Webhook processed"
    return WebhookResponse(
        message=message,
        outcome=ingestion.outcome,
        duplicate=ingestion.duplicate,
    )


@router.post("/push-payment", response_model=WebhookResponse)
async def push_payment_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db_session),
):
    """Result callback for a merchant-initiated push payment."""
    adapter = get_adapter(PaymentChannel.PUSH_PAYMENT)
    body, payload = await _read_payload(request)
    _authenticate(adapter, request, body, payload)

    ingestion = PaymentIngestionService(db, schedule=background_tasks.add_task).ingest(adapter, payload)
    logger.info(
        "Push payment callback handled",
        extra={"external_id": ingestion.event.external_id, "outcome": ingestion.outcome},
    )
    return _to_response(ingestion)


@router.post("/customer-payment/validate", response_model=CustomerPaymentResponse)
async def customer_payment_validate(request: Request):
    """
    Pre-acceptance check for a customer-initiated payment.

    Nothing is persisted here; unknown references are still accepted and
    land in the unmatched queue at confirmation.
    """
    adapter = get_adapter(PaymentChannel.CUSTOMER_PAYMENT)
    body, payload = await _read_payload(request)
    _authenticate(adapter, request, body, payload)

    try:
        adapter.normalize(payload)
    except PaymentValidationError as e:
        logger.info("Customer payment rejected at validation", extra={"reason": e.message})
        return CustomerPaymentResponse(ResultCode=CUSTOMER_PAYMENT_REJECTED, ResultDesc="Rejected")
    return CustomerPaymentResponse()


@router.post("/customer-payment/confirm", response_model=CustomerPaymentResponse)
async def customer_payment_confirm(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db_session),
):
    """Confirmation of a completed customer-initiated payment."""
    adapter = get_adapter(PaymentChannel.CUSTOMER_PAYMENT)
    body, payload = await _read_payload(request)
    _authenticate(adapter, request, body, payload)

    ingestion = PaymentIngestionService(db, schedule=background_tasks.add_task).ingest(adapter, payload)
    logger.info(
        "Customer payment confirmation handled",
        extra={"external_id": ingestion.event.external_id, "outcome": ingestion.outcome},
    )
    return CustomerPaymentResponse()


@router.post("/checkout-provider", response_model=WebhookResponse)
async def checkout_provider_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db_session),
):
    """Hosted checkout callback; fields arrive in the JSON body or the query string."""
    adapter = get_adapter(PaymentChannel.CHECKOUT_PROVIDER)
    body, payload = await _read_payload(request, allow_query=True)
    payload.pop("signature", None)
    _authenticate(adapter, request, body, payload)

    ingestion = PaymentIngestionService(db, schedule=background_tasks.add_task).ingest(adapter, payload)
    logger.info(
        "Checkout provider callback handled",
        extra={"external_id": ingestion.event.external_id, "outcome": ingestion.outcome},
    )
    return _to_response(ingestion)
