from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.config import settings
from app.models.payments import PaymentProviderType
from app.rate_limit import limiter
from app.schemas.payments import PaymentInitiate, PaymentInitiateRead, PaymentStatusRead
from app.services import api_payment_webhooks as payment_webhooks_service
from app.services import payments as payments_service

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/{provider}/initiate",
    response_model=PaymentInitiateRead,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.payment_rate_limit)
def initiate_payment(
    request: Request,
    provider: PaymentProviderType,
    payload: PaymentInitiate,
    db: Session = Depends(get_db),
):
    result = payments_service.reconciliation.initiate(db, provider, payload)
    return PaymentInitiateRead(
        order_id=result.payment.order_id,
        provider=result.payment.provider,
        status=result.payment.status,
        provider_tracking_id=result.payment.provider_tracking_id,
        client_action=result.client_action,
        message=result.message,
    )


@router.get("/status", response_model=PaymentStatusRead)
@limiter.limit(settings.payment_rate_limit)
def payment_status(
    request: Request,
    order_id: str | None = Query(default=None, alias="orderId"),
    tracking_id: str | None = Query(default=None, alias="trackingId"),
    db: Session = Depends(get_db),
):
    outcome = payments_service.reconciliation.poll_status(
        db, order_id=order_id, tracking_id=tracking_id
    )
    return PaymentStatusRead.from_payment(outcome.payment)


@router.post("/mpesa/callback")
async def mpesa_callback(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    return await run_in_threadpool(
        payment_webhooks_service.process_mpesa_callback, db=db, payload=payload
    )


@router.get("/pesapal/ipn")
def pesapal_ipn_get(request: Request, db: Session = Depends(get_db)):
    return payment_webhooks_service.process_pesapal_ipn(
        db=db, params=dict(request.query_params)
    )


@router.post("/pesapal/ipn")
async def pesapal_ipn_post(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    # Re-querying Pesapal blocks on httpx
    return await run_in_threadpool(
        payment_webhooks_service.process_pesapal_ipn, db=db, params=payload
    )


@router.post("/paystack/webhook")
async def paystack_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = request.headers.get("X-Paystack-Signature")
    return await run_in_threadpool(
        payment_webhooks_service.process_paystack_webhook,
        db=db,
        body=body,
        signature=signature,
    )


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        # Adapters reject non-object payloads with a 400
        return None
