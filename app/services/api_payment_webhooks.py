"""Payment callback orchestration for the provider-facing endpoints.

Each handler verifies and parses the provider payload through its gateway
adapter, then hands the normalized event to the reconciliation engine.
Payment errors propagate and are rendered by ``app.errors``.
"""

from __future__ import annotations

import logging

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.models.payments import PaymentProviderType
from app.services import payment_gateways
from app.services import payments as payments_service
from app.services.gateway_common import NormalizedStatus

logger = logging.getLogger(__name__)


def process_mpesa_callback(*, db: Session, payload) -> JSONResponse:
    gateway = payment_gateways.get_gateway(PaymentProviderType.mpesa)
    event = gateway.verify_callback(payload)
    logger.info(
        "mpesa_callback tracking_id=%s status=%s",
        event.tracking_id,
        event.normalized_status.value,
    )
    outcome = payments_service.reconciliation.handle_provider_event(db, event)
    # Daraja only needs an acceptance acknowledgement
    return JSONResponse(
        {
            "ResultCode": 0,
            "ResultDesc": "Accepted",
            "orderId": outcome.payment.order_id,
            "action": outcome.action.value,
        },
        status_code=200,
    )


def process_pesapal_ipn(*, db: Session, params: dict) -> JSONResponse:
    gateway = payment_gateways.get_gateway(PaymentProviderType.pesapal)
    event = gateway.verify_callback(params)
    logger.info(
        "pesapal_ipn tracking_id=%s merchant_reference=%s status=%s",
        event.tracking_id,
        event.merchant_order_id,
        event.normalized_status.value,
    )
    payments_service.reconciliation.handle_provider_event(db, event)
    return JSONResponse(
        {
            "orderNotificationType": event.provider_metadata.get("notificationType")
            or "IPNCHANGE",
            "orderTrackingId": event.tracking_id,
            "orderMerchantReference": event.merchant_order_id,
            "status": 200,
        },
        status_code=200,
    )


def process_paystack_webhook(*, db: Session, body: bytes, signature: str | None) -> JSONResponse:
    gateway = payment_gateways.get_gateway(PaymentProviderType.paystack)
    event = gateway.verify_callback(body, signature)
    event_name = event.provider_metadata.get("event", "unknown")
    logger.info("paystack_webhook event=%s reference=%s", event_name, event.tracking_id)

    if event.normalized_status == NormalizedStatus.unknown:
        # Only charge outcomes move payments; other events are acknowledged as-is
        return JSONResponse({"status": "ignored", "event": event_name}, status_code=200)

    outcome = payments_service.reconciliation.handle_provider_event(db, event)
    return JSONResponse(
        {"status": "ok", "orderId": outcome.payment.order_id, "action": outcome.action.value},
        status_code=200,
    )
