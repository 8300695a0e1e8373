"""Paystack payment gateway adapter."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any

from app.services.gateway_common import (
    GatewayInitiation,
    InitiateRequest,
    NormalizedStatus,
    PaymentGateway,
    ProviderEvent,
    StatusResult,
    TokenCache,
)
from app.services.payment_errors import (
    ConfigurationError,
    GatewayError,
    GatewayTimeout,
    InvalidPayload,
    InvalidSignature,
)

logger = logging.getLogger(__name__)

PAYSTACK_API_BASE = "https://api.paystack.co"

_VERIFY_STATUS_MAP = {
    "success": NormalizedStatus.completed,
    "failed": NormalizedStatus.failed,
    "abandoned": NormalizedStatus.failed,
    "reversed": NormalizedStatus.failed,
    "ongoing": NormalizedStatus.pending,
    "pending": NormalizedStatus.pending,
    "processing": NormalizedStatus.pending,
    "queued": NormalizedStatus.pending,
}

_EVENT_STATUS_MAP = {
    "charge.success": NormalizedStatus.completed,
    "charge.failed": NormalizedStatus.failed,
}


def amount_to_subunit(amount: Decimal | float | int) -> int:
    """Convert a major-unit amount to the subunit Paystack expects (x 100)."""
    return int(Decimal(str(amount)) * 100)


def subunit_to_amount(subunit: int) -> Decimal:
    return Decimal(subunit) / 100


def compute_signature(secret_key: str, body: bytes) -> str:
    return hmac.new(secret_key.encode(), body, hashlib.sha512).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret_key: str | None) -> bool:
    """Verify a Paystack webhook HMAC-SHA512 signature over the raw body.

    Args:
        body: Raw request body bytes, exactly as received.
        signature: Value of the X-Paystack-Signature header.
        secret_key: Paystack secret key.

    Returns:
        True if the signature is valid.
    """
    if not secret_key or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret_key, body), signature)


def _transaction_facts(data: dict[str, Any]) -> dict[str, Any]:
    facts: dict[str, Any] = {
        "reference": data.get("reference"),
        "gatewayStatus": data.get("status"),
        "gatewayResponse": data.get("gateway_response"),
        "channel": data.get("channel"),
        "currency": data.get("currency"),
        "paidAt": data.get("paid_at") or data.get("paidAt"),
    }
    if data.get("amount") is not None:
        try:
            facts["amount"] = str(subunit_to_amount(int(data["amount"])))
        except (TypeError, ValueError):
            facts["amount"] = data.get("amount")
    return {key: value for key, value in facts.items() if value is not None}


class PaystackGateway(PaymentGateway):
    provider = "paystack"
    required_fields = ("email",)

    def __init__(
        self,
        *,
        secret_key: str | None,
        app_url: str,
        timeout: float = 30,
        token_cache: TokenCache | None = None,
    ):
        super().__init__(timeout=timeout, token_cache=token_cache)
        self.secret_key = secret_key
        self.app_url = app_url.rstrip("/")

    def _auth_headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise ConfigurationError("Paystack is not configured: PAYSTACK_SECRET_KEY")
        return {"Authorization": f"Bearer {self.secret_key}"}

    def initiate(self, request: InitiateRequest) -> GatewayInitiation:
        if not request.email:
            raise InvalidPayload("Email is required for Paystack")
        headers = self._auth_headers()
        payload: dict[str, Any] = {
            "email": request.email,
            "amount": amount_to_subunit(request.amount),
            "currency": request.currency,
            "reference": request.order_id,
            "callback_url": request.callback_url or f"{self.app_url}/payment/callback",
        }
        if request.metadata:
            payload["metadata"] = request.metadata

        resp = self._send(
            "POST",
            f"{PAYSTACK_API_BASE}/transaction/initialize",
            "initiate",
            json=payload,
            headers=headers,
        )
        body = resp.data
        data = body.get("data") or {}
        if not resp.ok or not body.get("status") or not data.get("authorization_url"):
            message = body.get("message") or "Paystack initialization failed"
            logger.warning("paystack_initialize_rejected order_id=%s error=%s", request.order_id, message)
            raise GatewayError(message, provider=self.provider, details=body)

        return GatewayInitiation(
            provider_tracking_id=data.get("reference") or request.order_id,
            raw=data,
            client_action={
                "type": "redirect",
                "redirectUrl": data["authorization_url"],
                "accessCode": data.get("access_code"),
            },
        )

    def query_status(self, provider_tracking_id: str) -> StatusResult:
        headers = self._auth_headers()
        try:
            resp = self._send(
                "GET",
                f"{PAYSTACK_API_BASE}/transaction/verify/{provider_tracking_id}",
                "query",
                headers=headers,
            )
        except GatewayTimeout:
            return StatusResult(NormalizedStatus.unknown)
        body = resp.data
        if resp.status_code >= 500:
            raise GatewayError(
                f"Paystack verify failed (HTTP {resp.status_code})",
                provider=self.provider,
                details=body,
            )
        data = body.get("data") or {}
        if not body.get("status") or not isinstance(data, dict):
            logger.info(
                "paystack_verify_inconclusive reference=%s message=%s",
                provider_tracking_id,
                body.get("message"),
            )
            return StatusResult(NormalizedStatus.unknown, {"message": body.get("message")})
        status = _VERIFY_STATUS_MAP.get(str(data.get("status") or "").lower(), NormalizedStatus.unknown)
        return StatusResult(status, _transaction_facts(data))

    def verify_callback(self, payload: Any, signature: str | None = None) -> ProviderEvent:
        """Authenticate a webhook and parse it.

        ``payload`` must be the raw request body; the signature is checked
        before the body is parsed.
        """
        if isinstance(payload, str):
            payload = payload.encode()
        if not isinstance(payload, (bytes, bytearray)):
            raise InvalidPayload("Webhook body must be raw bytes")
        if not self.secret_key or not signature:
            raise InvalidSignature("Missing webhook signature")
        if not verify_webhook_signature(bytes(payload), signature, self.secret_key):
            logger.warning("paystack_webhook_invalid_signature")
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise InvalidPayload("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict):
            raise InvalidPayload("Webhook body must be a JSON object")

        event_type = event.get("event") or ""
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        reference = data.get("reference")
        facts = _transaction_facts(data)
        facts["event"] = event_type
        return ProviderEvent(
            provider=self.provider,
            tracking_id=str(reference) if reference else None,
            merchant_order_id=str(reference) if reference else None,
            normalized_status=_EVENT_STATUS_MAP.get(event_type, NormalizedStatus.unknown),
            provider_metadata=facts,
        )
