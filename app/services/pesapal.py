"""Pesapal API 3.0 gateway adapter (redirect checkout + IPN)."""

from __future__ import annotations

import logging
from datetime import datetime
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
)

logger = logging.getLogger(__name__)

PESAPAL_API_BASE = {
    "sandbox": "https://cybqa.pesapal.com/pesapalv3",
    "production": "https://pay.pesapal.com/v3",
}

# Pesapal tokens are valid for five minutes when no expiry is returned
_DEFAULT_TOKEN_TTL_SECONDS = 300

PAYMENT_STATUS_LABELS = {
    0: "INVALID",
    1: "COMPLETED",
    2: "FAILED",
    3: "REVERSED",
}

_STATUS_CODE_MAP = {
    0: NormalizedStatus.pending,
    1: NormalizedStatus.completed,
    2: NormalizedStatus.failed,
    3: NormalizedStatus.failed,
}

_STATUS_FACT_KEYS = (
    "payment_method",
    "amount",
    "currency",
    "confirmation_code",
    "payment_status_description",
    "payment_account",
    "status_code",
    "merchant_reference",
    "created_date",
    "description",
)


def get_payment_status_label(status_code) -> str:
    try:
        return PAYMENT_STATUS_LABELS.get(int(status_code), "UNKNOWN")
    except (TypeError, ValueError):
        return "UNKNOWN"


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("pesapal_token_expiry_unparseable value=%s", value)
        return None


class PesapalGateway(PaymentGateway):
    provider = "pesapal"
    required_fields = ("email",)

    def __init__(
        self,
        *,
        consumer_key: str | None,
        consumer_secret: str | None,
        ipn_id: str | None,
        app_url: str,
        environment: str = "sandbox",
        timeout: float = 30,
        token_cache: TokenCache | None = None,
    ):
        super().__init__(timeout=timeout, token_cache=token_cache)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.ipn_id = ipn_id
        self.app_url = app_url.rstrip("/")
        self.base_url = PESAPAL_API_BASE.get(environment, PESAPAL_API_BASE["sandbox"])

    def get_access_token(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached
        if not self.consumer_key or not self.consumer_secret:
            raise ConfigurationError(
                "Pesapal is not configured: PESAPAL_CONSUMER_KEY, PESAPAL_CONSUMER_SECRET"
            )
        try:
            resp = self._send(
                "POST",
                f"{self.base_url}/api/Auth/RequestToken",
                "auth",
                json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
                headers={"Accept": "application/json"},
            )
        except GatewayTimeout as exc:
            # Nothing was submitted to Pesapal yet
            raise GatewayError(
                "Pesapal token request timed out", provider=self.provider
            ) from exc
        token = resp.data.get("token")
        if not resp.ok or not token:
            raise GatewayError(
                "Failed to authenticate with Pesapal",
                provider=self.provider,
                details=resp.data.get("error") or resp.data,
            )
        expires_at = _parse_expiry(resp.data.get("expiryDate"))
        if expires_at is None:
            self.token_cache.store_for(token, _DEFAULT_TOKEN_TTL_SECONDS)
        else:
            self.token_cache.store(token, expires_at)
        return token

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Accept": "application/json",
        }

    def register_ipn(self, url: str, notification_type: str = "GET") -> dict[str, Any]:
        """Register an IPN URL; the returned ``ipn_id`` goes into PESAPAL_IPN_ID."""
        resp = self._send(
            "POST",
            f"{self.base_url}/api/URLSetup/RegisterIPN",
            "register_ipn",
            json={"url": url, "ipn_notification_type": notification_type.upper()},
            headers=self._auth_headers(),
        )
        if not resp.ok or not resp.data.get("ipn_id"):
            raise GatewayError(
                "Pesapal IPN registration failed",
                provider=self.provider,
                details=resp.data.get("error") or resp.data,
            )
        return resp.data

    def initiate(self, request: InitiateRequest) -> GatewayInitiation:
        if not self.ipn_id:
            raise ConfigurationError("Pesapal is not configured: PESAPAL_IPN_ID")
        if not request.email:
            raise InvalidPayload("Email is required for Pesapal")
        headers = self._auth_headers()
        payload = {
            "id": request.order_id,
            "currency": request.currency,
            "amount": float(request.amount),
            "description": (request.description or "Payment")[:100],
            "callback_url": request.callback_url or f"{self.app_url}/payment/callback",
            "cancellation_url": f"{self.app_url}/payment/cancelled",
            "notification_id": self.ipn_id,
            "billing_address": {
                "email_address": request.email,
                "phone_number": request.phone_number or "",
                "country_code": "KE",
                "first_name": request.first_name or "",
                "last_name": request.last_name or "",
            },
        }
        resp = self._send(
            "POST",
            f"{self.base_url}/api/Transactions/SubmitOrderRequest",
            "initiate",
            json=payload,
            headers=headers,
        )
        data = resp.data
        if not data.get("order_tracking_id") or not data.get("redirect_url"):
            error = data.get("error") or {}
            message = (
                error.get("message") if isinstance(error, dict) else str(error)
            ) or "Payment initialization failed"
            logger.warning("pesapal_submit_rejected order_id=%s error=%s", request.order_id, message)
            raise GatewayError(message, provider=self.provider, details=data)
        return GatewayInitiation(
            provider_tracking_id=data["order_tracking_id"],
            raw=data,
            client_action={
                "type": "redirect",
                "redirectUrl": data["redirect_url"],
                "merchantReference": data.get("merchant_reference") or request.order_id,
            },
        )

    def query_status(self, provider_tracking_id: str) -> StatusResult:
        try:
            resp = self._send(
                "GET",
                f"{self.base_url}/api/Transactions/GetTransactionStatus",
                "query",
                params={"orderTrackingId": provider_tracking_id},
                headers=self._auth_headers(),
            )
        except GatewayTimeout:
            return StatusResult(NormalizedStatus.unknown)
        data = resp.data
        if not resp.ok:
            raise GatewayError(
                f"Pesapal status query failed (HTTP {resp.status_code})",
                provider=self.provider,
                details=data,
            )
        facts = {key: data.get(key) for key in _STATUS_FACT_KEYS if data.get(key) is not None}
        try:
            status_code = int(data.get("status_code"))
        except (TypeError, ValueError):
            return StatusResult(NormalizedStatus.unknown, facts)
        facts["status_label"] = get_payment_status_label(status_code)
        return StatusResult(_STATUS_CODE_MAP.get(status_code, NormalizedStatus.unknown), facts)

    def verify_callback(self, payload: Any, signature: str | None = None) -> ProviderEvent:
        # IPNs are unsigned; the transaction status is always re-queried.
        if not isinstance(payload, dict):
            raise InvalidPayload("Invalid IPN payload")
        tracking_id = payload.get("OrderTrackingId") or payload.get("orderTrackingId")
        if not tracking_id:
            raise InvalidPayload("Missing order tracking ID")
        merchant_reference = payload.get("OrderMerchantReference") or payload.get(
            "orderMerchantReference"
        )
        notification_type = payload.get("OrderNotificationType") or payload.get(
            "orderNotificationType"
        )

        result = self.query_status(str(tracking_id))
        facts = dict(result.raw)
        if notification_type:
            facts["notificationType"] = notification_type
        return ProviderEvent(
            provider=self.provider,
            tracking_id=str(tracking_id),
            merchant_order_id=merchant_reference or facts.get("merchant_reference"),
            normalized_status=result.status,
            provider_metadata=facts,
        )
