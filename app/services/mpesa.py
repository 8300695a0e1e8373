"""M-Pesa Daraja (Lipa Na M-Pesa Online / STK push) gateway adapter."""

from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
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

MPESA_API_BASE = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

# Daraja answers a status query for an unfinished push with this error code
STK_PROCESSING_ERROR_CODE = "500.001.1001"
EAT = timezone(timedelta(hours=3))

_CALLBACK_ITEM_KEYS = {
    "Amount": "amount",
    "MpesaReceiptNumber": "mpesaReceiptNumber",
    "TransactionDate": "transactionDate",
    "PhoneNumber": "phoneNumber",
}


def format_phone_number(phone: str) -> str:
    """Normalize a Kenyan phone number to the 2547XXXXXXXX form."""
    cleaned = re.sub(r"\D", "", phone or "")
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    if len(cleaned) == 9:
        return "254" + cleaned
    return cleaned


def generate_timestamp(now: datetime | None = None) -> str:
    """Return the Daraja timestamp (YYYYMMDDHHMMSS, East Africa Time)."""
    value = (now or datetime.now(EAT)).astimezone(EAT)
    return value.strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def whole_shillings(amount: Decimal | float | int) -> int:
    """M-Pesa only accepts whole-number amounts."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MpesaGateway(PaymentGateway):
    provider = "mpesa"
    required_fields = ("phone_number",)

    def __init__(
        self,
        *,
        consumer_key: str | None,
        consumer_secret: str | None,
        passkey: str | None,
        shortcode: str,
        callback_url: str | None,
        environment: str = "sandbox",
        timeout: float = 30,
        token_cache: TokenCache | None = None,
    ):
        super().__init__(timeout=timeout, token_cache=token_cache)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.shortcode = shortcode
        self.callback_url = callback_url
        self.base_url = MPESA_API_BASE.get(environment, MPESA_API_BASE["sandbox"])

    def _require_credentials(self) -> None:
        missing = [
            name
            for name, value in (
                ("MPESA_CONSUMER_KEY", self.consumer_key),
                ("MPESA_CONSUMER_SECRET", self.consumer_secret),
                ("MPESA_PASSKEY", self.passkey),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"M-Pesa is not configured: {', '.join(missing)}")

    def get_access_token(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached
        self._require_credentials()
        credentials = base64.b64encode(
            f"{self.consumer_key}:{self.consumer_secret}".encode()
        ).decode()
        try:
            resp = self._send(
                "GET",
                f"{self.base_url}/oauth/v1/generate",
                "auth",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {credentials}"},
            )
        except GatewayTimeout as exc:
            # No charge was sent yet, so the outcome is a plain failure
            raise GatewayError(
                "M-Pesa token request timed out", provider=self.provider
            ) from exc
        token = resp.data.get("access_token")
        if not resp.ok or not token:
            raise GatewayError(
                f"Failed to get M-Pesa token (HTTP {resp.status_code})",
                provider=self.provider,
                details=resp.data,
            )
        self.token_cache.store_for(token, int(resp.data.get("expires_in") or 3599))
        return token

    def _signed_body(self) -> dict[str, str]:
        timestamp = generate_timestamp()
        return {
            "BusinessShortCode": self.shortcode,
            "Password": generate_password(self.shortcode, self.passkey or "", timestamp),
            "Timestamp": timestamp,
        }

    def initiate(self, request: InitiateRequest) -> GatewayInitiation:
        if not request.phone_number:
            raise InvalidPayload("Phone number is required for M-Pesa")
        callback_url = request.callback_url or self.callback_url
        if not callback_url:
            raise ConfigurationError("M-Pesa is not configured: MPESA_CALLBACK_URL")
        token = self.get_access_token()
        phone = format_phone_number(request.phone_number)
        payload = {
            **self._signed_body(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_shillings(request.amount),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_url,
            "AccountReference": request.order_id[:12],
            "TransactionDesc": (request.description or "Payment")[:13],
        }
        resp = self._send(
            "POST",
            f"{self.base_url}/mpesa/stkpush/v1/processrequest",
            "initiate",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = resp.data
        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            message = (
                data.get("errorMessage")
                or data.get("ResponseDescription")
                or "Failed to initiate STK push"
            )
            logger.warning("mpesa_stk_push_rejected order_id=%s error=%s", request.order_id, message)
            raise GatewayError(message, provider=self.provider, details=data)
        return GatewayInitiation(
            provider_tracking_id=data["CheckoutRequestID"],
            raw=data,
            client_action={
                "type": "stk_push",
                "message": data.get("CustomerMessage")
                or "STK Push sent successfully. Check your phone.",
                "merchantRequestId": data.get("MerchantRequestID"),
                "phone": phone,
            },
        )

    def query_status(self, provider_tracking_id: str) -> StatusResult:
        try:
            token = self.get_access_token()
            resp = self._send(
                "POST",
                f"{self.base_url}/mpesa/stkpushquery/v1/query",
                "query",
                json={**self._signed_body(), "CheckoutRequestID": provider_tracking_id},
                headers={"Authorization": f"Bearer {token}"},
            )
        except GatewayTimeout:
            return StatusResult(NormalizedStatus.unknown)
        data = resp.data
        if data.get("errorCode") == STK_PROCESSING_ERROR_CODE:
            return StatusResult(NormalizedStatus.pending, data)
        result_code = data.get("ResultCode")
        if result_code is None or str(result_code).strip() == "":
            if not resp.ok:
                raise GatewayError(
                    data.get("errorMessage") or f"M-Pesa query failed (HTTP {resp.status_code})",
                    provider=self.provider,
                    details=data,
                )
            return StatusResult(NormalizedStatus.unknown, data)
        facts = {"resultCode": str(result_code), "resultDesc": data.get("ResultDesc")}
        if str(result_code) == "0":
            return StatusResult(NormalizedStatus.completed, facts)
        return StatusResult(NormalizedStatus.failed, facts)

    def verify_callback(self, payload: Any, signature: str | None = None) -> ProviderEvent:
        # Daraja does not sign callbacks; correlation relies on CheckoutRequestID.
        if not isinstance(payload, dict):
            raise InvalidPayload("Invalid callback format")
        callback = (payload.get("Body") or {}).get("stkCallback")
        if not isinstance(callback, dict) or not callback.get("CheckoutRequestID"):
            raise InvalidPayload("Invalid callback format")
        try:
            result_code = int(callback.get("ResultCode"))
        except (TypeError, ValueError) as exc:
            raise InvalidPayload("Callback is missing ResultCode") from exc

        facts: dict[str, Any] = {
            "merchantRequestId": callback.get("MerchantRequestID"),
            "resultCode": result_code,
            "resultDesc": callback.get("ResultDesc"),
        }
        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        for item in items:
            if not isinstance(item, dict):
                continue
            key = _CALLBACK_ITEM_KEYS.get(item.get("Name"))
            if key:
                facts[key] = item.get("Value")

        status = NormalizedStatus.completed if result_code == 0 else NormalizedStatus.failed
        return ProviderEvent(
            provider=self.provider,
            tracking_id=str(callback["CheckoutRequestID"]),
            normalized_status=status,
            provider_metadata=facts,
        )
