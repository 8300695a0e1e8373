"""Tests for the M-Pesa, Pesapal and Paystack gateway adapters."""

import base64
import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from app.services.gateway_common import InitiateRequest, NormalizedStatus, TokenCache
from app.services.mpesa import MpesaGateway, format_phone_number, generate_password
from app.services.payment_errors import (
    ConfigurationError,
    GatewayError,
    GatewayTimeout,
    InvalidPayload,
    InvalidSignature,
)
from app.services.paystack import PaystackGateway, amount_to_subunit
from app.services.pesapal import PesapalGateway
from tests.mocks import FakeClock, FakeHTTPXResponse


def _mpesa(**overrides) -> MpesaGateway:
    options = {
        "consumer_key": "consumer-key",
        "consumer_secret": "consumer-secret",
        "passkey": "passkey",
        "shortcode": "174379",
        "callback_url": "https://example.com/api/v1/payments/mpesa/callback",
        "environment": "sandbox",
        "timeout": 5,
    }
    options.update(overrides)
    return MpesaGateway(**options)


def _pesapal(**overrides) -> PesapalGateway:
    options = {
        "consumer_key": "pesapal-key",
        "consumer_secret": "pesapal-secret",
        "ipn_id": "ipn-123",
        "app_url": "https://rentconnect.example.com",
        "environment": "sandbox",
        "timeout": 5,
    }
    options.update(overrides)
    gateway = PesapalGateway(**options)
    gateway.token_cache.store_for("pesapal-token", 300)
    return gateway


def _paystack(secret_key="sk_test_secret") -> PaystackGateway:
    return PaystackGateway(secret_key=secret_key, app_url="https://rentconnect.example.com")


def _request(**overrides) -> InitiateRequest:
    options = {
        "order_id": "MPESA-LR5X2K9A-Q7Z1PB",
        "amount": Decimal("500.40"),
        "currency": "KES",
        "metadata": {"type": "credit_purchase", "credits": 25},
        "phone_number": "0712 345 678",
        "email": "agent@example.com",
        "first_name": "Jane",
        "last_name": "Wanjiku",
        "description": "Lead credits purchase",
    }
    options.update(overrides)
    return InitiateRequest(**options)


# =============================================================================
# Token cache
# =============================================================================


def test_token_cache_honours_safety_margin():
    clock = FakeClock()
    cache = TokenCache(safety_margin_seconds=60, clock=clock)
    cache.store_for("tok", 120)

    clock.advance(59)
    assert cache.get() == "tok"

    clock.advance(1)
    assert cache.get() is None


def test_token_cache_empty_until_stored():
    cache = TokenCache()
    assert cache.get() is None
    cache.store_for("tok", 3600)
    cache.clear()
    assert cache.get() is None


# =============================================================================
# M-Pesa
# =============================================================================


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("0712345678", "254712345678"),
        ("+254 712 345 678", "254712345678"),
        ("712345678", "254712345678"),
        ("254712345678", "254712345678"),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_mpesa_access_token_is_cached():
    gateway = _mpesa()
    response = FakeHTTPXResponse({"access_token": "abc", "expires_in": "3599"})

    with patch("httpx.get", return_value=response) as mock_get:
        assert gateway.get_access_token() == "abc"
        assert gateway.get_access_token() == "abc"

    mock_get.assert_called_once()
    kwargs = mock_get.call_args.kwargs
    assert kwargs["params"] == {"grant_type": "client_credentials"}
    expected = base64.b64encode(b"consumer-key:consumer-secret").decode()
    assert kwargs["headers"]["Authorization"] == f"Basic {expected}"
    assert kwargs["timeout"] == 5


def test_mpesa_token_refetched_inside_safety_margin():
    clock = FakeClock()
    gateway = _mpesa(token_cache=TokenCache(safety_margin_seconds=60, clock=clock))
    response = FakeHTTPXResponse({"access_token": "abc", "expires_in": "3599"})

    with patch("httpx.get", return_value=response) as mock_get:
        gateway.get_access_token()
        clock.advance(3599 - 30)
        gateway.get_access_token()

    assert mock_get.call_count == 2


def test_mpesa_missing_credentials_raise_configuration_error():
    gateway = _mpesa(consumer_key=None, passkey=None)

    with patch("httpx.get") as mock_get:
        with pytest.raises(ConfigurationError, match="MPESA_CONSUMER_KEY"):
            gateway.get_access_token()

    mock_get.assert_not_called()


def test_mpesa_initiate_sends_stk_push():
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)
    response = FakeHTTPXResponse(
        {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
    )

    with patch("httpx.post", return_value=response) as mock_post:
        result = gateway.initiate(_request())

    assert result.provider_tracking_id == "ws_CO_191220191020363925"
    assert result.client_action["type"] == "stk_push"
    assert result.client_action["phone"] == "254712345678"

    kwargs = mock_post.call_args.kwargs
    body = kwargs["json"]
    assert mock_post.call_args.args[0].endswith("/mpesa/stkpush/v1/processrequest")
    assert kwargs["headers"]["Authorization"] == "Bearer cached-token"
    assert body["Amount"] == 500
    assert body["PartyA"] == "254712345678"
    assert body["PhoneNumber"] == "254712345678"
    assert body["AccountReference"] == "MPESA-LR5X2K"
    assert len(body["TransactionDesc"]) <= 13
    assert body["Password"] == generate_password("174379", "passkey", body["Timestamp"])
    assert len(body["Timestamp"]) == 14


def test_mpesa_initiate_rejected_raises_gateway_error():
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)
    response = FakeHTTPXResponse(
        {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"},
        status_code=400,
    )

    with patch("httpx.post", return_value=response):
        with pytest.raises(GatewayError, match="Invalid PhoneNumber"):
            gateway.initiate(_request())


def test_mpesa_initiate_timeout_raises_gateway_timeout():
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)

    with patch("httpx.post", side_effect=httpx.ReadTimeout("timed out")):
        with pytest.raises(GatewayTimeout):
            gateway.initiate(_request())


def test_mpesa_token_timeout_is_a_gateway_error():
    gateway = _mpesa()

    with patch("httpx.get", side_effect=httpx.ConnectTimeout("timed out")):
        with patch("httpx.post") as mock_post:
            with pytest.raises(GatewayError, match="token request timed out") as exc_info:
                gateway.initiate(_request())

    assert not isinstance(exc_info.value, GatewayTimeout)
    mock_post.assert_not_called()


def test_mpesa_initiate_requires_phone_number():
    with pytest.raises(InvalidPayload):
        _mpesa().initiate(_request(phone_number=None))


@pytest.mark.parametrize(
    ("payload", "status_code", "expected"),
    [
        ({"ResultCode": "0", "ResultDesc": "The service request is processed successfully."}, 200, NormalizedStatus.completed),
        ({"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}, 200, NormalizedStatus.failed),
        ({"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}, 500, NormalizedStatus.pending),
        ({"ResponseCode": "0"}, 200, NormalizedStatus.unknown),
    ],
)
def test_mpesa_query_status_mapping(payload, status_code, expected):
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)

    with patch("httpx.post", return_value=FakeHTTPXResponse(payload, status_code=status_code)):
        result = gateway.query_status("ws_CO_1")

    assert result.status == expected


def test_mpesa_query_status_timeout_is_unknown():
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)

    with patch("httpx.post", side_effect=httpx.ConnectTimeout("timed out")):
        result = gateway.query_status("ws_CO_1")

    assert result.status == NormalizedStatus.unknown


def test_mpesa_callback_flattens_metadata():
    payload = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 500},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "Balance"},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": 254708374149},
                    ]
                },
            }
        }
    }

    event = _mpesa().verify_callback(payload)

    assert event.tracking_id == "ws_CO_191220191020363925"
    assert event.merchant_order_id is None
    assert event.normalized_status == NormalizedStatus.completed
    assert event.provider_metadata["mpesaReceiptNumber"] == "NLJ7RT61SV"
    assert event.provider_metadata["amount"] == 500
    assert event.provider_metadata["phoneNumber"] == 254708374149


def test_mpesa_callback_non_zero_result_is_failed():
    payload = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_1",
                "ResultCode": 1032,
                "ResultDesc": "Request cancelled by user",
            }
        }
    }

    event = _mpesa().verify_callback(payload)

    assert event.normalized_status == NormalizedStatus.failed
    assert event.provider_metadata["resultDesc"] == "Request cancelled by user"


@pytest.mark.parametrize("payload", [None, {}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}}])
def test_mpesa_callback_malformed_raises_invalid_payload(payload):
    with pytest.raises(InvalidPayload):
        _mpesa().verify_callback(payload)


def test_gateway_non_json_response_raises_gateway_error():
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)

    with patch("httpx.post", return_value=FakeHTTPXResponse(status_code=502, invalid_json=True)):
        with pytest.raises(GatewayError, match="non-JSON"):
            gateway.initiate(_request())


def test_gateway_transport_error_raises_gateway_error():
    gateway = _mpesa()
    gateway.token_cache.store_for("cached-token", 3600)

    with patch("httpx.post", side_effect=httpx.ConnectError("connection refused")):
        with pytest.raises(GatewayError) as exc_info:
            gateway.initiate(_request())

    assert not isinstance(exc_info.value, GatewayTimeout)
    assert exc_info.value.provider == "mpesa"


# =============================================================================
# Pesapal
# =============================================================================


def test_pesapal_token_cached_until_expiry():
    gateway = PesapalGateway(
        consumer_key="pesapal-key",
        consumer_secret="pesapal-secret",
        ipn_id="ipn-123",
        app_url="https://rentconnect.example.com",
    )
    response = FakeHTTPXResponse(
        {"token": "pesapal-token", "expiryDate": "2099-01-01T00:00:00Z", "status": "200"}
    )

    with patch("httpx.post", return_value=response) as mock_post:
        assert gateway.get_access_token() == "pesapal-token"
        assert gateway.get_access_token() == "pesapal-token"

    mock_post.assert_called_once()
    assert mock_post.call_args.kwargs["json"] == {
        "consumer_key": "pesapal-key",
        "consumer_secret": "pesapal-secret",
    }


def test_pesapal_initiate_submits_order():
    gateway = _pesapal()
    response = FakeHTTPXResponse(
        {
            "order_tracking_id": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
            "merchant_reference": "PSPL-LR5X2K9A-Q7Z1PB",
            "redirect_url": "https://cybqa.pesapal.com/pesapaliframe/PesapalIframe3/Index?OrderTrackingId=b945e4af",
            "error": None,
            "status": "200",
        }
    )

    with patch("httpx.post", return_value=response) as mock_post:
        result = gateway.initiate(_request(order_id="PSPL-LR5X2K9A-Q7Z1PB"))

    body = mock_post.call_args.kwargs["json"]
    assert body["id"] == "PSPL-LR5X2K9A-Q7Z1PB"
    assert body["notification_id"] == "ipn-123"
    assert body["callback_url"] == "https://rentconnect.example.com/payment/callback"
    assert body["billing_address"]["email_address"] == "agent@example.com"
    assert result.provider_tracking_id == "b945e4af-80a5-4ec1-8706-e03f8332fb04"
    assert result.client_action["type"] == "redirect"
    assert result.client_action["redirectUrl"].startswith("https://cybqa.pesapal.com")


def test_pesapal_initiate_error_raises_gateway_error():
    gateway = _pesapal()
    response = FakeHTTPXResponse(
        {"error": {"code": "invalid_amount", "message": "Amount is invalid"}, "status": "500"}
    )

    with patch("httpx.post", return_value=response):
        with pytest.raises(GatewayError, match="Amount is invalid"):
            gateway.initiate(_request())


def test_pesapal_initiate_requires_ipn_id():
    with pytest.raises(ConfigurationError, match="PESAPAL_IPN_ID"):
        _pesapal(ipn_id=None).initiate(_request())


def test_pesapal_token_timeout_is_a_gateway_error():
    gateway = _pesapal()
    gateway.token_cache.clear()

    with patch("httpx.post", side_effect=httpx.ReadTimeout("timed out")) as mock_post:
        with pytest.raises(GatewayError, match="token request timed out") as exc_info:
            gateway.initiate(_request())

    assert not isinstance(exc_info.value, GatewayTimeout)
    assert mock_post.call_count == 1
    assert mock_post.call_args.args[0].endswith("/api/Auth/RequestToken")


def test_pesapal_register_ipn_returns_ipn_id():
    gateway = _pesapal()
    response = FakeHTTPXResponse(
        {
            "url": "https://rentconnect.example.com/api/v1/payments/pesapal/ipn",
            "ipn_id": "ipn-new",
            "ipn_notification_type_description": "GET",
            "status": "200",
        }
    )

    with patch("httpx.post", return_value=response) as mock_post:
        data = gateway.register_ipn(
            "https://rentconnect.example.com/api/v1/payments/pesapal/ipn", "get"
        )

    assert data["ipn_id"] == "ipn-new"
    assert mock_post.call_args.args[0].endswith("/api/URLSetup/RegisterIPN")
    assert mock_post.call_args.kwargs["json"]["ipn_notification_type"] == "GET"


def test_pesapal_register_ipn_without_id_raises_gateway_error():
    gateway = _pesapal()
    response = FakeHTTPXResponse({"error": {"message": "Invalid url"}, "status": "500"})

    with patch("httpx.post", return_value=response):
        with pytest.raises(GatewayError, match="IPN registration failed"):
            gateway.register_ipn("not-a-url")


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (1, NormalizedStatus.completed),
        (2, NormalizedStatus.failed),
        (3, NormalizedStatus.failed),
        (0, NormalizedStatus.pending),
        (7, NormalizedStatus.unknown),
    ],
)
def test_pesapal_query_status_mapping(status_code, expected):
    gateway = _pesapal()
    response = FakeHTTPXResponse(
        {
            "payment_method": "MpesaKE",
            "amount": 500,
            "confirmation_code": "NLJ7RT61SV",
            "payment_status_description": "Completed",
            "status_code": status_code,
            "merchant_reference": "PSPL-1",
            "currency": "KES",
            "status": "200",
        }
    )

    with patch("httpx.get", return_value=response) as mock_get:
        result = gateway.query_status("trk-1")

    assert result.status == expected
    assert mock_get.call_args.kwargs["params"] == {"orderTrackingId": "trk-1"}
    assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer pesapal-token"


def test_pesapal_ipn_requeries_status_instead_of_trusting_payload():
    gateway = _pesapal()
    response = FakeHTTPXResponse(
        {
            "payment_method": "MpesaKE",
            "amount": 500,
            "confirmation_code": "NLJ7RT61SV",
            "payment_status_description": "Failed",
            "status_code": 2,
            "merchant_reference": "PSPL-1",
            "currency": "KES",
        }
    )

    with patch("httpx.get", return_value=response) as mock_get:
        event = gateway.verify_callback(
            {
                "OrderTrackingId": "trk-1",
                "OrderMerchantReference": "PSPL-1",
                "OrderNotificationType": "IPNCHANGE",
                "status": "COMPLETED",
            }
        )

    mock_get.assert_called_once()
    assert event.tracking_id == "trk-1"
    assert event.merchant_order_id == "PSPL-1"
    assert event.normalized_status == NormalizedStatus.failed
    assert event.provider_metadata["notificationType"] == "IPNCHANGE"
    assert event.provider_metadata["confirmation_code"] == "NLJ7RT61SV"


def test_pesapal_ipn_without_tracking_id_is_invalid():
    with pytest.raises(InvalidPayload):
        _pesapal().verify_callback({"OrderMerchantReference": "PSPL-1"})


# =============================================================================
# Paystack
# =============================================================================


def _signed(body: dict, secret: str = "sk_test_secret") -> tuple[bytes, str]:
    raw = json.dumps(body).encode()
    return raw, hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest()


def test_paystack_amount_in_subunits():
    assert amount_to_subunit(Decimal("500.40")) == 50040
    assert amount_to_subunit(2500) == 250000


def test_paystack_initiate_uses_order_id_as_reference():
    gateway = _paystack()
    response = FakeHTTPXResponse(
        {
            "status": True,
            "message": "Authorization URL created",
            "data": {
                "authorization_url": "https://checkout.paystack.com/0peioxfhpn",
                "access_code": "0peioxfhpn",
                "reference": "PSTK-LR5X2K9A-Q7Z1PB",
            },
        }
    )

    with patch("httpx.post", return_value=response) as mock_post:
        result = gateway.initiate(_request(order_id="PSTK-LR5X2K9A-Q7Z1PB"))

    body = mock_post.call_args.kwargs["json"]
    assert body["reference"] == "PSTK-LR5X2K9A-Q7Z1PB"
    assert body["amount"] == 50040
    assert body["currency"] == "KES"
    assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk_test_secret"
    assert result.provider_tracking_id == "PSTK-LR5X2K9A-Q7Z1PB"
    assert result.client_action["accessCode"] == "0peioxfhpn"


def test_paystack_initiate_rejected_raises_gateway_error():
    response = FakeHTTPXResponse({"status": False, "message": "Invalid key"}, status_code=401)

    with patch("httpx.post", return_value=response):
        with pytest.raises(GatewayError, match="Invalid key"):
            _paystack().initiate(_request())


def test_paystack_without_secret_raises_configuration_error():
    with pytest.raises(ConfigurationError, match="PAYSTACK_SECRET_KEY"):
        _paystack(secret_key=None).initiate(_request())


@pytest.mark.parametrize(
    ("gateway_status", "expected"),
    [
        ("success", NormalizedStatus.completed),
        ("failed", NormalizedStatus.failed),
        ("abandoned", NormalizedStatus.failed),
        ("reversed", NormalizedStatus.failed),
        ("ongoing", NormalizedStatus.pending),
        ("queued", NormalizedStatus.pending),
        ("mystery", NormalizedStatus.unknown),
    ],
)
def test_paystack_verify_status_mapping(gateway_status, expected):
    response = FakeHTTPXResponse(
        {
            "status": True,
            "message": "Verification successful",
            "data": {"status": gateway_status, "reference": "PSTK-1", "amount": 50000, "currency": "KES"},
        }
    )

    with patch("httpx.get", return_value=response) as mock_get:
        result = _paystack().query_status("PSTK-1")

    assert result.status == expected
    assert mock_get.call_args.args[0].endswith("/transaction/verify/PSTK-1")
    assert result.raw["amount"] == "500"


def test_paystack_webhook_valid_signature():
    raw, signature = _signed(
        {"event": "charge.success", "data": {"reference": "PSTK-1", "status": "success", "amount": 50000}}
    )

    event = _paystack().verify_callback(raw, signature)

    assert event.normalized_status == NormalizedStatus.completed
    assert event.merchant_order_id == "PSTK-1"
    assert event.tracking_id == "PSTK-1"
    assert event.provider_metadata["event"] == "charge.success"


@pytest.mark.parametrize(
    ("event_name", "expected"),
    [
        ("charge.failed", NormalizedStatus.failed),
        ("transfer.success", NormalizedStatus.unknown),
    ],
)
def test_paystack_webhook_event_mapping(event_name, expected):
    raw, signature = _signed({"event": event_name, "data": {"reference": "PSTK-1"}})

    assert _paystack().verify_callback(raw, signature).normalized_status == expected


def test_paystack_webhook_rejects_tampered_body():
    raw, signature = _signed({"event": "charge.success", "data": {"reference": "PSTK-1"}})
    tampered = raw.replace(b"PSTK-1", b"PSTK-2")

    with pytest.raises(InvalidSignature):
        _paystack().verify_callback(tampered, signature)


@pytest.mark.parametrize("signature", [None, ""])
def test_paystack_webhook_rejects_missing_signature(signature):
    raw, _ = _signed({"event": "charge.success", "data": {"reference": "PSTK-1"}})

    with pytest.raises(InvalidSignature):
        _paystack().verify_callback(raw, signature)


def test_paystack_webhook_checks_signature_before_parsing():
    with pytest.raises(InvalidSignature):
        _paystack().verify_callback(b"not json at all", "deadbeef")
