"""Provider name to gateway adapter registry.

Adapters are built lazily from settings and cached per process so each one
keeps its own bearer-token cache.
"""

from __future__ import annotations

import logging

from app.config import settings
from app.models.payments import PaymentProviderType
from app.services.gateway_common import PaymentGateway, TokenCache
from app.services.mpesa import MpesaGateway
from app.services.payment_errors import InvalidPayload
from app.services.paystack import PaystackGateway
from app.services.pesapal import PesapalGateway

logger = logging.getLogger(__name__)

_gateways: dict[PaymentProviderType, PaymentGateway] = {}


def _token_cache() -> TokenCache:
    return TokenCache(safety_margin_seconds=settings.token_safety_margin_seconds)


def _build(provider: PaymentProviderType) -> PaymentGateway:
    if provider == PaymentProviderType.mpesa:
        return MpesaGateway(
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            passkey=settings.mpesa_passkey,
            shortcode=settings.mpesa_shortcode,
            callback_url=settings.mpesa_callback_url,
            environment=settings.mpesa_env,
            timeout=settings.gateway_timeout_seconds,
            token_cache=_token_cache(),
        )
    if provider == PaymentProviderType.pesapal:
        return PesapalGateway(
            consumer_key=settings.pesapal_consumer_key,
            consumer_secret=settings.pesapal_consumer_secret,
            ipn_id=settings.pesapal_ipn_id,
            app_url=settings.app_url,
            environment=settings.pesapal_env,
            timeout=settings.gateway_timeout_seconds,
            token_cache=_token_cache(),
        )
    return PaystackGateway(
        secret_key=settings.paystack_secret_key,
        app_url=settings.app_url,
        timeout=settings.gateway_timeout_seconds,
    )


def resolve_provider(value: str | PaymentProviderType) -> PaymentProviderType:
    if isinstance(value, PaymentProviderType):
        return value
    try:
        return PaymentProviderType(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidPayload(
            f"Unsupported payment provider: {value}",
            details={"allowed": [item.value for item in PaymentProviderType]},
        ) from exc


def get_gateway(provider: str | PaymentProviderType) -> PaymentGateway:
    key = resolve_provider(provider)
    gateway = _gateways.get(key)
    if gateway is None:
        gateway = _build(key)
        _gateways[key] = gateway
        logger.debug("payment_gateway_built provider=%s", key.value)
    return gateway


def reset_gateways() -> None:
    """Drop cached adapters (tests and settings reloads)."""
    _gateways.clear()
