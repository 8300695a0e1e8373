"""Shared types for payment gateway adapters.

Adapters translate provider APIs into a uniform shape: initiate a charge,
query its status, and verify an inbound callback. They never write to the
database; the reconciliation engine owns every state change.
"""

from __future__ import annotations

import abc
import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

import httpx

from app.metrics import GATEWAY_REQUESTS
from app.services.payment_errors import GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)


class NormalizedStatus(enum.Enum):
    completed = "completed"
    failed = "failed"
    pending = "pending"
    unknown = "unknown"


@dataclass
class InitiateRequest:
    order_id: str
    amount: Decimal
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)
    phone_number: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    description: str | None = None
    callback_url: str | None = None


@dataclass
class GatewayInitiation:
    provider_tracking_id: str
    raw: dict[str, Any]
    client_action: dict[str, Any] | None = None


@dataclass
class StatusResult:
    status: NormalizedStatus
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderEvent:
    provider: str
    tracking_id: str | None
    normalized_status: NormalizedStatus
    merchant_order_id: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResponse:
    status_code: int
    data: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class TokenCache:
    """Bearer token cache owned by one adapter instance.

    A cached token is only handed out while its expiry is further away than
    the safety margin. Concurrent refreshes simply overwrite each other.
    """

    def __init__(
        self,
        *,
        safety_margin_seconds: int = 60,
        clock: Callable[[], datetime] | None = None,
    ):
        self.safety_margin = timedelta(seconds=safety_margin_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._token: str | None = None
        self._expires_at: datetime | None = None

    def now(self) -> datetime:
        return self._clock()

    def get(self) -> str | None:
        if not self._token or self._expires_at is None:
            return None
        if self._expires_at - self.now() > self.safety_margin:
            return self._token
        return None

    def store(self, token: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        self._token = token
        self._expires_at = expires_at

    def store_for(self, token: str, ttl_seconds: int | float) -> None:
        self.store(token, self.now() + timedelta(seconds=float(ttl_seconds)))

    def clear(self) -> None:
        self._token = None
        self._expires_at = None


def send(
    method: str,
    url: str,
    *,
    provider: str,
    operation: str,
    timeout: float,
    **kwargs,
) -> GatewayResponse:
    """Perform one gateway HTTP call and normalize transport failures.

    Raises:
        GatewayTimeout: The provider did not answer within ``timeout``.
        GatewayError: Transport failure or a body that is not a JSON object.
    """
    request = httpx.get if method.upper() == "GET" else httpx.post
    try:
        resp = request(url, timeout=timeout, **kwargs)
    except httpx.TimeoutException as exc:
        GATEWAY_REQUESTS.labels(provider=provider, operation=operation, outcome="timeout").inc()
        logger.warning("gateway_timeout provider=%s operation=%s", provider, operation)
        raise GatewayTimeout(
            f"{provider} {operation} request timed out", provider=provider
        ) from exc
    except httpx.HTTPError as exc:
        GATEWAY_REQUESTS.labels(provider=provider, operation=operation, outcome="error").inc()
        logger.warning(
            "gateway_transport_error provider=%s operation=%s error=%s",
            provider,
            operation,
            exc,
        )
        raise GatewayError(
            f"{provider} {operation} request failed: {exc}", provider=provider
        ) from exc

    try:
        data = resp.json()
    except ValueError as exc:
        GATEWAY_REQUESTS.labels(provider=provider, operation=operation, outcome="error").inc()
        raise GatewayError(
            f"{provider} {operation} returned a non-JSON response "
            f"(HTTP {resp.status_code})",
            provider=provider,
        ) from exc
    if not isinstance(data, dict):
        data = {"data": data}

    outcome = "ok" if resp.status_code < 400 else "http_error"
    GATEWAY_REQUESTS.labels(provider=provider, operation=operation, outcome=outcome).inc()
    return GatewayResponse(status_code=resp.status_code, data=data)


class PaymentGateway(abc.ABC):
    provider: str
    # InitiateRequest attributes the provider cannot charge without
    required_fields: tuple[str, ...] = ()

    def __init__(self, *, timeout: float = 30, token_cache: TokenCache | None = None):
        self.timeout = timeout
        self.token_cache = token_cache or TokenCache()

    def _send(self, method: str, url: str, operation: str, **kwargs) -> GatewayResponse:
        return send(
            method,
            url,
            provider=self.provider,
            operation=operation,
            timeout=self.timeout,
            **kwargs,
        )

    @abc.abstractmethod
    def initiate(self, request: InitiateRequest) -> GatewayInitiation:
        """Create the provider transaction or raise GatewayError."""

    @abc.abstractmethod
    def query_status(self, provider_tracking_id: str) -> StatusResult:
        """Ask the provider for the current state of a transaction."""

    @abc.abstractmethod
    def verify_callback(self, payload: Any, signature: str | None = None) -> ProviderEvent:
        """Authenticate and parse an inbound provider notification."""
