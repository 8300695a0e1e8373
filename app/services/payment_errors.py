"""Error taxonomy for payment initiation, reconciliation and fulfillment.

Gateway and network failures are normalized into these classes at the
adapter boundary; ``app.errors`` turns them into JSON error responses.
"""

from __future__ import annotations


class PaymentError(Exception):
    status_code = 500
    code = "payment_error"

    def __init__(self, message: str, *, details: object | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(PaymentError):
    """A required secret or credential is missing."""

    code = "configuration_error"


class GatewayError(PaymentError):
    """The provider rejected or could not process an initiate/query call."""

    status_code = 502
    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        details: object | None = None,
    ):
        super().__init__(message, details=details)
        self.provider = provider


class GatewayTimeout(GatewayError):
    """The provider did not answer in time; the outcome is unknown."""

    status_code = 504
    code = "gateway_timeout"


class InvalidSignature(PaymentError):
    status_code = 401
    code = "invalid_signature"


class InvalidPayload(PaymentError):
    status_code = 400
    code = "invalid_payload"


class PaymentNotFound(PaymentError):
    status_code = 404
    code = "payment_not_found"


class DuplicateOrderId(PaymentError):
    status_code = 409
    code = "duplicate_order_id"


class InvalidPaymentState(PaymentError):
    status_code = 409
    code = "invalid_payment_state"


class FulfillmentError(PaymentError):
    """Payment confirmed but the entitlement grant failed."""

    code = "fulfillment_error"

    def __init__(self, message: str, *, order_id: str | None = None, details: object | None = None):
        super().__init__(message, details=details)
        self.order_id = order_id
