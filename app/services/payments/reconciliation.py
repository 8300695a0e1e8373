"""Reconciliation engine: the pending -> completed -> fulfilled state machine.

Provider events (callbacks, IPNs, webhooks) and client polls both funnel into
``_apply``. The store's conditional transition makes the two paths commute:
whichever arrives first wins and the other is acknowledged as already
processed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from app.metrics import FULFILLMENT_FAILURES, PAYMENT_EVENTS
from app.models.payments import (
    FulfillmentStatus,
    PaymentProviderType,
    PendingPayment,
    PendingPaymentStatus,
)
from app.schemas.payments import PaymentInitiate
from app.services import payment_gateways
from app.services.gateway_common import InitiateRequest, NormalizedStatus, ProviderEvent
from app.services.mpesa import whole_shillings
from app.services.payment_errors import (
    ConfigurationError,
    FulfillmentError,
    GatewayError,
    GatewayTimeout,
    InvalidPayload,
    InvalidPaymentState,
    PaymentError,
    PaymentNotFound,
)
from app.services.payments.fulfillment import FulfillmentDispatcher, FulfillmentResult
from app.services.payments.store import PendingPayments

logger = logging.getLogger(__name__)

# Metadata key naming the owner for each entitlement type
_OWNER_KEYS = {
    "agent_subscription": "agentId",
    "user_subscription": "userId",
    "credit_purchase": "agentId",
}


AMOUNT_TOLERANCE = Decimal("0.01")


class OutcomeAction(enum.Enum):
    completed = "completed"
    failed = "failed"
    ignored = "ignored"
    already_processed = "already_processed"
    fulfillment_failed = "fulfillment_failed"


@dataclass
class ReconciliationOutcome:
    payment: PendingPayment
    action: OutcomeAction


@dataclass
class InitiationResult:
    payment: PendingPayment
    client_action: dict | None = None
    message: str | None = None


def _entitlement_metadata(payload: PaymentInitiate) -> dict:
    metadata = dict(payload.metadata)
    if not metadata.get("agentId") and not metadata.get("userId"):
        owner_key = _OWNER_KEYS.get(str(metadata.get("type")), "agentId")
        metadata[owner_key] = payload.owner_id
    metadata.setdefault("ownerId", payload.owner_id)
    return metadata


def _failure_reason(facts: dict) -> str:
    for key in ("resultDesc", "payment_status_description", "gatewayResponse", "message"):
        value = facts.get(key)
        if value:
            return str(value)
    return "Payment failed"


def _amount_mismatch(payment: PendingPayment, facts: dict) -> str | None:
    """Compare the provider-reported amount and currency with the stored order.

    Returns a description of the difference, or None when they agree or the
    provider reported no amount.
    """
    reported = facts.get("amount")
    if reported is None or reported == "":
        return None
    try:
        reported_amount = Decimal(str(reported))
    except (InvalidOperation, ValueError):
        return f"unparseable amount {reported!r}"
    expected = [Decimal(str(payment.amount))]
    if payment.provider == PaymentProviderType.mpesa:
        # STK push charges whole shillings
        expected.append(Decimal(whole_shillings(payment.amount)))
    if all(abs(reported_amount - value) > AMOUNT_TOLERANCE for value in expected):
        return f"amount {reported_amount} != {payment.amount}"
    currency = facts.get("currency")
    if currency and payment.currency and str(currency).upper() != payment.currency.upper():
        return f"currency {currency} != {payment.currency}"
    return None


def _payment_facts(payment: PendingPayment) -> dict:
    facts = dict(payment.provider_status or {})
    facts["provider"] = payment.provider.value
    facts["amount"] = payment.amount
    facts["currency"] = payment.currency
    return facts


class PaymentReconciliation:
    @staticmethod
    def initiate(
        db: Session, provider: str | PaymentProviderType, payload: PaymentInitiate
    ) -> InitiationResult:
        """Create a pending payment and start the charge with the provider.

        A gateway rejection marks the record failed and re-raises. A timeout
        leaves it pending: the charge may still succeed provider-side.
        """
        provider = payment_gateways.resolve_provider(provider)
        gateway = payment_gateways.get_gateway(provider)
        missing = [name for name in gateway.required_fields if not getattr(payload, name, None)]
        if missing:
            raise InvalidPayload(
                f"Missing required fields for {provider.value}: {', '.join(missing)}",
                details={"missing": missing},
            )

        payment = PendingPayments.create(
            db,
            order_id=PendingPayments.generate_order_id(provider),
            provider=provider,
            amount=payload.amount,
            currency=payload.currency,
            metadata=_entitlement_metadata(payload),
        )
        request = InitiateRequest(
            order_id=payment.order_id,
            amount=payload.amount,
            currency=payload.currency,
            metadata=dict(payment.metadata_ or {}),
            phone_number=payload.phone_number,
            email=payload.email,
            first_name=payload.first_name,
            last_name=payload.last_name,
            description=payload.description,
            callback_url=payload.callback_url,
        )
        try:
            initiation = gateway.initiate(request)
        except GatewayTimeout:
            logger.warning(
                "payment_initiation_timeout order_id=%s provider=%s",
                payment.order_id,
                provider.value,
            )
            PAYMENT_EVENTS.labels(provider=provider.value, action="initiate_timeout").inc()
            return InitiationResult(
                payment=payment,
                message="Payment request is still being processed. Check the status shortly.",
            )
        except (GatewayError, ConfigurationError, InvalidPayload) as exc:
            PendingPayments.transition(
                db,
                payment.order_id,
                PendingPaymentStatus.failed,
                failure_reason=exc.message,
            )
            PAYMENT_EVENTS.labels(provider=provider.value, action="initiate_failed").inc()
            logger.warning(
                "payment_initiation_failed order_id=%s provider=%s error=%s",
                payment.order_id,
                provider.value,
                exc.message,
            )
            raise

        payment = PendingPayments.attach_tracking_id(
            db, payment.order_id, initiation.provider_tracking_id
        )
        PAYMENT_EVENTS.labels(provider=provider.value, action="initiated").inc()
        logger.info(
            "payment_initiated order_id=%s provider=%s tracking_id=%s",
            payment.order_id,
            provider.value,
            initiation.provider_tracking_id,
        )
        return InitiationResult(
            payment=payment,
            client_action=initiation.client_action,
            message=(initiation.client_action or {}).get("message"),
        )

    @staticmethod
    def handle_provider_event(db: Session, event: ProviderEvent) -> ReconciliationOutcome:
        payment = None
        if event.merchant_order_id:
            payment = PendingPayments.find_by_order_id(db, event.merchant_order_id)
        if payment is None and event.tracking_id:
            payment = PendingPayments.find_by_tracking_id(db, event.tracking_id)
        if payment is None:
            PAYMENT_EVENTS.labels(provider=event.provider, action="not_found").inc()
            logger.warning(
                "provider_event_unmatched provider=%s order_id=%s tracking_id=%s",
                event.provider,
                event.merchant_order_id,
                event.tracking_id,
            )
            raise PaymentNotFound(
                "Payment not found",
                details={
                    "orderId": event.merchant_order_id,
                    "trackingId": event.tracking_id,
                },
            )
        if payment.provider.value != event.provider:
            raise InvalidPayload(
                f"Event from {event.provider} does not match a {payment.provider.value} payment"
            )
        return PaymentReconciliation._apply(
            db, payment, event.normalized_status, event.provider_metadata
        )

    @staticmethod
    def poll_status(
        db: Session, order_id: str | None = None, tracking_id: str | None = None
    ) -> ReconciliationOutcome:
        if not order_id and not tracking_id:
            raise InvalidPayload("orderId or trackingId is required")
        payment = None
        if order_id:
            payment = PendingPayments.find_by_order_id(db, order_id)
        if payment is None and tracking_id:
            payment = PendingPayments.find_by_tracking_id(db, tracking_id)
        if payment is None:
            raise PaymentNotFound("Payment not found")

        # Terminal records are answered locally, without a provider call
        if payment.is_terminal:
            return ReconciliationOutcome(payment, OutcomeAction.already_processed)
        if not payment.provider_tracking_id:
            return ReconciliationOutcome(payment, OutcomeAction.ignored)

        gateway = payment_gateways.get_gateway(payment.provider)
        try:
            result = gateway.query_status(payment.provider_tracking_id)
        except GatewayError as exc:
            logger.warning(
                "payment_status_query_failed order_id=%s provider=%s error=%s",
                payment.order_id,
                payment.provider.value,
                exc.message,
            )
            PAYMENT_EVENTS.labels(provider=payment.provider.value, action="query_failed").inc()
            return ReconciliationOutcome(payment, OutcomeAction.ignored)
        return PaymentReconciliation._apply(db, payment, result.status, result.raw)

    @staticmethod
    def retry_fulfillment(db: Session, order_id: str) -> ReconciliationOutcome:
        payment = PendingPayments.get(db, order_id)
        if payment.status != PendingPaymentStatus.completed:
            raise InvalidPaymentState(
                f"Payment {order_id} is {payment.status.value}, not completed",
                details={"status": payment.status.value},
            )
        if payment.fulfillment_status == FulfillmentStatus.fulfilled:
            return ReconciliationOutcome(payment, OutcomeAction.already_processed)
        payment = PaymentReconciliation._fulfill(db, payment)
        if payment.fulfillment_status == FulfillmentStatus.fulfilled:
            return ReconciliationOutcome(payment, OutcomeAction.completed)
        return ReconciliationOutcome(payment, OutcomeAction.fulfillment_failed)

    @staticmethod
    def reconcile_stale(db: Session, older_than_minutes: int = 10, limit: int = 100) -> dict:
        """Poll providers for pending payments that never got a callback."""
        cutoff = datetime.now(UTC) - timedelta(minutes=older_than_minutes)
        counts: dict[str, int] = {}
        for payment in PendingPayments.list_stale_pending(db, cutoff, limit):
            try:
                outcome = PaymentReconciliation.poll_status(db, order_id=payment.order_id)
                action = outcome.action.value
            except PaymentError as exc:
                logger.warning(
                    "stale_payment_poll_failed order_id=%s error=%s", payment.order_id, exc.message
                )
                action = "error"
            counts[action] = counts.get(action, 0) + 1
        return counts

    @staticmethod
    def retry_unfulfilled(db: Session, limit: int = 100) -> dict:
        counts: dict[str, int] = {}
        for payment in PendingPayments.list_unfulfilled(db, limit):
            outcome = PaymentReconciliation.retry_fulfillment(db, payment.order_id)
            counts[outcome.action.value] = counts.get(outcome.action.value, 0) + 1
        return counts

    @staticmethod
    def _apply(
        db: Session,
        payment: PendingPayment,
        status: NormalizedStatus,
        facts: dict | None,
    ) -> ReconciliationOutcome:
        provider = payment.provider.value
        facts = dict(facts or {})
        if payment.is_terminal:
            PAYMENT_EVENTS.labels(provider=provider, action="already_processed").inc()
            logger.info(
                "payment_already_processed order_id=%s status=%s",
                payment.order_id,
                payment.status.value,
            )
            return ReconciliationOutcome(payment, OutcomeAction.already_processed)

        if status == NormalizedStatus.completed:
            payment, applied = PendingPayments.transition(
                db, payment.order_id, PendingPaymentStatus.completed, provider_metadata=facts
            )
            if not applied:
                PAYMENT_EVENTS.labels(provider=provider, action="already_processed").inc()
                return ReconciliationOutcome(payment, OutcomeAction.already_processed)
            PAYMENT_EVENTS.labels(provider=provider, action="completed").inc()
            logger.info("payment_completed order_id=%s provider=%s", payment.order_id, provider)
            payment = PaymentReconciliation._fulfill(db, payment)
            return ReconciliationOutcome(payment, OutcomeAction.completed)

        if status == NormalizedStatus.failed:
            payment, applied = PendingPayments.transition(
                db,
                payment.order_id,
                PendingPaymentStatus.failed,
                provider_metadata=facts,
                failure_reason=_failure_reason(facts),
            )
            if not applied:
                PAYMENT_EVENTS.labels(provider=provider, action="already_processed").inc()
                return ReconciliationOutcome(payment, OutcomeAction.already_processed)
            PAYMENT_EVENTS.labels(provider=provider, action="failed").inc()
            logger.info(
                "payment_failed order_id=%s provider=%s reason=%s",
                payment.order_id,
                provider,
                payment.failure_reason,
            )
            return ReconciliationOutcome(payment, OutcomeAction.failed)

        PAYMENT_EVENTS.labels(provider=provider, action="ignored").inc()
        return ReconciliationOutcome(payment, OutcomeAction.ignored)

    @staticmethod
    def _fulfill(db: Session, payment: PendingPayment) -> PendingPayment:
        order_id = payment.order_id
        mismatch = _amount_mismatch(payment, dict(payment.provider_status or {}))
        if mismatch:
            FULFILLMENT_FAILURES.labels(reason="amount_mismatch").inc()
            logger.error(
                "payment_amount_mismatch order_id=%s provider=%s detail=%s",
                order_id,
                payment.provider.value,
                mismatch,
            )
            return PendingPayments.record_fulfillment_failure(db, order_id, "amount_mismatch")

        try:
            result = FulfillmentDispatcher.fulfill(
                db, order_id, dict(payment.metadata_ or {}), _payment_facts(payment)
            )
        except FulfillmentError as exc:
            result = FulfillmentResult(success=False, reason=exc.message, code="write_failed")

        if not result.success:
            FULFILLMENT_FAILURES.labels(reason=result.code or "unknown").inc()
            # Paid but not granted: needs operator attention
            logger.error(
                "payment_fulfillment_failed order_id=%s provider=%s reason=%s",
                order_id,
                payment.provider.value,
                result.reason,
            )
            return PendingPayments.record_fulfillment_failure(
                db, order_id, result.reason or "Fulfillment failed"
            )

        payment, _ = PendingPayments.mark_fulfilled(db, order_id, receipt=result.receipt())
        return payment
