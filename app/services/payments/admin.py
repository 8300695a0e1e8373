"""Operator reconciliation view over pending payments."""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.payments import FulfillmentStatus, PendingPayment, PendingPaymentStatus
from app.schemas.payments import (
    PendingPaymentRead,
    ReconciliationActionRead,
    ReconciliationCounts,
    ReconciliationSummaryRead,
)
from app.services.common import apply_pagination
from app.services.payment_errors import InvalidPayload, InvalidPaymentState
from app.services.payments.reconciliation import OutcomeAction, PaymentReconciliation
from app.services.payments.store import PendingPayments

logger = logging.getLogger(__name__)

ADMIN_ACTIONS = ("mark_fulfilled", "retry_fulfillment")


def _pending_fulfillment_filter(query):
    return query.filter(
        PendingPayment.status == PendingPaymentStatus.completed,
        PendingPayment.fulfillment_status == FulfillmentStatus.pending,
    )


def _fulfilled_filter(query):
    return query.filter(PendingPayment.fulfillment_status == FulfillmentStatus.fulfilled)


def _failed_filter(query):
    return query.filter(PendingPayment.status == PendingPaymentStatus.failed)


class ReconciliationView:
    @staticmethod
    def list_pending_fulfillment(db: Session, limit: int = 50, offset: int = 0):
        """Paid payments whose entitlement has not been granted yet."""
        query = _pending_fulfillment_filter(db.query(PendingPayment)).order_by(
            PendingPayment.completed_at.desc(), PendingPayment.created_at.desc()
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def list_recently_fulfilled(db: Session, limit: int = 50, offset: int = 0):
        query = _fulfilled_filter(db.query(PendingPayment)).order_by(
            PendingPayment.fulfilled_at.desc()
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def list_failed(db: Session, limit: int = 50, offset: int = 0):
        query = _failed_filter(db.query(PendingPayment)).order_by(
            PendingPayment.updated_at.desc()
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def counts(db: Session) -> ReconciliationCounts:
        def _count(apply_filter) -> int:
            return apply_filter(db.query(func.count(PendingPayment.order_id))).scalar() or 0

        return ReconciliationCounts(
            pending_fulfillment_count=_count(_pending_fulfillment_filter),
            recently_fulfilled_count=_count(_fulfilled_filter),
            failed_count=_count(_failed_filter),
        )

    @staticmethod
    def summary(db: Session, limit: int = 50, offset: int = 0) -> ReconciliationSummaryRead:
        return ReconciliationSummaryRead(
            pending_fulfillment=[
                PendingPaymentRead.from_payment(item)
                for item in ReconciliationView.list_pending_fulfillment(db, limit, offset)
            ],
            recently_fulfilled=[
                PendingPaymentRead.from_payment(item)
                for item in ReconciliationView.list_recently_fulfilled(db, limit, offset)
            ],
            failed_payments=[
                PendingPaymentRead.from_payment(item)
                for item in ReconciliationView.list_failed(db, limit, offset)
            ],
            summary=ReconciliationView.counts(db),
        )

    @staticmethod
    def force_mark_fulfilled(db: Session, order_id: str) -> PendingPayment:
        payment = PendingPayments.get(db, order_id)
        if payment.status != PendingPaymentStatus.completed:
            raise InvalidPaymentState(
                f"Can only fulfill completed payments (current: {payment.status.value})",
                details={"status": payment.status.value},
            )
        payment, applied = PendingPayments.mark_fulfilled(
            db, order_id, receipt={"entitlementId": None, "kind": "manual"}
        )
        if applied:
            logger.warning("payment_force_fulfilled order_id=%s", order_id)
        return payment

    @staticmethod
    def apply_action(db: Session, order_id: str, action: str) -> ReconciliationActionRead:
        if action == "mark_fulfilled":
            payment = ReconciliationView.force_mark_fulfilled(db, order_id)
            message = "Payment marked as fulfilled"
        elif action == "retry_fulfillment":
            outcome = PaymentReconciliation.retry_fulfillment(db, order_id)
            payment = outcome.payment
            if outcome.action == OutcomeAction.fulfillment_failed:
                message = f"Fulfillment failed: {payment.fulfillment_error}"
            elif outcome.action == OutcomeAction.already_processed:
                message = "Payment was already fulfilled"
            else:
                message = "Fulfillment completed"
        else:
            raise InvalidPayload(
                f"Invalid action: {action}", details={"allowed": list(ADMIN_ACTIONS)}
            )
        return ReconciliationActionRead(
            success=payment.fulfillment_status == FulfillmentStatus.fulfilled,
            message=message,
            data=PendingPaymentRead.from_payment(payment),
        )
