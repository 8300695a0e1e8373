"""Pending payment persistence.

``transition`` and ``mark_fulfilled`` are conditional UPDATEs so concurrent
handlers racing on one order behave as compare-and-set: the first writer
wins and later writers observe a no-op.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payments import (
    FulfillmentStatus,
    PaymentProviderType,
    PendingPayment,
    PendingPaymentStatus,
    TERMINAL_STATUSES,
)
from app.services.payment_errors import (
    DuplicateOrderId,
    InvalidPaymentState,
    PaymentNotFound,
)

logger = logging.getLogger(__name__)

ORDER_ID_PREFIXES = {
    PaymentProviderType.mpesa: "MPESA",
    PaymentProviderType.pesapal: "PSPL",
    PaymentProviderType.paystack: "PSTK",
}

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _now() -> datetime:
    return datetime.now(UTC)


class PendingPayments:
    @staticmethod
    def generate_order_id(provider: PaymentProviderType) -> str:
        """Mint a fresh order id: ``<PREFIX>-<base36 ms timestamp>-<random>``."""
        prefix = ORDER_ID_PREFIXES[PaymentProviderType(provider)]
        stamp = _to_base36(time.time_ns() // 1_000_000)
        suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
        return f"{prefix}-{stamp}-{suffix}"

    @staticmethod
    def create(
        db: Session,
        *,
        order_id: str,
        provider: PaymentProviderType,
        amount: Decimal,
        currency: str,
        metadata: dict | None = None,
    ) -> PendingPayment:
        if db.get(PendingPayment, order_id) is not None:
            raise DuplicateOrderId(f"Order id already exists: {order_id}")
        payment = PendingPayment(
            order_id=order_id,
            provider=PaymentProviderType(provider),
            amount=amount,
            currency=currency,
            metadata_=dict(metadata or {}),
            status=PendingPaymentStatus.pending,
            fulfillment_status=FulfillmentStatus.pending,
        )
        try:
            with db.begin_nested():
                db.add(payment)
                db.flush()
        except IntegrityError as exc:
            raise DuplicateOrderId(f"Order id already exists: {order_id}") from exc
        db.commit()
        db.refresh(payment)
        logger.info(
            "pending_payment_created order_id=%s provider=%s amount=%s %s",
            order_id,
            payment.provider.value,
            amount,
            currency,
        )
        return payment

    @staticmethod
    def attach_tracking_id(db: Session, order_id: str, tracking_id: str) -> PendingPayment:
        updated = (
            db.query(PendingPayment)
            .filter(PendingPayment.order_id == order_id)
            .update(
                {"provider_tracking_id": tracking_id, "updated_at": _now()},
                synchronize_session=False,
            )
        )
        if not updated:
            raise PaymentNotFound(f"Payment not found: {order_id}")
        db.commit()
        return PendingPayments.get(db, order_id)

    @staticmethod
    def find_by_order_id(db: Session, order_id: str) -> PendingPayment | None:
        payment = db.get(PendingPayment, order_id)
        if payment is not None:
            db.refresh(payment)
        return payment

    @staticmethod
    def find_by_tracking_id(db: Session, tracking_id: str) -> PendingPayment | None:
        payment = (
            db.query(PendingPayment)
            .filter(PendingPayment.provider_tracking_id == tracking_id)
            .first()
        )
        if payment is not None:
            db.refresh(payment)
        return payment

    @staticmethod
    def get(db: Session, order_id: str) -> PendingPayment:
        payment = PendingPayments.find_by_order_id(db, order_id)
        if not payment:
            raise PaymentNotFound(f"Payment not found: {order_id}")
        return payment

    @staticmethod
    def transition(
        db: Session,
        order_id: str,
        new_status: PendingPaymentStatus,
        *,
        provider_metadata: dict | None = None,
        failure_reason: str | None = None,
    ) -> tuple[PendingPayment, bool]:
        """Move a pending payment to a terminal status.

        Returns the current row and whether this call applied the change.
        A record that is already terminal is left untouched.
        """
        new_status = PendingPaymentStatus(new_status)
        if new_status not in TERMINAL_STATUSES:
            raise InvalidPaymentState(f"Cannot transition to {new_status.value}")

        current = PendingPayments.get(db, order_id)
        facts = dict(provider_metadata or {})
        values: dict = {"status": new_status, "updated_at": _now()}
        if facts:
            values["provider_status"] = facts
            values["metadata_"] = {**(current.metadata_ or {}), "providerFacts": facts}
        if new_status == PendingPaymentStatus.completed:
            values["completed_at"] = _now()
        else:
            values["failure_reason"] = failure_reason or "Payment failed"

        updated = (
            db.query(PendingPayment)
            .filter(
                PendingPayment.order_id == order_id,
                PendingPayment.status == PendingPaymentStatus.pending,
            )
            .update(values, synchronize_session=False)
        )
        if not updated:
            logger.warning(
                "payment_transition_ignored order_id=%s current=%s requested=%s",
                order_id,
                current.status.value,
                new_status.value,
            )
            return PendingPayments.get(db, order_id), False
        db.commit()
        logger.info("payment_transitioned order_id=%s status=%s", order_id, new_status.value)
        return PendingPayments.get(db, order_id), True

    @staticmethod
    def mark_fulfilled(
        db: Session, order_id: str, receipt: dict | None = None
    ) -> tuple[PendingPayment, bool]:
        """Flag a completed payment as fulfilled.

        Raises InvalidPaymentState when the payment is not completed.
        """
        updated = (
            db.query(PendingPayment)
            .filter(
                PendingPayment.order_id == order_id,
                PendingPayment.status == PendingPaymentStatus.completed,
                PendingPayment.fulfillment_status == FulfillmentStatus.pending,
            )
            .update(
                {
                    "fulfillment_status": FulfillmentStatus.fulfilled,
                    "fulfilled_at": _now(),
                    "fulfillment_error": None,
                    "fulfillment_receipt": receipt,
                    "updated_at": _now(),
                },
                synchronize_session=False,
            )
        )
        if updated:
            db.commit()
            logger.info("payment_fulfilled order_id=%s", order_id)
            return PendingPayments.get(db, order_id), True

        payment = PendingPayments.get(db, order_id)
        if payment.status != PendingPaymentStatus.completed:
            raise InvalidPaymentState(
                f"Payment {order_id} is {payment.status.value}, not completed",
                details={"status": payment.status.value},
            )
        return payment, False

    @staticmethod
    def record_fulfillment_failure(db: Session, order_id: str, error: str) -> PendingPayment:
        db.query(PendingPayment).filter(
            PendingPayment.order_id == order_id,
            PendingPayment.fulfillment_status == FulfillmentStatus.pending,
        ).update(
            {"fulfillment_error": error[:2000], "updated_at": _now()},
            synchronize_session=False,
        )
        db.commit()
        return PendingPayments.get(db, order_id)

    @staticmethod
    def list_stale_pending(db: Session, created_before: datetime, limit: int) -> list[PendingPayment]:
        return (
            db.query(PendingPayment)
            .filter(
                PendingPayment.status == PendingPaymentStatus.pending,
                PendingPayment.provider_tracking_id.isnot(None),
                PendingPayment.created_at < created_before,
            )
            .order_by(PendingPayment.created_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def list_unfulfilled(db: Session, limit: int) -> list[PendingPayment]:
        return (
            db.query(PendingPayment)
            .filter(
                PendingPayment.status == PendingPaymentStatus.completed,
                PendingPayment.fulfillment_status == FulfillmentStatus.pending,
            )
            .order_by(PendingPayment.completed_at.asc())
            .limit(limit)
            .all()
        )
