"""Entitlement grants for completed payments.

Every grant is keyed on the payment's order id, so calling ``fulfill`` twice
for the same order never stacks a second subscription or credits twice.
"""

from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.entitlements import (
    CreditEntryType,
    CreditTransaction,
    CreditWallet,
    OwnerType,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from app.schemas.payments import (
    AgentSubscriptionMeta,
    CreditPurchaseMeta,
    UserSubscriptionMeta,
    entitlement_meta_adapter,
)
from app.services.payment_errors import FulfillmentError

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentResult:
    success: bool
    entitlement_id: str | None = None
    kind: str | None = None
    reason: str | None = None
    code: str | None = None
    already_applied: bool = False

    def receipt(self) -> dict:
        return {"entitlementId": self.entitlement_id, "kind": self.kind}


def _add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_end_date(start: datetime, plan_type: PlanType) -> datetime:
    """Month-based plans clamp to the last day of the target month."""
    if plan_type == PlanType.weekly:
        return start + timedelta(days=7)
    if plan_type == PlanType.quarterly:
        return _add_months(start, 3)
    if plan_type == PlanType.yearly:
        return _add_months(start, 12)
    return _add_months(start, 1)


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts) or "invalid metadata"


def _confirmation_code(facts: dict) -> str | None:
    for key in ("mpesaReceiptNumber", "confirmation_code", "reference"):
        value = facts.get(key)
        if value:
            return str(value)
    return None


class FulfillmentDispatcher:
    @staticmethod
    def fulfill(
        db: Session,
        order_id: str,
        metadata: dict | None,
        payment_facts: dict | None = None,
    ) -> FulfillmentResult:
        """Grant the entitlement described by ``metadata``.

        Returns ``success=False`` for metadata that cannot be fulfilled.
        Raises FulfillmentError when the grant itself could not be written.
        """
        try:
            meta = entitlement_meta_adapter.validate_python(metadata or {})
        except ValidationError as exc:
            reason = _describe_validation_error(exc)
            logger.error("fulfillment_invalid_metadata order_id=%s reason=%s", order_id, reason)
            return FulfillmentResult(success=False, reason=reason, code="invalid_metadata")

        facts = dict(payment_facts or {})
        try:
            if isinstance(meta, CreditPurchaseMeta):
                return FulfillmentDispatcher._grant_credits(db, order_id, meta)
            return FulfillmentDispatcher._grant_subscription(db, order_id, meta, facts)
        except SQLAlchemyError as exc:
            db.rollback()
            raise FulfillmentError(
                f"Entitlement write failed: {exc.__class__.__name__}", order_id=order_id
            ) from exc

    @staticmethod
    def _grant_subscription(
        db: Session,
        order_id: str,
        meta: AgentSubscriptionMeta | UserSubscriptionMeta,
        facts: dict,
    ) -> FulfillmentResult:
        existing = (
            db.query(Subscription).filter(Subscription.payment_reference == order_id).first()
        )
        if existing:
            return FulfillmentResult(
                success=True,
                entitlement_id=str(existing.id),
                kind=meta.type,
                already_applied=True,
            )

        owner_type = (
            OwnerType.agent if isinstance(meta, AgentSubscriptionMeta) else OwnerType.user
        )
        start = datetime.now(UTC)
        subscription = Subscription(
            owner_id=meta.owner_id,
            owner_type=owner_type,
            plan_type=meta.plan_type,
            status=SubscriptionStatus.active,
            start_date=start,
            end_date=compute_end_date(start, meta.plan_type),
            payment_reference=order_id,
            amount=facts.get("amount"),
            payment_method=facts.get("provider"),
            confirmation_code=_confirmation_code(facts),
        )
        try:
            with db.begin_nested():
                db.add(subscription)
                db.flush()
        except IntegrityError:
            existing = (
                db.query(Subscription)
                .filter(Subscription.payment_reference == order_id)
                .first()
            )
            if not existing:
                raise
            logger.info("subscription_already_granted order_id=%s", order_id)
            return FulfillmentResult(
                success=True,
                entitlement_id=str(existing.id),
                kind=meta.type,
                already_applied=True,
            )
        db.commit()
        logger.info(
            "subscription_granted order_id=%s owner_id=%s plan=%s end_date=%s",
            order_id,
            meta.owner_id,
            meta.plan_type.value,
            subscription.end_date.isoformat(),
        )
        return FulfillmentResult(success=True, entitlement_id=str(subscription.id), kind=meta.type)

    @staticmethod
    def _ensure_wallet(db: Session, owner_id: str) -> None:
        exists = db.query(CreditWallet.id).filter(CreditWallet.owner_id == owner_id).first()
        if exists:
            return
        try:
            with db.begin_nested():
                db.add(CreditWallet(owner_id=owner_id, balance=0))
                db.flush()
        except IntegrityError:
            # Another purchase created the wallet first
            logger.debug("credit_wallet_exists owner_id=%s", owner_id)

    @staticmethod
    def _grant_credits(db: Session, order_id: str, meta: CreditPurchaseMeta) -> FulfillmentResult:
        existing = (
            db.query(CreditTransaction)
            .filter(CreditTransaction.transaction_reference == order_id)
            .first()
        )
        if existing:
            return FulfillmentResult(
                success=True,
                entitlement_id=str(existing.id),
                kind=meta.type,
                already_applied=True,
            )

        owner_id = meta.owner_id
        entry = CreditTransaction(
            owner_id=owner_id,
            amount=meta.credits,
            entry_type=CreditEntryType.credit,
            reason=f"Credit purchase {order_id}",
            transaction_reference=order_id,
        )
        try:
            with db.begin_nested():
                FulfillmentDispatcher._ensure_wallet(db, owner_id)
                db.add(entry)
                db.flush()
                db.query(CreditWallet).filter(CreditWallet.owner_id == owner_id).update(
                    {
                        "balance": CreditWallet.balance + meta.credits,
                        "updated_at": datetime.now(UTC),
                    },
                    synchronize_session=False,
                )
                entry.balance_after = (
                    db.query(CreditWallet.balance)
                    .filter(CreditWallet.owner_id == owner_id)
                    .scalar()
                )
                db.flush()
        except IntegrityError:
            existing = (
                db.query(CreditTransaction)
                .filter(CreditTransaction.transaction_reference == order_id)
                .first()
            )
            if not existing:
                raise
            logger.info("credits_already_granted order_id=%s", order_id)
            return FulfillmentResult(
                success=True,
                entitlement_id=str(existing.id),
                kind=meta.type,
                already_applied=True,
            )
        db.commit()
        logger.info(
            "credits_granted order_id=%s owner_id=%s credits=%s balance=%s",
            order_id,
            owner_id,
            meta.credits,
            entry.balance_after,
        )
        return FulfillmentResult(success=True, entitlement_id=str(entry.id), kind=meta.type)

    @staticmethod
    def credit_balance(db: Session, owner_id: str) -> int:
        balance = (
            db.query(CreditWallet.balance).filter(CreditWallet.owner_id == owner_id).scalar()
        )
        return int(balance or 0)

    @staticmethod
    def active_subscription(db: Session, owner_id: str) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(
                Subscription.owner_id == owner_id,
                Subscription.status == SubscriptionStatus.active,
            )
            .order_by(Subscription.end_date.desc())
            .first()
        )
