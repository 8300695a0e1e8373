"""Payments services package.

Usage mirrors the other service packages:
    from app.services import payments as payments_service
    payments_service.reconciliation.poll_status(db, order_id=order_id)
"""

from app.services.payments.admin import ReconciliationView
from app.services.payments.fulfillment import (
    FulfillmentDispatcher,
    FulfillmentResult,
    compute_end_date,
)
from app.services.payments.reconciliation import (
    InitiationResult,
    OutcomeAction,
    PaymentReconciliation,
    ReconciliationOutcome,
)
from app.services.payments.store import PendingPayments

# Singleton instances for service access
pending_payments = PendingPayments()
fulfillment = FulfillmentDispatcher()
reconciliation = PaymentReconciliation()
reconciliation_view = ReconciliationView()

__all__ = [
    "FulfillmentDispatcher",
    "FulfillmentResult",
    "InitiationResult",
    "OutcomeAction",
    "PaymentReconciliation",
    "PendingPayments",
    "ReconciliationOutcome",
    "ReconciliationView",
    "compute_end_date",
    "fulfillment",
    "pending_payments",
    "reconciliation",
    "reconciliation_view",
]
