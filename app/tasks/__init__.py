from app.tasks.payments import reconcile_stale_payments, retry_unfulfilled_payments

__all__ = [
    "reconcile_stale_payments",
    "retry_unfulfilled_payments",
]
