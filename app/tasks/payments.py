import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import payments as payments_service

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.payments.reconcile_stale_payments")
def reconcile_stale_payments(older_than_minutes: int = 10, limit: int = 100):
    """Poll providers for pending payments whose callback never arrived."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger.info("RECONCILE_STALE_START older_than_minutes=%s limit=%s", older_than_minutes, limit)
    try:
        counts = payments_service.reconciliation.reconcile_stale(
            session, older_than_minutes=older_than_minutes, limit=limit
        )
        logger.info("RECONCILE_STALE_DONE counts=%s", counts)
        return counts
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Stale payment reconciliation failed.")
        raise
    finally:
        session.close()
        observe_job("reconcile_stale_payments", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.payments.retry_unfulfilled_payments")
def retry_unfulfilled_payments(limit: int = 100):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        counts = payments_service.reconciliation.retry_unfulfilled(session, limit=limit)
        logger.info("RETRY_UNFULFILLED_DONE counts=%s", counts)
        return counts
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Unfulfilled payment retry failed.")
        raise
    finally:
        session.close()
        observe_job("retry_unfulfilled_payments", status, time.monotonic() - start)
