from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db, require_admin_key
from app.schemas.payments import (
    ReconciliationActionRead,
    ReconciliationActionRequest,
    ReconciliationSummaryRead,
)
from app.services import payments as payments_service

router = APIRouter(
    prefix="/admin",
    tags=["admin-reconciliation"],
    dependencies=[Depends(require_admin_key)],
)


@router.get(
    "/reconcile-payments",
    response_model=ReconciliationSummaryRead,
)
def reconciliation_summary(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return payments_service.reconciliation_view.summary(db, limit=limit, offset=offset)


@router.post(
    "/reconcile-payments",
    response_model=ReconciliationActionRead,
)
def reconciliation_action(payload: ReconciliationActionRequest, db: Session = Depends(get_db)):
    return payments_service.reconciliation_view.apply_action(db, payload.order_id, payload.action)
