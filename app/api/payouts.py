from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
from app.db.session import get_db
from app.api.deps import require_admin
from app.core.audit import Actor
from app.schemas.payouts import Statement, MarkPaidRequest, CalculationResponse
from app.services import payout_aggregator

router = APIRouter()


@router.post("/calculate", response_model=CalculationResponse)
def calculate(
    period: Optional[str] = Query(None, description="YYYY-MM, defaults to the current month"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """
    Compute payout statements for every staff member for the period.
    Safe to re-trigger: paid statements are reported as conflicts, never overwritten.
    """
    result = payout_aggregator.run_monthly_calculation(db, period=period, actor=actor)
    return CalculationResponse(**result.as_dict())


@router.get("/statements", response_model=List[Statement])
def list_statements(
    period: Optional[str] = Query(None),
    staff_id: Optional[UUID] = Query(None),
    is_paid: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    statements = payout_aggregator.list_statements(db, period=period, staff_id=staff_id, is_paid=is_paid)
    return [Statement.from_model(s) for s in statements]


@router.get("/statements/{statement_id}", response_model=Statement)
def get_statement(
    statement_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return Statement.from_model(payout_aggregator.get_statement(db, statement_id))


@router.post("/statements/{statement_id}/mark-paid", response_model=Statement)
def mark_statement_paid(
    statement_id: UUID,
    body: MarkPaidRequest = MarkPaidRequest(),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    statement = payout_aggregator.mark_statement_paid(
        db, statement_id, actor=actor, expected_version=body.expected_version,
    )
    return Statement.from_model(statement)
