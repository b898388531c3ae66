from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
from app.db.session import get_db
from app.api.deps import require_admin
from app.core.audit import Actor, query_audit_log
from app.core.timeutil import as_naive_utc
from app.schemas.audit import AuditEntry

router = APIRouter()


@router.get("", response_model=List[AuditEntry])
def list_audit_entries(
    target_type: Optional[str] = Query(None),
    target_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Before/after trail of pricing, payout-rule and lifecycle changes, oldest first."""
    return query_audit_log(
        db,
        target_type=target_type,
        target_id=target_id,
        since=as_naive_utc(since) if since else None,
        until=as_naive_utc(until) if until else None,
        limit=limit,
    )
