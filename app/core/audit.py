"""
Audit trail for pricing, payout-rule and lifecycle mutations.

The entry is written inside the caller's transaction: if it cannot be
written, AuditWriteError is raised and the caller rolls back, so no
mutation is committed without its before/after record.
"""
import logging
import uuid
import enum
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Any
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from app.models.audit_log import AuditLog, AuditAction
from app.core.errors import AuditWriteError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class Actor:
    """Identity performing a mutation, as asserted by the upstream identity provider."""

    def __init__(self, actor_id: str, role: Optional[str] = None):
        self.id = str(actor_id)
        self.role = role

    @classmethod
    def system(cls) -> "Actor":
        return cls(SYSTEM_ACTOR, "system")

    def __repr__(self):
        return f"Actor({self.id!r}, {self.role!r})"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def record_audit(
    db: Session,
    actor: Actor,
    action: AuditAction,
    target_type: str,
    target_id: Any,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
) -> AuditLog:
    """
    Append an audit entry in the current transaction and flush it.

    Args:
        db: Database session holding the mutation being audited
        actor: Who performed it (admin identity or the system sweep)
        action: What was done
        target_type: Kind of record changed (e.g. "subscription", "payout_rule")
        target_id: Id of the record changed
        before: State before the mutation (None for creations)
        after: State after the mutation

    Raises:
        AuditWriteError: the entry could not be written; roll back the mutation.
    """
    entry = AuditLog(
        actor_id=actor.id,
        actor_role=actor.role,
        action=action,
        target_type=target_type,
        target_id=str(target_id),
        before_state=_jsonable(before) if before is not None else None,
        after_state=_jsonable(after) if after is not None else None,
    )
    try:
        db.add(entry)
        db.flush()
    except SQLAlchemyError as e:
        logger.error(f"[AUDIT] Failed to record {action.value} on {target_type} {target_id}: {e}")
        raise AuditWriteError(
            "Audit entry could not be written; mutation aborted",
            {"action": action.value, "target_type": target_type, "target_id": target_id},
        ) from e
    return entry


def query_audit_log(
    db: Session,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 200,
) -> List[AuditLog]:
    """Audit entries for a target and/or time range, oldest first."""
    query = db.query(AuditLog)
    if target_type:
        query = query.filter(AuditLog.target_type == target_type)
    if target_id:
        query = query.filter(AuditLog.target_id == str(target_id))
    if since:
        query = query.filter(AuditLog.created_at >= since)
    if until:
        query = query.filter(AuditLog.created_at < until)
    return query.order_by(AuditLog.id.asc()).limit(limit).all()
