from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Any
from app.models.audit_log import AuditAction


class AuditEntry(BaseModel):
    id: int
    actor_id: str
    actor_role: Optional[str] = None
    action: AuditAction
    target_type: str
    target_id: str
    before_state: Optional[Any] = None
    after_state: Optional[Any] = None
    created_at: datetime

    class Config:
        from_attributes = True
