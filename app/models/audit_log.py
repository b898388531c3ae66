from sqlalchemy import Column, String, Integer, DateTime, JSON, Index
import enum
from app.db.session import Base
from app.core.timeutil import utcnow
from app.db.types import enum_type


class AuditAction(str, enum.Enum):
    """Mutations that must leave a before/after trail"""
    CATALOG_ENTRY_CREATED = "catalog_entry_created"
    PRICE_CHANGED = "price_changed"
    PAYOUT_RULE_CHANGED = "payout_rule_changed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_DEACTIVATED = "subscription_deactivated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_RECORDED = "payment_recorded"
    MANUAL_PAYMENT_RECORDED = "manual_payment_recorded"
    GRACE_EXTENDED = "grace_extended"
    EXEMPTION_TOGGLED = "exemption_toggled"
    REMINDER_REQUESTED = "reminder_requested"
    PAYOUT_CALCULATION_RUN = "payout_calculation_run"
    STATEMENT_MARKED_PAID = "statement_marked_paid"


class AuditLog(Base):
    """Append-only. Rows are never updated or deleted."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String, nullable=False, index=True)  # admin identity, or "system" for sweeps
    actor_role = Column(String, nullable=True)
    action = Column(enum_type(AuditAction, "auditaction"), nullable=False, index=True)
    target_type = Column(String, nullable=False)  # e.g. "subscription", "payout_rule"
    target_id = Column(String, nullable=False)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_logs_target", "target_type", "target_id"),
    )
