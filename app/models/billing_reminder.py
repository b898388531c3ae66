from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Text, UniqueConstraint, Uuid
import uuid
import enum
from app.db.session import Base
from app.core.timeutil import utcnow
from app.db.types import enum_type


class ReminderKind(str, enum.Enum):
    UPCOMING = "upcoming"  # before next_billing_date
    PAST_DUE = "past_due"  # inside the grace window
    FINAL_WARNING = "final_warning"  # last day of grace
    ACCOUNT_LOCKED = "account_locked"  # subscription went inactive
    MANUAL = "manual"  # sent on demand by an admin


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # subscription no longer needs it at dispatch time


class BillingReminder(Base):
    """
    Outbox of billing notifications. Delivery belongs to an external
    notification service; rows stay PENDING until dispatched.
    ``reminder_key`` identifies the reminder within a billing cycle so the
    sweep never queues the same one twice.
    """
    __tablename__ = "billing_reminders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    subscriber_id = Column(Uuid(as_uuid=True), nullable=False)
    kind = Column(enum_type(ReminderKind, "reminderkind"), nullable=False)
    reminder_key = Column(String, nullable=False)
    amount_due_minor = Column(Integer, nullable=True)
    due_date = Column(DateTime, nullable=True)
    status = Column(enum_type(ReminderStatus, "reminderstatus"), default=ReminderStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    requested_by = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "reminder_key", name="uq_billing_reminders_key"),
    )
