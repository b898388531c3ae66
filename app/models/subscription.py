from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship
import uuid
from datetime import timedelta
import enum
from app.db.session import Base
from app.core.timeutil import utcnow
from app.db.types import enum_type


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"  # onboarded, first payment not yet recorded
    ACTIVE = "active"
    PAST_DUE = "past_due"  # grace is the computed early part of past_due
    INACTIVE = "inactive"  # reactivated only by a payment
    CANCELLED = "cancelled"  # terminal, kept for history


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscriber_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    service_id = Column(Uuid(as_uuid=True), ForeignKey("catalog_entries.id"), nullable=False, index=True)
    staff_id = Column(Uuid(as_uuid=True), nullable=True, index=True)  # assigned primary coach
    status = Column(
        enum_type(SubscriptionStatus, "subscriptionstatus"),
        default=SubscriptionStatus.PENDING,
        nullable=False,
        index=True,
    )
    next_billing_date = Column(DateTime, nullable=True, index=True)
    past_due_since = Column(DateTime, nullable=True)
    grace_period_days = Column(Integer, default=7, nullable=False)
    billing_amount_override_minor = Column(Integer, nullable=True)  # what the subscriber is billed, if not list price

    activated_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic lock: a concurrent writer on the same row fails with StaleDataError
    version = Column(Integer, nullable=False)

    service = relationship("CatalogEntry")
    payments = relationship("SubscriptionPayment", back_populates="subscription", order_by="SubscriptionPayment.paid_at")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
    )

    def grace_deadline(self):
        """End of the grace window, or None if the subscription is not past due."""
        if self.past_due_since is None:
            return None
        return self.past_due_since + timedelta(days=self.grace_period_days)

    def snapshot(self) -> dict:
        """Lifecycle fields as a JSON-safe dict, used for audit before/after records."""
        return {
            "status": self.status.value if self.status else None,
            "next_billing_date": self.next_billing_date.isoformat() if self.next_billing_date else None,
            "past_due_since": self.past_due_since.isoformat() if self.past_due_since else None,
            "grace_period_days": self.grace_period_days,
            "staff_id": str(self.staff_id) if self.staff_id else None,
        }
