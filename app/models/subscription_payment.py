from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from app.db.session import Base
from app.core.timeutil import utcnow
import uuid
import enum
from app.db.types import enum_type


class PaymentSource(str, enum.Enum):
    GATEWAY = "gateway"  # confirmed by the payment provider
    MANUAL = "manual"  # entered by an admin (cash, bank transfer, ...)


class SubscriptionPayment(Base):
    """
    A payment applied to a subscription's billing cycle.
    ``reference`` is unique per subscription so a replayed payment event is a no-op.
    """
    __tablename__ = "subscription_payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)

    amount_minor = Column(Integer, nullable=False)
    source = Column(enum_type(PaymentSource, "paymentsource"), nullable=False)
    reference = Column(String(255), nullable=False)  # gateway charge id, or generated for manual payments
    note = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=False, default=utcnow)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="payments")

    __table_args__ = (
        UniqueConstraint("subscription_id", "reference", name="uq_subscription_payments_reference"),
    )
