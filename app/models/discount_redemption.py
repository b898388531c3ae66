from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Uuid
import uuid
from app.db.session import Base
from app.core.timeutil import utcnow


class DiscountRedemption(Base):
    """
    Amount a subscriber saved through a discount code on a billing cycle.
    Reported on statements as "discounts applied"; never an input to payout.
    """
    __tablename__ = "discount_redemptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    discount_code = Column(String, nullable=True)
    amount_saved_minor = Column(Integer, nullable=False, default=0)
    applied_at = Column(DateTime, default=utcnow, nullable=False, index=True)
