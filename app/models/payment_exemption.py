from sqlalchemy import Column, String, DateTime, Boolean, Text, Uuid
from app.db.session import Base
from app.core.timeutil import utcnow


class PaymentExemption(Base):
    """Contractual free access for a subscriber. Changed only by admin action."""
    __tablename__ = "payment_exemptions"

    subscriber_id = Column(Uuid(as_uuid=True), primary_key=True)
    is_exempt = Column(Boolean, default=False, nullable=False, index=True)
    reason = Column(Text, nullable=True)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
