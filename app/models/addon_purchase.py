from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Uuid
import uuid
import enum
from app.db.session import Base
from app.core.timeutil import utcnow
from app.db.types import enum_type


class AddonBillingType(str, enum.Enum):
    RECURRING = "recurring"  # billed every period while active
    ONE_TIME = "one_time"  # counted in the period it was purchased


class AddonPurchaseStatus(str, enum.Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AddonPurchase(Base):
    __tablename__ = "addon_purchases"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    buyer_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    addon_id = Column(Uuid(as_uuid=True), ForeignKey("catalog_entries.id"), nullable=False, index=True)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)
    staff_id = Column(Uuid(as_uuid=True), nullable=True, index=True)  # specialist delivering the add-on
    quantity = Column(Integer, default=1, nullable=False)
    billing_type = Column(enum_type(AddonBillingType, "addonbillingtype"), default=AddonBillingType.RECURRING, nullable=False)
    status = Column(enum_type(AddonPurchaseStatus, "addonpurchasestatus"), default=AddonPurchaseStatus.ACTIVE, nullable=False, index=True)
    total_paid_minor = Column(Integer, default=0, nullable=False)
    payout_owed_minor = Column(Integer, default=0, nullable=False)  # as quoted at purchase time
    remaining_sessions = Column(Integer, nullable=True)
    purchased_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=True)
