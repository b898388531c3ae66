from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey, Uuid
import uuid
import enum
from app.db.session import Base
from app.core.timeutil import utcnow
from app.db.types import enum_type


class PayoutKind(str, enum.Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class PlatformFeeKind(str, enum.Enum):
    NONE = "none"
    PERCENT = "percent"
    FIXED = "fixed"


class PayoutRecipientRole(str, enum.Enum):
    """Who is credited with an add-on payout."""
    PRIMARY_COACH = "primary_coach"
    ADDON_STAFF = "addon_staff"


class PayoutRule(Base):
    """
    Payout configuration for one service or add-on (one rule per target).

    payout_value is a percentage (0-100) for PERCENT and an amount in minor
    units for FIXED. The same convention applies to the platform fee.
    """
    __tablename__ = "payout_rules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    target_id = Column(Uuid(as_uuid=True), ForeignKey("catalog_entries.id"), nullable=False, unique=True, index=True)
    payout_kind = Column(enum_type(PayoutKind, "payoutkind"), nullable=False, default=PayoutKind.PERCENT)
    payout_value = Column(Numeric(12, 2), nullable=False, default=0)
    platform_fee_kind = Column(enum_type(PlatformFeeKind, "platformfeekind"), nullable=False, default=PlatformFeeKind.NONE)
    platform_fee_value = Column(Numeric(12, 2), nullable=False, default=0)
    recipient_role = Column(
        enum_type(PayoutRecipientRole, "payoutrecipientrole"),
        nullable=False,
        default=PayoutRecipientRole.PRIMARY_COACH,
    )
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
