from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Union
from decimal import Decimal
import uuid
from app.core.money import to_major
from app.models.catalog import CatalogCategory, DeliveryMode
from app.models.payout_rule import PayoutKind, PlatformFeeKind, PayoutRecipientRole


class CatalogEntryCreate(BaseModel):
    code: str
    name: str
    category: CatalogCategory
    delivery_mode: Optional[DeliveryMode] = None
    price: Optional[Union[Decimal, float, str]] = None  # major units


class CatalogEntry(BaseModel):
    id: uuid.UUID
    code: str
    name: str
    category: CatalogCategory
    delivery_mode: Optional[DeliveryMode] = None
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class PriceUpdate(BaseModel):
    price: Union[Decimal, float, str]  # major units


class Price(BaseModel):
    id: uuid.UUID
    target_id: uuid.UUID
    price: float
    is_active: bool
    effective_at: datetime
    updated_by: Optional[str] = None

    @classmethod
    def from_model(cls, record) -> "Price":
        return cls(
            id=record.id,
            target_id=record.target_id,
            price=float(to_major(record.price_minor)),
            is_active=record.is_active,
            effective_at=record.effective_at,
            updated_by=record.updated_by,
        )


class PayoutRuleUpdate(BaseModel):
    """
    Raw rule values; shape is validated by the service so failures name the
    offending field. Percent values are 0-100, fixed values are major units.
    """
    payout_kind: str
    payout_value: Union[Decimal, float, str]
    platform_fee_kind: str = PlatformFeeKind.NONE.value
    platform_fee_value: Union[Decimal, float, str] = 0
    recipient_role: str = PayoutRecipientRole.PRIMARY_COACH.value


class PayoutRule(BaseModel):
    id: uuid.UUID
    target_id: uuid.UUID
    payout_kind: PayoutKind
    payout_value: float
    platform_fee_kind: PlatformFeeKind
    platform_fee_value: float
    recipient_role: PayoutRecipientRole
    updated_by: Optional[str] = None
    updated_at: datetime

    @classmethod
    def from_model(cls, rule) -> "PayoutRule":
        def value(kind, v):
            # percentages as stored, fixed amounts back to major units
            if kind == PayoutKind.FIXED or kind == PlatformFeeKind.FIXED:
                return float(to_major(int(v)))
            return float(v)

        return cls(
            id=rule.id,
            target_id=rule.target_id,
            payout_kind=rule.payout_kind,
            payout_value=value(rule.payout_kind, rule.payout_value),
            platform_fee_kind=rule.platform_fee_kind,
            platform_fee_value=value(rule.platform_fee_kind, rule.platform_fee_value),
            recipient_role=rule.recipient_role,
            updated_by=rule.updated_by,
            updated_at=rule.updated_at,
        )


class ResolvedRule(BaseModel):
    target_id: Optional[str] = None
    payout: dict
    platform_fee: dict
    recipient: PayoutRecipientRole
    is_fallback: bool
