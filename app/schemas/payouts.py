from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Optional, List, Dict
from decimal import Decimal
import uuid
from app.core.config import settings
from app.core.money import to_major


class Statement(BaseModel):
    """A staff member's payout statement for one period, amounts in major units."""
    id: uuid.UUID
    staff_id: uuid.UUID
    period: str
    currency: str
    client_breakdown: Dict[str, int]
    total_clients: int
    exempt_clients: int
    gross_revenue: float
    discounts_applied: float
    net_collected: float
    base_payout: float
    addon_revenue: float
    addon_payout: float
    platform_fee: float
    total_payout: float
    used_fallback_rule: bool
    fallback_rule_targets: List[str] = []
    is_paid: bool
    paid_at: Optional[datetime] = None
    paid_by: Optional[str] = None
    computed_at: datetime
    version: int

    @classmethod
    def from_model(cls, s) -> "Statement":
        def major(v):
            return float(to_major(v or 0))

        return cls(
            id=s.id,
            staff_id=s.staff_id,
            period=s.period,
            currency=settings.CURRENCY_CODE,
            client_breakdown=dict(s.client_breakdown or {}),
            total_clients=s.total_clients,
            exempt_clients=s.exempt_clients,
            gross_revenue=major(s.gross_revenue_minor),
            discounts_applied=major(s.discounts_applied_minor),
            net_collected=major(s.net_collected_minor),
            base_payout=major(s.base_payout_minor),
            addon_revenue=major(s.addon_revenue_minor),
            addon_payout=major(s.addon_payout_minor),
            platform_fee=major(s.platform_fee_minor),
            total_payout=major(s.total_payout_minor),
            used_fallback_rule=s.used_fallback_rule,
            fallback_rule_targets=list(s.fallback_rule_targets or []),
            is_paid=s.is_paid,
            paid_at=s.paid_at,
            paid_by=s.paid_by,
            computed_at=s.computed_at,
            version=s.version,
        )


class MarkPaidRequest(BaseModel):
    expected_version: Optional[int] = None


class CalculationResponse(BaseModel):
    period: str
    currency: str
    coaches_processed: int
    gross_revenue: float
    discounts_applied_kwd: float
    net_collected: float
    total_coach_payout: float
    platform_retained: float
    statements_written: int = 0
    statements_unchanged: int = 0
    statements_reset: int = 0
    conflicts: List[dict] = []
    errors: List[dict] = []
    fallback_rule_targets: List[str] = []

    @field_validator(
        'gross_revenue', 'discounts_applied_kwd', 'net_collected', 'total_coach_payout', 'platform_retained',
        mode='before',
    )
    @classmethod
    def convert_decimal_to_float(cls, v):
        """Convert Decimal to float for serialization"""
        if isinstance(v, Decimal):
            return float(v)
        return v
