"""
Payout calculation engine.

Pure functions over integer minor units. Payout is always computed from the
undiscounted list price: discounts are a customer-acquisition cost carried
by the platform, so nothing here accepts a discount amount.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Union
from app.core.errors import InvalidInputError
from app.core.money import round_half_up
from app.services.payout_rules import (
    ResolvedRule, PercentPayout, FixedPayout, Payout, PlatformFee, PercentFee, FixedFee,
)


def _check_gross(gross_minor: int) -> None:
    if gross_minor is None or gross_minor < 0:
        raise InvalidInputError("gross_price", f"must be a non-negative amount, got {gross_minor!r}")


def _percent_of(gross_minor: int, percent: Decimal) -> int:
    return round_half_up(Decimal(gross_minor) * percent / Decimal(100))


def compute_payout(gross_minor: int, rule: Union[ResolvedRule, Payout]) -> int:
    """
    Amount owed to staff for one unit sold at ``gross_minor`` list price.

    percent -> gross * value / 100, rounded half-up to the minor unit
    fixed   -> value, whatever the price
    """
    _check_gross(gross_minor)
    payout = rule.payout if isinstance(rule, ResolvedRule) else rule
    if isinstance(payout, PercentPayout):
        return _percent_of(gross_minor, payout.percent)
    if isinstance(payout, FixedPayout):
        return payout.amount_minor
    raise InvalidInputError("rule", f"unsupported payout {payout!r}")


def compute_platform_fee(gross_minor: int, fee: Union[ResolvedRule, PlatformFee]) -> int:
    """Platform's configured cut of the list price; zero when no fee is configured."""
    _check_gross(gross_minor)
    fee = fee.platform_fee if isinstance(fee, ResolvedRule) else fee
    if isinstance(fee, PercentFee):
        return _percent_of(gross_minor, fee.percent)
    if isinstance(fee, FixedFee):
        return fee.amount_minor
    return 0


@dataclass(frozen=True)
class PayoutSplit:
    gross_minor: int
    payout_minor: int
    platform_fee_minor: int

    @property
    def platform_retained_minor(self) -> int:
        return self.gross_minor - self.payout_minor


def split_gross(gross_minor: int, rule: ResolvedRule, quantity: int = 1) -> PayoutSplit:
    """Payout and platform fee for ``quantity`` units at ``gross_minor`` each."""
    if quantity is None or quantity < 1:
        raise InvalidInputError("quantity", f"must be at least 1, got {quantity!r}")
    return PayoutSplit(
        gross_minor=gross_minor * quantity,
        payout_minor=compute_payout(gross_minor, rule) * quantity,
        platform_fee_minor=compute_platform_fee(gross_minor, rule) * quantity,
    )
