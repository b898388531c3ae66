"""
Money helpers. All amounts are integers in minor currency units (fils for
KWD); conversion to major units only happens at the API boundary.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union
from app.core.config import settings
from app.core.errors import InvalidInputError

Number = Union[int, float, Decimal, str]


def minor_factor() -> int:
    return 10 ** settings.CURRENCY_MINOR_UNITS


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of minor units to a whole minor unit, half-up."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor(amount: Number, field: str = "amount") -> int:
    """Convert a major-unit amount (e.g. 30.5 KWD) to minor units (30500)."""
    try:
        value = Decimal(str(amount))
    except Exception:
        raise InvalidInputError(field, f"not a number: {amount!r}")
    if not value.is_finite():
        raise InvalidInputError(field, f"not a finite number: {amount!r}")
    return round_half_up(value * minor_factor())


def to_major(amount_minor: int) -> Decimal:
    """Convert minor units to a Decimal with the currency's precision."""
    exponent = Decimal(1).scaleb(-settings.CURRENCY_MINOR_UNITS)
    return (Decimal(amount_minor) / minor_factor()).quantize(exponent)


def require_non_negative(amount_minor: int, field: str, context: dict = None) -> int:
    if amount_minor is None or amount_minor < 0:
        raise InvalidInputError(field, "must be a non-negative amount", context)
    return amount_minor
