"""
Payout rule resolution.

Configuration rows are converted once, at load time, into typed rules:
a payout (PercentPayout | FixedPayout), a platform fee
(NoFee | PercentFee | FixedFee) and the recipient role. Shape errors are
raised here, at the configuration boundary, never at the point of use.

A service or add-on without a rule resolves to DEFAULT_RULE (percent of
list price, DEFAULT_PAYOUT_PERCENT) flagged ``is_fallback`` so statements
that relied on it can say so.
"""
import logging
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Union, Iterable
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.errors import InvalidInputError
from app.models.payout_rule import PayoutRule, PayoutKind, PlatformFeeKind, PayoutRecipientRole

logger = logging.getLogger(__name__)

# payout_rules stores percents as Numeric(12, 2)
PERCENT_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class PercentPayout:
    percent: Decimal


@dataclass(frozen=True)
class FixedPayout:
    amount_minor: int


@dataclass(frozen=True)
class NoFee:
    pass


@dataclass(frozen=True)
class PercentFee:
    percent: Decimal


@dataclass(frozen=True)
class FixedFee:
    amount_minor: int


Payout = Union[PercentPayout, FixedPayout]
PlatformFee = Union[NoFee, PercentFee, FixedFee]


@dataclass(frozen=True)
class ResolvedRule:
    target_id: Optional[uuid.UUID]
    payout: Payout
    platform_fee: PlatformFee
    recipient: PayoutRecipientRole = PayoutRecipientRole.PRIMARY_COACH
    is_fallback: bool = False

    def describe(self) -> dict:
        if isinstance(self.payout, PercentPayout):
            payout = {"kind": PayoutKind.PERCENT.value, "value": str(self.payout.percent)}
        else:
            payout = {"kind": PayoutKind.FIXED.value, "value": self.payout.amount_minor}
        if isinstance(self.platform_fee, PercentFee):
            fee = {"kind": PlatformFeeKind.PERCENT.value, "value": str(self.platform_fee.percent)}
        elif isinstance(self.platform_fee, FixedFee):
            fee = {"kind": PlatformFeeKind.FIXED.value, "value": self.platform_fee.amount_minor}
        else:
            fee = {"kind": PlatformFeeKind.NONE.value, "value": 0}
        return {
            "target_id": str(self.target_id) if self.target_id else None,
            "payout": payout,
            "platform_fee": fee,
            "recipient": self.recipient.value,
            "is_fallback": self.is_fallback,
        }


def default_rule(target_id: Optional[uuid.UUID] = None,
                 recipient: PayoutRecipientRole = PayoutRecipientRole.PRIMARY_COACH) -> ResolvedRule:
    return ResolvedRule(
        target_id=target_id,
        payout=PercentPayout(Decimal(str(settings.DEFAULT_PAYOUT_PERCENT))),
        platform_fee=NoFee(),
        recipient=recipient,
        is_fallback=True,
    )


DEFAULT_RULE = default_rule()


def _as_decimal(value, field: str, context: dict) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInputError(field, f"not a number: {value!r}", context)
    if not result.is_finite():
        raise InvalidInputError(field, f"not a finite number: {value!r}", context)
    if result < 0:
        raise InvalidInputError(field, "must be >= 0", context)
    return result


def _as_minor_amount(value: Decimal, field: str, context: dict) -> int:
    if value != value.to_integral_value():
        raise InvalidInputError(field, "fixed amounts are whole minor units", context)
    return int(value)


def _as_percent(value: Decimal, field: str, context: dict) -> Decimal:
    if value > 100:
        raise InvalidInputError(field, "percent must be between 0 and 100", context)
    if value != value.quantize(PERCENT_PLACES):
        raise InvalidInputError(field, "percent allows at most 2 decimal places", context)
    return value


def validate_rule_values(payout_kind, payout_value, platform_fee_kind=PlatformFeeKind.NONE,
                         platform_fee_value=0, context: Optional[dict] = None):
    """
    Validate raw rule values and build the typed payout and fee.
    Raises InvalidInputError naming the failing field.
    """
    context = context or {}
    try:
        kind = PayoutKind(payout_kind)
    except ValueError:
        raise InvalidInputError("payout_kind", f"unknown kind {payout_kind!r}", context)
    try:
        fee_kind = PlatformFeeKind(platform_fee_kind or PlatformFeeKind.NONE)
    except ValueError:
        raise InvalidInputError("platform_fee_kind", f"unknown kind {platform_fee_kind!r}", context)

    value = _as_decimal(payout_value, "payout_value", context)
    if kind == PayoutKind.PERCENT:
        payout = PercentPayout(_as_percent(value, "payout_value", context))
    else:
        payout = FixedPayout(_as_minor_amount(value, "payout_value", context))

    fee_value = _as_decimal(platform_fee_value if platform_fee_value is not None else 0,
                            "platform_fee_value", context)
    if fee_kind == PlatformFeeKind.PERCENT:
        fee = PercentFee(_as_percent(fee_value, "platform_fee_value", context))
    elif fee_kind == PlatformFeeKind.FIXED:
        fee = FixedFee(_as_minor_amount(fee_value, "platform_fee_value", context))
    else:
        fee = NoFee()
    return payout, fee


def rule_from_row(row: PayoutRule) -> ResolvedRule:
    payout, fee = validate_rule_values(
        row.payout_kind,
        row.payout_value,
        row.platform_fee_kind,
        row.platform_fee_value,
        context={"rule_id": row.id, "target_id": row.target_id},
    )
    return ResolvedRule(
        target_id=row.target_id,
        payout=payout,
        platform_fee=fee,
        recipient=PayoutRecipientRole(row.recipient_role or PayoutRecipientRole.PRIMARY_COACH),
    )


class RuleResolver:
    """
    Rules bulk-loaded for one run. Rows that fail validation are kept as
    errors and re-raised when their target is resolved, so one bad rule only
    affects the records priced with it.
    """

    def __init__(self, rules: Dict[uuid.UUID, ResolvedRule],
                 invalid: Optional[Dict[uuid.UUID, InvalidInputError]] = None):
        self._rules = rules
        self._invalid = invalid or {}

    @classmethod
    def from_rows(cls, rows: Iterable[PayoutRule]) -> "RuleResolver":
        rules, invalid = {}, {}
        for row in rows:
            try:
                rules[row.target_id] = rule_from_row(row)
            except InvalidInputError as e:
                logger.error(f"[PAYOUT_RULES] Rule {row.id} for target {row.target_id} is malformed: {e.message}")
                invalid[row.target_id] = e
        return cls(rules, invalid)

    @classmethod
    def load(cls, db: Session) -> "RuleResolver":
        return cls.from_rows(db.query(PayoutRule).all())

    def __len__(self):
        return len(self._rules)

    def resolve(self, target_id: uuid.UUID,
                default_recipient: PayoutRecipientRole = PayoutRecipientRole.PRIMARY_COACH) -> ResolvedRule:
        if target_id in self._invalid:
            raise self._invalid[target_id]
        rule = self._rules.get(target_id)
        if rule is not None:
            return rule
        logger.warning(
            f"[PAYOUT_RULES] No payout rule for {target_id}; "
            f"using default {settings.DEFAULT_PAYOUT_PERCENT}% of list price"
        )
        return replace(default_rule(target_id), recipient=default_recipient)


def resolve_rule(db: Session, target_id: uuid.UUID,
                 default_recipient: PayoutRecipientRole = PayoutRecipientRole.PRIMARY_COACH) -> ResolvedRule:
    """Resolve a single target's rule straight from the database."""
    row = db.query(PayoutRule).filter(PayoutRule.target_id == target_id).first()
    return RuleResolver.from_rows([row] if row else []).resolve(target_id, default_recipient)
