"""
Monthly payout aggregation.

One run computes a statement per staff member for a period (YYYY-MM):

1. Bulk-load the catalog, payout rules, exemptions, qualifying subscriptions,
   the period's discount redemptions and the add-on purchases billed in it.
2. Fold each subscription into its staff member's accumulator: payout is
   always computed from the list price, discounts are only reported.
3. Fold add-on purchases into whichever staff member the add-on's rule
   credits (primary coach or add-on staff).
4. Write each statement in its own savepoint. Unpaid statements are
   overwritten; paid statements are never touched and come back as
   conflicts.

All accumulation happens in an ``AggregationContext`` created per run, so
rule and price edits made between runs always take effect.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set
from sqlalchemy import or_, and_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError
from app.core.audit import Actor, record_audit
from app.core.config import settings
from app.core.errors import (
    BillingError, DataIntegrityError, InvalidInputError, NotFoundError,
    StatementConflictError, ConcurrencyConflictError,
)
from app.core.money import to_major
from app.core.timeutil import utcnow, current_period, period_bounds
from app.models.addon_purchase import AddonPurchase, AddonBillingType, AddonPurchaseStatus
from app.models.audit_log import AuditAction
from app.models.catalog import CatalogCategory, DeliveryMode
from app.models.discount_redemption import DiscountRedemption
from app.models.payout_rule import PayoutRecipientRole
from app.models.payout_statement import MonthlyPayoutStatement, CLIENT_BUCKETS
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.billing_lifecycle import is_in_grace
from app.services.catalog import PricingCatalog
from app.services.exemptions import load_exempt_subscribers
from app.services.job_locks import job_lock, MONTHLY_PAYOUT_JOB
from app.services.payout_engine import split_gross
from app.services.payout_rules import RuleResolver, ResolvedRule

logger = logging.getLogger(__name__)


@dataclass
class StaffAccumulator:
    """Running totals for one staff member within one run."""
    staff_id: uuid.UUID
    client_breakdown: Dict[str, int] = field(default_factory=lambda: {b: 0 for b in CLIENT_BUCKETS})
    exempt_clients: int = 0
    gross_revenue_minor: int = 0
    discounts_applied_minor: int = 0
    base_payout_minor: int = 0
    addon_revenue_minor: int = 0
    addon_payout_minor: int = 0
    platform_fee_minor: int = 0
    fallback_targets: Set[str] = field(default_factory=set)

    @property
    def total_clients(self) -> int:
        return sum(self.client_breakdown.values())

    @property
    def net_collected_minor(self) -> int:
        return self.gross_revenue_minor - self.discounts_applied_minor

    @property
    def total_payout_minor(self) -> int:
        return self.base_payout_minor + self.addon_payout_minor

    def note_rule(self, rule: ResolvedRule) -> None:
        if rule.is_fallback:
            self.fallback_targets.add(str(rule.target_id))

    def statement_fields(self) -> dict:
        """Column values for the persisted statement, same keys as computed_fields()."""
        targets = sorted(self.fallback_targets)
        return {
            "client_breakdown": dict(self.client_breakdown),
            "total_clients": self.total_clients,
            "exempt_clients": self.exempt_clients,
            "gross_revenue_minor": self.gross_revenue_minor,
            "discounts_applied_minor": self.discounts_applied_minor,
            "net_collected_minor": self.net_collected_minor,
            "base_payout_minor": self.base_payout_minor,
            "addon_revenue_minor": self.addon_revenue_minor,
            "addon_payout_minor": self.addon_payout_minor,
            "platform_fee_minor": self.platform_fee_minor,
            "total_payout_minor": self.total_payout_minor,
            "used_fallback_rule": bool(targets),
            "fallback_rule_targets": targets,
        }


def _empty_statement_fields(staff_id: uuid.UUID) -> dict:
    return StaffAccumulator(staff_id).statement_fields()


@dataclass
class AggregationContext:
    """Everything one run reads and accumulates. Never shared between runs."""
    period: str
    now: datetime
    catalog: PricingCatalog
    rules: RuleResolver
    exempt: Set[uuid.UUID]
    subscriptions: Dict[uuid.UUID, Subscription]
    discounts: Dict[uuid.UUID, int]
    addons: List[AddonPurchase]
    staff: Dict[uuid.UUID, StaffAccumulator] = field(default_factory=dict)
    blocked_staff: Set[uuid.UUID] = field(default_factory=set)
    errors: List[dict] = field(default_factory=list)

    def accumulator(self, staff_id: uuid.UUID) -> StaffAccumulator:
        acc = self.staff.get(staff_id)
        if acc is None:
            acc = self.staff[staff_id] = StaffAccumulator(staff_id)
        return acc

    def report(self, error: BillingError, entity: str, entity_id, staff_id=None, block: bool = False) -> None:
        """Record a per-entity failure. ``block`` withholds the staff member's statement for this run."""
        entry = error.to_dict()
        entry["entity"] = entity
        entry["entity_id"] = str(entity_id)
        entry["staff_id"] = str(staff_id) if staff_id else None
        self.errors.append(entry)
        if block and staff_id is not None:
            self.blocked_staff.add(staff_id)
        log = logger.error if isinstance(error, DataIntegrityError) else logger.warning
        log(f"[PAYOUTS] {self.period}: {entity} {entity_id}: {error.message}")

    @property
    def fallback_targets(self) -> List[str]:
        targets = set()
        for acc in self.staff.values():
            targets |= acc.fallback_targets
        return sorted(targets)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _qualifies(sub: Subscription, now: datetime) -> bool:
    """Active, or past due and still inside grace."""
    if sub.status == SubscriptionStatus.ACTIVE:
        if sub.next_billing_date is None:
            raise DataIntegrityError("Active subscription has no next_billing_date", {"subscription_id": sub.id})
        return True
    if sub.status == SubscriptionStatus.PAST_DUE:
        if sub.past_due_since is None:
            raise DataIntegrityError("Past-due subscription has no past_due_since", {"subscription_id": sub.id})
        return is_in_grace(sub, now)
    return False


def load_context(db: Session, period: str, now: datetime) -> AggregationContext:
    start, end = period_bounds(period)

    subs = (
        db.query(Subscription)
        .filter(Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE]))
        .order_by(Subscription.created_at, Subscription.id)
        .all()
    )

    discounts: Dict[uuid.UUID, int] = {}
    redemptions = db.query(DiscountRedemption).filter(
        DiscountRedemption.applied_at >= start,
        DiscountRedemption.applied_at < end,
    ).all()
    for row in redemptions:
        discounts[row.subscription_id] = discounts.get(row.subscription_id, 0) + (row.amount_saved_minor or 0)

    addons = (
        db.query(AddonPurchase)
        .filter(
            or_(
                and_(
                    AddonPurchase.billing_type == AddonBillingType.RECURRING,
                    AddonPurchase.status == AddonPurchaseStatus.ACTIVE,
                    AddonPurchase.purchased_at < end,
                    or_(AddonPurchase.expires_at.is_(None), AddonPurchase.expires_at >= start),
                ),
                and_(
                    AddonPurchase.billing_type == AddonBillingType.ONE_TIME,
                    AddonPurchase.status != AddonPurchaseStatus.CANCELLED,
                    AddonPurchase.purchased_at >= start,
                    AddonPurchase.purchased_at < end,
                ),
            )
        )
        .order_by(AddonPurchase.purchased_at, AddonPurchase.id)
        .all()
    )

    ctx = AggregationContext(
        period=period,
        now=now,
        catalog=PricingCatalog.load(db),
        rules=RuleResolver.load(db),
        exempt=load_exempt_subscribers(db),
        subscriptions={},
        discounts=discounts,
        addons=addons,
    )
    for sub in subs:
        try:
            if _qualifies(sub, now):
                ctx.subscriptions[sub.id] = sub
        except DataIntegrityError as e:
            ctx.report(e, "subscription", sub.id, sub.staff_id, block=True)
    logger.info(
        f"[PAYOUTS] {period}: loaded {len(ctx.catalog)} catalog entries, {len(ctx.rules)} rules, "
        f"{len(ctx.subscriptions)} qualifying subscriptions, {len(addons)} add-on purchases"
    )
    return ctx


# ---------------------------------------------------------------------------
# Accumulation (pure over the context)
# ---------------------------------------------------------------------------

def client_bucket(category: CatalogCategory, delivery_mode: Optional[DeliveryMode]) -> Optional[str]:
    if category == CatalogCategory.TEAM:
        return "team"
    if category == CatalogCategory.ONE_TO_ONE:
        if delivery_mode == DeliveryMode.IN_PERSON:
            return "onetoone_inperson"
        if delivery_mode == DeliveryMode.HYBRID:
            return "onetoone_hybrid"
        return "onetoone_online"
    return None


def fold_subscription(ctx: AggregationContext, sub: Subscription) -> None:
    if sub.staff_id is None:
        logger.debug(f"[PAYOUTS] Subscription {sub.id} has no assigned staff; not counted")
        return
    context = {"subscription_id": sub.id, "service_id": sub.service_id, "period": ctx.period}

    service = ctx.catalog.entry(sub.service_id)
    gross = ctx.catalog.price_of(sub.service_id)
    if service is None or gross is None:
        ctx.report(
            NotFoundError("No active price for the subscribed service", context),
            "subscription", sub.id, sub.staff_id, block=True,
        )
        return
    try:
        rule = ctx.rules.resolve(sub.service_id)
        split = split_gross(gross, rule)
    except InvalidInputError as e:
        e.context.update(context)
        ctx.report(e, "subscription", sub.id, sub.staff_id, block=True)
        return

    acc = ctx.accumulator(sub.staff_id)
    bucket = client_bucket(service.category, service.delivery_mode)
    if bucket:
        acc.client_breakdown[bucket] += 1

    if sub.subscriber_id in ctx.exempt:
        # on the roster, but no revenue
        acc.exempt_clients += 1
        if settings.CREDIT_EXEMPT_CLIENT_PAYOUT:
            acc.base_payout_minor += split.payout_minor
            acc.note_rule(rule)
        return

    acc.gross_revenue_minor += split.gross_minor
    acc.base_payout_minor += split.payout_minor
    acc.platform_fee_minor += split.platform_fee_minor
    acc.discounts_applied_minor += ctx.discounts.get(sub.id, 0)
    acc.note_rule(rule)


def _addon_recipient(ctx: AggregationContext, purchase: AddonPurchase, rule: ResolvedRule) -> Optional[uuid.UUID]:
    if rule.recipient == PayoutRecipientRole.PRIMARY_COACH:
        sub = ctx.subscriptions.get(purchase.subscription_id)
        return sub.staff_id if sub else None
    return purchase.staff_id


def fold_addon(ctx: AggregationContext, purchase: AddonPurchase) -> None:
    context = {"addon_purchase_id": purchase.id, "addon_id": purchase.addon_id, "period": ctx.period}
    if purchase.subscription_id is not None and purchase.subscription_id not in ctx.subscriptions:
        logger.debug(f"[PAYOUTS] Add-on {purchase.id} belongs to a non-qualifying subscription; not counted")
        return

    gross = ctx.catalog.price_of(purchase.addon_id)
    if gross is None:
        ctx.report(
            NotFoundError("No active price for the add-on", context),
            "addon_purchase", purchase.id, purchase.staff_id,
        )
        return
    try:
        rule = ctx.rules.resolve(purchase.addon_id, PayoutRecipientRole.ADDON_STAFF)
        split = split_gross(gross, rule, purchase.quantity or 1)
    except InvalidInputError as e:
        e.context.update(context)
        ctx.report(e, "addon_purchase", purchase.id, purchase.staff_id, block=True)
        return

    recipient = _addon_recipient(ctx, purchase, rule)
    if recipient is None:
        ctx.report(
            DataIntegrityError(
                f"No {rule.recipient.value} to credit for add-on purchase",
                dict(context, recipient_role=rule.recipient.value),
            ),
            "addon_purchase", purchase.id,
        )
        return

    acc = ctx.accumulator(recipient)
    acc.gross_revenue_minor += split.gross_minor
    acc.addon_revenue_minor += split.gross_minor
    acc.addon_payout_minor += split.payout_minor
    acc.platform_fee_minor += split.platform_fee_minor
    acc.note_rule(rule)


def accumulate(ctx: AggregationContext) -> None:
    for sub in ctx.subscriptions.values():
        fold_subscription(ctx, sub)
    for purchase in ctx.addons:
        fold_addon(ctx, purchase)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@dataclass
class CalculationResult:
    period: str
    coaches_processed: int = 0
    gross_revenue_minor: int = 0
    discounts_applied_minor: int = 0
    net_collected_minor: int = 0
    total_coach_payout_minor: int = 0
    statements_written: int = 0
    statements_unchanged: int = 0
    statements_reset: int = 0
    conflicts: List[dict] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)
    fallback_rule_targets: List[str] = field(default_factory=list)

    @property
    def platform_retained_minor(self) -> int:
        return self.net_collected_minor - self.total_coach_payout_minor

    def as_dict(self) -> dict:
        return {
            "period": self.period,
            "currency": settings.CURRENCY_CODE,
            "coaches_processed": self.coaches_processed,
            "gross_revenue": to_major(self.gross_revenue_minor),
            "discounts_applied_kwd": to_major(self.discounts_applied_minor),
            "net_collected": to_major(self.net_collected_minor),
            "total_coach_payout": to_major(self.total_coach_payout_minor),
            "platform_retained": to_major(self.platform_retained_minor),
            "statements_written": self.statements_written,
            "statements_unchanged": self.statements_unchanged,
            "statements_reset": self.statements_reset,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "fallback_rule_targets": self.fallback_rule_targets,
        }


def _write_statement(
    db: Session,
    existing: Optional[MonthlyPayoutStatement],
    staff_id: uuid.UUID,
    period: str,
    values: dict,
    now: datetime,
) -> str:
    """Insert or overwrite one statement. Returns "written" or "unchanged"."""
    if existing is not None:
        if existing.is_paid:
            raise StatementConflictError(
                "Statement is already paid and cannot be recomputed",
                {"statement_id": existing.id, "staff_id": staff_id, "period": period},
            )
        if existing.computed_fields() == values:
            return "unchanged"
        for key, value in values.items():
            setattr(existing, key, value)
        existing.computed_at = now
        db.flush()
        return "written"

    statement = MonthlyPayoutStatement(staff_id=staff_id, period=period, computed_at=now, created_at=now, **values)
    db.add(statement)
    db.flush()
    return "written"


def persist_statements(db: Session, ctx: AggregationContext, result: CalculationResult) -> None:
    """Each staff member's statement is written in its own savepoint."""
    existing = {
        s.staff_id: s
        for s in db.query(MonthlyPayoutStatement)
        .filter(MonthlyPayoutStatement.period == ctx.period)
        .with_for_update()
        .all()
    }

    targets = []
    for staff_id in sorted(ctx.staff, key=str):
        if staff_id not in ctx.blocked_staff:
            targets.append((staff_id, ctx.staff[staff_id].statement_fields(), False))
    for staff_id, statement in sorted(existing.items(), key=lambda item: str(item[0])):
        # owed nothing this period any more
        if staff_id not in ctx.staff and staff_id not in ctx.blocked_staff and not statement.is_paid:
            targets.append((staff_id, _empty_statement_fields(staff_id), True))

    for staff_id, values, is_reset in targets:
        context = {"staff_id": staff_id, "period": ctx.period}
        try:
            with db.begin_nested():
                outcome = _write_statement(db, existing.get(staff_id), staff_id, ctx.period, values, ctx.now)
        except StatementConflictError as e:
            logger.warning(f"[PAYOUTS] {ctx.period}: statement for staff {staff_id} is paid; left as is")
            result.conflicts.append(e.to_dict())
            result.coaches_processed += 1
            continue
        except (StaleDataError, IntegrityError):
            error = ConcurrencyConflictError("Statement was written concurrently; re-run the calculation", context)
            ctx.report(error, "statement", staff_id, staff_id, block=True)
            continue

        if is_reset:
            result.statements_reset += 1
            continue
        if outcome == "unchanged":
            result.statements_unchanged += 1
        else:
            result.statements_written += 1
        result.coaches_processed += 1


def run_monthly_calculation(
    db: Session,
    period: Optional[str] = None,
    now: Optional[datetime] = None,
    actor: Optional[Actor] = None,
) -> CalculationResult:
    """
    Compute and persist every staff member's statement for ``period``
    (default: the current month).

    Safe to re-run: unpaid statements are recomputed in place, paid ones are
    reported in ``conflicts``, and a statement whose inputs have not changed
    is not rewritten. Problems with individual subscriptions or add-ons are
    returned in ``errors`` while the rest of the run completes.

    Raises:
        InvalidInputError: malformed period
        JobAlreadyRunningError: a calculation for the same period is in progress
    """
    now = now or utcnow()
    period = period or current_period(now)
    period_bounds(period)
    actor = actor or Actor.system()

    with job_lock(db, MONTHLY_PAYOUT_JOB, period, now):
        ctx = load_context(db, period, now)
        accumulate(ctx)

        result = CalculationResult(period=period)
        persist_statements(db, ctx, result)

        for staff_id, acc in ctx.staff.items():
            if staff_id in ctx.blocked_staff:
                continue
            result.gross_revenue_minor += acc.gross_revenue_minor
            result.discounts_applied_minor += acc.discounts_applied_minor
            result.net_collected_minor += acc.net_collected_minor
            result.total_coach_payout_minor += acc.total_payout_minor
        result.errors = ctx.errors
        result.fallback_rule_targets = ctx.fallback_targets

        record_audit(db, actor, AuditAction.PAYOUT_CALCULATION_RUN, "payout_period", period,
                     after=result.as_dict())
        db.commit()

    logger.info(
        f"[PAYOUTS] {period}: coaches={result.coaches_processed} "
        f"gross={result.gross_revenue_minor} discounts={result.discounts_applied_minor} "
        f"payout={result.total_coach_payout_minor} written={result.statements_written} "
        f"unchanged={result.statements_unchanged} conflicts={len(result.conflicts)} errors={len(result.errors)}"
    )
    if result.fallback_rule_targets:
        logger.warning(f"[PAYOUTS] {period}: default payout rule used for {result.fallback_rule_targets}")
    return result


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def get_statement(db: Session, statement_id: uuid.UUID) -> MonthlyPayoutStatement:
    statement = db.query(MonthlyPayoutStatement).filter(MonthlyPayoutStatement.id == statement_id).first()
    if statement is None:
        raise NotFoundError("Statement not found", {"statement_id": statement_id})
    return statement


def list_statements(
    db: Session,
    period: Optional[str] = None,
    staff_id: Optional[uuid.UUID] = None,
    is_paid: Optional[bool] = None,
) -> List[MonthlyPayoutStatement]:
    query = db.query(MonthlyPayoutStatement)
    if period:
        period_bounds(period)
        query = query.filter(MonthlyPayoutStatement.period == period)
    if staff_id:
        query = query.filter(MonthlyPayoutStatement.staff_id == staff_id)
    if is_paid is not None:
        query = query.filter(MonthlyPayoutStatement.is_paid.is_(is_paid))
    return query.order_by(MonthlyPayoutStatement.period.desc(), MonthlyPayoutStatement.staff_id).all()


def mark_statement_paid(
    db: Session,
    statement_id: uuid.UUID,
    actor: Actor,
    now: Optional[datetime] = None,
    expected_version: Optional[int] = None,
) -> MonthlyPayoutStatement:
    """Record that the payout was transferred. Marking an already paid statement is a no-op."""
    now = now or utcnow()
    context = {"statement_id": statement_id}
    try:
        statement = (
            db.query(MonthlyPayoutStatement)
            .filter(MonthlyPayoutStatement.id == statement_id)
            .with_for_update()
            .first()
        )
        if statement is None:
            raise NotFoundError("Statement not found", context)
        if statement.is_paid:
            db.rollback()
            return statement
        if expected_version is not None and statement.version != expected_version:
            raise ConcurrencyConflictError(
                "Statement was recomputed since it was loaded; review it and retry",
                dict(context, expected_version=expected_version, current_version=statement.version),
            )
        before = {"is_paid": False, **statement.computed_fields()}
        statement.is_paid = True
        statement.paid_at = now
        statement.paid_by = actor.id
        record_audit(
            db, actor, AuditAction.STATEMENT_MARKED_PAID, "payout_statement", statement.id,
            before=before,
            after={"is_paid": True, "paid_at": now, "total_payout_minor": statement.total_payout_minor},
        )
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrencyConflictError("Statement was changed by another request; reload and retry", context) from e
    except Exception:
        db.rollback()
        raise
    logger.info(f"[PAYOUTS] Statement {statement_id} marked paid by {actor.id}")
    return statement
