"""
Subscription billing lifecycle.

States: pending -> active -> past_due -> inactive, plus cancelled (terminal).
"Grace" is not stored: it is the part of past_due before
past_due_since + grace_period_days. Decay (active -> past_due -> inactive)
is applied only by the periodic sweep, so a subscription can sit past its
grace deadline until the next sweep runs. Payments move any non-cancelled
subscription back to active.

Every state change and admin action is written to the audit log in the same
transaction; if the audit write fails the change is rolled back.
"""
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Set, Tuple
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from app.core.audit import Actor, record_audit
from app.core.config import settings
from app.core.errors import (
    DataIntegrityError, InvalidInputError, InvalidTransitionError, NotFoundError,
    ConcurrencyConflictError, BillingError,
)
from app.core.money import require_non_negative
from app.core.timeutil import utcnow, current_period
from app.models.audit_log import AuditAction
from app.models.billing_reminder import BillingReminder, ReminderKind
from app.models.catalog import CatalogEntry, CatalogCategory
from app.models.payment_exemption import PaymentExemption
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_payment import SubscriptionPayment, PaymentSource
from app.services.catalog import PricingCatalog, get_active_price
from app.services.exemptions import load_exempt_subscribers
from app.services.job_locks import job_lock, LIFECYCLE_SWEEP_JOB

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


# ---------------------------------------------------------------------------
# Pure lifecycle rules
# ---------------------------------------------------------------------------

def next_cycle_date(now: datetime) -> datetime:
    return now + timedelta(days=settings.BILLING_CYCLE_DAYS)


def is_in_grace(sub: Subscription, now: datetime) -> bool:
    deadline = sub.grace_deadline()
    return sub.status == SubscriptionStatus.PAST_DUE and deadline is not None and now < deadline


def grace_days_remaining(sub: Subscription, now: datetime) -> Optional[int]:
    deadline = sub.grace_deadline()
    if sub.status != SubscriptionStatus.PAST_DUE or deadline is None:
        return None
    return max(0, math.ceil((deadline - now) / ONE_DAY))


def evaluate_subscription(sub: Subscription, now: datetime, exempt: bool = False) -> Optional[SubscriptionStatus]:
    """
    The status the sweep should move this subscription to, or None.

    Raises DataIntegrityError for rows that cannot be evaluated (an active
    subscription without a billing date, a past_due one without
    past_due_since).
    """
    if exempt:
        return None

    if sub.status == SubscriptionStatus.ACTIVE:
        if sub.next_billing_date is None:
            raise DataIntegrityError(
                "Active subscription has no next_billing_date",
                {"subscription_id": sub.id},
            )
        if now >= sub.next_billing_date:
            return SubscriptionStatus.PAST_DUE
        return None

    if sub.status == SubscriptionStatus.PAST_DUE:
        if sub.past_due_since is None:
            raise DataIntegrityError(
                "Past-due subscription has no past_due_since",
                {"subscription_id": sub.id},
            )
        if now >= sub.grace_deadline():
            return SubscriptionStatus.INACTIVE
        return None

    return None


def lifecycle_view(sub: Subscription, now: datetime) -> dict:
    """Status plus the computed grace sub-phase, for display."""
    deadline = sub.grace_deadline() if sub.status == SubscriptionStatus.PAST_DUE else None
    return {
        "status": sub.status.value,
        "in_grace": is_in_grace(sub, now),
        "grace_expired_awaiting_sweep": bool(deadline and now >= deadline),
        "grace_deadline": deadline,
        "grace_days_remaining": grace_days_remaining(sub, now),
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_for_update(db: Session, subscription_id: uuid.UUID, expected_version: Optional[int] = None) -> Subscription:
    sub = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id)
        .with_for_update()
        .first()
    )
    if sub is None:
        raise NotFoundError("Subscription not found", {"subscription_id": subscription_id})
    if expected_version is not None and sub.version != expected_version:
        raise ConcurrencyConflictError(
            "Subscription was changed by another request; reload and retry",
            {"subscription_id": subscription_id, "expected_version": expected_version, "current_version": sub.version},
        )
    return sub


def _commit(db: Session, context: dict) -> None:
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrencyConflictError(
            "Subscription was changed by another request; reload and retry", context
        ) from e


def _abort(db: Session) -> None:
    db.rollback()


def billing_amount_minor(db: Session, sub: Subscription) -> Optional[int]:
    if sub.billing_amount_override_minor is not None:
        return sub.billing_amount_override_minor
    price = get_active_price(db, sub.service_id)
    return price.price_minor if price else None


# ---------------------------------------------------------------------------
# Onboarding and payments
# ---------------------------------------------------------------------------

def create_subscription(
    db: Session,
    subscriber_id: uuid.UUID,
    service_id: uuid.UUID,
    actor: Actor,
    staff_id: Optional[uuid.UUID] = None,
    grace_period_days: Optional[int] = None,
    billing_amount_override_minor: Optional[int] = None,
) -> Subscription:
    """Create a pending subscription after onboarding. It becomes active on first payment."""
    service = db.query(CatalogEntry).filter(CatalogEntry.id == service_id).first()
    if service is None or not service.is_active:
        raise InvalidInputError("service_id", "unknown or inactive service", {"service_id": service_id})
    if service.category == CatalogCategory.ADDON:
        raise InvalidInputError("service_id", "add-ons cannot be subscribed to directly", {"service_id": service_id})
    grace = settings.DEFAULT_GRACE_PERIOD_DAYS if grace_period_days is None else grace_period_days
    if grace < 0:
        raise InvalidInputError("grace_period_days", "must be >= 0")
    if billing_amount_override_minor is not None:
        require_non_negative(billing_amount_override_minor, "billing_amount_override")

    sub = Subscription(
        subscriber_id=subscriber_id,
        service_id=service_id,
        staff_id=staff_id,
        status=SubscriptionStatus.PENDING,
        grace_period_days=grace,
        billing_amount_override_minor=billing_amount_override_minor,
    )
    try:
        db.add(sub)
        db.flush()
        record_audit(db, actor, AuditAction.SUBSCRIPTION_CREATED, "subscription", sub.id,
                     before=None, after=sub.snapshot())
        db.commit()
    except Exception:
        _abort(db)
        raise
    db.refresh(sub)
    logger.info(f"[LIFECYCLE] Created pending subscription {sub.id} for subscriber {subscriber_id}")
    return sub


@dataclass
class PaymentResult:
    subscription: Subscription
    payment: SubscriptionPayment
    applied: bool  # False when the reference had already been recorded
    previous_status: SubscriptionStatus


def _apply_payment(
    db: Session,
    sub: Subscription,
    amount_minor: int,
    reference: str,
    source: PaymentSource,
    actor: Actor,
    now: datetime,
    note: Optional[str] = None,
) -> PaymentResult:
    if sub.status == SubscriptionStatus.CANCELLED:
        raise InvalidTransitionError(
            "Cannot record a payment on a cancelled subscription",
            {"subscription_id": sub.id},
        )
    require_non_negative(amount_minor, "amount", {"subscription_id": sub.id})
    if not reference:
        raise InvalidInputError("reference", "payment reference is required", {"subscription_id": sub.id})

    existing = db.query(SubscriptionPayment).filter(
        SubscriptionPayment.subscription_id == sub.id,
        SubscriptionPayment.reference == reference,
    ).first()
    if existing is not None:
        logger.info(f"[LIFECYCLE] Payment {reference} already recorded for subscription {sub.id}; no-op")
        return PaymentResult(sub, existing, False, sub.status)

    before = sub.snapshot()
    previous_status = sub.status

    payment = SubscriptionPayment(
        subscription_id=sub.id,
        amount_minor=amount_minor,
        source=source,
        reference=reference,
        note=note,
        paid_at=now,
        created_by=actor.id,
    )
    db.add(payment)

    if previous_status == SubscriptionStatus.ACTIVE and sub.next_billing_date is not None:
        # paid ahead of the due date: the next cycle starts where the current one ends
        sub.next_billing_date = max(sub.next_billing_date, now) + timedelta(days=settings.BILLING_CYCLE_DAYS)
    else:
        sub.status = SubscriptionStatus.ACTIVE
        sub.next_billing_date = next_cycle_date(now)
    sub.past_due_since = None
    if sub.activated_at is None:
        sub.activated_at = now

    if source == PaymentSource.MANUAL:
        action = AuditAction.MANUAL_PAYMENT_RECORDED
    elif previous_status != SubscriptionStatus.ACTIVE:
        action = AuditAction.SUBSCRIPTION_ACTIVATED
    else:
        action = AuditAction.PAYMENT_RECORDED
    after = sub.snapshot()
    after["payment"] = {"amount_minor": amount_minor, "reference": reference, "source": source.value, "note": note}
    record_audit(db, actor, action, "subscription", sub.id, before=before, after=after)

    logger.info(
        f"[LIFECYCLE] Payment {reference} on subscription {sub.id}: "
        f"{previous_status.value} -> {sub.status.value}, next billing {sub.next_billing_date}"
    )
    return PaymentResult(sub, payment, True, previous_status)


def record_payment(
    db: Session,
    subscription_id: uuid.UUID,
    amount_minor: int,
    reference: str,
    actor: Actor,
    now: Optional[datetime] = None,
    source: PaymentSource = PaymentSource.GATEWAY,
    note: Optional[str] = None,
) -> PaymentResult:
    """
    Apply a successful payment: pending/past_due/inactive -> active with a new
    cycle, or extend the cycle of an already active subscription. Replaying
    the same reference is a no-op.
    """
    now = now or utcnow()
    context = {"subscription_id": subscription_id, "reference": reference}
    try:
        sub = _load_for_update(db, subscription_id)
        result = _apply_payment(db, sub, amount_minor, reference, source, actor, now, note)
        _commit(db, context)
    except Exception:
        _abort(db)
        raise
    return result


def mark_paid_manually(
    db: Session,
    subscription_id: uuid.UUID,
    amount_minor: int,
    actor: Actor,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
    reference: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> PaymentResult:
    """Admin records an off-gateway payment (cash, bank transfer)."""
    now = now or utcnow()
    reference = reference or f"manual-{uuid.uuid4().hex}"
    context = {"subscription_id": subscription_id, "reference": reference}
    try:
        sub = _load_for_update(db, subscription_id, expected_version)
        result = _apply_payment(db, sub, amount_minor, reference, PaymentSource.MANUAL, actor, now, note)
        _commit(db, context)
    except Exception:
        _abort(db)
        raise
    return result


# ---------------------------------------------------------------------------
# Admin actions
# ---------------------------------------------------------------------------

def extend_grace_period(
    db: Session,
    subscription_id: uuid.UUID,
    days: int,
    actor: Actor,
    push_past_due_since: bool = False,
    expected_version: Optional[int] = None,
) -> Subscription:
    """
    Give a subscriber more time without changing the status.
    Either raises grace_period_days, or (push_past_due_since) moves the start
    of the grace window forward.
    """
    if days is None or days < 1:
        raise InvalidInputError("days", "must be at least 1", {"subscription_id": subscription_id})
    context = {"subscription_id": subscription_id}
    try:
        sub = _load_for_update(db, subscription_id, expected_version)
        if sub.status == SubscriptionStatus.CANCELLED:
            raise InvalidTransitionError("Cannot extend grace on a cancelled subscription", context)
        before = sub.snapshot()
        if push_past_due_since:
            if sub.past_due_since is None:
                raise InvalidTransitionError("Subscription is not past due", context)
            sub.past_due_since = sub.past_due_since + timedelta(days=days)
        else:
            sub.grace_period_days = sub.grace_period_days + days
        after = sub.snapshot()
        after["extension_days"] = days
        record_audit(db, actor, AuditAction.GRACE_EXTENDED, "subscription", sub.id, before=before, after=after)
        _commit(db, context)
    except Exception:
        _abort(db)
        raise
    logger.info(f"[LIFECYCLE] Grace extended by {days} day(s) on subscription {subscription_id} by {actor.id}")
    return sub


@dataclass
class ExemptionResult:
    subscriber_id: uuid.UUID
    is_exempt: bool
    reactivated_subscription_ids: List[uuid.UUID] = field(default_factory=list)


def toggle_payment_exempt(
    db: Session,
    subscriber_id: uuid.UUID,
    actor: Actor,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
    exempt: Optional[bool] = None,
) -> ExemptionResult:
    """
    Flip (or set) a subscriber's payment exemption.

    Turning it on forces past_due and inactive subscriptions back to active
    and clears past_due_since. Turning it off changes no subscription: the
    next natural billing evaluation decides what happens.
    """
    now = now or utcnow()
    context = {"subscriber_id": subscriber_id}
    try:
        row = (
            db.query(PaymentExemption)
            .filter(PaymentExemption.subscriber_id == subscriber_id)
            .with_for_update()
            .first()
        )
        was_exempt = bool(row and row.is_exempt)
        new_value = (not was_exempt) if exempt is None else bool(exempt)

        if row is None:
            row = PaymentExemption(subscriber_id=subscriber_id, is_exempt=new_value)
            db.add(row)
        row.is_exempt = new_value
        if reason is not None:
            row.reason = reason
        row.updated_by = actor.id
        row.updated_at = now

        record_audit(
            db, actor, AuditAction.EXEMPTION_TOGGLED, "subscriber", subscriber_id,
            before={"is_exempt": was_exempt},
            after={"is_exempt": new_value, "reason": reason},
        )

        reactivated = []
        if new_value and not was_exempt:
            subs = (
                db.query(Subscription)
                .filter(
                    Subscription.subscriber_id == subscriber_id,
                    Subscription.status.in_([SubscriptionStatus.PAST_DUE, SubscriptionStatus.INACTIVE]),
                )
                .with_for_update()
                .all()
            )
            for sub in subs:
                before = sub.snapshot()
                sub.status = SubscriptionStatus.ACTIVE
                sub.past_due_since = None
                if sub.next_billing_date is None or sub.next_billing_date <= now:
                    sub.next_billing_date = next_cycle_date(now)
                record_audit(db, actor, AuditAction.SUBSCRIPTION_ACTIVATED, "subscription", sub.id,
                             before=before, after=dict(sub.snapshot(), reason="payment_exempt"))
                reactivated.append(sub.id)
        _commit(db, context)
    except Exception:
        _abort(db)
        raise

    logger.info(
        f"[LIFECYCLE] Subscriber {subscriber_id} payment_exempt {was_exempt} -> {new_value} "
        f"by {actor.id}; reactivated {len(reactivated)} subscription(s)"
    )
    return ExemptionResult(subscriber_id, new_value, reactivated)


def send_reminder(
    db: Session,
    subscription_id: uuid.UUID,
    actor: Actor,
    now: Optional[datetime] = None,
) -> BillingReminder:
    """Queue an on-demand billing reminder; delivery is done by the dispatcher."""
    now = now or utcnow()
    context = {"subscription_id": subscription_id}
    try:
        sub = _load_for_update(db, subscription_id)
        if sub.status == SubscriptionStatus.CANCELLED:
            raise InvalidTransitionError("Cannot remind on a cancelled subscription", context)
        reminder = BillingReminder(
            subscription_id=sub.id,
            subscriber_id=sub.subscriber_id,
            kind=ReminderKind.MANUAL,
            reminder_key=f"manual:{now.isoformat()}:{uuid.uuid4().hex[:8]}",
            amount_due_minor=billing_amount_minor(db, sub),
            due_date=sub.next_billing_date,
            requested_by=actor.id,
            created_at=now,
        )
        db.add(reminder)
        db.flush()
        record_audit(db, actor, AuditAction.REMINDER_REQUESTED, "subscription", sub.id,
                     before=None, after={"reminder_id": reminder.id, "kind": reminder.kind.value,
                                         "status": sub.status.value})
        db.commit()
    except Exception:
        _abort(db)
        raise
    logger.info(f"[REMINDERS] Manual reminder queued for subscription {subscription_id} by {actor.id}")
    return reminder


def cancel_subscription(
    db: Session,
    subscription_id: uuid.UUID,
    actor: Actor,
    now: Optional[datetime] = None,
    expected_version: Optional[int] = None,
) -> Subscription:
    """Terminal. The row is kept for history; cancelling twice is a no-op."""
    now = now or utcnow()
    context = {"subscription_id": subscription_id}
    try:
        sub = _load_for_update(db, subscription_id, expected_version)
        if sub.status == SubscriptionStatus.CANCELLED:
            db.rollback()
            return sub
        before = sub.snapshot()
        sub.status = SubscriptionStatus.CANCELLED
        sub.cancelled_at = now
        sub.past_due_since = None
        record_audit(db, actor, AuditAction.SUBSCRIPTION_CANCELLED, "subscription", sub.id,
                     before=before, after=sub.snapshot())
        _commit(db, context)
    except Exception:
        _abort(db)
        raise
    logger.info(f"[LIFECYCLE] Subscription {subscription_id} cancelled by {actor.id}")
    return sub


# ---------------------------------------------------------------------------
# Periodic sweep
# ---------------------------------------------------------------------------

@dataclass
class SweepResult:
    evaluated: int = 0
    marked_past_due: int = 0
    marked_inactive: int = 0
    skipped_exempt: int = 0
    reminders_queued: int = 0
    errors: List[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "evaluated": self.evaluated,
            "marked_past_due": self.marked_past_due,
            "marked_inactive": self.marked_inactive,
            "skipped_exempt": self.skipped_exempt,
            "reminders_queued": self.reminders_queued,
            "errors": self.errors,
        }


class _ReminderQueue:
    """Queues sweep reminders at most once per (subscription, reminder key)."""

    def __init__(self, db: Session, catalog: PricingCatalog, sent: Set[Tuple[uuid.UUID, str]], now: datetime):
        self.db = db
        self.catalog = catalog
        self.sent = sent
        self.now = now
        self.queued = 0

    def queue(self, sub: Subscription, kind: ReminderKind, key: str) -> None:
        if (sub.id, key) in self.sent:
            return
        amount = sub.billing_amount_override_minor
        if amount is None:
            amount = self.catalog.price_of(sub.service_id)
        self.db.add(BillingReminder(
            subscription_id=sub.id,
            subscriber_id=sub.subscriber_id,
            kind=kind,
            reminder_key=key,
            amount_due_minor=amount,
            due_date=sub.next_billing_date,
            requested_by=Actor.system().id,
            created_at=self.now,
        ))
        self.sent.add((sub.id, key))
        self.queued += 1


def _upcoming_reminder_key(sub: Subscription, now: datetime) -> Optional[str]:
    days_until_due = math.floor((sub.next_billing_date - now) / ONE_DAY)
    reached = [d for d in settings.get_upcoming_reminder_days() if days_until_due <= d]
    if days_until_due < 0 or not reached:
        return None
    return f"upcoming:{min(reached)}d:{sub.next_billing_date.date().isoformat()}"


def _past_due_reminder(sub: Subscription, now: datetime) -> Optional[Tuple[ReminderKind, str]]:
    cycle = sub.past_due_since.date().isoformat()
    days_past_due = math.floor((now - sub.past_due_since) / ONE_DAY)
    final_day = sub.grace_period_days - 1
    if final_day > 0 and days_past_due >= final_day:
        return ReminderKind.FINAL_WARNING, f"final_warning:{cycle}"
    reached = [d for d in settings.get_past_due_reminder_days() if 0 < d <= days_past_due and d < final_day]
    if reached:
        return ReminderKind.PAST_DUE, f"past_due:{cycle}:day{max(reached)}"
    return None


def _sweep_one(db: Session, sub: Subscription, now: datetime) -> Tuple[Optional[SubscriptionStatus], List[Tuple[ReminderKind, str]]]:
    """Apply the due transition to one subscription; return it and the reminders it calls for."""
    actor = Actor.system()
    target = evaluate_subscription(sub, now)

    if target == SubscriptionStatus.PAST_DUE:
        before = sub.snapshot()
        sub.status = SubscriptionStatus.PAST_DUE
        sub.past_due_since = now
        record_audit(db, actor, AuditAction.SUBSCRIPTION_PAST_DUE, "subscription", sub.id,
                     before=before, after=sub.snapshot())
        return target, [(ReminderKind.PAST_DUE, f"past_due:{now.date().isoformat()}:day0")]

    if target == SubscriptionStatus.INACTIVE:
        before = sub.snapshot()
        sub.status = SubscriptionStatus.INACTIVE
        record_audit(db, actor, AuditAction.SUBSCRIPTION_DEACTIVATED, "subscription", sub.id,
                     before=before, after=sub.snapshot())
        return target, [(ReminderKind.ACCOUNT_LOCKED, f"account_locked:{sub.past_due_since.date().isoformat()}")]

    if sub.status == SubscriptionStatus.ACTIVE:
        key = _upcoming_reminder_key(sub, now)
        return None, [(ReminderKind.UPCOMING, key)] if key else []

    reminder = _past_due_reminder(sub, now)
    return None, [reminder] if reminder else []


def run_lifecycle_sweep(db: Session, now: Optional[datetime] = None) -> SweepResult:
    """
    Apply time-driven transitions to every active and past-due subscription.

    Idempotent: re-running at the same instant changes nothing, and
    subscriptions already inactive are not touched. Exempt subscribers are
    skipped. A subscription that cannot be evaluated is reported in
    ``errors`` and left unchanged; the rest of the sweep continues.
    """
    now = now or utcnow()
    result = SweepResult()

    with job_lock(db, LIFECYCLE_SWEEP_JOB, current_period(now), now):
        exempt = load_exempt_subscribers(db)
        catalog = PricingCatalog.load(db)
        subs = (
            db.query(Subscription)
            .filter(Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE]))
            .order_by(Subscription.created_at, Subscription.id)
            .all()
        )
        sent = set()
        if subs:
            rows = (
                db.query(BillingReminder.subscription_id, BillingReminder.reminder_key)
                .filter(BillingReminder.subscription_id.in_([s.id for s in subs]))
                .all()
            )
            sent = {(row[0], row[1]) for row in rows}
        reminders = _ReminderQueue(db, catalog, sent, now)

        for sub in subs:
            if sub.subscriber_id in exempt:
                result.skipped_exempt += 1
                continue
            result.evaluated += 1
            sub_id = sub.id
            try:
                with db.begin_nested():
                    transition, due = _sweep_one(db, sub, now)
            except DataIntegrityError as e:
                logger.error(f"[LIFECYCLE] {e.message} (subscription {sub_id})")
                result.errors.append(e.to_dict())
                continue
            except StaleDataError:
                logger.warning(f"[LIFECYCLE] Subscription {sub_id} changed during sweep; skipped")
                result.errors.append(ConcurrencyConflictError(
                    "Subscription changed during sweep; it will be evaluated on the next run",
                    {"subscription_id": sub_id},
                ).to_dict())
                continue
            except BillingError as e:
                logger.error(f"[LIFECYCLE] Sweep failed for subscription {sub_id}: {e.message}")
                result.errors.append(e.to_dict())
                continue

            if transition == SubscriptionStatus.PAST_DUE:
                result.marked_past_due += 1
                logger.info(f"[LIFECYCLE] Subscription {sub_id} is past due (grace {sub.grace_period_days} days)")
            elif transition == SubscriptionStatus.INACTIVE:
                result.marked_inactive += 1
                logger.info(f"[LIFECYCLE] Grace expired for subscription {sub_id}; now inactive")
            for kind, key in due:
                reminders.queue(sub, kind, key)

        db.commit()
        result.reminders_queued = reminders.queued

    logger.info(
        f"[LIFECYCLE] Sweep at {now.isoformat()}: evaluated={result.evaluated} "
        f"past_due={result.marked_past_due} inactive={result.marked_inactive} "
        f"exempt_skipped={result.skipped_exempt} reminders={result.reminders_queued} errors={len(result.errors)}"
    )
    return result
