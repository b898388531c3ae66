from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from uuid import UUID
from app.db.session import get_db
from app.api.deps import get_current_actor, require_admin
from app.core.audit import Actor
from app.core.errors import NotFoundError
from app.core.money import to_minor
from app.core.timeutil import utcnow
from app.models.subscription import Subscription
from app.models.subscription_payment import PaymentSource
from app.schemas.billing import (
    Subscription as SubscriptionSchema,
    SubscriptionCreate,
    PaymentCreate,
    ManualPaymentCreate,
    GraceExtension,
    ExemptionToggle,
    VersionedAction,
    Payment as PaymentSchema,
    PaymentResponse,
    ExemptionResponse,
    Reminder as ReminderSchema,
    SweepResponse,
    DispatchResponse,
)
from app.services import billing_lifecycle
from app.services.exemptions import is_payment_exempt
from app.services.reminder_dispatch import dispatch_pending_reminders

router = APIRouter()


def _subscription_out(db: Session, sub: Subscription) -> SubscriptionSchema:
    view = billing_lifecycle.lifecycle_view(sub, utcnow())
    return SubscriptionSchema.from_model(sub, view, is_payment_exempt(db, sub.subscriber_id))


def _payment_out(db: Session, result: billing_lifecycle.PaymentResult) -> PaymentResponse:
    return PaymentResponse(
        applied=result.applied,
        previous_status=result.previous_status,
        subscription=_subscription_out(db, result.subscription),
        payment=PaymentSchema.from_model(result.payment),
    )


@router.post("/subscriptions", response_model=SubscriptionSchema, status_code=201)
def create_subscription(
    body: SubscriptionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    override = None
    if body.billing_amount_override is not None:
        override = to_minor(body.billing_amount_override, "billing_amount_override")
    sub = billing_lifecycle.create_subscription(
        db,
        subscriber_id=body.subscriber_id,
        service_id=body.service_id,
        actor=actor,
        staff_id=body.staff_id,
        grace_period_days=body.grace_period_days,
        billing_amount_override_minor=override,
    )
    return _subscription_out(db, sub)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionSchema)
def get_subscription(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if sub is None:
        raise NotFoundError("Subscription not found", {"subscription_id": subscription_id})
    return _subscription_out(db, sub)


@router.post("/subscriptions/{subscription_id}/payments", response_model=PaymentResponse)
def record_payment(
    subscription_id: UUID,
    body: PaymentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Apply a gateway-confirmed payment. Replaying the same reference is a no-op."""
    result = billing_lifecycle.record_payment(
        db,
        subscription_id,
        amount_minor=to_minor(body.amount, "amount"),
        reference=body.reference,
        actor=actor,
        source=PaymentSource.GATEWAY,
        note=body.note,
    )
    return _payment_out(db, result)


@router.post("/subscriptions/{subscription_id}/mark-paid", response_model=PaymentResponse)
def mark_paid(
    subscription_id: UUID,
    body: ManualPaymentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    result = billing_lifecycle.mark_paid_manually(
        db,
        subscription_id,
        amount_minor=to_minor(body.amount, "amount"),
        actor=actor,
        note=body.note,
        reference=body.reference,
        expected_version=body.expected_version,
    )
    return _payment_out(db, result)


@router.post("/subscriptions/{subscription_id}/extend-grace", response_model=SubscriptionSchema)
def extend_grace(
    subscription_id: UUID,
    body: GraceExtension,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    sub = billing_lifecycle.extend_grace_period(
        db,
        subscription_id,
        days=body.days,
        actor=actor,
        push_past_due_since=body.push_past_due_since,
        expected_version=body.expected_version,
    )
    return _subscription_out(db, sub)


@router.post("/subscribers/{subscriber_id}/toggle-exempt", response_model=ExemptionResponse)
def toggle_exempt(
    subscriber_id: UUID,
    body: ExemptionToggle = ExemptionToggle(),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    result = billing_lifecycle.toggle_payment_exempt(
        db, subscriber_id, actor=actor, reason=body.reason, exempt=body.exempt,
    )
    return ExemptionResponse(
        subscriber_id=result.subscriber_id,
        is_exempt=result.is_exempt,
        reactivated_subscription_ids=result.reactivated_subscription_ids,
    )


@router.post("/subscriptions/{subscription_id}/send-reminder", response_model=ReminderSchema, status_code=201)
def send_reminder(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return billing_lifecycle.send_reminder(db, subscription_id, actor=actor)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionSchema)
def cancel_subscription(
    subscription_id: UUID,
    body: VersionedAction = VersionedAction(),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    sub = billing_lifecycle.cancel_subscription(
        db, subscription_id, actor=actor, expected_version=body.expected_version,
    )
    return _subscription_out(db, sub)


@router.post("/sweep", response_model=SweepResponse)
def run_sweep(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Run the lifecycle sweep now instead of waiting for the scheduler."""
    return SweepResponse(**billing_lifecycle.run_lifecycle_sweep(db).as_dict())


@router.post("/reminders/dispatch", response_model=DispatchResponse)
def dispatch_reminders(
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return DispatchResponse(**dispatch_pending_reminders(db, limit=limit).as_dict())
