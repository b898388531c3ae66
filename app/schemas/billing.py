from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Optional, List, Union
from decimal import Decimal
import uuid
from app.core.money import to_major
from app.models.subscription import SubscriptionStatus
from app.models.subscription_payment import PaymentSource
from app.models.billing_reminder import ReminderKind, ReminderStatus


def _major(amount_minor: Optional[int]) -> Optional[float]:
    return float(to_major(amount_minor)) if amount_minor is not None else None


class SubscriptionCreate(BaseModel):
    subscriber_id: uuid.UUID
    service_id: uuid.UUID
    staff_id: Optional[uuid.UUID] = None
    grace_period_days: Optional[int] = None
    billing_amount_override: Optional[Union[Decimal, float, str]] = None  # major units


class PaymentCreate(BaseModel):
    """A payment confirmed by the gateway. ``reference`` makes replays a no-op."""
    amount: Union[Decimal, float, str]
    reference: str
    note: Optional[str] = None


class ManualPaymentCreate(BaseModel):
    amount: Union[Decimal, float, str]
    note: Optional[str] = None
    reference: Optional[str] = None
    expected_version: Optional[int] = None


class GraceExtension(BaseModel):
    days: int
    push_past_due_since: bool = False
    expected_version: Optional[int] = None


class ExemptionToggle(BaseModel):
    reason: Optional[str] = None
    exempt: Optional[bool] = None  # omitted -> flip the current value


class VersionedAction(BaseModel):
    expected_version: Optional[int] = None


class Subscription(BaseModel):
    id: uuid.UUID
    subscriber_id: uuid.UUID
    service_id: uuid.UUID
    staff_id: Optional[uuid.UUID] = None
    status: SubscriptionStatus
    next_billing_date: Optional[datetime] = None
    past_due_since: Optional[datetime] = None
    grace_period_days: int
    billing_amount_override: Optional[float] = None
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    version: int
    # computed, not stored
    in_grace: bool = False
    grace_deadline: Optional[datetime] = None
    grace_days_remaining: Optional[int] = None
    payment_exempt: bool = False

    @classmethod
    def from_model(cls, sub, view: dict, payment_exempt: bool = False) -> "Subscription":
        return cls(
            id=sub.id,
            subscriber_id=sub.subscriber_id,
            service_id=sub.service_id,
            staff_id=sub.staff_id,
            status=sub.status,
            next_billing_date=sub.next_billing_date,
            past_due_since=sub.past_due_since,
            grace_period_days=sub.grace_period_days,
            billing_amount_override=_major(sub.billing_amount_override_minor),
            activated_at=sub.activated_at,
            cancelled_at=sub.cancelled_at,
            created_at=sub.created_at,
            version=sub.version,
            in_grace=view["in_grace"],
            grace_deadline=view["grace_deadline"],
            grace_days_remaining=view["grace_days_remaining"],
            payment_exempt=payment_exempt,
        )


class Payment(BaseModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    amount: float
    source: PaymentSource
    reference: str
    note: Optional[str] = None
    paid_at: datetime
    created_by: Optional[str] = None

    @field_validator('amount', mode='before')
    @classmethod
    def convert_minor_to_major(cls, v):
        return _major(v) if isinstance(v, int) else v

    @classmethod
    def from_model(cls, payment) -> "Payment":
        return cls(
            id=payment.id,
            subscription_id=payment.subscription_id,
            amount=payment.amount_minor,
            source=payment.source,
            reference=payment.reference,
            note=payment.note,
            paid_at=payment.paid_at,
            created_by=payment.created_by,
        )


class PaymentResponse(BaseModel):
    applied: bool  # False when the reference was already recorded
    previous_status: SubscriptionStatus
    subscription: Subscription
    payment: Payment


class ExemptionResponse(BaseModel):
    subscriber_id: uuid.UUID
    is_exempt: bool
    reactivated_subscription_ids: List[uuid.UUID] = []


class Reminder(BaseModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    subscriber_id: uuid.UUID
    kind: ReminderKind
    reminder_key: str
    amount_due_minor: Optional[int] = None
    due_date: Optional[datetime] = None
    status: ReminderStatus
    requested_by: str
    created_at: datetime

    class Config:
        from_attributes = True


class SweepResponse(BaseModel):
    evaluated: int
    marked_past_due: int
    marked_inactive: int
    skipped_exempt: int
    reminders_queued: int
    errors: List[dict] = []


class DispatchResponse(BaseModel):
    sent: int
    failed: int
    skipped: int
    retrying: int
