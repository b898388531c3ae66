"""
Deliver queued billing reminders to the notification service.

The notification service owns templates and channels; this module only
posts the reminder payload to NOTIFICATION_WEBHOOK_URL. Without a URL the
outbox is left untouched.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import httpx
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.money import to_major
from app.core.timeutil import utcnow
from app.models.billing_reminder import BillingReminder, ReminderKind, ReminderStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.exemptions import load_exempt_subscribers

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5

_OVERDUE_KINDS = (ReminderKind.PAST_DUE, ReminderKind.FINAL_WARNING, ReminderKind.ACCOUNT_LOCKED)


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    retrying: int = 0

    def as_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "skipped": self.skipped, "retrying": self.retrying}


def _is_stale(reminder: BillingReminder, sub: Optional[Subscription], exempt: set) -> bool:
    """True when the subscription no longer needs this reminder."""
    if sub is None or sub.status == SubscriptionStatus.CANCELLED:
        return True
    if reminder.kind == ReminderKind.MANUAL:
        return False
    if sub.subscriber_id in exempt:
        return True
    if reminder.kind in _OVERDUE_KINDS:
        return sub.status == SubscriptionStatus.ACTIVE
    if reminder.kind == ReminderKind.UPCOMING:
        return sub.next_billing_date != reminder.due_date
    return False


def _payload(reminder: BillingReminder) -> dict:
    return {
        "reminder_id": str(reminder.id),
        "kind": reminder.kind.value,
        "subscription_id": str(reminder.subscription_id),
        "subscriber_id": str(reminder.subscriber_id),
        "amount_due": str(to_major(reminder.amount_due_minor)) if reminder.amount_due_minor is not None else None,
        "currency": settings.CURRENCY_CODE,
        "due_date": reminder.due_date.isoformat() if reminder.due_date else None,
        "requested_by": reminder.requested_by,
    }


def _post(client: httpx.Client, reminder: BillingReminder) -> Optional[str]:
    """Post one reminder; returns an error description, or None when delivered."""
    headers = {"accept": "application/json", "content-type": "application/json"}
    token = settings.NOTIFICATION_WEBHOOK_TOKEN
    if token and token.strip():
        headers["authorization"] = f"Bearer {token.strip()}"
    try:
        resp = client.post(settings.NOTIFICATION_WEBHOOK_URL, headers=headers, json=_payload(reminder))
    except httpx.HTTPError as e:
        return f"{type(e).__name__}: {e}"
    if resp.status_code not in (200, 201, 202, 204):
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    return None


def dispatch_pending_reminders(
    db: Session,
    limit: int = 200,
    now: Optional[datetime] = None,
    client: Optional[httpx.Client] = None,
) -> DispatchResult:
    """
    Send up to ``limit`` pending reminders, oldest first.

    A failed delivery stays pending for the next dispatch until it has been
    attempted MAX_ATTEMPTS times, then it is marked failed.
    """
    result = DispatchResult()
    url = settings.NOTIFICATION_WEBHOOK_URL
    if not url or not url.strip():
        logger.info("[REMINDERS] NOTIFICATION_WEBHOOK_URL not set; reminders stay pending")
        return result
    now = now or utcnow()

    reminders = (
        db.query(BillingReminder)
        .filter(BillingReminder.status == ReminderStatus.PENDING)
        .order_by(BillingReminder.created_at, BillingReminder.id)
        .limit(limit)
        .all()
    )
    if not reminders:
        return result

    subs = {
        s.id: s
        for s in db.query(Subscription).filter(Subscription.id.in_({r.subscription_id for r in reminders})).all()
    }
    exempt = load_exempt_subscribers(db)

    owns_client = client is None
    client = client or httpx.Client(timeout=15.0)
    try:
        for reminder in reminders:
            if _is_stale(reminder, subs.get(reminder.subscription_id), exempt):
                reminder.status = ReminderStatus.SKIPPED
                result.skipped += 1
                continue
            reminder.attempts = (reminder.attempts or 0) + 1
            error = _post(client, reminder)
            if error is None:
                reminder.status = ReminderStatus.SENT
                reminder.sent_at = now
                reminder.last_error = None
                result.sent += 1
                continue
            reminder.last_error = error
            if reminder.attempts >= MAX_ATTEMPTS:
                reminder.status = ReminderStatus.FAILED
                result.failed += 1
                logger.error(f"[REMINDERS] Giving up on reminder {reminder.id} after {reminder.attempts} attempts: {error}")
            else:
                result.retrying += 1
                logger.warning(f"[REMINDERS] Reminder {reminder.id} not delivered ({error}); will retry")
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        if owns_client:
            client.close()

    logger.info(
        f"[REMINDERS] Dispatched: sent={result.sent} retrying={result.retrying} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    return result
