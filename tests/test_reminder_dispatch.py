"""Reminder outbox delivery"""
import json
import uuid
from datetime import datetime
import httpx
import pytest
from app.core.config import settings
from app.models import BillingReminder, ReminderKind, ReminderStatus, SubscriptionStatus
from app.services.reminder_dispatch import dispatch_pending_reminders, MAX_ATTEMPTS

WEBHOOK = "https://notify.example.test/hooks/billing"


@pytest.fixture
def webhook(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", WEBHOOK)
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_TOKEN", "secret-token")


def _client(status=200, calls=None):
    def handler(request):
        if calls is not None:
            calls.append(request)
        return httpx.Response(status, json={"ok": status < 300})
    return httpx.Client(transport=httpx.MockTransport(handler))


def _reminder(db, sub, kind=ReminderKind.PAST_DUE, due_date=None, key=None):
    reminder = BillingReminder(
        subscription_id=sub.id,
        subscriber_id=sub.subscriber_id,
        kind=kind,
        reminder_key=key or f"{kind.value}:{uuid.uuid4().hex[:6]}",
        amount_due_minor=30000,
        due_date=due_date,
        requested_by="system",
        created_at=datetime(2026, 3, 1),
    )
    db.add(reminder)
    db.commit()
    return reminder


def test_without_webhook_reminders_stay_pending(db, seed, now):
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.PAST_DUE, past_due_since=now)
    reminder = _reminder(db, sub)
    result = dispatch_pending_reminders(db, now=now)
    assert result.as_dict() == {"sent": 0, "failed": 0, "skipped": 0, "retrying": 0}
    db.refresh(reminder)
    assert reminder.status == ReminderStatus.PENDING


def test_delivers_payload(db, seed, now, webhook):
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.PAST_DUE, past_due_since=now)
    reminder = _reminder(db, sub)
    calls = []

    result = dispatch_pending_reminders(db, now=now, client=_client(calls=calls))

    assert result.sent == 1
    db.refresh(reminder)
    assert reminder.status == ReminderStatus.SENT
    assert reminder.sent_at == now
    assert len(calls) == 1
    assert str(calls[0].url) == WEBHOOK
    assert calls[0].headers["authorization"] == "Bearer secret-token"
    body = json.loads(calls[0].content)
    assert body["kind"] == "past_due"
    assert body["amount_due"] == "30.000"
    assert body["currency"] == "KWD"


def test_failed_delivery_retries_then_gives_up(db, seed, now, webhook):
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.PAST_DUE, past_due_since=now)
    reminder = _reminder(db, sub)

    for _ in range(MAX_ATTEMPTS - 1):
        result = dispatch_pending_reminders(db, now=now, client=_client(status=503))
        assert result.retrying == 1
    result = dispatch_pending_reminders(db, now=now, client=_client(status=503))

    assert result.failed == 1
    db.refresh(reminder)
    assert reminder.status == ReminderStatus.FAILED
    assert reminder.attempts == MAX_ATTEMPTS
    assert reminder.last_error.startswith("HTTP 503")


def test_transport_errors_are_recorded(db, seed, now, webhook):
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.PAST_DUE, past_due_since=now)
    reminder = _reminder(db, sub)

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = dispatch_pending_reminders(db, now=now, client=httpx.Client(transport=httpx.MockTransport(handler)))
    assert result.retrying == 1
    db.refresh(reminder)
    assert reminder.status == ReminderStatus.PENDING
    assert "ConnectError" in reminder.last_error


def test_reminders_no_longer_needed_are_skipped(db, seed, now, webhook):
    service = seed.service()
    paid_up = seed.subscription(service)
    cancelled = seed.subscription(service, status=SubscriptionStatus.CANCELLED)
    rescheduled = seed.subscription(service, next_billing_date=datetime(2026, 4, 20))
    overdue_reminder = _reminder(db, paid_up, kind=ReminderKind.PAST_DUE)
    cancelled_reminder = _reminder(db, cancelled, kind=ReminderKind.MANUAL)
    upcoming_reminder = _reminder(db, rescheduled, kind=ReminderKind.UPCOMING, due_date=datetime(2026, 3, 20))
    calls = []

    result = dispatch_pending_reminders(db, now=now, client=_client(calls=calls))

    assert result.skipped == 3
    assert calls == []
    for reminder in (overdue_reminder, cancelled_reminder, upcoming_reminder):
        db.refresh(reminder)
        assert reminder.status == ReminderStatus.SKIPPED


def test_exempt_subscribers_only_get_manual_reminders(db, seed, now, webhook):
    subscriber = uuid.uuid4()
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.PAST_DUE, past_due_since=now,
                            subscriber_id=subscriber)
    seed.exempt(subscriber)
    _reminder(db, sub, kind=ReminderKind.PAST_DUE)
    _reminder(db, sub, kind=ReminderKind.MANUAL)

    result = dispatch_pending_reminders(db, now=now, client=_client())
    assert result.skipped == 1
    assert result.sent == 1
