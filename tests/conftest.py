"""Shared fixtures: an in-memory SQLite database per test and seed helpers."""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import uuid
from datetime import datetime
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from app.db.session import Base, get_db
from app.core.config import settings
import app.models  # noqa: F401
from app.models import (
    CatalogEntry, CatalogCategory, DeliveryMode, PriceRecord, PayoutRule, PayoutKind, PlatformFeeKind,
    PayoutRecipientRole, Subscription, SubscriptionStatus, PaymentExemption, DiscountRedemption,
    AddonPurchase, AddonBillingType, AddonPurchaseStatus,
)
from app.main import app


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Pin the settings the tests rely on regardless of the local .env."""
    monkeypatch.setattr(settings, "CURRENCY_MINOR_UNITS", 3)
    monkeypatch.setattr(settings, "CURRENCY_CODE", "KWD")
    monkeypatch.setattr(settings, "BILLING_CYCLE_DAYS", 30)
    monkeypatch.setattr(settings, "DEFAULT_PAYOUT_PERCENT", 70.0)
    monkeypatch.setattr(settings, "CREDIT_EXEMPT_CLIENT_PAYOUT", False)
    monkeypatch.setattr(settings, "JOB_LOCK_TTL_MINUTES", 120)
    monkeypatch.setattr(settings, "UPCOMING_REMINDER_DAYS", "7,3,1")
    monkeypatch.setattr(settings, "PAST_DUE_REMINDER_DAYS", "3")
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", None)
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_TOKEN", None)
    monkeypatch.setattr(settings, "ADMIN_ROLE_NAME", "admin")


class Seed:
    """Writes rows straight through the ORM so tests control every field."""

    def __init__(self, db):
        self.db = db

    def service(self, price_minor=30000, category=CatalogCategory.ONE_TO_ONE,
                delivery_mode=DeliveryMode.ONLINE, code=None, active=True):
        if category != CatalogCategory.ONE_TO_ONE:
            delivery_mode = None
        entry = CatalogEntry(
            code=code or f"svc-{uuid.uuid4().hex[:8]}",
            name=code or "Service",
            category=category,
            delivery_mode=delivery_mode,
            is_active=active,
        )
        self.db.add(entry)
        self.db.flush()
        if price_minor is not None:
            self.db.add(PriceRecord(target_id=entry.id, price_minor=price_minor))
        self.db.commit()
        return entry

    def addon(self, price_minor=10000, code=None):
        return self.service(price_minor=price_minor, category=CatalogCategory.ADDON, code=code)

    def rule(self, target_id, payout_kind=PayoutKind.PERCENT, payout_value=70,
             fee_kind=PlatformFeeKind.NONE, fee_value=0, recipient=PayoutRecipientRole.PRIMARY_COACH):
        rule = PayoutRule(
            target_id=target_id,
            payout_kind=payout_kind,
            payout_value=payout_value,
            platform_fee_kind=fee_kind,
            platform_fee_value=fee_value,
            recipient_role=recipient,
        )
        self.db.add(rule)
        self.db.commit()
        return rule

    def subscription(self, service, staff_id=None, status=SubscriptionStatus.ACTIVE,
                     next_billing_date=None, past_due_since=None, grace_period_days=7,
                     subscriber_id=None, no_staff=False, no_billing_date=False, **kwargs):
        if status == SubscriptionStatus.ACTIVE and next_billing_date is None and not no_billing_date:
            next_billing_date = datetime(2099, 1, 1)
        sub = Subscription(
            subscriber_id=subscriber_id or uuid.uuid4(),
            service_id=service.id,
            staff_id=None if no_staff else (staff_id or uuid.uuid4()),
            status=status,
            next_billing_date=next_billing_date,
            past_due_since=past_due_since,
            grace_period_days=grace_period_days,
            **kwargs,
        )
        self.db.add(sub)
        self.db.commit()
        return sub

    def exempt(self, subscriber_id, is_exempt=True):
        self.db.add(PaymentExemption(subscriber_id=subscriber_id, is_exempt=is_exempt))
        self.db.commit()

    def discount(self, subscription, amount_saved_minor, applied_at, code="PROMO40"):
        self.db.add(DiscountRedemption(
            subscription_id=subscription.id,
            discount_code=code,
            amount_saved_minor=amount_saved_minor,
            applied_at=applied_at,
        ))
        self.db.commit()

    def addon_purchase(self, addon, subscription=None, staff_id=None, quantity=1,
                       billing_type=AddonBillingType.RECURRING, status=AddonPurchaseStatus.ACTIVE,
                       purchased_at=None, expires_at=None):
        purchase = AddonPurchase(
            buyer_id=subscription.subscriber_id if subscription else uuid.uuid4(),
            addon_id=addon.id,
            subscription_id=subscription.id if subscription else None,
            staff_id=staff_id,
            quantity=quantity,
            billing_type=billing_type,
            status=status,
            purchased_at=purchased_at or datetime(2026, 1, 1),
            expires_at=expires_at,
        )
        self.db.add(purchase)
        self.db.commit()
        return purchase


@pytest.fixture
def seed(db):
    return Seed(db)


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, 0)
