"""Monthly payout calculation (period 2026-03, amounts in fils)"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
import pytest
from app.core.audit import Actor
from app.core.config import settings
from app.core.errors import ConcurrencyConflictError, InvalidInputError, JobAlreadyRunningError, NotFoundError
from app.models import (
    AuditLog, AuditAction, CatalogCategory, DeliveryMode, JobRunLock, MonthlyPayoutStatement, PayoutRule,
    PayoutRecipientRole, PlatformFeeKind, PayoutKind, SubscriptionStatus, AddonBillingType, Subscription,
)
from app.services.job_locks import MONTHLY_PAYOUT_JOB
from app.services.payout_aggregator import (
    run_monthly_calculation, mark_statement_paid, list_statements, get_statement, client_bucket,
)

PERIOD = "2026-03"
ADMIN = Actor("admin-1", "admin")


def _statement(db, staff_id):
    db.expire_all()
    return db.query(MonthlyPayoutStatement).filter(
        MonthlyPayoutStatement.staff_id == staff_id,
        MonthlyPayoutStatement.period == PERIOD,
    ).one_or_none()


def test_single_client_70_30_split(db, seed, now):
    """30.000 service, 70% payout, 30% platform fee"""
    staff = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id, payout_value=70, fee_kind=PlatformFeeKind.PERCENT, fee_value=30)
    seed.subscription(service, staff_id=staff)

    result = run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, staff)
    assert statement.gross_revenue_minor == 30000
    assert statement.base_payout_minor == 21000
    assert statement.platform_fee_minor == 9000
    assert statement.total_payout_minor == 21000
    assert statement.client_breakdown["onetoone_online"] == 1
    assert statement.total_clients == 1
    assert statement.used_fallback_rule is False
    assert result.coaches_processed == 1
    assert result.statements_written == 1
    assert result.as_dict()["total_coach_payout"] == Decimal("21.000")
    assert result.as_dict()["platform_retained"] == Decimal("9.000")


def test_discount_is_reported_but_payout_uses_list_price(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service(price_minor=50000)
    seed.rule(service.id, payout_value=70)
    sub = seed.subscription(service, staff_id=staff)
    seed.discount(sub, 20000, applied_at=datetime(2026, 3, 2))
    seed.discount(sub, 5000, applied_at=datetime(2026, 2, 27))  # previous period

    result = run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, staff)
    assert statement.gross_revenue_minor == 50000
    assert statement.discounts_applied_minor == 20000
    assert statement.net_collected_minor == 30000
    assert statement.base_payout_minor == 35000
    assert result.discounts_applied_minor == 20000
    assert result.net_collected_minor == 30000


def test_fallback_rule_is_flagged(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service(price_minor=40000)
    seed.subscription(service, staff_id=staff)

    result = run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, staff)
    assert statement.base_payout_minor == 28000
    assert statement.used_fallback_rule is True
    assert statement.fallback_rule_targets == [str(service.id)]
    assert result.fallback_rule_targets == [str(service.id)]


def test_rerun_without_changes_does_not_rewrite(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service()
    seed.rule(service.id)
    seed.subscription(service, staff_id=staff)

    run_monthly_calculation(db, PERIOD, now)
    first = _statement(db, staff)
    version, computed_at, fields = first.version, first.computed_at, first.computed_fields()

    again = run_monthly_calculation(db, PERIOD, now + timedelta(hours=1))
    second = _statement(db, staff)
    assert again.statements_unchanged == 1
    assert again.statements_written == 0
    assert second.version == version
    assert second.computed_at == computed_at
    assert second.computed_fields() == fields
    assert db.query(MonthlyPayoutStatement).count() == 1


def test_unpaid_statement_is_overwritten_after_rule_change(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id, payout_value=70)
    seed.subscription(service, staff_id=staff)
    run_monthly_calculation(db, PERIOD, now)
    version = _statement(db, staff).version

    rule = db.query(PayoutRule).filter(PayoutRule.target_id == service.id).one()
    rule.payout_value = 50
    db.commit()

    result = run_monthly_calculation(db, PERIOD, now + timedelta(hours=1))
    statement = _statement(db, staff)
    assert result.statements_written == 1
    assert statement.base_payout_minor == 15000
    assert statement.version == version + 1


def test_paid_statement_is_never_recomputed(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id, payout_value=70)
    seed.subscription(service, staff_id=staff)
    run_monthly_calculation(db, PERIOD, now)
    statement = _statement(db, staff)
    mark_statement_paid(db, statement.id, ADMIN, now=now)

    rule = db.query(PayoutRule).filter(PayoutRule.target_id == service.id).one()
    rule.payout_value = 90
    db.commit()

    result = run_monthly_calculation(db, PERIOD, now + timedelta(days=1))
    statement = _statement(db, staff)
    assert statement.is_paid is True
    assert statement.base_payout_minor == 21000
    assert len(result.conflicts) == 1
    assert result.conflicts[0]["error"] == "statement_conflict"
    assert result.conflicts[0]["context"]["staff_id"] == str(staff)
    assert result.coaches_processed == 1
    assert result.total_coach_payout_minor == 27000


def test_exempt_client_counts_on_roster_without_revenue(db, seed, now):
    staff = uuid.uuid4()
    subscriber = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id)
    sub = seed.subscription(service, staff_id=staff, subscriber_id=subscriber)
    seed.exempt(subscriber)
    seed.discount(sub, 3000, applied_at=datetime(2026, 3, 3))

    run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, staff)
    assert statement.total_clients == 1
    assert statement.exempt_clients == 1
    assert statement.gross_revenue_minor == 0
    assert statement.discounts_applied_minor == 0
    assert statement.total_payout_minor == 0


def test_exempt_client_payout_can_be_credited(db, seed, now, monkeypatch):
    monkeypatch.setattr(settings, "CREDIT_EXEMPT_CLIENT_PAYOUT", True)
    staff = uuid.uuid4()
    subscriber = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id)
    seed.subscription(service, staff_id=staff, subscriber_id=subscriber)
    seed.exempt(subscriber)

    run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, staff)
    assert statement.gross_revenue_minor == 0
    assert statement.base_payout_minor == 21000


def test_past_due_counts_only_inside_grace(db, seed, now):
    in_grace_staff, expired_staff = uuid.uuid4(), uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id)
    seed.subscription(service, staff_id=in_grace_staff, status=SubscriptionStatus.PAST_DUE,
                      past_due_since=now - timedelta(days=2))
    seed.subscription(service, staff_id=expired_staff, status=SubscriptionStatus.PAST_DUE,
                      past_due_since=now - timedelta(days=10))
    seed.subscription(service, staff_id=expired_staff, status=SubscriptionStatus.INACTIVE)
    seed.subscription(service, staff_id=expired_staff, status=SubscriptionStatus.PENDING)

    run_monthly_calculation(db, PERIOD, now)

    assert _statement(db, in_grace_staff).base_payout_minor == 21000
    assert _statement(db, expired_staff) is None


def test_unassigned_subscription_is_not_counted(db, seed, now):
    service = seed.service()
    seed.subscription(service, no_staff=True)
    result = run_monthly_calculation(db, PERIOD, now)
    assert result.coaches_processed == 0
    assert result.errors == []


def test_client_buckets(db, seed, now):
    staff = uuid.uuid4()
    team = seed.service(category=CatalogCategory.TEAM)
    in_person = seed.service(delivery_mode=DeliveryMode.IN_PERSON)
    hybrid = seed.service(delivery_mode=DeliveryMode.HYBRID)
    online = seed.service(delivery_mode=DeliveryMode.ONLINE)
    for service in (team, team, in_person, hybrid, online):
        seed.subscription(service, staff_id=staff)

    run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, staff)
    assert statement.client_breakdown == {
        "team": 2, "onetoone_inperson": 1, "onetoone_hybrid": 1, "onetoone_online": 1,
    }
    assert statement.total_clients == 5


def test_client_bucket_mapping():
    assert client_bucket(CatalogCategory.TEAM, None) == "team"
    assert client_bucket(CatalogCategory.ONE_TO_ONE, None) == "onetoone_online"
    assert client_bucket(CatalogCategory.ADDON, None) is None


def test_addon_credited_to_primary_coach(db, seed, now):
    coach = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id, payout_value=70)
    addon = seed.addon(price_minor=10000)
    seed.rule(addon.id, payout_value=50, recipient=PayoutRecipientRole.PRIMARY_COACH)
    sub = seed.subscription(service, staff_id=coach)
    seed.addon_purchase(addon, subscription=sub)

    run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, coach)
    assert statement.addon_revenue_minor == 10000
    assert statement.addon_payout_minor == 5000
    assert statement.gross_revenue_minor == 40000
    assert statement.total_payout_minor == 26000


def test_addon_credited_to_specialist_with_default_rule(db, seed, now):
    coach, specialist = uuid.uuid4(), uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id)
    addon = seed.addon(price_minor=10000)
    sub = seed.subscription(service, staff_id=coach)
    seed.addon_purchase(addon, subscription=sub, staff_id=specialist, quantity=2)

    result = run_monthly_calculation(db, PERIOD, now)

    statement = _statement(db, specialist)
    assert statement.addon_payout_minor == 14000
    assert statement.total_clients == 0
    assert statement.used_fallback_rule is True
    assert _statement(db, coach).addon_payout_minor == 0
    assert str(addon.id) in result.fallback_rule_targets


def test_addons_outside_the_period_are_ignored(db, seed, now):
    coach, specialist = uuid.uuid4(), uuid.uuid4()
    service = seed.service()
    seed.rule(service.id)
    addon = seed.addon(price_minor=10000)
    sub = seed.subscription(service, staff_id=coach)
    seed.addon_purchase(addon, subscription=sub, staff_id=specialist,
                        billing_type=AddonBillingType.ONE_TIME, purchased_at=datetime(2026, 2, 10))
    seed.addon_purchase(addon, subscription=sub, staff_id=specialist, expires_at=datetime(2026, 2, 28))
    seed.addon_purchase(addon, subscription=sub, staff_id=specialist,
                        billing_type=AddonBillingType.ONE_TIME, purchased_at=datetime(2026, 3, 5))

    run_monthly_calculation(db, PERIOD, now)

    assert _statement(db, specialist).addon_revenue_minor == 10000


def test_addon_without_recipient_is_reported(db, seed, now):
    service = seed.service()
    addon = seed.addon()
    sub = seed.subscription(service, staff_id=uuid.uuid4())
    seed.addon_purchase(addon, subscription=sub, staff_id=None)

    result = run_monthly_calculation(db, PERIOD, now)

    assert [e["entity"] for e in result.errors] == ["addon_purchase"]
    assert result.errors[0]["error"] == "data_integrity"


def test_missing_price_withholds_that_staff_statement(db, seed, now):
    staff, other_staff = uuid.uuid4(), uuid.uuid4()
    priced = seed.service(price_minor=30000)
    seed.rule(priced.id)
    unpriced = seed.service(price_minor=None)
    seed.subscription(priced, staff_id=staff)
    broken = seed.subscription(unpriced, staff_id=staff)
    seed.subscription(priced, staff_id=other_staff)

    result = run_monthly_calculation(db, PERIOD, now)

    assert len(result.errors) == 1
    assert result.errors[0]["error"] == NotFoundError.code
    assert result.errors[0]["entity_id"] == str(broken.id)
    assert _statement(db, staff) is None
    assert _statement(db, other_staff).base_payout_minor == 21000
    assert result.coaches_processed == 1
    assert result.total_coach_payout_minor == 21000


def test_retired_service_keeps_the_unpaid_statement(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service(price_minor=30000)
    seed.rule(service.id)
    seed.subscription(service, staff_id=staff)
    run_monthly_calculation(db, PERIOD, now)

    service.is_active = False
    db.commit()

    result = run_monthly_calculation(db, PERIOD, now + timedelta(hours=1))
    statement = _statement(db, staff)
    assert [e["error"] for e in result.errors] == [NotFoundError.code]
    assert result.statements_reset == 0
    assert statement.total_payout_minor == 21000
    assert statement.total_clients == 1


def test_integrity_fault_withholds_that_staff_statement(db, seed, now):
    healthy_staff, faulty_staff = uuid.uuid4(), uuid.uuid4()
    service = seed.service()
    seed.rule(service.id)
    seed.subscription(service, staff_id=healthy_staff)
    seed.subscription(service, staff_id=faulty_staff)
    seed.subscription(service, staff_id=faulty_staff, status=SubscriptionStatus.PAST_DUE, past_due_since=None)

    result = run_monthly_calculation(db, PERIOD, now)

    assert _statement(db, healthy_staff) is not None
    assert _statement(db, faulty_staff) is None
    assert result.errors[0]["error"] == "data_integrity"
    assert result.errors[0]["staff_id"] == str(faulty_staff)
    assert result.coaches_processed == 1
    assert result.total_coach_payout_minor == 21000


def test_malformed_rule_withholds_statement(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service()
    seed.rule(service.id, payout_kind=PayoutKind.PERCENT, payout_value=150)
    seed.subscription(service, staff_id=staff)

    result = run_monthly_calculation(db, PERIOD, now)

    assert _statement(db, staff) is None
    assert result.errors[0]["error"] == "invalid_input"
    assert result.errors[0]["context"]["field"] == "payout_value"


def test_staff_without_clients_any_more_is_reset(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service()
    seed.rule(service.id)
    sub = seed.subscription(service, staff_id=staff)
    run_monthly_calculation(db, PERIOD, now)
    assert _statement(db, staff).total_payout_minor == 21000

    sub = db.query(Subscription).filter(Subscription.id == sub.id).one()
    sub.status = SubscriptionStatus.CANCELLED
    db.commit()

    result = run_monthly_calculation(db, PERIOD, now + timedelta(hours=1))
    statement = _statement(db, staff)
    assert result.statements_reset == 1
    assert statement.total_payout_minor == 0
    assert statement.total_clients == 0


def test_run_lock_blocks_concurrent_calculation(db, now):
    db.add(JobRunLock(job_name=MONTHLY_PAYOUT_JOB, period_key=PERIOD, owner="other", acquired_at=now))
    db.commit()
    with pytest.raises(JobAlreadyRunningError):
        run_monthly_calculation(db, PERIOD, now)
    # other periods are independent
    run_monthly_calculation(db, "2026-02", now)


def test_stale_run_lock_is_taken_over(db, seed, now):
    db.add(JobRunLock(job_name=MONTHLY_PAYOUT_JOB, period_key=PERIOD, owner="crashed",
                      acquired_at=now - timedelta(hours=3)))
    db.commit()
    run_monthly_calculation(db, PERIOD, now)
    assert db.query(JobRunLock).count() == 0


@pytest.mark.parametrize("period", ["2026-13", "2026-3", "March", "2026-00"])
def test_malformed_period_is_rejected(db, period, now):
    with pytest.raises(InvalidInputError) as exc:
        run_monthly_calculation(db, period, now)
    assert exc.value.field == "period"


def test_run_is_audited(db, seed, now):
    service = seed.service()
    seed.subscription(service, staff_id=uuid.uuid4())
    run_monthly_calculation(db, PERIOD, now, actor=ADMIN)

    entry = db.query(AuditLog).filter(AuditLog.action == AuditAction.PAYOUT_CALCULATION_RUN).one()
    assert entry.target_type == "payout_period"
    assert entry.target_id == PERIOD
    assert entry.actor_id == "admin-1"
    assert entry.after_state["coaches_processed"] == 1
    assert entry.after_state["total_coach_payout"] == "21.000"


def test_mark_paid_checks_version_and_is_idempotent(db, seed, now):
    staff = uuid.uuid4()
    service = seed.service()
    seed.subscription(service, staff_id=staff)
    run_monthly_calculation(db, PERIOD, now)
    statement = _statement(db, staff)

    with pytest.raises(ConcurrencyConflictError):
        mark_statement_paid(db, statement.id, ADMIN, now=now, expected_version=statement.version + 1)

    paid = mark_statement_paid(db, statement.id, ADMIN, now=now, expected_version=statement.version)
    assert paid.is_paid is True
    assert paid.paid_by == "admin-1"
    mark_statement_paid(db, statement.id, ADMIN, now=now + timedelta(days=1))
    assert get_statement(db, statement.id).paid_at == now
    assert db.query(AuditLog).filter(AuditLog.action == AuditAction.STATEMENT_MARKED_PAID).count() == 1


def test_list_statements_filters(db, seed, now):
    paid_staff, open_staff = uuid.uuid4(), uuid.uuid4()
    service = seed.service()
    seed.subscription(service, staff_id=paid_staff)
    seed.subscription(service, staff_id=open_staff)
    run_monthly_calculation(db, PERIOD, now)
    mark_statement_paid(db, _statement(db, paid_staff).id, ADMIN, now=now)

    assert len(list_statements(db, period=PERIOD)) == 2
    assert [s.staff_id for s in list_statements(db, is_paid=False)] == [open_staff]
    assert [s.staff_id for s in list_statements(db, staff_id=paid_staff)] == [paid_staff]
    with pytest.raises(NotFoundError):
        get_statement(db, uuid.uuid4())
