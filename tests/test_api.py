"""HTTP surface: actor headers, error bodies and an end-to-end billing and payout flow"""
import uuid
from app.models import SubscriptionStatus

ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}
COACH_HEADERS = {"X-Actor-Id": "coach-7", "X-Actor-Role": "coach"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "currency": "KWD"}


def test_missing_actor_is_unauthorized(client):
    response = client.post("/payouts/calculate", params={"period": "2026-03"})
    assert response.status_code == 401


def test_non_admin_is_forbidden(client):
    response = client.post("/payouts/calculate", params={"period": "2026-03"}, headers=COACH_HEADERS)
    assert response.status_code == 403
    assert response.json()["detail"] == "Admin access required"


def test_non_admin_can_read_a_subscription(client, seed):
    sub = seed.subscription(seed.service())
    response = client.get(f"/billing/subscriptions/{sub.id}", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "active"


def test_unknown_subscription_is_404(client):
    response = client.get(f"/billing/subscriptions/{uuid.uuid4()}", headers=ADMIN_HEADERS)
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_invalid_input_names_the_field(client, seed):
    sub = seed.subscription(seed.service())
    response = client.post(
        f"/billing/subscriptions/{sub.id}/payments",
        json={"amount": "-5", "reference": "ch_neg"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid_input"
    assert body["context"]["field"] == "amount"
    assert body["context"]["subscription_id"] == str(sub.id)


def test_invalid_rule_names_the_field(client, seed):
    service = seed.service()
    response = client.put(
        f"/pricing/payout-rules/{service.id}",
        json={"payout_kind": "percent", "payout_value": 140},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["context"]["field"] == "payout_value"


def test_bad_period_is_400(client):
    response = client.post("/payouts/calculate", params={"period": "2026-13"}, headers=ADMIN_HEADERS)
    assert response.status_code == 400
    assert response.json()["context"]["field"] == "period"


def test_cancelled_subscription_rejects_payment(client, seed):
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.CANCELLED)
    response = client.post(
        f"/billing/subscriptions/{sub.id}/mark-paid",
        json={"amount": "30"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


def test_stale_version_is_409(client, seed):
    sub = seed.subscription(seed.service())
    response = client.post(
        f"/billing/subscriptions/{sub.id}/cancel",
        json={"expected_version": 99},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 409
    assert response.json()["error"] == "concurrency_conflict"


def test_resolved_rule_reports_fallback(client, seed):
    addon = seed.addon()
    response = client.get(f"/pricing/payout-rules/{addon.id}/resolved", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["is_fallback"] is True
    assert body["recipient"] == "addon_staff"
    assert body["payout"] == {"kind": "percent", "value": "70.0"}


def test_fixed_rule_values_are_major_units(client, seed):
    service = seed.service()
    response = client.put(
        f"/pricing/payout-rules/{service.id}",
        json={"payout_kind": "fixed", "payout_value": "12.5"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["payout_value"] == 12.5
    resolved = client.get(f"/pricing/payout-rules/{service.id}/resolved", headers=ADMIN_HEADERS).json()
    assert resolved["payout"] == {"kind": "fixed", "value": 12500}


def test_billing_and_payout_flow(client):
    staff_id = str(uuid.uuid4())
    subscriber_id = str(uuid.uuid4())

    response = client.post(
        "/pricing/catalog",
        json={"code": "pt-online", "name": "Online coaching", "category": "one_to_one", "price": "30.000"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    service_id = response.json()["id"]
    assert response.json()["delivery_mode"] == "online"

    response = client.put(
        f"/pricing/payout-rules/{service_id}",
        json={"payout_kind": "percent", "payout_value": 70, "platform_fee_kind": "percent", "platform_fee_value": 30},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200

    response = client.post(
        "/billing/subscriptions",
        json={"subscriber_id": subscriber_id, "service_id": service_id, "staff_id": staff_id},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    subscription_id = response.json()["id"]
    assert response.json()["status"] == "pending"

    response = client.post(
        f"/billing/subscriptions/{subscription_id}/payments",
        json={"amount": "30.000", "reference": "ch_001"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    payment = response.json()
    assert payment["applied"] is True
    assert payment["previous_status"] == "pending"
    assert payment["subscription"]["status"] == "active"
    assert payment["payment"]["amount"] == 30.0

    replay = client.post(
        f"/billing/subscriptions/{subscription_id}/payments",
        json={"amount": "30.000", "reference": "ch_001"},
        headers=ADMIN_HEADERS,
    ).json()
    assert replay["applied"] is False
    assert replay["subscription"]["next_billing_date"] == payment["subscription"]["next_billing_date"]

    response = client.post("/payouts/calculate", params={"period": "2026-03"}, headers=ADMIN_HEADERS)
    assert response.status_code == 200
    run = response.json()
    assert run["coaches_processed"] == 1
    assert run["gross_revenue"] == 30.0
    assert run["total_coach_payout"] == 21.0
    assert run["platform_retained"] == 9.0
    assert run["fallback_rule_targets"] == []

    statements = client.get(
        "/payouts/statements", params={"period": "2026-03"}, headers=ADMIN_HEADERS,
    ).json()
    assert len(statements) == 1
    statement = statements[0]
    assert statement["staff_id"] == staff_id
    assert statement["base_payout"] == 21.0
    assert statement["platform_fee"] == 9.0
    assert statement["client_breakdown"]["onetoone_online"] == 1

    response = client.post(
        f"/payouts/statements/{statement['id']}/mark-paid",
        json={"expected_version": statement["version"]},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["is_paid"] is True
    assert response.json()["paid_by"] == "admin-1"

    rerun = client.post("/payouts/calculate", params={"period": "2026-03"}, headers=ADMIN_HEADERS).json()
    assert len(rerun["conflicts"]) == 1

    trail = client.get(
        "/audit", params={"target_type": "subscription", "target_id": subscription_id}, headers=ADMIN_HEADERS,
    ).json()
    assert [entry["action"] for entry in trail] == ["subscription_created", "subscription_activated"]
    assert all(entry["actor_id"] == "admin-1" for entry in trail)


def test_exemption_and_reminder_endpoints(client, seed):
    subscriber = uuid.uuid4()
    sub = seed.subscription(seed.service(), status=SubscriptionStatus.INACTIVE, subscriber_id=subscriber)

    response = client.post(
        f"/billing/subscribers/{subscriber}/toggle-exempt",
        json={"reason": "sponsored"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["is_exempt"] is True
    assert response.json()["reactivated_subscription_ids"] == [str(sub.id)]

    detail = client.get(f"/billing/subscriptions/{sub.id}", headers=ADMIN_HEADERS).json()
    assert detail["status"] == "active"
    assert detail["payment_exempt"] is True

    response = client.post(f"/billing/subscriptions/{sub.id}/send-reminder", headers=ADMIN_HEADERS)
    assert response.status_code == 201
    assert response.json()["kind"] == "manual"
    assert response.json()["status"] == "pending"

    response = client.post("/billing/reminders/dispatch", headers=ADMIN_HEADERS)
    assert response.json() == {"sent": 0, "failed": 0, "skipped": 0, "retrying": 0}
