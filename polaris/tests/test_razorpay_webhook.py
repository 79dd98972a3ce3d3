"""
Tests for POST /api/webhooks/razorpay.

Deliveries are signed with the test webhook secret from conftest and run
through the real pipeline against the test database.
"""
import hashlib
import hmac
import json
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from polaris.core.config import settings
from polaris.core.database import get_db_session, payments, subscriptions, user_profiles, webhook_events
from polaris.features.subscriptions.repository import SqlSubscriptionRepository
from polaris.features.subscriptions.webhooks import MASKED
from polaris.main import app
from polaris.tests.mocks import signed_webhook

URL = "/api/webhooks/razorpay"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def post_event(client, webhook_secret):
    def _post(event, *, event_id=None):
        body, headers = signed_webhook(event, webhook_secret, event_id=event_id)
        return client.post(URL, content=body, headers=headers)
    return _post


def _seed(external_id="sub_123", *, status="active", user_id="user_alice", paid_count=0, tier="navigator", **values):
    with get_db_session() as session:
        return SqlSubscriptionRepository().insert_subscription(
            session,
            user_id=user_id,
            razorpay_subscription_id=external_id,
            razorpay_customer_id="cust_1",
            razorpay_plan_id=f"plan_{tier}_m",
            subscription_tier=tier,
            billing_cycle="monthly",
            status=status,
            plan_name=f"{tier} (monthly)",
            plan_amount=3900,
            plan_currency="INR",
            paid_count=paid_count,
            metadata={},
            **values,
        )


def _subscription(external_id="sub_123"):
    with get_db_session() as session:
        return session.execute(
            select(subscriptions).where(subscriptions.c.razorpay_subscription_id == external_id)
        ).first()


def _ledger(event_id=None):
    with get_db_session() as session:
        stmt = select(webhook_events)
        if event_id:
            stmt = stmt.where(webhook_events.c.event_id == event_id)
        return session.execute(stmt).fetchall()


def _payments():
    with get_db_session() as session:
        return session.execute(select(payments)).fetchall()


def subscription_event(event_type, sub_id="sub_123", **entity):
    return {
        "entity": "event",
        "event": event_type,
        "contains": ["subscription"],
        "payload": {"subscription": {"entity": {"id": sub_id, **entity}}},
        "created_at": 1698576000,
    }


def payment_event(event_type, payment_id="pay_1", amount=3900, currency="INR", **entity):
    return {
        "entity": "event",
        "event": event_type,
        "contains": ["payment"],
        "payload": {
            "payment": {
                "entity": {"id": payment_id, "amount": amount, "currency": currency, **entity}
            }
        },
    }


# ---- authentication and parsing ----

def test_missing_signature_is_rejected(client):
    resp = client.post(URL, content=b'{"event": "subscription.activated"}')
    assert resp.status_code == 401
    assert resp.json() == {"error": "Missing webhook signature"}
    assert _ledger() == []


def test_invalid_signature_is_rejected(client, webhook_secret):
    body, headers = signed_webhook(subscription_event("subscription.activated"), webhook_secret)
    tampered = body.replace(b"sub_123", b"sub_999")

    resp = client.post(URL, content=tampered, headers=headers)

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid webhook signature"}
    assert _ledger() == []


def test_unconfigured_secret_is_a_server_error(client, monkeypatch):
    monkeypatch.setattr(settings, "RAZORPAY_WEBHOOK_SECRET", None)
    resp = client.post(URL, content=b"{}", headers={"x-razorpay-signature": "abc"})
    assert resp.status_code == 500


def test_malformed_json_is_rejected(client, webhook_secret):
    body = b"{not json"
    signature = hmac.new(webhook_secret.encode(), body, hashlib.sha256).hexdigest()
    resp = client.post(URL, content=body, headers={"x-razorpay-signature": signature})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON"}


def test_missing_event_type_is_rejected(post_event):
    resp = post_event({"payload": {}})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid webhook payload"}


# ---- subscription transitions ----

def test_halted_subscription_reactivated_with_new_period(post_event):
    _seed(status="halted")

    resp = post_event(
        subscription_event("subscription.activated", current_start=1698576000, current_end=1701254400),
        event_id="evt_activate_1",
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    row = _subscription()
    assert row.status == "active"
    assert row.current_start.strftime("%Y-%m-%d %H:%M") == "2023-10-29 10:40"
    assert row.current_end.strftime("%Y-%m-%d %H:%M") == "2023-11-29 10:40"
    assert row.version == 2

    (entry,) = _ledger("evt_activate_1")
    assert entry.processed is True
    assert entry.processing_status == "processed"
    assert entry.razorpay_entity_id == "sub_123"

    with get_db_session() as session:
        profile = session.execute(select(user_profiles).where(user_profiles.c.user_id == "user_alice")).first()
    assert profile.subscription_status == "active"


def test_replayed_event_applies_once(post_event):
    _seed(status="created")
    event = subscription_event("subscription.activated", current_end=1701254400)

    with patch.object(
        SqlSubscriptionRepository,
        "apply_transition",
        autospec=True,
        side_effect=SqlSubscriptionRepository.apply_transition,
    ) as spy:
        first = post_event(event, event_id="evt_dup")
        second = post_event(event, event_id="evt_dup")

    assert first.json() == {"received": True}
    assert second.status_code == 200
    assert second.json() == {"duplicate": True}
    assert spy.call_count == 1
    assert len(_ledger("evt_dup")) == 1
    assert _subscription().version == 2


def test_body_id_is_used_when_header_missing(post_event):
    _seed(status="created")
    event = {**subscription_event("subscription.authenticated"), "id": "evt_body_id"}

    post_event(event)
    again = post_event(event)

    assert again.json() == {"duplicate": True}
    assert len(_ledger("evt_body_id")) == 1


def test_derived_id_still_deduplicates(post_event):
    _seed(status="created")
    event = subscription_event("subscription.authenticated")

    post_event(event)
    again = post_event(event)

    assert again.json() == {"duplicate": True}
    (entry,) = _ledger()
    assert entry.event_id.startswith("derived_")


def test_unknown_event_is_acknowledged(post_event):
    resp = post_event({"event": "foo.bar", "payload": {}}, event_id="evt_unknown")

    assert resp.status_code == 200
    body = resp.json()
    assert body["received"] is True
    assert "Unknown event type" in body["warning"]
    (entry,) = _ledger("evt_unknown")
    assert entry.processed is True


def test_subscription_not_found_is_acknowledged(post_event):
    resp = post_event(subscription_event("subscription.charged", sub_id="sub_missing"), event_id="evt_nf")

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "warning": "Subscription not found"}
    (entry,) = _ledger("evt_nf")
    assert entry.processing_status == "skipped"
    assert entry.processed is False


def test_event_after_terminal_status_is_skipped(post_event):
    _seed(status="cancelled")

    resp = post_event(subscription_event("subscription.activated"), event_id="evt_late")

    assert resp.status_code == 200
    assert "Invalid transition" in resp.json()["warning"]
    assert _subscription().status == "cancelled"
    (entry,) = _ledger("evt_late")
    assert entry.processing_status == "skipped"


def test_subscription_event_without_id_is_rejected(post_event):
    event = {"event": "subscription.activated", "payload": {"subscription": {"entity": {"status": "active"}}}}

    resp = post_event(event, event_id="evt_no_sub")

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid subscription data"}
    (entry,) = _ledger("evt_no_sub")
    assert entry.processing_status == "rejected"
    assert entry.processed is False


def test_stale_paid_count_is_kept_and_flagged(post_event):
    _seed(status="active", paid_count=5)

    resp = post_event(subscription_event("subscription.charged", paid_count=3), event_id="evt_stale")

    assert resp.status_code == 200
    assert _subscription().paid_count == 5
    (entry,) = _ledger("evt_stale")
    assert entry.processed is True
    assert any("paid_count" in w for w in entry.warnings)


def test_charged_event_records_payment(post_event):
    _seed(status="active")
    event = subscription_event("subscription.charged", paid_count=2)
    event["payload"]["payment"] = {"entity": {"id": "pay_charge_1", "amount": 3900, "currency": "INR", "method": "card"}}

    post_event(event, event_id="evt_charged")

    (payment,) = _payments()
    assert payment.razorpay_payment_id == "pay_charge_1"
    assert payment.status == "captured"
    assert payment.razorpay_subscription_id == "sub_123"
    assert payment.user_id == "user_alice"


# ---- payment events ----

@pytest.mark.parametrize("amount,currency", [(-1000, "INR"), (3900, "INVALID"), ("3900", "INR"), (None, "INR")])
def test_malformed_payment_rejected_before_any_payment_row(post_event, amount, currency):
    resp = post_event(payment_event("payment.captured", amount=amount, currency=currency), event_id="evt_bad_pay")

    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid payment data")
    assert _payments() == []
    (entry,) = _ledger("evt_bad_pay")
    assert entry.processed is False
    assert entry.processing_status == "rejected"


def test_captured_payment_is_recorded_once(post_event):
    _seed(status="active")
    event = payment_event("payment.captured", subscription_id="sub_123", method="upi")

    post_event(event, event_id="evt_pay_1")
    # Same payment under a different event id
    post_event(event, event_id="evt_pay_2")

    (payment,) = _payments()
    assert payment.amount == 3900
    assert payment.user_id == "user_alice"
    assert payment.failure_reason is None
    assert len(_ledger()) == 2


def test_failed_payment_keeps_reason(post_event):
    post_event(
        payment_event("payment.failed", payment_id="pay_f", error_description="Card declined by bank"),
        event_id="evt_pay_failed",
    )

    (payment,) = _payments()
    assert payment.status == "failed"
    assert payment.failure_reason == "Card declined by bank"


def test_authorized_payment_is_acknowledged_only(post_event):
    resp = post_event(payment_event("payment.authorized"), event_id="evt_auth")
    assert resp.json() == {"received": True}
    assert _payments() == []


def test_stored_payload_is_sanitized(post_event):
    event = payment_event(
        "payment.failed",
        email="alice@example.com",
        vpa="alice@upi",
        card={"last4": "4242", "network": "Visa"},
        description="<script>alert(1)</script>",
    )

    post_event(event, event_id="evt_sanitize")

    (entry,) = _ledger("evt_sanitize")
    stored = entry.payload["payload"]["payment"]["entity"]
    assert stored["email"] == MASKED
    assert stored["vpa"] == MASKED
    assert stored["card"] == MASKED
    assert stored["description"] == "&lt;script&gt;alert(1)&lt;/script&gt;"
    assert "alice@example.com" not in json.dumps(entry.payload)


# ---- failures ----

def test_unexpected_error_is_recorded_and_retryable(post_event):
    _seed(status="created")
    event = subscription_event("subscription.activated", current_end=1701254400)

    with patch.object(SqlSubscriptionRepository, "apply_transition", side_effect=RuntimeError("boom")):
        failed = post_event(event, event_id="evt_retry")

    assert failed.status_code == 500
    assert failed.json() == {"error": "Webhook processing failed"}
    assert "boom" not in failed.text
    (entry,) = _ledger("evt_retry")
    assert entry.processing_status == "failed"
    assert entry.processed is False
    assert _subscription().status == "created"

    retried = post_event(event, event_id="evt_retry")

    assert retried.status_code == 200
    assert retried.json() == {"received": True}
    assert _subscription().status == "active"
    (entry,) = _ledger("evt_retry")
    assert entry.processing_status == "processed"
    assert entry.processed is True


def test_stale_version_fails_delivery_until_redelivered(post_event):
    _seed(status="created")
    event = subscription_event("subscription.activated", current_end=1701254400)
    real_get = SqlSubscriptionRepository.get_by_external_id

    def stale_read(self, session, external_id, *, for_update=False):
        record = real_get(self, session, external_id, for_update=for_update)
        # Another writer bumped the row after this read
        return replace(record, version=record.version - 1) if record else None

    with patch.object(SqlSubscriptionRepository, "get_by_external_id", autospec=True, side_effect=stale_read):
        failed = post_event(event, event_id="evt_race")

    assert failed.status_code == 500
    (entry,) = _ledger("evt_race")
    assert entry.processing_status == "failed"
    assert entry.error.startswith("ConcurrentUpdateError")
    row = _subscription()
    assert row.status == "created"
    assert row.version == 1

    retried = post_event(event, event_id="evt_race")

    assert retried.json() == {"received": True}
    assert _subscription().status == "active"
    (entry,) = _ledger("evt_race")
    assert entry.processing_status == "processed"


def test_unsigned_delivery_never_reaches_pipeline(client):
    with patch("polaris.api.webhooks.ingest_webhook") as ingest:
        resp = client.post(URL, content=b'{"event": "subscription.activated"}')

    assert resp.status_code == 401
    assert resp.json() == {"error": "Missing webhook signature"}
    ingest.assert_not_called()


# ---- profile follows the current subscription ----

def _profile(user_id="user_alice"):
    with get_db_session() as session:
        return session.execute(select(user_profiles).where(user_profiles.c.user_id == user_id)).first()


def _seed_upgrade(voyager_status="created"):
    _seed("sub_nav", tier="navigator", created_at=datetime(2023, 10, 1, tzinfo=timezone.utc))
    _seed("sub_voy", tier="voyager", status=voyager_status, created_at=datetime(2023, 10, 15, tzinfo=timezone.utc))


def test_cancelling_superseded_subscription_keeps_profile(post_event):
    _seed_upgrade()
    post_event(subscription_event("subscription.activated", sub_id="sub_voy"), event_id="evt_voy_active")
    assert _profile().subscription_status == "active"

    resp = post_event(subscription_event("subscription.cancelled", sub_id="sub_nav"), event_id="evt_nav_cancel")

    assert resp.json() == {"received": True}
    assert _subscription("sub_nav").status == "cancelled"
    assert _profile().subscription_status == "active"
    (entry,) = _ledger("evt_nav_cancel")
    assert entry.processing_status == "processed"


def test_abandoned_upgrade_keeps_profile_on_prior_subscription(post_event):
    _seed_upgrade()
    with get_db_session() as session:
        SqlSubscriptionRepository().upsert_user_profile(session, "user_alice", subscription_status="active")

    post_event(subscription_event("subscription.cancelled", sub_id="sub_voy"), event_id="evt_voy_cancel")

    assert _subscription("sub_voy").status == "cancelled"
    assert _profile().subscription_status == "active"


def test_last_open_subscription_still_drives_profile(post_event):
    _seed_upgrade(voyager_status="active")
    post_event(subscription_event("subscription.cancelled", sub_id="sub_nav"), event_id="evt_nav_cancel")

    post_event(subscription_event("subscription.cancelled", sub_id="sub_voy"), event_id="evt_voy_cancel")

    assert _profile().subscription_status == "cancelled"
