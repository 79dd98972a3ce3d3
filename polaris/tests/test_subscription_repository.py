"""Tests for the SQL subscription repository against the test database."""
from datetime import datetime, timezone

import pytest

from polaris.core.database import get_db_session
from polaris.features.subscriptions.repository import (
    ConcurrentUpdateError,
    SqlSubscriptionRepository,
    is_current_subscription,
)
from polaris.features.subscriptions.state_machine import EventKind, apply

repo = SqlSubscriptionRepository()


def _seed(external_id="sub_123", *, tier="navigator", status="created", created_at=None):
    values = {"created_at": created_at} if created_at else {}
    with get_db_session() as session:
        return repo.insert_subscription(
            session,
            user_id="user_alice",
            razorpay_subscription_id=external_id,
            razorpay_customer_id="cust_1",
            razorpay_plan_id=f"plan_{tier}_m",
            subscription_tier=tier,
            billing_cycle="monthly",
            status=status,
            plan_name=f"{tier} (monthly)",
            plan_amount=3900,
            plan_currency="INR",
            metadata={},
            **values,
        )


def _read(external_id="sub_123"):
    with get_db_session() as session:
        return repo.get_by_external_id(session, external_id)


def _activation(record):
    payload = {"subscription": {"entity": {"id": record.razorpay_subscription_id}}}
    return apply(record.status, EventKind.SUBSCRIPTION_ACTIVATED, payload, snapshot=record.snapshot())


def test_transition_bumps_version():
    record = _seed()

    with get_db_session() as session:
        updated = repo.apply_transition(session, record, _activation(record))

    assert updated.status == "active"
    assert updated.version == record.version + 1


def test_stale_record_raises_concurrent_update():
    stale = _seed()
    with get_db_session() as session:
        repo.merge_metadata(session, stale, {"note": "written elsewhere"})

    with pytest.raises(ConcurrentUpdateError):
        with get_db_session() as session:
            repo.apply_transition(session, stale, _activation(stale))

    row = _read()
    assert row.status == "created"
    assert row.version == stale.version + 1
    assert row.metadata == {"note": "written elsewhere"}


def test_stale_metadata_merge_is_rejected():
    stale = _seed()
    with get_db_session() as session:
        repo.apply_transition(session, stale, _activation(stale))

    with pytest.raises(ConcurrentUpdateError):
        with get_db_session() as session:
            repo.merge_metadata(session, stale, {"note": "late"})

    assert _read().metadata == {}


def test_newest_open_subscription_is_current():
    older = _seed("sub_nav", status="active", created_at=datetime(2023, 10, 1, tzinfo=timezone.utc))
    newer = _seed("sub_voy", tier="voyager", created_at=datetime(2023, 10, 15, tzinfo=timezone.utc))

    with get_db_session() as session:
        assert is_current_subscription(session, repo, newer)
        assert not is_current_subscription(session, repo, older)


def test_closed_subscription_is_current_once_family_is_empty():
    record = _seed(status="cancelled")

    with get_db_session() as session:
        assert is_current_subscription(session, repo, record)


def test_other_family_does_not_supersede():
    record = _seed("sub_nav", status="active", created_at=datetime(2023, 10, 1, tzinfo=timezone.utc))
    _seed("sub_crew", tier="crew", created_at=datetime(2023, 10, 15, tzinfo=timezone.utc))

    with get_db_session() as session:
        assert is_current_subscription(session, repo, record)
