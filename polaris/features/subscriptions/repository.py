"""
Subscription repository.

Durable store for subscriptions, payments and user profiles. Every method
takes the caller's Session so that webhook processing can run the ledger
claim, the row lock and the transition write in one transaction.

Subscription rows carry a version column; transitions are written with
UPDATE ... WHERE version = :expected so two writers can never interleave.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from polaris.core.database import subscriptions, payments, user_profiles
from polaris.features.subscriptions.state_machine import (
    NON_TERMINAL_STATUSES,
    Transition,
    as_utc,
)
from polaris.features.subscriptions.tiers import family_tier_values

_DATETIME_FIELDS = (
    "current_start",
    "current_end",
    "next_billing_date",
    "charge_at",
    "start_at",
    "end_at",
    "ended_at",
    "cancelled_at",
    "created_at",
    "updated_at",
)


class RepositoryError(Exception):
    """Raised when a repository write fails."""
    pass


class ConcurrentUpdateError(RepositoryError):
    """Raised when a subscription row changed between read and write."""
    pass


@dataclass
class SubscriptionRecord:
    id: str
    user_id: str
    razorpay_subscription_id: str
    razorpay_plan_id: str
    subscription_tier: str
    billing_cycle: str
    status: str
    plan_name: str
    plan_amount: int
    plan_currency: str
    version: int
    razorpay_customer_id: Optional[str] = None
    seats: Optional[int] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: int = 0
    remaining_count: Optional[int] = None
    short_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def snapshot(self) -> Dict[str, Any]:
        """Monotonic fields the state machine guards against regression."""
        return {"paid_count": self.paid_count, "current_end": self.current_end}


def _record_from_row(row) -> SubscriptionRecord:
    m = dict(row._mapping)
    for name in _DATETIME_FIELDS:
        m[name] = as_utc(m.get(name))
    m["metadata"] = dict(m.get("metadata") or {})
    m["paid_count"] = m.get("paid_count") or 0
    return SubscriptionRecord(**m)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionRepository(Protocol):
    """Storage interface shared by the orchestrator and the webhook pipeline."""

    def find_open_in_family(self, session: Session, user_id: str, tiers: Iterable[str]) -> Optional[SubscriptionRecord]: ...

    def get_by_external_id(self, session: Session, external_id: str, *, for_update: bool = False) -> Optional[SubscriptionRecord]: ...

    def find_for_user(self, session: Session, user_id: str, external_id: str) -> Optional[SubscriptionRecord]: ...

    def latest_open_for_user(self, session: Session, user_id: str) -> Optional[SubscriptionRecord]: ...

    def insert_subscription(self, session: Session, **values: Any) -> SubscriptionRecord: ...

    def apply_transition(self, session: Session, record: SubscriptionRecord, transition: Transition) -> SubscriptionRecord: ...

    def merge_metadata(self, session: Session, record: SubscriptionRecord, patch: Dict[str, Any]) -> SubscriptionRecord: ...

    def insert_payment(self, session: Session, **values: Any) -> bool: ...

    def upsert_user_profile(self, session: Session, user_id: str, **values: Any) -> None: ...


class SqlSubscriptionRepository:
    """SQLAlchemy Core implementation of SubscriptionRepository."""

    def find_open_in_family(self, session: Session, user_id: str, tiers: Iterable[str]) -> Optional[SubscriptionRecord]:
        """Most recent non-terminal subscription of the user in any of the given tiers."""
        row = session.execute(
            select(subscriptions)
            .where(
                and_(
                    subscriptions.c.user_id == user_id,
                    subscriptions.c.subscription_tier.in_(list(tiers)),
                    subscriptions.c.status.in_(sorted(s.value for s in NON_TERMINAL_STATUSES)),
                )
            )
            .order_by(subscriptions.c.created_at.desc())
            .limit(1)
        ).first()
        return _record_from_row(row) if row else None

    def get_by_external_id(self, session: Session, external_id: str, *, for_update: bool = False) -> Optional[SubscriptionRecord]:
        stmt = select(subscriptions).where(subscriptions.c.razorpay_subscription_id == external_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = session.execute(stmt).first()
        return _record_from_row(row) if row else None

    def find_for_user(self, session: Session, user_id: str, external_id: str) -> Optional[SubscriptionRecord]:
        row = session.execute(
            select(subscriptions).where(
                and_(
                    subscriptions.c.user_id == user_id,
                    subscriptions.c.razorpay_subscription_id == external_id,
                )
            )
        ).first()
        return _record_from_row(row) if row else None

    def latest_open_for_user(self, session: Session, user_id: str) -> Optional[SubscriptionRecord]:
        row = session.execute(
            select(subscriptions)
            .where(
                and_(
                    subscriptions.c.user_id == user_id,
                    subscriptions.c.status.in_(sorted(s.value for s in NON_TERMINAL_STATUSES)),
                )
            )
            .order_by(subscriptions.c.created_at.desc())
            .limit(1)
            .with_for_update()
        ).first()
        return _record_from_row(row) if row else None

    def insert_subscription(self, session: Session, **values: Any) -> SubscriptionRecord:
        """
        Insert a new subscription row.

        Raises:
            RepositoryError: If the insert fails (constraint or connectivity)
        """
        now = _now()
        row_values = {
            "id": str(uuid.uuid4()),
            "status": "created",
            "paid_count": 0,
            "version": 1,
            "created_at": now,
            "updated_at": now,
            **values,
        }
        try:
            session.execute(insert(subscriptions).values(**row_values))
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == row_values["id"])
            ).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to insert subscription: {e}") from e
        return _record_from_row(row)

    def _write(self, session: Session, record: SubscriptionRecord, values: Dict[str, Any]) -> SubscriptionRecord:
        result = session.execute(
            update(subscriptions)
            .where(
                and_(
                    subscriptions.c.id == record.id,
                    subscriptions.c.version == record.version,
                )
            )
            .values(**values, version=record.version + 1, updated_at=_now())
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"Subscription {record.razorpay_subscription_id} changed concurrently (expected version {record.version})"
            )
        row = session.execute(select(subscriptions).where(subscriptions.c.id == record.id)).first()
        return _record_from_row(row)

    def apply_transition(self, session: Session, record: SubscriptionRecord, transition: Transition) -> SubscriptionRecord:
        """
        Persist a state machine transition with an optimistic version check.

        Transitions with an error or no effect are not written.

        Raises:
            ConcurrentUpdateError: If the row's version moved since it was read
        """
        if not transition.has_effect:
            return record
        values = dict(transition.field_updates)
        values["status"] = transition.new_status.value
        return self._write(session, record, values)

    def merge_metadata(self, session: Session, record: SubscriptionRecord, patch: Dict[str, Any]) -> SubscriptionRecord:
        merged = {**record.metadata, **patch}
        return self._write(session, record, {"metadata": merged})

    def insert_payment(self, session: Session, **values: Any) -> bool:
        """
        Insert an immutable payment row.

        Returns:
            True if inserted, False if the payment id was already recorded
        """
        try:
            with session.begin_nested():
                session.execute(insert(payments).values(created_at=_now(), **values))
            return True
        except IntegrityError:
            return False

    def upsert_user_profile(self, session: Session, user_id: str, **values: Any) -> None:
        existing = session.execute(
            select(user_profiles.c.user_id).where(user_profiles.c.user_id == user_id)
        ).first()

        if existing:
            session.execute(
                update(user_profiles)
                .where(user_profiles.c.user_id == user_id)
                .values(**values, updated_at=_now())
            )
        else:
            session.execute(
                insert(user_profiles).values(user_id=user_id, updated_at=_now(), **values)
            )


def is_current_subscription(session: Session, repo: SubscriptionRepository, record: SubscriptionRecord) -> bool:
    """
    True when record is the subscription the user's profile should follow.

    That is the newest open subscription in record's tier family, or record
    itself once nothing in the family is open. After an upgrade the older
    subscription stops driving the profile.
    """
    current = repo.find_open_in_family(session, record.user_id, family_tier_values(record.subscription_tier))
    return current is None or current.id == record.id
