"""
Subscription state machine.

Pure transition logic shared by the creation orchestrator, the webhook
pipeline and the cancel / verify routes: (current status, event kind,
event payload) -> Transition. No I/O happens here.

Event kinds are a closed enumeration; anything the processor sends that we
do not know maps to EventKind.UNKNOWN and is acknowledged without a change.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union


class SubscriptionStatus(str, Enum):
    CREATED = "created"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    PENDING = "pending"
    HALTED = "halted"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset({
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.COMPLETED,
    SubscriptionStatus.EXPIRED,
})

NON_TERMINAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    s for s in SubscriptionStatus if s not in TERMINAL_STATUSES
)


class EventFamily(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"
    UNKNOWN = "unknown"


class EventKind(str, Enum):
    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_PENDING = "subscription.pending"
    SUBSCRIPTION_HALTED = "subscription.halted"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "EventKind":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN

    @property
    def family(self) -> EventFamily:
        if self is EventKind.UNKNOWN:
            return EventFamily.UNKNOWN
        if self.value.startswith("payment."):
            return EventFamily.PAYMENT
        return EventFamily.SUBSCRIPTION


S = SubscriptionStatus

# event kind -> (target status, statuses it may be entered from)
TRANSITIONS: Dict[EventKind, Tuple[SubscriptionStatus, FrozenSet[SubscriptionStatus]]] = {
    EventKind.SUBSCRIPTION_AUTHENTICATED: (S.AUTHENTICATED, frozenset({S.CREATED})),
    EventKind.SUBSCRIPTION_ACTIVATED: (S.ACTIVE, frozenset({S.CREATED, S.AUTHENTICATED, S.PENDING, S.HALTED, S.PAUSED})),
    EventKind.SUBSCRIPTION_CHARGED: (S.ACTIVE, frozenset({S.CREATED, S.AUTHENTICATED, S.PENDING, S.HALTED})),
    EventKind.SUBSCRIPTION_PENDING: (S.PENDING, frozenset({S.AUTHENTICATED, S.ACTIVE})),
    EventKind.SUBSCRIPTION_HALTED: (S.HALTED, frozenset({S.ACTIVE, S.PENDING})),
    EventKind.SUBSCRIPTION_PAUSED: (S.PAUSED, frozenset({S.ACTIVE})),
    EventKind.SUBSCRIPTION_RESUMED: (S.ACTIVE, frozenset({S.PAUSED})),
    EventKind.SUBSCRIPTION_COMPLETED: (S.COMPLETED, frozenset({S.ACTIVE, S.PENDING, S.HALTED})),
    EventKind.SUBSCRIPTION_CANCELLED: (
        S.CANCELLED,
        frozenset({S.CREATED, S.AUTHENTICATED, S.ACTIVE, S.PENDING, S.HALTED, S.PAUSED}),
    ),
}

# Fields that only ever move forward
MONOTONIC_FIELDS = ("paid_count", "current_end")
BILLING_PERIOD_FIELDS = ("current_start", "current_end", "next_billing_date")


@dataclass
class Transition:
    event_kind: EventKind
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    field_updates: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status_changed(self) -> bool:
        return self.ok and self.new_status != self.previous_status

    @property
    def has_effect(self) -> bool:
        return self.ok and (self.status_changed or bool(self.field_updates))


def epoch_to_datetime(value: Any) -> Optional[datetime]:
    """Convert processor epoch seconds to an aware UTC datetime (None if absent or invalid)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _entity(payload: Optional[Mapping[str, Any]], key: str) -> Dict[str, Any]:
    # Processor nests entities as {key: {"entity": {...}}}; flat {key: {...}} is accepted too
    if not isinstance(payload, Mapping):
        return {}
    value = payload.get(key)
    if not isinstance(value, Mapping):
        return {}
    inner = value.get("entity")
    if isinstance(inner, Mapping):
        return dict(inner)
    return dict(value)


def subscription_entity(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return _entity(payload, "subscription")


def payment_entity(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return _entity(payload, "payment")


def _non_negative_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def _field_updates(kind: EventKind, entity: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}

    if kind in (EventKind.SUBSCRIPTION_ACTIVATED, EventKind.SUBSCRIPTION_CHARGED, EventKind.SUBSCRIPTION_RESUMED):
        start = epoch_to_datetime(entity.get("current_start"))
        end = epoch_to_datetime(entity.get("current_end"))
        if start:
            updates["current_start"] = start
        if end:
            updates["current_end"] = end
            updates["next_billing_date"] = end
        if kind is EventKind.SUBSCRIPTION_ACTIVATED:
            start_at = epoch_to_datetime(entity.get("start_at"))
            if start_at:
                updates["start_at"] = start_at

    elif kind is EventKind.SUBSCRIPTION_PENDING:
        charge_at = epoch_to_datetime(entity.get("charge_at"))
        if charge_at:
            updates["charge_at"] = charge_at

    elif kind is EventKind.SUBSCRIPTION_COMPLETED:
        updates["ended_at"] = epoch_to_datetime(entity.get("ended_at")) or now
        end_at = epoch_to_datetime(entity.get("end_at"))
        if end_at:
            updates["end_at"] = end_at

    elif kind is EventKind.SUBSCRIPTION_CANCELLED:
        ended = epoch_to_datetime(entity.get("ended_at")) or now
        updates["cancelled_at"] = ended
        updates["ended_at"] = ended
        end_at = epoch_to_datetime(entity.get("end_at"))
        if end_at:
            updates["end_at"] = end_at

    paid_count = _non_negative_int(entity.get("paid_count"))
    if paid_count is not None:
        updates["paid_count"] = paid_count
    remaining_count = _non_negative_int(entity.get("remaining_count"))
    if remaining_count is not None:
        updates["remaining_count"] = remaining_count

    return updates


def _drop_regressions(updates: Dict[str, Any], snapshot: Mapping[str, Any]) -> List[str]:
    warnings: List[str] = []

    stored_paid = snapshot.get("paid_count")
    incoming_paid = updates.get("paid_count")
    if stored_paid is not None and incoming_paid is not None and incoming_paid < stored_paid:
        updates.pop("paid_count")
        updates.pop("remaining_count", None)
        warnings.append(f"Stale paid_count ignored (incoming {incoming_paid} < stored {stored_paid})")

    stored_end = as_utc(snapshot.get("current_end"))
    incoming_end = updates.get("current_end")
    if stored_end is not None and incoming_end is not None and incoming_end < stored_end:
        # The period travels as a unit
        for name in BILLING_PERIOD_FIELDS:
            updates.pop(name, None)
        warnings.append(
            f"Stale billing period ignored (incoming current_end {incoming_end.isoformat()} "
            f"< stored {stored_end.isoformat()})"
        )

    return warnings


def apply(
    current_status: Union[SubscriptionStatus, str],
    event_kind: Union[EventKind, str],
    payload: Optional[Mapping[str, Any]] = None,
    *,
    snapshot: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Transition:
    """
    Compute the effect of an event on a subscription.

    Args:
        current_status: Stored status of the subscription
        event_kind: EventKind or raw processor event string
        payload: Webhook "payload" object (subscription entity nested or flat)
        snapshot: Stored monotonic fields (paid_count, current_end) for regression checks
        now: Clock override for end timestamps the processor did not send

    Returns:
        Transition with the new status and column updates. error is set when
        the event is not allowed from the current status; the caller must not
        persist anything in that case.
    """
    status = SubscriptionStatus(current_status)
    kind = event_kind if isinstance(event_kind, EventKind) else EventKind.parse(event_kind)

    # Unknown kinds and payment events never move the subscription
    if kind.family is not EventFamily.SUBSCRIPTION:
        return Transition(event_kind=kind, previous_status=status, new_status=status)

    target, sources = TRANSITIONS[kind]

    if status == target and status.terminal:
        # Redelivered terminal event
        return Transition(event_kind=kind, previous_status=status, new_status=status)

    if status != target and status not in sources:
        return Transition(
            event_kind=kind,
            previous_status=status,
            new_status=status,
            error=f"Invalid transition: {kind.value} not allowed from status {status.value}",
        )

    updates = _field_updates(kind, subscription_entity(payload), now or datetime.now(timezone.utc))
    warnings = _drop_regressions(updates, snapshot or {})

    return Transition(
        event_kind=kind,
        previous_status=status,
        new_status=target,
        field_updates=updates,
        warnings=warnings,
    )
