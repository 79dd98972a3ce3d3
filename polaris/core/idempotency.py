"""
polaris/core/idempotency.py
Durable idempotency ledger for inbound processor events.

Every webhook delivery is keyed by its external event id in the
webhook_events table. The unique constraint on event_id is the
duplicate detector: rows are inserted first and an IntegrityError
means another delivery of the same event already claimed it.

All functions take the caller's Session so the ledger row and the
subscription mutation commit (or roll back) together.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from polaris.core.database import get_db_session, webhook_events


class LedgerStatus:
    RECEIVED = "received"    # claimed, transaction still open
    PROCESSED = "processed"  # applied (or acknowledged, for unknown kinds)
    SKIPPED = "skipped"      # acknowledged without a state change
    REJECTED = "rejected"    # malformed payload
    FAILED = "failed"        # unexpected error; sender will retry


# A failed event may be claimed again by the sender's retry
RETRYABLE_STATUSES = frozenset({LedgerStatus.FAILED})


@dataclass
class LedgerEntry:
    event_id: str
    event_type: str
    processed: bool
    processing_status: str
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.processing_status in RETRYABLE_STATUSES


@dataclass
class ClaimResult:
    claimed: bool
    previous: Optional[LedgerEntry] = None

    @property
    def duplicate(self) -> bool:
        return not self.claimed


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _entry_from_row(row) -> LedgerEntry:
    m = row._mapping
    return LedgerEntry(
        event_id=m["event_id"],
        event_type=m["event_type"],
        processed=bool(m["processed"]),
        processing_status=m["processing_status"],
        error=m["error"],
        warnings=list(m["warnings"] or []),
    )


def lookup(session: Session, event_id: str, *, for_update: bool = False) -> Optional[LedgerEntry]:
    """Return the recorded entry for event_id, or None if never seen."""
    stmt = select(webhook_events).where(webhook_events.c.event_id == event_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    return _entry_from_row(row) if row else None


def has_processed(session: Session, event_id: str) -> bool:
    """True if the event was already handled (anything but a retryable failure)."""
    entry = lookup(session, event_id)
    return entry is not None and not entry.retryable


def claim(
    session: Session,
    *,
    event_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]],
    payload_hash: str,
    entity_id: Optional[str] = None,
) -> ClaimResult:
    """
    Atomically claim an event id for processing.

    Inserts a RECEIVED row inside a savepoint. If the insert collides with
    an existing row the event is a duplicate, unless the existing row is a
    retryable failure, in which case it is re-claimed in place.

    Returns:
        ClaimResult(claimed=True) when this caller owns the event,
        ClaimResult(claimed=False, previous=entry) for duplicates.
    """
    try:
        with session.begin_nested():
            session.execute(
                insert(webhook_events).values(
                    event_id=event_id,
                    event_type=event_type,
                    razorpay_entity_id=entity_id,
                    payload=payload,
                    payload_hash=payload_hash,
                    processed=False,
                    processing_status=LedgerStatus.RECEIVED,
                    received_at=_now(),
                )
            )
        return ClaimResult(claimed=True)
    except IntegrityError:
        existing = lookup(session, event_id, for_update=True)
        if existing is None or not existing.retryable:
            return ClaimResult(claimed=False, previous=existing)

    # Retry of a failed delivery: take the row back over
    session.execute(
        update(webhook_events)
        .where(webhook_events.c.event_id == event_id)
        .values(
            event_type=event_type,
            razorpay_entity_id=entity_id,
            payload=payload,
            payload_hash=payload_hash,
            processed=False,
            processing_status=LedgerStatus.RECEIVED,
            error=None,
            warnings=None,
        )
    )
    return ClaimResult(claimed=True, previous=existing)


def finalize(
    session: Session,
    event_id: str,
    *,
    status: str,
    error: Optional[str] = None,
    warnings: Optional[List[str]] = None,
) -> None:
    """Set the outcome of a claimed event in the caller's transaction."""
    session.execute(
        update(webhook_events)
        .where(webhook_events.c.event_id == event_id)
        .values(
            processed=status == LedgerStatus.PROCESSED,
            processing_status=status,
            error=error,
            warnings=warnings or None,
            processed_at=_now(),
        )
    )


def record_processed(
    event_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]],
    *,
    payload_hash: str,
    processed: bool,
    status: str,
    entity_id: Optional[str] = None,
    error: Optional[str] = None,
    warnings: Optional[List[str]] = None,
) -> bool:
    """
    Write a standalone ledger record in its own transaction.

    Used for outcomes that must survive a rollback of the main unit of work
    (rejected payloads, unexpected failures). An existing non-retryable row
    is left untouched.

    Returns:
        True if a row was written or updated, False if a final row already existed.
    """
    with get_db_session() as session:
        try:
            with session.begin_nested():
                session.execute(
                    insert(webhook_events).values(
                        event_id=event_id,
                        event_type=event_type,
                        razorpay_entity_id=entity_id,
                        payload=payload,
                        payload_hash=payload_hash,
                        processed=processed,
                        processing_status=status,
                        error=error,
                        warnings=warnings or None,
                        received_at=_now(),
                        processed_at=_now(),
                    )
                )
            return True
        except IntegrityError:
            result = session.execute(
                update(webhook_events)
                .where(webhook_events.c.event_id == event_id)
                .where(webhook_events.c.processing_status.in_(sorted(RETRYABLE_STATUSES)))
                .values(
                    processed=processed,
                    processing_status=status,
                    error=error,
                    warnings=warnings or None,
                    processed_at=_now(),
                )
            )
            return result.rowcount > 0


def clear_ledger() -> None:
    """Delete all ledger rows (testing only)."""
    with get_db_session() as session:
        session.execute(delete(webhook_events))
