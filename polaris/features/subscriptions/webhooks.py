"""
Razorpay webhook ingestion pipeline.

Order of checks for every delivery:
1. Signature header present and HMAC-SHA256 of the raw body matches
2. Body is JSON with an event type
3. Event id resolved and claimed in the ledger (duplicates stop here)
4. Payload shape validated per event family
5. Subscription row locked, transition applied and persisted

The ledger claim and the subscription write share one transaction. Rejected
payloads and unexpected failures are recorded in a separate transaction so
they survive the rollback of the main one.
"""
import hashlib
import html
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from polaris.core import idempotency
from polaris.core.config import settings
from polaris.core.database import get_db_session
from polaris.core.idempotency import LedgerStatus
from polaris.core.logging import log_event
from polaris.features.subscriptions import state_machine
from polaris.features.subscriptions.razorpay_provider import SIGNATURE_HEADER, verify_webhook_signature
from polaris.features.subscriptions.repository import (
    SqlSubscriptionRepository,
    SubscriptionRecord,
    SubscriptionRepository,
    is_current_subscription,
)
from polaris.features.subscriptions.state_machine import (
    EventFamily,
    EventKind,
    payment_entity,
    subscription_entity,
)

logger = logging.getLogger("polaris")

EVENT_ID_HEADERS = ("x-razorpay-event-id", "x-razorpay-webhook-id")

MASKED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({
    "card",
    "vpa",
    "bank_account",
    "account_number",
    "ifsc",
    "contact",
    "email",
})

# ISO 4217 active codes
CURRENCY_CODES = frozenset("""
AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND BOB
BRL BSD BTN BWP BYN BZD CAD CDF CHF CLP CNY COP CRC CUP CVE CZK DJF DKK DOP
DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS GIP GMD GNF GTQ GYD HKD HNL HTG HUF
IDR ILS INR IQD IRR ISK JMD JOD JPY KES KGS KHR KMF KPW KRW KWD KYD KZT LAK
LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR MVR MWK MXN MYR MZN
NAD NGN NIO NOK NPR NZD OMR PAB PEN PGK PHP PKR PLN PYG QAR RON RSD RUB RWF
SAR SBD SCR SDG SEK SGD SHP SLE SOS SRD SSP STN SVC SYP SZL THB TJS TMT TND
TOP TRY TTD TWD TZS UAH UGX USD UYU UZS VES VND VUV WST XAF XCD XOF XPF YER
ZAR ZMW ZWL
""".split())


@dataclass
class WebhookOutcome:
    """HTTP status and JSON body to return to the sender."""
    status_code: int
    body: Dict[str, Any]
    event_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class InvalidPayloadError(ValueError):
    """Payload shape does not match its event family."""
    pass


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def sanitize_payload(value: Any, key: Optional[str] = None) -> Any:
    """
    Copy of a webhook body safe to store.

    Strings are HTML-escaped and payment instrument / contact fields are
    masked, at any depth.
    """
    if key is not None and key.lower() in SENSITIVE_KEYS and value not in (None, "", {}):
        return MASKED
    if isinstance(value, dict):
        return {k: sanitize_payload(v, str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_payload(v) for v in value]
    if isinstance(value, str):
        return html.escape(value)
    return value


def _entity_id(kind: EventKind, payload: Mapping[str, Any]) -> Optional[str]:
    if kind.family is EventFamily.SUBSCRIPTION:
        return subscription_entity(payload).get("id")
    if kind.family is EventFamily.PAYMENT:
        return payment_entity(payload).get("id")
    return subscription_entity(payload).get("id") or payment_entity(payload).get("id")


def resolve_event_id(
    headers: Mapping[str, str],
    event: Mapping[str, Any],
    *,
    event_type: str,
    entity_id: Optional[str],
    payload_hash: str,
) -> str:
    """
    Idempotency key for a delivery.

    Prefers the processor's event id header, then the body id. Without
    either, the key is derived from the event type, entity and body hash so
    an identical redelivery still collides.
    """
    lowered = _lower_headers(headers)
    for name in EVENT_ID_HEADERS:
        if lowered.get(name):
            return lowered[name]
    if isinstance(event.get("id"), str) and event["id"]:
        return event["id"]
    derived = f"{event_type}:{entity_id or ''}:{payload_hash}"
    return "derived_" + hashlib.sha256(derived.encode()).hexdigest()


def validate_payload(kind: EventKind, payload: Mapping[str, Any]) -> None:
    """
    Raises:
        InvalidPayloadError: When the family's required fields are missing or malformed
    """
    if kind.family is EventFamily.SUBSCRIPTION:
        sub_id = subscription_entity(payload).get("id")
        if not isinstance(sub_id, str) or not sub_id:
            raise InvalidPayloadError("Invalid subscription data")
    elif kind.family is EventFamily.PAYMENT:
        entity = payment_entity(payload)
        payment_id = entity.get("id")
        amount = entity.get("amount")
        currency = entity.get("currency")
        if not isinstance(payment_id, str) or not payment_id:
            raise InvalidPayloadError("Invalid payment data: missing payment id")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidPayloadError("Invalid payment data: amount must be a non-negative integer")
        if not isinstance(currency, str) or currency.upper() not in CURRENCY_CODES:
            raise InvalidPayloadError("Invalid payment data: unrecognized currency")


def _payment_row(entity: Mapping[str, Any], status: str, record: Optional[SubscriptionRecord]) -> Dict[str, Any]:
    notes = entity.get("notes") if isinstance(entity.get("notes"), dict) else {}
    row = {
        "razorpay_payment_id": entity["id"],
        "razorpay_subscription_id": entity.get("subscription_id") or (record.razorpay_subscription_id if record else None),
        "user_id": record.user_id if record else notes.get("user_id"),
        "amount": int(entity.get("amount") or 0),
        "currency": str(entity.get("currency") or "INR").upper(),
        "status": status,
        "method": entity.get("method"),
    }
    if status == "failed":
        row["failure_reason"] = entity.get("error_description") or entity.get("error_code") or "Payment failed"
    return row


def _sync_profile(session, repo: SubscriptionRepository, record: SubscriptionRecord, warnings: List[str]) -> None:
    try:
        with session.begin_nested():
            if not is_current_subscription(session, repo, record):
                log_event("info", "webhook.profile_sync_skipped", request_id=None, user_id=record.user_id,
                          subscription_id=record.razorpay_subscription_id, extra={"reason": "superseded"})
                return
            repo.upsert_user_profile(
                session,
                record.user_id,
                subscription_status=record.status,
                subscription_ends_at=record.current_end or record.end_at,
            )
    except SQLAlchemyError as e:
        warnings.append("User profile could not be updated")
        log_event("warning", "webhook.profile_sync_failed", request_id=None, user_id=record.user_id,
                  subscription_id=record.razorpay_subscription_id, extra={"reason": e})


class _Delivery:
    """Parsed, authenticated delivery flowing through the pipeline."""

    def __init__(self, event: Dict[str, Any], event_id: str, payload_hash: str):
        self.event = event
        self.event_id = event_id
        self.event_type: str = event["event"]
        self.kind = EventKind.parse(self.event_type)
        payload = event.get("payload")
        self.payload: Dict[str, Any] = payload if isinstance(payload, dict) else {}
        self.entity_id = _entity_id(self.kind, self.payload)
        self.payload_hash = payload_hash
        self.sanitized = sanitize_payload(event)


def _handle_subscription_event(session, repo: SubscriptionRepository, delivery: _Delivery) -> WebhookOutcome:
    record = repo.get_by_external_id(session, delivery.entity_id, for_update=True)
    if record is None:
        idempotency.finalize(session, delivery.event_id, status=LedgerStatus.SKIPPED,
                             warnings=["Subscription not found"])
        log_event("warning", "webhook.subscription_not_found", request_id=None,
                  subscription_id=delivery.entity_id, event_type=delivery.event_type)
        return WebhookOutcome(200, {"received": True, "warning": "Subscription not found"}, delivery.event_id)

    transition = state_machine.apply(record.status, delivery.kind, delivery.payload, snapshot=record.snapshot())
    if not transition.ok:
        idempotency.finalize(session, delivery.event_id, status=LedgerStatus.SKIPPED,
                             error=transition.error, warnings=[transition.error])
        log_event("warning", "webhook.transition_rejected", request_id=None, user_id=record.user_id,
                  subscription_id=record.razorpay_subscription_id, event_type=delivery.event_type,
                  extra={"reason": transition.error})
        return WebhookOutcome(200, {"received": True, "warning": transition.error}, delivery.event_id)

    warnings = list(transition.warnings)
    updated = repo.apply_transition(session, record, transition)

    if delivery.kind is EventKind.SUBSCRIPTION_CHARGED:
        payment = payment_entity(delivery.payload)
        if payment.get("id") and isinstance(payment.get("amount"), int):
            repo.insert_payment(session, **_payment_row(payment, "captured", updated))

    if transition.status_changed:
        _sync_profile(session, repo, updated, warnings)

    idempotency.finalize(session, delivery.event_id, status=LedgerStatus.PROCESSED, warnings=warnings)
    log_event("info", "webhook.processed", request_id=None, user_id=updated.user_id,
              subscription_id=updated.razorpay_subscription_id, event_type=delivery.event_type,
              extra={
                  "previous_status": transition.previous_status.value,
                  "new_status": transition.new_status.value,
                  "warnings": warnings or None,
              })
    for warning in warnings:
        log_event("warning", "webhook.stale_field", request_id=None,
                  subscription_id=updated.razorpay_subscription_id, event_type=delivery.event_type,
                  extra={"reason": warning})
    return WebhookOutcome(200, {"received": True}, delivery.event_id, warnings)


def _handle_payment_event(session, repo: SubscriptionRepository, delivery: _Delivery) -> WebhookOutcome:
    entity = payment_entity(delivery.payload)
    if delivery.kind is EventKind.PAYMENT_AUTHORIZED:
        # Capture follows; nothing to record yet
        idempotency.finalize(session, delivery.event_id, status=LedgerStatus.PROCESSED)
        log_event("info", "webhook.payment_authorized", request_id=None, event_type=delivery.event_type,
                  extra={"payment_id": entity.get("id")})
        return WebhookOutcome(200, {"received": True}, delivery.event_id)

    record = None
    if entity.get("subscription_id"):
        record = repo.get_by_external_id(session, entity["subscription_id"])
    status = "captured" if delivery.kind is EventKind.PAYMENT_CAPTURED else "failed"
    inserted = repo.insert_payment(session, **_payment_row(entity, status, record))

    idempotency.finalize(session, delivery.event_id, status=LedgerStatus.PROCESSED)
    log_event("info", "webhook.payment_recorded", request_id=None,
              user_id=record.user_id if record else None,
              subscription_id=entity.get("subscription_id"), event_type=delivery.event_type,
              extra={"payment_id": entity["id"], "payment_status": status, "inserted": inserted})
    return WebhookOutcome(200, {"received": True}, delivery.event_id)


def _process(delivery: _Delivery, repo: SubscriptionRepository) -> WebhookOutcome:
    try:
        with get_db_session() as session:
            claim = idempotency.claim(
                session,
                event_id=delivery.event_id,
                event_type=delivery.event_type,
                payload=delivery.sanitized,
                payload_hash=delivery.payload_hash,
                entity_id=delivery.entity_id,
            )
            if claim.duplicate:
                log_event("info", "webhook.duplicate", request_id=None, event_type=delivery.event_type,
                          extra={"event_id": delivery.event_id})
                return WebhookOutcome(200, {"duplicate": True}, delivery.event_id)

            # Raising here rolls back the RECEIVED claim
            validate_payload(delivery.kind, delivery.payload)

            if delivery.kind is EventKind.UNKNOWN:
                warning = f"Unknown event type: {delivery.event_type}"
                idempotency.finalize(session, delivery.event_id, status=LedgerStatus.PROCESSED, warnings=[warning])
                log_event("warning", "webhook.unknown_event", request_id=None, event_type=delivery.event_type)
                return WebhookOutcome(200, {"received": True, "warning": warning}, delivery.event_id)

            if delivery.kind.family is EventFamily.SUBSCRIPTION:
                return _handle_subscription_event(session, repo, delivery)
            return _handle_payment_event(session, repo, delivery)
    except InvalidPayloadError as e:
        idempotency.record_processed(
            delivery.event_id,
            delivery.event_type,
            delivery.sanitized,
            payload_hash=delivery.payload_hash,
            processed=False,
            status=LedgerStatus.REJECTED,
            entity_id=delivery.entity_id,
            error=str(e),
        )
        log_event("warning", "webhook.rejected", request_id=None, event_type=delivery.event_type,
                  error_code="INVALID_PAYLOAD", extra={"reason": e, "event_id": delivery.event_id})
        return WebhookOutcome(400, {"error": str(e)}, delivery.event_id)


def ingest_webhook(
    body: bytes,
    headers: Mapping[str, str],
    *,
    secret: Optional[str] = None,
    repository: Optional[SubscriptionRepository] = None,
) -> WebhookOutcome:
    """
    Authenticate, deduplicate and apply one Razorpay webhook delivery.

    Args:
        body: Raw request body (the signature covers these exact bytes)
        headers: Request headers (case-insensitive lookup)
        secret: Webhook secret override (defaults to RAZORPAY_WEBHOOK_SECRET)
        repository: Repository override for tests

    Returns:
        WebhookOutcome; 200 for processed / duplicate / acknowledged events,
        401 for signature problems, 400 for malformed bodies, 500 otherwise.
    """
    repo = repository or SqlSubscriptionRepository()
    lowered = _lower_headers(headers)

    signature = lowered.get(SIGNATURE_HEADER)
    if not signature:
        log_event("warning", "webhook.missing_signature", request_id=None, error_code="UNAUTHORIZED")
        return WebhookOutcome(401, {"error": "Missing webhook signature"})

    webhook_secret = secret or settings.RAZORPAY_WEBHOOK_SECRET
    if not webhook_secret:
        log_event("error", "webhook.secret_not_configured", request_id=None, error_code="CONFIG_ERROR")
        return WebhookOutcome(500, {"error": "Webhook secret not configured"})

    if not verify_webhook_signature(body, signature, webhook_secret):
        log_event("warning", "webhook.invalid_signature", request_id=None, error_code="UNAUTHORIZED")
        return WebhookOutcome(401, {"error": "Invalid webhook signature"})

    try:
        event = json.loads(body)
    except ValueError:
        log_event("warning", "webhook.invalid_json", request_id=None, error_code="INVALID_JSON")
        return WebhookOutcome(400, {"error": "Invalid JSON"})

    if not isinstance(event, dict) or not isinstance(event.get("event"), str) or not event["event"]:
        log_event("warning", "webhook.invalid_payload", request_id=None, error_code="INVALID_PAYLOAD")
        return WebhookOutcome(400, {"error": "Invalid webhook payload"})

    payload_hash = hashlib.sha256(body).hexdigest()
    parsed_kind = EventKind.parse(event["event"])
    parsed_payload = event.get("payload") if isinstance(event.get("payload"), dict) else {}
    event_id = resolve_event_id(
        headers,
        event,
        event_type=event["event"],
        entity_id=_entity_id(parsed_kind, parsed_payload),
        payload_hash=payload_hash,
    )
    delivery = _Delivery(event, event_id, payload_hash)

    try:
        return _process(delivery, repo)
    except Exception as e:
        logger.error(
            "webhook.processing_failed",
            exc_info=True,
            extra={
                "event_type": delivery.event_type,
                "event_id": delivery.event_id,
                "subscription_id": delivery.entity_id,
                "error_code": "WEBHOOK_PROCESSING_FAILED",
            },
        )
        try:
            idempotency.record_processed(
                delivery.event_id,
                delivery.event_type,
                delivery.sanitized,
                payload_hash=delivery.payload_hash,
                processed=False,
                status=LedgerStatus.FAILED,
                entity_id=delivery.entity_id,
                error=f"{type(e).__name__}: {e}"[:500],
            )
        except Exception:
            logger.error(
                "webhook.failure_record_failed",
                exc_info=True,
                extra={"event_type": delivery.event_type, "event_id": delivery.event_id},
            )
        return WebhookOutcome(500, {"error": "Webhook processing failed"}, delivery.event_id)
