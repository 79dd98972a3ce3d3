"""
Subscription service orchestrator.

Business logic for the synchronous entry points:
- create_subscription: validate, resolve plan, duplicate check, processor
  customer + subscription, local persist, compensating cancellation
- cancel_subscription: user-initiated cancellation (immediate or at cycle end)
- verify_payment: pull the processor's view after checkout and catch up

All Razorpay-specific code is in razorpay_provider.py; all status changes go
through state_machine.apply and the repository, same as the webhook pipeline.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from polaris.core.database import get_db_session
from polaris.core.errors import (
    DatabaseUpdateError,
    DuplicateSubscriptionError,
    InvalidSubscriptionStatusError,
    NoActiveSubscriptionError,
    PlanNotConfiguredError,
    ProcessorCancellationError,
    ProcessorCustomerError,
    ProcessorFetchError,
    ProcessorSubscriptionError,
    ServiceUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionPersistenceError,
    ValidationError,
)
from polaris.core.logging import log_event
from polaris.features.subscriptions import state_machine
from polaris.features.subscriptions.plans import PlanCatalog, PlanConfig
from polaris.features.subscriptions.provider import (
    PaymentProcessor,
    ProcessorCustomer,
    ProcessorError,
    ProcessorNotConfiguredError,
)
from polaris.features.subscriptions.razorpay_provider import RazorpayProvider
from polaris.features.subscriptions.repository import (
    RepositoryError,
    SqlSubscriptionRepository,
    SubscriptionRecord,
    SubscriptionRepository,
    is_current_subscription,
)
from polaris.features.subscriptions.state_machine import EventKind, SubscriptionStatus
from polaris.features.subscriptions.tiers import (
    BillingCycle,
    Tier,
    family_of,
    is_team_tier,
    is_upgrade,
    parse_tier,
    tiers_in_family,
    upgrade_path,
    usage_limits,
)

logger = logging.getLogger("polaris")

PROFILE_WARNING = "Subscription created but user profile could not be updated"

# Statuses a user may cancel from
CANCELLABLE_STATUSES = frozenset({
    SubscriptionStatus.CREATED.value,
    SubscriptionStatus.AUTHENTICATED.value,
    SubscriptionStatus.ACTIVE.value,
})

# Local statuses the processor's "active" may catch up
VERIFY_CATCH_UP_STATUSES = frozenset({
    SubscriptionStatus.CREATED.value,
    SubscriptionStatus.AUTHENTICATED.value,
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.HALTED.value,
})

# processor status -> (verification status, message)
VERIFICATION_OUTCOMES = {
    "active": ("completed", "Payment verified successfully! Your subscription is now active."),
    "completed": ("completed", "Payment completed successfully! Your subscription is active."),
    "authenticated": ("processing", "Payment is being processed. Please wait..."),
    "cancelled": ("cancelled", "Payment was cancelled."),
    "failed": ("failed", "Payment failed. Please try again."),
    "expired": ("failed", "Payment link has expired. Please try again."),
}
DEFAULT_VERIFICATION = ("pending", "Payment verification in progress...")


@dataclass
class CustomerInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


@dataclass
class CreateSubscriptionCommand:
    user_id: str
    tier: str
    billing_cycle: str
    seats: Optional[int] = None
    customer: Optional[CustomerInfo] = None
    user_email: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ValidatedRequest:
    tier: Tier
    cycle: BillingCycle
    seats: Optional[int]
    email: str
    name: Optional[str]
    contact: Optional[str]


@dataclass
class CreationResult:
    subscription: SubscriptionRecord
    customer: ProcessorCustomer
    warning: Optional[str] = None


# One provider per process so its HTTP connection pool is reused
_provider: Optional[RazorpayProvider] = None
_provider_lock = threading.Lock()


def get_provider() -> Optional[PaymentProcessor]:
    """Get the shared payment processor if Razorpay credentials are configured."""
    global _provider
    with _provider_lock:
        if _provider is None:
            try:
                _provider = RazorpayProvider()
            except ProcessorNotConfiguredError:
                return None
        return _provider


def close_provider() -> None:
    """Close the shared provider's HTTP client. The next get_provider() builds a new one."""
    global _provider
    with _provider_lock:
        if _provider is not None:
            _provider.close()
            _provider = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def validate_request(cmd: CreateSubscriptionCommand) -> ValidatedRequest:
    """
    Check the tier / cycle / seats combination and the customer email.

    Raises:
        ValidationError: On any violation (no side effects have happened yet)
    """
    tier = parse_tier(cmd.tier)
    if tier is None:
        raise ValidationError(
            f"Invalid subscription tier: {cmd.tier}",
            details={"field": "tier", "allowed": [t.value for t in Tier]},
        )

    try:
        cycle = BillingCycle(str(cmd.billing_cycle).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid billing cycle: {cmd.billing_cycle}",
            details={"field": "billingCycle", "allowed": [c.value for c in BillingCycle]},
        )

    if is_team_tier(tier):
        if cmd.seats is None or cmd.seats <= 0:
            raise ValidationError(
                "Team tiers require a seat count greater than 0",
                details={"field": "seats", "tier": tier.value},
            )
    elif cmd.seats is not None:
        raise ValidationError(
            "Seats can only be specified for team tiers",
            details={"field": "seats", "tier": tier.value},
        )

    customer = cmd.customer or CustomerInfo()
    email = (customer.email or cmd.user_email or "").strip()
    if not email:
        raise ValidationError("Customer email is required", details={"field": "customerInfo.email"})

    return ValidatedRequest(
        tier=tier,
        cycle=cycle,
        seats=cmd.seats if is_team_tier(tier) else None,
        email=email,
        name=customer.name,
        contact=customer.contact,
    )


def _duplicate_error(existing: SubscriptionRecord, requested: Tier) -> DuplicateSubscriptionError:
    current = parse_tier(existing.subscription_tier) or requested
    details = {
        "currentSubscription": {
            "tier": existing.subscription_tier,
            "status": existing.status,
            "planName": existing.plan_name,
            "nextBillingDate": _iso(existing.next_billing_date),
        },
        "requestedTier": requested.value,
        "upgradePath": upgrade_path(current),
    }
    # An unpaid checkout keeps blocking retries until it is cancelled
    if existing.status in (SubscriptionStatus.CREATED.value, SubscriptionStatus.AUTHENTICATED.value):
        details["hint"] = "Cancel the pending checkout to start a new one"
    return DuplicateSubscriptionError(
        f"You already have an active {existing.subscription_tier} subscription",
        details=details,
    )


def _ensure_customer(provider: PaymentProcessor, req: ValidatedRequest, user_id: str) -> ProcessorCustomer:
    customer = provider.find_customer_by_email(req.email)
    if customer:
        return customer
    return provider.create_customer(
        name=req.name,
        email=req.email,
        contact=req.contact,
        notes={"user_id": user_id, "source": "polaris"},
    )


def _compensate(provider: PaymentProcessor, external_id: str, *, user_id: str) -> bool:
    """Single attempt to cancel a processor subscription that has no local row."""
    try:
        provider.cancel_subscription(external_id, cancel_at_cycle_end=False)
    except Exception as e:
        log_event(
            "error",
            "subscription.compensation_failed",
            request_id=None,
            user_id=user_id,
            subscription_id=external_id,
            error_code="COMPENSATION_FAILED",
            extra={"reason": e},
        )
        return False
    log_event(
        "warning",
        "subscription.compensated",
        request_id=None,
        user_id=user_id,
        subscription_id=external_id,
    )
    return True


def create_subscription(
    cmd: CreateSubscriptionCommand,
    *,
    provider: Optional[PaymentProcessor] = None,
    repository: Optional[SubscriptionRepository] = None,
    catalog: Optional[PlanCatalog] = None,
) -> CreationResult:
    """
    Create a processor subscription and its local record.

    Steps:
    1. Validate tier / cycle / seats
    2. Resolve the plan
    3. Reject duplicates in the tier family unless it is an upgrade
    4. Find or create the processor customer
    5. Create the processor subscription
    6. Persist locally; on failure cancel the processor subscription once
    7. Best-effort user profile update

    Raises:
        ValidationError, PlanNotConfiguredError, DuplicateSubscriptionError:
            Rejected before any side effect
        ProcessorCustomerError, ProcessorSubscriptionError: Processor call failed
        SubscriptionPersistenceError: Local insert failed; details report
            whether the compensating cancellation succeeded
    """
    repo = repository or SqlSubscriptionRepository()
    plans = catalog or PlanCatalog()

    req = validate_request(cmd)

    plan: Optional[PlanConfig] = plans.resolve(req.tier, req.cycle)
    if plan is None:
        raise PlanNotConfiguredError(
            f"Plan not configured for {req.tier.value} ({req.cycle.value})",
            details={"tier": req.tier.value, "billingCycle": req.cycle.value},
        )

    family = family_of(req.tier)
    with get_db_session() as session:
        existing = repo.find_open_in_family(session, cmd.user_id, [t.value for t in tiers_in_family(family)])

    supersedes: Optional[str] = None
    if existing:
        existing_tier = parse_tier(existing.subscription_tier)
        if existing_tier is None or not is_upgrade(existing_tier, req.tier):
            raise _duplicate_error(existing, req.tier)
        supersedes = existing.razorpay_subscription_id
        log_event(
            "info",
            "subscription.upgrade_requested",
            request_id=None,
            user_id=cmd.user_id,
            subscription_id=supersedes,
            extra={"from_tier": existing.subscription_tier, "to_tier": req.tier.value},
        )

    processor = provider or get_provider()
    if processor is None:
        raise ServiceUnavailableError("Billing is not configured")

    try:
        customer = _ensure_customer(processor, req, cmd.user_id)
    except ProcessorError as e:
        log_event("error", "subscription.customer_failed", request_id=None, user_id=cmd.user_id,
                  error_code=ProcessorCustomerError.code, extra={"reason": e})
        raise ProcessorCustomerError(
            "Failed to create or retrieve customer",
            details={"processorErrorCode": e.error_code},
        ) from e

    notes = {
        "user_id": cmd.user_id,
        "subscription_tier": req.tier.value,
        "billing_cycle": req.cycle.value,
        "seats": str(req.seats or 1),
    }
    try:
        created = processor.create_subscription(
            plan_id=plan.plan_id,
            customer_id=customer.customer_id,
            total_count=plan.total_count,
            quantity=req.seats or 1,
            notes=notes,
        )
    except ProcessorError as e:
        log_event("error", "subscription.create_failed", request_id=None, user_id=cmd.user_id,
                  error_code=ProcessorSubscriptionError.code, extra={"reason": e})
        raise ProcessorSubscriptionError(
            "Failed to create subscription",
            details={"processorErrorCode": e.error_code},
        ) from e

    metadata: Dict[str, Any] = {"notes": notes}
    if cmd.metadata:
        metadata["client_metadata"] = cmd.metadata
    if supersedes:
        metadata["supersedes_subscription_id"] = supersedes

    try:
        with get_db_session() as session:
            record = repo.insert_subscription(
                session,
                user_id=cmd.user_id,
                razorpay_subscription_id=created.subscription_id,
                razorpay_customer_id=customer.customer_id,
                razorpay_plan_id=plan.plan_id,
                subscription_tier=req.tier.value,
                billing_cycle=req.cycle.value,
                seats=req.seats,
                status=SubscriptionStatus.CREATED.value,
                plan_name=plan.name,
                plan_amount=plan.amount_for(req.seats),
                plan_currency=plan.currency,
                current_start=created.current_start,
                current_end=created.current_end,
                next_billing_date=created.current_end or created.charge_at,
                charge_at=created.charge_at,
                total_count=created.total_count or plan.total_count,
                paid_count=created.paid_count,
                remaining_count=created.remaining_count,
                short_url=created.short_url,
                metadata=metadata,
            )
    except (RepositoryError, SQLAlchemyError) as e:
        log_event("error", "subscription.persist_failed", request_id=None, user_id=cmd.user_id,
                  subscription_id=created.subscription_id, error_code=SubscriptionPersistenceError.code,
                  extra={"reason": e})
        cancelled = _compensate(processor, created.subscription_id, user_id=cmd.user_id)
        raise SubscriptionPersistenceError(
            "Failed to save subscription",
            details={
                "razorpaySubscriptionId": created.subscription_id,
                "subscriptionCancelled": cancelled,
            },
        ) from e

    warning: Optional[str] = None
    try:
        with get_db_session() as session:
            repo.upsert_user_profile(
                session,
                cmd.user_id,
                subscription_tier=req.tier.value,
                subscription_status=record.status,
                seats=req.seats,
                **usage_limits(req.tier, req.seats),
            )
    except SQLAlchemyError as e:
        warning = PROFILE_WARNING
        log_event("warning", "subscription.profile_update_failed", request_id=None, user_id=cmd.user_id,
                  subscription_id=record.razorpay_subscription_id, extra={"reason": e})

    log_event(
        "info",
        "subscription.created",
        request_id=None,
        user_id=cmd.user_id,
        subscription_id=record.razorpay_subscription_id,
        extra={"tier": record.subscription_tier, "billing_cycle": record.billing_cycle},
    )
    return CreationResult(subscription=record, customer=customer, warning=warning)


def subscription_view(result: CreationResult) -> Dict[str, Any]:
    """Client-facing shape of a newly created subscription."""
    record = result.subscription
    return {
        "subscriptionId": record.razorpay_subscription_id,
        "customerId": record.razorpay_customer_id,
        "shortUrl": record.short_url,
        "status": record.status,
        "planName": record.plan_name,
        "planAmount": record.plan_amount,
        "planCurrency": record.plan_currency,
        "billingCycle": record.billing_cycle,
        "nextBillingDate": _iso(record.next_billing_date),
        "currentStart": _iso(record.current_start),
        "tier": record.subscription_tier,
        "seats": record.seats,
        "customerName": result.customer.name,
        "customerEmail": result.customer.email,
    }


def _sync_profile(session, repo: SubscriptionRepository, record: SubscriptionRecord) -> bool:
    """Mirror subscription status onto the profile; failures never abort the caller."""
    try:
        with session.begin_nested():
            if not is_current_subscription(session, repo, record):
                log_event("info", "subscription.profile_sync_skipped", request_id=None, user_id=record.user_id,
                          subscription_id=record.razorpay_subscription_id, extra={"reason": "superseded"})
                return False
            repo.upsert_user_profile(
                session,
                record.user_id,
                subscription_status=record.status,
                subscription_ends_at=record.current_end or record.end_at,
            )
        return True
    except SQLAlchemyError as e:
        log_event("warning", "subscription.profile_sync_failed", request_id=None, user_id=record.user_id,
                  subscription_id=record.razorpay_subscription_id, extra={"reason": e})
        return False


def cancel_subscription(
    user_id: str,
    *,
    cancel_at_cycle_end: bool = True,
    reason: Optional[str] = None,
    provider: Optional[PaymentProcessor] = None,
    repository: Optional[SubscriptionRepository] = None,
) -> Dict[str, Any]:
    """
    Cancel the user's current subscription.

    Immediate cancellation runs the cancelled transition locally; cycle-end
    cancellation only records the request, the processor's
    subscription.cancelled webhook finishes the job later.

    Raises:
        NoActiveSubscriptionError: Nothing to cancel
        InvalidSubscriptionStatusError: Current status cannot be cancelled
        ProcessorCancellationError: Processor refused or failed
        DatabaseUpdateError: Processor cancelled but the local write failed
    """
    repo = repository or SqlSubscriptionRepository()

    with get_db_session() as session:
        record = repo.latest_open_for_user(session, user_id)

    if record is None:
        raise NoActiveSubscriptionError("No active subscription found")
    if record.status not in CANCELLABLE_STATUSES:
        raise InvalidSubscriptionStatusError(
            f"Cannot cancel subscription with status: {record.status}",
            details={"status": record.status, "subscriptionId": record.razorpay_subscription_id},
        )

    # Nothing to wait for if the first charge never happened
    at_cycle_end = cancel_at_cycle_end and record.status == SubscriptionStatus.ACTIVE.value

    processor = provider or get_provider()
    if processor is None:
        raise ServiceUnavailableError("Billing is not configured")

    try:
        cancelled = processor.cancel_subscription(record.razorpay_subscription_id, cancel_at_cycle_end=at_cycle_end)
    except ProcessorError as e:
        log_event("error", "subscription.cancel_failed", request_id=None, user_id=user_id,
                  subscription_id=record.razorpay_subscription_id,
                  error_code=ProcessorCancellationError.code, extra={"reason": e})
        raise ProcessorCancellationError(
            "Failed to cancel subscription with payment processor",
            details={"processorErrorCode": e.error_code},
        ) from e

    cancellation = {
        "cancel_at_cycle_end": at_cycle_end,
        "cancellation_reason": reason,
        "cancellation_requested_at": datetime.now().astimezone().isoformat(),
    }

    try:
        with get_db_session() as session:
            current = repo.get_by_external_id(session, record.razorpay_subscription_id, for_update=True)
            if current is None:
                raise RepositoryError(f"Subscription {record.razorpay_subscription_id} disappeared")
            if not at_cycle_end:
                transition = state_machine.apply(
                    current.status,
                    EventKind.SUBSCRIPTION_CANCELLED,
                    {"subscription": cancelled.raw},
                    snapshot=current.snapshot(),
                )
                if transition.ok:
                    current = repo.apply_transition(session, current, transition)
            current = repo.merge_metadata(session, current, cancellation)
            _sync_profile(session, repo, current)
    except (RepositoryError, SQLAlchemyError) as e:
        log_event("error", "subscription.cancel_persist_failed", request_id=None, user_id=user_id,
                  subscription_id=record.razorpay_subscription_id,
                  error_code=DatabaseUpdateError.code, extra={"reason": e})
        raise DatabaseUpdateError(
            "Subscription cancelled with payment processor but local update failed",
            details={
                "razorpaySubscriptionId": record.razorpay_subscription_id,
                "razorpayStatus": cancelled.status,
            },
        ) from e

    log_event("info", "subscription.cancelled", request_id=None, user_id=user_id,
              subscription_id=current.razorpay_subscription_id,
              extra={"cancel_at_cycle_end": at_cycle_end})
    return {
        "subscriptionId": current.razorpay_subscription_id,
        "status": current.status,
        "razorpayStatus": cancelled.status,
        "cancelAtCycleEnd": at_cycle_end,
        "currentEnd": _iso(current.current_end),
        "message": (
            "Subscription scheduled for cancellation at end of billing cycle"
            if at_cycle_end
            else "Subscription cancelled immediately"
        ),
    }


def verify_payment(
    user_id: str,
    subscription_id: str,
    *,
    provider: Optional[PaymentProcessor] = None,
    repository: Optional[SubscriptionRepository] = None,
) -> Dict[str, Any]:
    """
    Check a subscription against the processor after checkout.

    When the processor already reports the subscription active but the
    activation webhook has not been applied yet, the activated transition is
    applied here through the same state machine.

    Raises:
        SubscriptionNotFoundError: Not a subscription of this user
        ProcessorFetchError: Processor lookup failed
    """
    repo = repository or SqlSubscriptionRepository()

    with get_db_session() as session:
        record = repo.find_for_user(session, user_id, subscription_id)
    if record is None:
        raise SubscriptionNotFoundError("Subscription not found")

    processor = provider or get_provider()
    if processor is None:
        raise ServiceUnavailableError("Billing is not configured")

    try:
        remote = processor.fetch_subscription(subscription_id)
    except ProcessorError as e:
        raise ProcessorFetchError(
            "Failed to verify subscription with payment processor",
            details={"processorErrorCode": e.error_code},
        ) from e

    verification, message = VERIFICATION_OUTCOMES.get(remote.status, DEFAULT_VERIFICATION)

    if remote.status == SubscriptionStatus.ACTIVE.value and record.status in VERIFY_CATCH_UP_STATUSES:
        with get_db_session() as session:
            current = repo.get_by_external_id(session, subscription_id, for_update=True)
            if current is not None:
                transition = state_machine.apply(
                    current.status,
                    EventKind.SUBSCRIPTION_ACTIVATED,
                    {"subscription": remote.raw},
                    snapshot=current.snapshot(),
                )
                if transition.ok:
                    record = repo.apply_transition(session, current, transition)
                    _sync_profile(session, repo, record)
                    log_event("info", "subscription.verified_activation", request_id=None, user_id=user_id,
                              subscription_id=subscription_id)

    return {
        "status": verification,
        "subscriptionId": subscription_id,
        "paymentId": remote.payment_id,
        "message": message,
        "nextBillingDate": _iso(remote.current_end),
        "razorpayStatus": remote.status,
        "localStatus": record.status,
        "paidCount": remote.paid_count,
        "totalCount": remote.total_count or 0,
        "isActive": remote.status in ("active", "completed"),
    }
