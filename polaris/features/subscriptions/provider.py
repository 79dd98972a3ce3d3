"""
Payment processor protocol.

Defines the interface the subscription core needs from a payment
processor (Razorpay today). Business logic depends only on this protocol,
so tests can swap in a fake and the adapter stays thin.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class ProcessorCustomer:
    """Processor-side customer."""
    customer_id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class ProcessorSubscription:
    """Processor-side subscription as returned by create / fetch / cancel."""
    subscription_id: str
    status: str
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    short_url: Optional[str] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    total_count: Optional[int] = None
    paid_count: int = 0
    remaining_count: Optional[int] = None
    payment_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    """
    Protocol for payment processors.

    Implementations must handle:
    - Customer lookup and creation
    - Subscription creation, fetch and cancellation
    """

    def find_customer_by_email(self, email: str) -> Optional[ProcessorCustomer]:
        """
        Look up an existing customer by email.

        Returns:
            The first matching customer, or None

        Raises:
            ProcessorError: If the lookup call fails
        """
        ...

    def create_customer(
        self,
        *,
        name: Optional[str],
        email: str,
        contact: Optional[str] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> ProcessorCustomer:
        """
        Create a customer.

        Raises:
            ProcessorError: If customer creation fails
        """
        ...

    def create_subscription(
        self,
        *,
        plan_id: str,
        customer_id: str,
        total_count: int,
        quantity: int = 1,
        notes: Optional[Dict[str, str]] = None,
    ) -> ProcessorSubscription:
        """
        Create a subscription for an existing customer.

        Args:
            plan_id: Processor plan id
            customer_id: Processor customer id
            total_count: Number of billing cycles to charge
            quantity: Seats (team tiers), 1 otherwise
            notes: Correlation metadata echoed back on webhooks

        Raises:
            ProcessorError: If subscription creation fails
        """
        ...

    def fetch_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """
        Fetch the processor's current view of a subscription.

        Raises:
            ProcessorError: If the fetch fails
        """
        ...

    def cancel_subscription(self, subscription_id: str, *, cancel_at_cycle_end: bool = False) -> ProcessorSubscription:
        """
        Cancel a subscription immediately or at the end of the current cycle.

        Raises:
            ProcessorError: If cancellation fails
        """
        ...


class ProcessorError(Exception):
    """Base exception for payment processor errors."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ProcessorNotConfiguredError(ProcessorError):
    """Raised when processor credentials are missing."""
    pass
