"""
Razorpay payment processor implementation.

Implements the PaymentProcessor protocol over Razorpay's REST API with httpx
(basic auth with key id / key secret). Also owns webhook signature
verification, since the signing scheme is Razorpay's.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from polaris.core.config import settings
from polaris.features.subscriptions.provider import (
    ProcessorCustomer,
    ProcessorError,
    ProcessorNotConfiguredError,
    ProcessorSubscription,
)
from polaris.features.subscriptions.state_machine import epoch_to_datetime

logger = logging.getLogger("polaris")

SIGNATURE_HEADER = "x-razorpay-signature"


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body, as Razorpay computes it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of the x-razorpay-signature header against the raw body."""
    if not signature or not secret:
        return False
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature.strip())


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _parse_subscription(data: Dict[str, Any]) -> ProcessorSubscription:
    if not data.get("id"):
        raise ProcessorError("Razorpay response is missing the subscription id")
    return ProcessorSubscription(
        subscription_id=data["id"],
        status=data.get("status") or "created",
        plan_id=data.get("plan_id"),
        customer_id=data.get("customer_id"),
        short_url=data.get("short_url"),
        current_start=epoch_to_datetime(data.get("current_start")),
        current_end=epoch_to_datetime(data.get("current_end")),
        charge_at=epoch_to_datetime(data.get("charge_at")),
        total_count=_to_int(data.get("total_count")),
        paid_count=_to_int(data.get("paid_count")) or 0,
        remaining_count=_to_int(data.get("remaining_count")),
        payment_id=data.get("payment_id"),
        raw=data,
    )


class RazorpayProvider:
    """Razorpay implementation of PaymentProcessor protocol."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Razorpay provider.

        Args:
            key_id: Razorpay key id (defaults to RAZORPAY_KEY_ID)
            key_secret: Razorpay key secret (defaults to RAZORPAY_KEY_SECRET)
            api_base: API root (defaults to RAZORPAY_API_BASE)
            timeout: Per-request timeout in seconds
            transport: httpx transport override (tests pass a MockTransport)
        """
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET

        if not self.key_id or not self.key_secret:
            raise ProcessorNotConfiguredError("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not configured")

        self.client = httpx.Client(
            base_url=(api_base or settings.RAZORPAY_API_BASE).rstrip("/"),
            auth=(self.key_id, self.key_secret),
            timeout=timeout or settings.RAZORPAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise ProcessorError(f"Razorpay request {method} {path} failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            error = error if isinstance(error, dict) else {}
            description = error.get("description") or response.reason_phrase or "unknown error"
            logger.warning(
                "razorpay.request_failed",
                extra={"path": path, "method": method, "status": response.status_code, "error_code": error.get("code")},
            )
            raise ProcessorError(
                f"Razorpay {method} {path} returned {response.status_code}: {description}",
                status_code=response.status_code,
                error_code=error.get("code"),
            )
        if not isinstance(data, dict):
            raise ProcessorError(f"Razorpay {method} {path} returned an unexpected body")
        return data

    def find_customer_by_email(self, email: str) -> Optional[ProcessorCustomer]:
        """Return the first customer whose email matches (case-insensitive)."""
        data = self._request("GET", "/customers", params={"email": email, "count": 10})
        wanted = email.strip().lower()
        for item in data.get("items") or []:
            if (item.get("email") or "").strip().lower() == wanted:
                return ProcessorCustomer(customer_id=item["id"], email=item.get("email"), name=item.get("name"))
        return None

    def create_customer(
        self,
        *,
        name: Optional[str],
        email: str,
        contact: Optional[str] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> ProcessorCustomer:
        body: Dict[str, Any] = {
            "name": name or email.split("@")[0],
            "email": email,
            # Return the existing customer instead of failing on a duplicate email
            "fail_existing": "0",
            "notes": notes or {},
        }
        if contact:
            body["contact"] = contact
        data = self._request("POST", "/customers", json=body)
        if not data.get("id"):
            raise ProcessorError("Razorpay response is missing the customer id")
        return ProcessorCustomer(customer_id=data["id"], email=data.get("email"), name=data.get("name"))

    def create_subscription(
        self,
        *,
        plan_id: str,
        customer_id: str,
        total_count: int,
        quantity: int = 1,
        notes: Optional[Dict[str, str]] = None,
    ) -> ProcessorSubscription:
        body = {
            "plan_id": plan_id,
            "customer_id": customer_id,
            "total_count": total_count,
            "quantity": max(1, quantity),
            "customer_notify": 1,
            "notes": notes or {},
        }
        return _parse_subscription(self._request("POST", "/subscriptions", json=body))

    def fetch_subscription(self, subscription_id: str) -> ProcessorSubscription:
        return _parse_subscription(self._request("GET", f"/subscriptions/{subscription_id}"))

    def cancel_subscription(self, subscription_id: str, *, cancel_at_cycle_end: bool = False) -> ProcessorSubscription:
        body = {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0}
        data = self._request("POST", f"/subscriptions/{subscription_id}/cancel", json=body)
        return _parse_subscription(data)

    def close(self) -> None:
        self.client.close()
