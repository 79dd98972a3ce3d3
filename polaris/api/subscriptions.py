"""
Subscription API routes.

- POST /api/subscriptions/create-subscription: Create a Razorpay subscription
- POST /api/subscriptions/cancel: Cancel the caller's current subscription
- POST /api/subscriptions/verify-payment: Reconcile after checkout
"""
import json
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from polaris.core.auth import AuthenticatedUser, get_current_user
from polaris.core.errors import InvalidJSONError, MethodNotAllowedError, ValidationError
from polaris.features.subscriptions import service
from polaris.features.subscriptions.service import CreateSubscriptionCommand, CustomerInfo


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])

ModelT = TypeVar("ModelT", bound=BaseModel)


class CustomerInfoModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class CreateSubscriptionRequest(BaseModel):
    """Request to create a subscription."""
    model_config = ConfigDict(populate_by_name=True)

    tier: str
    billing_cycle: str = Field(alias="billingCycle")
    seats: Optional[int] = None
    customer_info: Optional[CustomerInfoModel] = Field(default=None, alias="customerInfo")
    metadata: Optional[Dict[str, Any]] = None


class CancelSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cancel_at_cycle_end: bool = Field(default=True, alias="cancelAtCycleEnd")
    reason: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: str = Field(alias="subscriptionId", min_length=1)


async def _parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Decode the JSON body into model, mapping failures onto the error contract."""
    raw = await request.body()
    try:
        data = json.loads(raw or b"{}")
    except ValueError:
        raise InvalidJSONError("Invalid JSON in request body")
    if not isinstance(data, dict):
        raise InvalidJSONError("Request body must be a JSON object")

    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        issues = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("Invalid request data", details={"issues": issues})


@router.post("/create-subscription")
async def create_subscription(request: Request, user: AuthenticatedUser = Depends(get_current_user)):
    """
    Create a subscription for the authenticated user.

    Returns:
        {"success": true, "data": {"subscription": {...}}, "warning"?: str}

    Errors:
        400: VALIDATION_ERROR, INVALID_JSON, PLAN_NOT_CONFIGURED, DUPLICATE_SUBSCRIPTION
        401: UNAUTHORIZED
        500: RAZORPAY_CUSTOMER_ERROR, RAZORPAY_SUBSCRIPTION_ERROR, DATABASE_ERROR
    """
    body = await _parse_body(request, CreateSubscriptionRequest)
    customer = body.customer_info
    cmd = CreateSubscriptionCommand(
        user_id=user.user_id,
        user_email=user.email,
        tier=body.tier,
        billing_cycle=body.billing_cycle,
        seats=body.seats,
        customer=CustomerInfo(name=customer.name, email=customer.email, contact=customer.contact) if customer else None,
        metadata=body.metadata,
    )

    result = await run_in_threadpool(service.create_subscription, cmd)

    response: Dict[str, Any] = {
        "success": True,
        "data": {"subscription": service.subscription_view(result)},
    }
    if result.warning:
        response["warning"] = result.warning
    return response


@router.get("/create-subscription")
async def create_subscription_wrong_method():
    raise MethodNotAllowedError("Only POST method is allowed for this endpoint")


@router.post("/cancel")
async def cancel_subscription(request: Request, user: AuthenticatedUser = Depends(get_current_user)):
    """
    Cancel the caller's current subscription.

    Errors:
        404: NO_ACTIVE_SUBSCRIPTION
        400: INVALID_SUBSCRIPTION_STATUS
        500: RAZORPAY_CANCELLATION_ERROR, DATABASE_UPDATE_ERROR
    """
    body = await _parse_body(request, CancelSubscriptionRequest)
    data = await run_in_threadpool(
        lambda: service.cancel_subscription(
            user.user_id,
            cancel_at_cycle_end=body.cancel_at_cycle_end,
            reason=body.reason,
        )
    )
    return {"success": True, "data": data}


@router.post("/verify-payment")
async def verify_payment(request: Request, user: AuthenticatedUser = Depends(get_current_user)):
    """
    Verify a subscription's payment status with Razorpay.

    Errors:
        404: SUBSCRIPTION_NOT_FOUND
        500: RAZORPAY_FETCH_ERROR
    """
    body = await _parse_body(request, VerifyPaymentRequest)
    data = await run_in_threadpool(service.verify_payment, user.user_id, body.subscription_id)
    return {"success": True, "data": data}
