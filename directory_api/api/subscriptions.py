"""
Subscription API routes.

- POST /subscribe: start an M-Pesa STK push subscription
- GET  /subscription/status: current entitlement snapshot
- GET  /subscription/check-status: raw ledger status for polling clients
- GET  /subscription/plans: purchasable plans (public)
"""
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from directory_api.core.auth import AuthContext, get_current_user
from directory_api.core.errors import ValidationError
from directory_api.features.plans.service import PlanCatalog
from directory_api.features.subscriptions.service import SubscriptionService, build_subscription_service


router = APIRouter(tags=["subscriptions"])


@lru_cache(maxsize=1)
def _default_service() -> SubscriptionService:
    return build_subscription_service()


def get_subscription_service() -> SubscriptionService:
    """Dependency; tests override it with a service wired to fakes."""
    return _default_service()


def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog()


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., min_length=1, alias="planId")
    phone: Optional[str] = None


class SubscribeResponse(BaseModel):
    success: bool = True
    message: str
    correlation_id: str
    checkout_id: str  # same value; name used by existing mobile clients
    masked_phone: Optional[str]
    amount: float


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    description: Optional[str]
    price: float
    duration_days: int


class StatusResponse(BaseModel):
    has_subscription: bool
    is_active: bool
    plan: Optional[PlanResponse] = None
    days_remaining: int
    expiry: Optional[datetime] = None


class CheckStatusResponse(BaseModel):
    status: str
    plan_id: str
    amount: float
    start_date: datetime
    expiry_date: datetime
    mpesa_receipt: Optional[str] = None
    failure_reason: Optional[str] = None


def _plan_response(plan) -> PlanResponse:
    return PlanResponse(
        plan_id=plan.plan_id,
        name=plan.name,
        description=plan.description,
        price=plan.price,
        duration_days=plan.duration_days,
    )


@router.post("/subscribe", response_model=SubscribeResponse)
def subscribe(
    request: SubscribeRequest,
    user: AuthContext = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Start a subscription payment.

    Errors:
        404: Unknown or inactive plan
        409: Existing pending/active subscription (details.expires)
        400: No usable phone number
        500: Payment initiator failure (details.retryable)
    """
    initiated = service.create_subscription(user.user_id, request.plan_id, request.phone)
    return SubscribeResponse(
        message=initiated.provider_message or "Payment initiated. Please check your phone to complete payment.",
        correlation_id=initiated.correlation_id,
        checkout_id=initiated.correlation_id,
        masked_phone=initiated.masked_phone,
        amount=initiated.amount,
    )


@router.get("/subscription/status", response_model=StatusResponse)
def subscription_status(
    user: AuthContext = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    snapshot = service.status_snapshot(user.user_id)
    plan = snapshot["plan"]
    return StatusResponse(
        has_subscription=snapshot["has_subscription"],
        is_active=snapshot["is_active"],
        plan=_plan_response(plan) if plan else None,
        days_remaining=snapshot["days_remaining"],
        expiry=snapshot["expiry"],
    )


@router.get("/subscription/check-status", response_model=CheckStatusResponse)
def check_status(
    correlation_id: Optional[str] = Query(None),
    checkout_id: Optional[str] = Query(None),
    user: AuthContext = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Ledger status for the caller's own subscription; 403 for anyone else's."""
    lookup = correlation_id or checkout_id
    if not lookup:
        raise ValidationError("correlation_id is required")

    subscription = service.check_status(user.user_id, lookup)
    return CheckStatusResponse(
        status=subscription.effective_status(service.ledger.now()).value,
        plan_id=subscription.plan_id,
        amount=subscription.amount,
        start_date=subscription.start_date,
        expiry_date=subscription.expiry_date,
        mpesa_receipt=subscription.mpesa_receipt,
        failure_reason=subscription.failure_reason,
    )


@router.get("/subscription/plans", response_model=List[PlanResponse])
def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    return [_plan_response(plan) for plan in catalog.list_active()]
