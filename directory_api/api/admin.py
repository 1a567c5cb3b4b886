"""
Admin-only subscription operations router.
Requires an admin bearer token or the X-Admin-Key header.
Handles ledger inspection, stale pending reconciliation and plan edits.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from directory_api.api.subscriptions import get_plan_catalog
from directory_api.core.admin_auth import AdminActor, require_admin
from directory_api.features.plans.service import PlanCatalog
from directory_api.features.subscriptions import admin_service
from directory_api.features.subscriptions.ledger import SubscriptionLedger
from directory_api.features.users.service import update_profile

logger = logging.getLogger("directory.admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def get_ledger() -> SubscriptionLedger:
    return SubscriptionLedger()


class FailSubscriptionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class PlanCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    duration_days: int = Field(..., gt=0)
    description: Optional[str] = None


class PlanUpdateRequest(BaseModel):
    price: Optional[float] = Field(None, gt=0)
    duration_days: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None
    description: Optional[str] = None


class ProviderApprovalRequest(BaseModel):
    is_active: bool


@router.get("/subscriptions")
def list_subscriptions(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: AdminActor = Depends(require_admin),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    return admin_service.list_subscriptions(ledger, status=status, page=page, limit=limit)


@router.get("/subscriptions/stale")
def list_stale_subscriptions(
    older_than_minutes: Optional[int] = Query(None, ge=0),
    actor: AdminActor = Depends(require_admin),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """Pending rows that never received a callback, including ones missing a correlation id."""
    return admin_service.list_stale_pending(ledger, older_than_minutes)


@router.post("/subscriptions/{subscription_id}/fail")
def fail_subscription(
    subscription_id: str,
    request: FailSubscriptionRequest,
    actor: AdminActor = Depends(require_admin),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    logger.info(f"[admin] failing subscription {subscription_id} by {actor.actor_id}")
    return admin_service.fail_subscription(ledger, subscription_id, request.reason, actor.actor_id)


@router.get("/stats")
def stats(
    actor: AdminActor = Depends(require_admin),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    return admin_service.get_stats(ledger)


@router.post("/plans")
def create_plan(
    request: PlanCreateRequest,
    actor: AdminActor = Depends(require_admin),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    plan = catalog.create(request.name, request.price, request.duration_days, request.description)
    return plan.model_dump(mode="json")


@router.patch("/plans/{plan_id}")
def update_plan(
    plan_id: str,
    request: PlanUpdateRequest,
    actor: AdminActor = Depends(require_admin),
    catalog: PlanCatalog = Depends(get_plan_catalog),
):
    plan = catalog.update(
        plan_id,
        price=request.price,
        duration_days=request.duration_days,
        is_active=request.is_active,
        description=request.description,
    )
    return plan.model_dump(mode="json")


@router.patch("/providers/{user_id}")
def approve_provider(
    user_id: str,
    request: ProviderApprovalRequest,
    actor: AdminActor = Depends(require_admin),
):
    """Listing approval flag; visibility also needs an active subscription."""
    user = update_profile(user_id, is_active=request.is_active)
    return user.model_dump(mode="json")
