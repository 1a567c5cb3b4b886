"""Caller's own listing profile and entitlement."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from directory_api.core.auth import AuthContext, get_current_user
from directory_api.features.entitlements.service import get_entitlement, is_entitled
from directory_api.features.users.service import get_or_create_user, update_profile


router = APIRouter(tags=["profile"])


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=200)
    phone_no: Optional[str] = Field(None, max_length=32)
    location: Optional[str] = Field(None, max_length=100)


class ProfileResponse(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    phone_no: Optional[str] = None
    location: Optional[str] = None
    approved: bool
    has_active_subscription: bool
    subscription_expiry: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    entitled: bool


def _profile(user_id: str) -> ProfileResponse:
    user = get_or_create_user(user_id)
    entitlement = get_entitlement(user_id)
    return ProfileResponse(
        user_id=user.user_id,
        display_name=user.display_name,
        phone_no=user.phone_no,
        location=user.location,
        approved=user.is_active,
        has_active_subscription=entitlement.has_active_subscription,
        subscription_expiry=entitlement.subscription_expiry,
        last_payment_date=entitlement.last_payment_date,
        entitled=is_entitled(user_id),
    )


@router.get("/me", response_model=ProfileResponse)
def get_profile(user: AuthContext = Depends(get_current_user)):
    return _profile(user.user_id)


@router.patch("/me", response_model=ProfileResponse)
def patch_profile(request: ProfileUpdateRequest, user: AuthContext = Depends(get_current_user)):
    update_profile(
        user.user_id,
        display_name=request.display_name,
        phone_no=request.phone_no,
        location=request.location,
    )
    return _profile(user.user_id)
