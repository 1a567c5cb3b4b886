"""Public provider listing, gated by the entitlement projection."""
from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from directory_api.features.users.service import list_visible_providers


router = APIRouter(tags=["providers"])


class ProviderItem(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    location: Optional[str] = None
    phone: Optional[str] = None  # masked
    subscription_expiry: Optional[str] = None


class ProviderListResponse(BaseModel):
    providers: List[ProviderItem]
    total: int
    page: int
    limit: int
    has_more: bool


@router.get("/providers", response_model=ProviderListResponse)
def list_providers(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    location: Optional[str] = Query(None),
):
    providers, total = list_visible_providers(page=page, limit=limit, location=location)
    return ProviderListResponse(
        providers=[ProviderItem(**p) for p in providers],
        total=total,
        page=page,
        limit=limit,
        has_more=page * limit < total,
    )
