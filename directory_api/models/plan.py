"""
directory_api/models/plan.py

Plan model for the subscription catalog.

Subscriptions snapshot price and duration at creation, so later
catalog edits never reach existing ledger rows.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: Optional[str] = None
    price: float
    duration_days: int
    is_active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Plan":
        return cls(
            plan_id=row.plan_id,
            name=row.name,
            description=row.description,
            price=row.price,
            duration_days=row.duration_days,
            is_active=bool(row.is_active),
            created_at=row.created_at,
        )
