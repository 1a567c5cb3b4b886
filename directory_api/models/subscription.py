"""
directory_api/models/subscription.py

Read model for one Subscription Ledger row.

Status transitions are monotonic: pending -> active, pending -> failed.
`expired` is never stored; it is derived from expiry_date at read time.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator

from directory_api.core.database import as_utc


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    EXPIRED = "expired"


def account_reference(subscription_id: str) -> str:
    """Reference sent to the payment provider; reconstructible from the ledger id."""
    return f"SUB-{subscription_id}"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: datetime
    expiry_date: datetime
    amount: float
    expected_amount: float
    amount_mismatch: bool = False
    checkout_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    mpesa_receipt: Optional[str] = None
    failure_reason: Optional[str] = None
    phone_used: str
    payer_phone: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("start_date", "expiry_date", "paid_at", "created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @classmethod
    def from_row(cls, row) -> "Subscription":
        return cls.model_validate(dict(row._mapping))

    @property
    def account_reference(self) -> str:
        return account_reference(self.id)

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date <= now

    def effective_status(self, now: datetime) -> SubscriptionStatus:
        """Stored status, with active-but-past-expiry reported as expired."""
        if self.status == SubscriptionStatus.ACTIVE and self.is_expired(now):
            return SubscriptionStatus.EXPIRED
        return self.status

    def days_remaining(self, now: datetime) -> int:
        seconds = (self.expiry_date - now).total_seconds()
        return max(0, int(seconds // 86400))
