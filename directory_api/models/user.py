from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator

from directory_api.core.database import as_utc


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: Optional[str] = None
    phone_no: Optional[str] = None
    location: Optional[str] = None
    role: str = "user"
    is_active: bool = False
    has_active_subscription: bool = False
    subscription_expiry: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("subscription_expiry", "last_payment_date", "created_at", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @classmethod
    def from_row(cls, row) -> "User":
        return cls.model_validate(dict(row._mapping))

    def is_visible(self, now: datetime) -> bool:
        """Listed publicly: approved, projected subscription flag set and not yet expired."""
        return bool(
            self.is_active
            and self.has_active_subscription
            and self.subscription_expiry is not None
            and self.subscription_expiry > now
        )
