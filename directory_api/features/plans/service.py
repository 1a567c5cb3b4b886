"""
directory_api/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (5-day, 2-week, 1-month visibility plans)
- Catalog reads for the subscription flow
- Admin edits (price/duration/active flag)

Read-only from the subscription flow's perspective: a Subscription copies
price and duration when it is created.
"""

import uuid
from typing import Callable, List, Optional
from sqlalchemy import select, insert, update, func

from directory_api.core.database import get_db_session, subscription_plans, utc_now
from directory_api.core.errors import NotFoundError, ValidationError
from directory_api.core.logging import log_event
from directory_api.models.plan import Plan


# Default plan configurations
DEFAULT_PLANS = [
    {
        "name": "5-Day Basic",
        "price": 10,
        "duration_days": 5,
        "description": "Basic visibility for 5 days",
    },
    {
        "name": "2-Week Pro",
        "price": 1000,
        "duration_days": 14,
        "description": "Better visibility for 2 weeks",
    },
    {
        "name": "1-Month Premium",
        "price": 3000,
        "duration_days": 30,
        "description": "Maximum visibility for 1 month",
    },
]


def _validate_terms(price: Optional[float], duration_days: Optional[int]) -> None:
    if price is not None and price <= 0:
        raise ValidationError("Plan price must be positive")
    if duration_days is not None and duration_days <= 0:
        raise ValidationError("Plan duration must be a positive number of days")


class PlanCatalog:
    """Plan catalog backed by the subscription_plans table."""

    def __init__(self, session_factory: Callable = get_db_session):
        self._session = session_factory

    def list_active(self) -> List[Plan]:
        with self._session() as session:
            rows = session.execute(
                select(subscription_plans)
                .where(subscription_plans.c.is_active.is_(True))
                .order_by(subscription_plans.c.price.asc())
            ).fetchall()
        return [Plan.from_row(row) for row in rows]

    def get(self, plan_id: str) -> Optional[Plan]:
        with self._session() as session:
            row = session.execute(
                select(subscription_plans).where(subscription_plans.c.plan_id == plan_id)
            ).first()
        return Plan.from_row(row) if row else None

    def get_active(self, plan_id: str) -> Plan:
        """Plan that can be purchased now; NotFoundError if missing or retired."""
        plan = self.get(plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError("Subscription plan not found")
        return plan

    def create(self, name: str, price: float, duration_days: int, description: Optional[str] = None) -> Plan:
        _validate_terms(price, duration_days)
        if not name or not name.strip():
            raise ValidationError("Plan name is required")

        plan_id = str(uuid.uuid4())
        with self._session() as session:
            session.execute(
                insert(subscription_plans).values(
                    plan_id=plan_id,
                    name=name.strip(),
                    description=description,
                    price=float(price),
                    duration_days=int(duration_days),
                    is_active=True,
                    created_at=utc_now(),
                )
            )
        log_event("info", "plan.created", event_type="plan.created", extra={"plan_id": plan_id, "price": price})
        return self.get(plan_id)

    def update(
        self,
        plan_id: str,
        *,
        price: Optional[float] = None,
        duration_days: Optional[int] = None,
        is_active: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> Plan:
        """Edit catalog terms. Existing subscriptions keep their own snapshot."""
        _validate_terms(price, duration_days)
        values = {}
        if price is not None:
            values["price"] = float(price)
        if duration_days is not None:
            values["duration_days"] = int(duration_days)
        if is_active is not None:
            values["is_active"] = is_active
        if description is not None:
            values["description"] = description

        with self._session() as session:
            if values:
                result = session.execute(
                    update(subscription_plans)
                    .where(subscription_plans.c.plan_id == plan_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise NotFoundError("Subscription plan not found")
        plan = self.get(plan_id)
        if plan is None:
            raise NotFoundError("Subscription plan not found")
        log_event("info", "plan.updated", event_type="plan.updated", extra={"plan_id": plan_id, **values})
        return plan


def seed_default_plans(session_factory: Callable = get_db_session) -> int:
    """
    Seed the default plans when the catalog is empty.

    Safe to call multiple times. Returns the number of plans inserted.
    """
    now = utc_now()
    with session_factory() as session:
        count = session.execute(select(func.count()).select_from(subscription_plans)).scalar_one()
        if count:
            return 0
        for config in DEFAULT_PLANS:
            session.execute(
                insert(subscription_plans).values(
                    plan_id=str(uuid.uuid4()),
                    name=config["name"],
                    description=config["description"],
                    price=float(config["price"]),
                    duration_days=config["duration_days"],
                    is_active=True,
                    created_at=now,
                )
            )
    log_event("info", "plans.seeded", event_type="plans.seeded", extra={"count": len(DEFAULT_PLANS)})
    return len(DEFAULT_PLANS)
