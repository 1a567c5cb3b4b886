"""
Entitlement projection.

The users table carries has_active_subscription / subscription_expiry /
last_payment_date as a cache of the Subscription Ledger so listing reads
stay cheap. The ledger stays authoritative: is_entitled() falls back to
it whenever the projection says no.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import or_, select, update

from directory_api.core.database import get_db_session, users, utc_now
from directory_api.core.errors import NotFoundError
from directory_api.core.logging import log_event
from directory_api.features.subscriptions.ledger import SubscriptionLedger
from directory_api.models.user import User


@dataclass(frozen=True)
class Entitlement:
    user_id: str
    has_active_subscription: bool
    subscription_expiry: Optional[datetime]
    last_payment_date: Optional[datetime]

    def is_current(self, now: datetime) -> bool:
        return bool(
            self.has_active_subscription
            and self.subscription_expiry is not None
            and self.subscription_expiry > now
        )


class EntitlementProjector:
    def __init__(self, session_factory: Callable = get_db_session, clock: Callable[[], datetime] = utc_now):
        self._session = session_factory
        self._clock = clock

    def apply(self, user_id: str, expiry: datetime) -> bool:
        """
        Project an activation onto the user's entitlement fields.

        The expiry only moves forward: a late or redelivered activation for
        an older subscription leaves a later projected expiry in place.
        Never cleared on expiry; readers compare subscription_expiry with now.

        Returns False when the projection already held a later expiry.
        """
        now = self._clock()
        with self._session() as session:
            result = session.execute(
                update(users)
                .where(
                    users.c.user_id == user_id,
                    or_(users.c.subscription_expiry.is_(None), users.c.subscription_expiry <= expiry),
                )
                .values(
                    has_active_subscription=True,
                    subscription_expiry=expiry,
                    last_payment_date=now,
                )
            )
            if result.rowcount == 0:
                exists = session.execute(select(users.c.user_id).where(users.c.user_id == user_id)).first()
                if exists is None:
                    raise NotFoundError("User not found")
                log_event(
                    "info",
                    "entitlement.apply_skipped",
                    user_id=user_id,
                    event_type="entitlement.apply_skipped",
                    extra={"expiry": expiry.isoformat()},
                )
                return False

        log_event(
            "info",
            "entitlement.applied",
            user_id=user_id,
            event_type="entitlement.applied",
            extra={"expiry": expiry.isoformat()},
        )
        return True


def get_entitlement(user_id: str, session_factory: Callable = get_db_session) -> Entitlement:
    with session_factory() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
    if row is None:
        raise NotFoundError("User not found")
    user = User.from_row(row)
    return Entitlement(
        user_id=user.user_id,
        has_active_subscription=user.has_active_subscription,
        subscription_expiry=user.subscription_expiry,
        last_payment_date=user.last_payment_date,
    )


def is_entitled(
    user_id: str,
    now: Optional[datetime] = None,
    session_factory: Callable = get_db_session,
    ledger: Optional[SubscriptionLedger] = None,
) -> bool:
    """Projection first; an active unexpired ledger row also counts (projection may lag)."""
    now = now or utc_now()
    try:
        if get_entitlement(user_id, session_factory).is_current(now):
            return True
    except NotFoundError:
        return False

    ledger = ledger or SubscriptionLedger(session_factory=session_factory)
    current = ledger.find_current(user_id, now)
    if current is not None:
        log_event(
            "warning",
            "entitlement.projection_stale",
            user_id=user_id,
            subscription_id=current.id,
            event_type="entitlement.projection_stale",
        )
        return True
    return False
