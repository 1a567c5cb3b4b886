"""
User records as seen by the directory.

Credentials live with the account service; this module only keeps the
listing profile and the entitlement projection columns.
"""
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from directory_api.core.database import get_db_session, users, utc_now
from directory_api.core.errors import NotFoundError
from directory_api.core.logging import log_event
from directory_api.features.payments.phone import mask_phone
from directory_api.models.user import User


def get_user(user_id: str, session_factory: Callable = get_db_session) -> Optional[User]:
    with session_factory() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
    return User.from_row(row) if row else None


def get_or_create_user(user_id: str, role: str = "user", session_factory: Callable = get_db_session) -> User:
    """Return the user row, inserting a bare one on first sight of a token subject."""
    existing = get_user(user_id, session_factory)
    if existing is not None:
        return existing

    try:
        with session_factory() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    role=role,
                    is_active=False,
                    has_active_subscription=False,
                    created_at=utc_now(),
                )
            )
        log_event("info", "user.created", user_id=user_id, event_type="user.created")
    except IntegrityError:
        # Concurrent first request for the same subject inserted it
        pass

    user = get_user(user_id, session_factory)
    if user is None:
        raise NotFoundError("User not found")
    return user


def update_profile(
    user_id: str,
    *,
    display_name: Optional[str] = None,
    phone_no: Optional[str] = None,
    location: Optional[str] = None,
    is_active: Optional[bool] = None,
    session_factory: Callable = get_db_session,
) -> User:
    """Listing profile edits; is_active is the admin approval flag."""
    values = {
        key: value
        for key, value in (
            ("display_name", display_name),
            ("phone_no", phone_no),
            ("location", location),
            ("is_active", is_active),
        )
        if value is not None
    }
    if values:
        with session_factory() as session:
            result = session.execute(update(users).where(users.c.user_id == user_id).values(**values))
            if result.rowcount == 0:
                raise NotFoundError("User not found")
    user = get_user(user_id, session_factory)
    if user is None:
        raise NotFoundError("User not found")
    return user


def list_visible_providers(
    page: int = 1,
    limit: int = 20,
    now: Optional[datetime] = None,
    location: Optional[str] = None,
    session_factory: Callable = get_db_session,
) -> Tuple[List[dict], int]:
    """Approved users whose projected subscription is unexpired, newest first."""
    now = now or utc_now()
    clause = and_(
        users.c.is_active.is_(True),
        users.c.has_active_subscription.is_(True),
        users.c.subscription_expiry > now,
    )
    if location:
        clause = and_(clause, users.c.location == location)

    with session_factory() as session:
        total = session.execute(select(func.count()).select_from(users).where(clause)).scalar_one()
        rows = session.execute(
            select(users)
            .where(clause)
            .order_by(users.c.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).fetchall()

    providers = []
    for row in rows:
        user = User.from_row(row)
        providers.append({
            "user_id": user.user_id,
            "display_name": user.display_name,
            "location": user.location,
            "phone": mask_phone(user.phone_no),
            "subscription_expiry": user.subscription_expiry.isoformat() if user.subscription_expiry else None,
        })
    return providers, total


def count_active_entitlements(now: Optional[datetime] = None, session_factory: Callable = get_db_session) -> int:
    now = now or utc_now()
    with session_factory() as session:
        return session.execute(
            select(func.count())
            .select_from(users)
            .where(
                and_(
                    users.c.has_active_subscription.is_(True),
                    users.c.subscription_expiry > now,
                )
            )
        ).scalar_one()
