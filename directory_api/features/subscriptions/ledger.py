"""
directory_api/features/subscriptions/ledger.py

Subscription Ledger: durable record of every subscription attempt.

Rules:
- Rows are created pending with price/duration copied from the plan.
- pending -> active and pending -> failed are the only transitions, each
  applied with a compare-and-set UPDATE so concurrent callbacks cannot
  both win.
- Rows are never deleted. `expired` is derived from expiry_date.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, insert, select, update

from directory_api.core.database import get_db_session, subscriptions, users, utc_now
from directory_api.core.errors import ConflictError, InvalidStateError, NotFoundError
from directory_api.core.logging import log_event
from directory_api.models.plan import Plan
from directory_api.models.subscription import Subscription, SubscriptionStatus


BLOCKING_STATUSES = (SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value)


def _blocking_clause(user_id: str, now: datetime):
    return and_(
        subscriptions.c.user_id == user_id,
        subscriptions.c.status.in_(BLOCKING_STATUSES),
        subscriptions.c.expiry_date > now,
    )


def _status_clause(status: Optional[str], now: datetime):
    """Filter for a reported status; active/expired split on expiry_date."""
    if status is None:
        return None
    if status == SubscriptionStatus.ACTIVE.value:
        return and_(subscriptions.c.status == status, subscriptions.c.expiry_date > now)
    if status == SubscriptionStatus.EXPIRED.value:
        return and_(
            subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            subscriptions.c.expiry_date <= now,
        )
    return subscriptions.c.status == status


class SubscriptionLedger:
    def __init__(self, session_factory: Callable = get_db_session, clock: Callable[[], datetime] = utc_now):
        self._session = session_factory
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def create(self, user_id: str, plan: Plan, phone: str) -> Subscription:
        """
        Insert a pending subscription, snapshotting the plan's terms.

        The user row is locked for the check-then-insert so two concurrent
        requests for the same user cannot both pass the blocking check.

        Raises:
            NotFoundError: unknown user
            ConflictError: user already has a pending or active unexpired subscription
        """
        now = self._clock()
        subscription_id = str(uuid.uuid4())

        with self._session() as session:
            user_row = session.execute(
                select(users.c.user_id).where(users.c.user_id == user_id).with_for_update()
            ).first()
            if user_row is None:
                raise NotFoundError("User not found")

            blocking = session.execute(
                select(subscriptions)
                .where(_blocking_clause(user_id, now))
                .order_by(subscriptions.c.expiry_date.desc())
            ).first()
            if blocking is not None:
                existing = Subscription.from_row(blocking)
                raise ConflictError(
                    conflict_message(existing),
                    details={"expires": existing.expiry_date.isoformat(), "status": existing.status.value},
                )

            session.execute(
                insert(subscriptions).values(
                    id=subscription_id,
                    user_id=user_id,
                    plan_id=plan.plan_id,
                    status=SubscriptionStatus.PENDING.value,
                    start_date=now,
                    expiry_date=now + timedelta(days=plan.duration_days),
                    amount=plan.price,
                    expected_amount=plan.price,
                    amount_mismatch=False,
                    phone_used=phone,
                    created_at=now,
                    updated_at=now,
                )
            )

        log_event(
            "info",
            "subscription.created",
            user_id=user_id,
            subscription_id=subscription_id,
            event_type="subscription.created",
            extra={"plan_id": plan.plan_id, "amount": plan.price},
        )
        return self.find_by_id(subscription_id)

    def find_by_id(self, subscription_id: str) -> Subscription:
        with self._session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == subscription_id)
            ).first()
        if row is None:
            raise NotFoundError("Subscription not found")
        return Subscription.from_row(row)

    def find_by_correlation_id(self, correlation_id: str) -> Subscription:
        with self._session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.checkout_id == correlation_id)
            ).first()
        if row is None:
            raise NotFoundError("Subscription not found")
        return Subscription.from_row(row)

    def find_blocking(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """Pending or active subscription whose expiry is still in the future."""
        now = now or self._clock()
        with self._session() as session:
            row = session.execute(
                select(subscriptions)
                .where(_blocking_clause(user_id, now))
                .order_by(subscriptions.c.expiry_date.desc())
            ).first()
        return Subscription.from_row(row) if row else None

    def find_current(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """Latest-expiring active, unexpired subscription."""
        now = now or self._clock()
        with self._session() as session:
            row = session.execute(
                select(subscriptions)
                .where(
                    and_(
                        subscriptions.c.user_id == user_id,
                        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                        subscriptions.c.expiry_date > now,
                    )
                )
                .order_by(subscriptions.c.expiry_date.desc())
            ).first()
        return Subscription.from_row(row) if row else None

    def find_latest(self, user_id: str) -> Optional[Subscription]:
        with self._session() as session:
            row = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .order_by(subscriptions.c.created_at.desc())
            ).first()
        return Subscription.from_row(row) if row else None

    def attach_correlation_id(
        self,
        subscription_id: str,
        correlation_id: str,
        merchant_request_id: Optional[str] = None,
    ) -> Subscription:
        """Record the provider's correlation id on a pending row. Set at most once."""
        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.id == subscription_id,
                        subscriptions.c.status == SubscriptionStatus.PENDING.value,
                        subscriptions.c.checkout_id.is_(None),
                    )
                )
                .values(
                    checkout_id=correlation_id,
                    merchant_request_id=merchant_request_id,
                    updated_at=self._clock(),
                )
            )
            if result.rowcount == 0:
                self._raise_for_missed_transition(session, subscription_id, "attach correlation id")
        return self.find_by_id(subscription_id)

    def transition_to_active(
        self,
        subscription_id: str,
        receipt: Optional[str],
        confirmed_amount: Optional[float] = None,
        *,
        amount_mismatch: bool = False,
        payer_phone: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        pending -> active.

        The confirmed amount replaces `amount`; `expected_amount` keeps the
        price snapshot so a mismatch stays visible.

        Raises:
            NotFoundError: no such row
            InvalidStateError: row is no longer pending
        """
        values = {
            "status": SubscriptionStatus.ACTIVE.value,
            "mpesa_receipt": receipt,
            "amount_mismatch": amount_mismatch,
            "payer_phone": payer_phone,
            "paid_at": paid_at,
            "updated_at": self._clock(),
        }
        if confirmed_amount is not None:
            values["amount"] = float(confirmed_amount)

        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.id == subscription_id,
                        subscriptions.c.status == SubscriptionStatus.PENDING.value,
                    )
                )
                .values(**values)
            )
            if result.rowcount == 0:
                self._raise_for_missed_transition(session, subscription_id, "activate")
        return self.find_by_id(subscription_id)

    def transition_to_failed(self, subscription_id: str, reason: str) -> Subscription:
        """pending -> failed, recording the provider's reason."""
        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.id == subscription_id,
                        subscriptions.c.status == SubscriptionStatus.PENDING.value,
                    )
                )
                .values(
                    status=SubscriptionStatus.FAILED.value,
                    failure_reason=reason,
                    updated_at=self._clock(),
                )
            )
            if result.rowcount == 0:
                self._raise_for_missed_transition(session, subscription_id, "fail")
        return self.find_by_id(subscription_id)

    def _raise_for_missed_transition(self, session, subscription_id: str, action: str) -> None:
        current = session.execute(
            select(subscriptions.c.status).where(subscriptions.c.id == subscription_id)
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundError("Subscription not found")
        raise InvalidStateError(
            f"Cannot {action} subscription in status {current}",
            current_status=current,
        )

    def list(
        self,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Subscription], int]:
        """Newest first. Returns (rows, total)."""
        now = now or self._clock()
        clause = _status_clause(status, now)
        query = select(subscriptions)
        count_query = select(func.count()).select_from(subscriptions)
        if clause is not None:
            query = query.where(clause)
            count_query = count_query.where(clause)

        with self._session() as session:
            total = session.execute(count_query).scalar_one()
            rows = session.execute(
                query.order_by(subscriptions.c.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return [Subscription.from_row(row) for row in rows], total

    def list_stale_pending(self, older_than: timedelta, now: Optional[datetime] = None) -> List[Subscription]:
        """Pending rows created before now - older_than; these never got a callback."""
        now = now or self._clock()
        cutoff = now - older_than
        with self._session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(
                    and_(
                        subscriptions.c.status == SubscriptionStatus.PENDING.value,
                        subscriptions.c.created_at < cutoff,
                    )
                )
                .order_by(subscriptions.c.created_at.asc())
            ).fetchall()
        return [Subscription.from_row(row) for row in rows]

    def count_by_status(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._clock()
        counts = {status.value: 0 for status in SubscriptionStatus}
        with self._session() as session:
            for status in SubscriptionStatus:
                counts[status.value] = session.execute(
                    select(func.count()).select_from(subscriptions).where(_status_clause(status.value, now))
                ).scalar_one()
        return counts

    def revenue(self) -> float:
        """Sum of confirmed amounts on activated subscriptions, expired included."""
        with self._session() as session:
            total = session.execute(
                select(func.coalesce(func.sum(subscriptions.c.amount), 0.0)).where(
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value
                )
            ).scalar_one()
        return float(total or 0.0)


def conflict_message(existing: Subscription) -> str:
    expires = existing.expiry_date.strftime("%Y-%m-%d %H:%M UTC")
    if existing.status == SubscriptionStatus.PENDING:
        return f"A subscription payment is already pending (expires {expires})"
    return f"You already have an active subscription that expires on {expires}"
