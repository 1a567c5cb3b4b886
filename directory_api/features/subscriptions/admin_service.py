"""
Admin subscription operations.

Handles:
- Ledger listing by reported status
- Stale pending sweep (rows that never got a callback or a correlation id)
- Manual pending -> failed to unblock a user
- Aggregate stats
"""
from datetime import timedelta
from typing import Optional

from directory_api.core.config import settings
from directory_api.core.errors import ConflictError, InvalidStateError, ValidationError
from directory_api.core.logging import log_event
from directory_api.features.subscriptions.ledger import SubscriptionLedger
from directory_api.features.users.service import count_active_entitlements
from directory_api.models.subscription import SubscriptionStatus


REPORTED_STATUSES = {status.value for status in SubscriptionStatus}


def list_subscriptions(
    ledger: SubscriptionLedger,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    if status is not None and status not in REPORTED_STATUSES:
        raise ValidationError(f"Invalid status filter: {status}")
    now = ledger.now()
    rows, total = ledger.list(status=status, page=page, limit=limit, now=now)
    return {
        "subscriptions": [
            {**row.model_dump(mode="json"), "status": row.effective_status(now).value}
            for row in rows
        ],
        "total": total,
        "page": page,
        "limit": limit,
        "has_more": page * limit < total,
    }


def list_stale_pending(ledger: SubscriptionLedger, older_than_minutes: Optional[int] = None) -> dict:
    minutes = older_than_minutes if older_than_minutes is not None else settings.STALE_PENDING_MINUTES
    if minutes < 0:
        raise ValidationError("older_than_minutes must not be negative")
    rows = ledger.list_stale_pending(timedelta(minutes=minutes))
    return {
        "older_than_minutes": minutes,
        "subscriptions": [
            {
                **row.model_dump(mode="json"),
                "account_reference": row.account_reference,
                "has_correlation_id": row.checkout_id is not None,
            }
            for row in rows
        ],
        "total": len(rows),
    }


def fail_subscription(ledger: SubscriptionLedger, subscription_id: str, reason: str, actor_id: str) -> dict:
    """Same guarded transition the webhook uses; only pending rows can be failed."""
    try:
        subscription = ledger.transition_to_failed(subscription_id, reason)
    except InvalidStateError as e:
        raise ConflictError(
            f"Subscription is {e.current_status}, only pending subscriptions can be failed",
            details={"status": e.current_status},
        )

    log_event(
        "warning",
        "admin.subscription_failed",
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        event_type="admin.subscription_failed",
        extra={"reason": reason, "actor": actor_id},
    )
    return subscription.model_dump(mode="json")


def get_stats(ledger: SubscriptionLedger) -> dict:
    now = ledger.now()
    return {
        "subscriptions": ledger.count_by_status(now),
        "active_entitlements": count_active_entitlements(now),
        "revenue": ledger.revenue(),
    }
