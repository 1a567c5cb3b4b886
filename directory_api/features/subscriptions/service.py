"""
Subscription activation engine.

Orchestrates both halves of a push-payment subscription:
- create_subscription: plan -> blocking check -> phone -> pending row ->
  initiator -> correlation id
- reconcile: decoded callback -> guarded ledger transition -> entitlement

Collaborators are injected so tests can substitute fakes.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from directory_api.core.config import settings
from directory_api.core.database import utc_now
from directory_api.core.errors import (
    AppError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    TransientLookupMiss,
    UpstreamError,
    ValidationError,
)
from directory_api.core.logging import log_event
from directory_api.features.entitlements.service import EntitlementProjector
from directory_api.features.payments.callback import PaymentResult
from directory_api.features.payments.phone import is_valid_phone, mask_phone, normalize_phone
from directory_api.features.payments.provider import PaymentInitiator, PaymentInitiatorError
from directory_api.features.plans.service import PlanCatalog
from directory_api.features.subscriptions.ledger import SubscriptionLedger, conflict_message
from directory_api.models.subscription import Subscription, SubscriptionStatus, account_reference


@dataclass(frozen=True)
class SubscriptionInitiated:
    correlation_id: str
    masked_phone: Optional[str]
    amount: float
    provider_message: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str  # activated | failed | duplicate | ignored
    subscription_id: str
    amount_mismatch: bool = False
    projection_ok: bool = True


class SubscriptionService:
    def __init__(
        self,
        ledger: SubscriptionLedger,
        initiator: PaymentInitiator,
        plans: PlanCatalog,
        projector: EntitlementProjector,
        *,
        fallback_phone: Optional[str] = None,
        amount_tolerance: float = 0.01,
        country_code: str = "254",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.initiator = initiator
        self.plans = plans
        self.projector = projector
        self.fallback_phone = fallback_phone
        self.amount_tolerance = amount_tolerance
        self.country_code = country_code
        self._clock = clock

    def _resolve_phone(self, phone: Optional[str]) -> str:
        raw = (phone or "").strip() or (self.fallback_phone or "").strip()
        if not raw:
            raise ValidationError("Phone number is required")
        normalized = normalize_phone(raw, self.country_code)
        if not is_valid_phone(normalized):
            raise ValidationError("Invalid phone number")
        return normalized

    def create_subscription(self, user_id: str, plan_id: str, phone: Optional[str] = None) -> SubscriptionInitiated:
        """
        Start a paid subscription.

        The pending row is written before the initiator is called so a crash
        after the call leaves a recoverable record, never a lost payment.

        Raises:
            NotFoundError: plan missing or inactive
            ConflictError: pending or active unexpired subscription exists
            ValidationError: no usable phone number
            UpstreamError: initiator failed; the row is marked failed
            AppError: correlation id could not be stored (degraded state)
        """
        plan = self.plans.get_active(plan_id)

        now = self._clock()
        existing = self.ledger.find_blocking(user_id, now)
        if existing is not None:
            raise ConflictError(
                conflict_message(existing),
                details={"expires": existing.expiry_date.isoformat(), "status": existing.status.value},
            )

        resolved_phone = self._resolve_phone(phone)

        # Re-checks the blocking rule under the user row lock
        subscription = self.ledger.create(user_id, plan, resolved_phone)
        reference = account_reference(subscription.id)

        try:
            initiation = self.initiator.start(
                phone=resolved_phone,
                amount=int(round(subscription.amount)),
                account_reference=reference,
                description=f"Subscription: {plan.name}",
            )
        except Exception as e:
            # Any initiator failure must release the pending row
            reason = str(e) or type(e).__name__
            retryable = isinstance(e, PaymentInitiatorError) and e.retryable
            self.ledger.transition_to_failed(subscription.id, reason)
            log_event(
                "error",
                "subscription.initiate_failed",
                user_id=user_id,
                subscription_id=subscription.id,
                event_type="subscription.initiate_failed",
                error_code="upstream_error",
                extra={"reason": reason, "retryable": retryable, "error_type": type(e).__name__},
            )
            raise UpstreamError(f"Failed to initiate payment: {reason}", retryable=retryable)

        try:
            self.ledger.attach_correlation_id(
                subscription.id,
                initiation.correlation_id,
                initiation.merchant_request_id,
            )
        except Exception:
            # Payment prompt went out but no webhook can find this row now
            log_event(
                "error",
                "subscription.correlation_write_failed",
                user_id=user_id,
                subscription_id=subscription.id,
                event_type="subscription.correlation_write_failed",
                error_code="subscription_degraded",
                extra={"account_reference": reference, "correlation_id": initiation.correlation_id},
            )
            raise AppError(
                "Payment was initiated but could not be recorded; contact support",
                code="subscription_degraded",
                status_code=500,
                details={"account_reference": reference},
            )

        log_event(
            "info",
            "subscription.initiated",
            user_id=user_id,
            subscription_id=subscription.id,
            event_type="subscription.initiated",
            extra={"phone": mask_phone(resolved_phone), "amount": subscription.amount},
        )
        return SubscriptionInitiated(
            correlation_id=initiation.correlation_id,
            masked_phone=mask_phone(resolved_phone),
            amount=subscription.amount,
            provider_message=initiation.provider_message,
        )

    def reconcile(self, result: PaymentResult) -> ReconcileResult:
        """
        Apply a decoded callback to the ledger. Safe to call repeatedly.

        Raises:
            TransientLookupMiss: correlation id not in the ledger (yet)
        """
        try:
            subscription = self.ledger.find_by_correlation_id(result.correlation_id)
        except NotFoundError:
            log_event(
                "warning",
                "reconcile.unknown_correlation_id",
                event_type="reconcile.unknown_correlation_id",
                extra={"correlation_id": result.correlation_id, "result_code": result.result_code},
            )
            raise TransientLookupMiss(f"No subscription for correlation id {result.correlation_id}")

        if result.succeeded:
            return self._reconcile_success(subscription, result)
        return self._reconcile_failure(subscription, result)

    def _reconcile_success(self, subscription: Subscription, result: PaymentResult) -> ReconcileResult:
        mismatch = False
        if result.confirmed_amount is not None:
            mismatch = abs(result.confirmed_amount - subscription.expected_amount) > self.amount_tolerance

        try:
            activated = self.ledger.transition_to_active(
                subscription.id,
                result.receipt,
                result.confirmed_amount,
                amount_mismatch=mismatch,
                payer_phone=result.payer_phone,
                paid_at=result.paid_at,
            )
        except InvalidStateError as e:
            if e.current_status == SubscriptionStatus.ACTIVE.value:
                log_event(
                    "info",
                    "reconcile.duplicate_success",
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    event_type="reconcile.duplicate_success",
                )
                current = self.ledger.find_by_id(subscription.id)
                projection_ok = self._project(current)
                return ReconcileResult("duplicate", subscription.id, current.amount_mismatch, projection_ok)

            log_event(
                "error",
                "reconcile.payment_for_failed_subscription",
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                event_type="reconcile.payment_for_failed_subscription",
                error_code="invalid_state",
                extra={"receipt": result.receipt, "amount": result.confirmed_amount, "status": e.current_status},
            )
            return ReconcileResult("ignored", subscription.id)

        if mismatch:
            log_event(
                "warning",
                "reconcile.amount_mismatch",
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                event_type="reconcile.amount_mismatch",
                extra={"expected": subscription.expected_amount, "confirmed": result.confirmed_amount},
            )

        log_event(
            "info",
            "subscription.activated",
            user_id=activated.user_id,
            subscription_id=activated.id,
            event_type="subscription.activated",
            extra={"receipt": result.receipt, "amount": activated.amount},
        )
        projection_ok = self._project(activated)
        return ReconcileResult("activated", activated.id, mismatch, projection_ok)

    def _reconcile_failure(self, subscription: Subscription, result: PaymentResult) -> ReconcileResult:
        reason = result.result_desc or f"M-Pesa result code {result.result_code}"
        try:
            self.ledger.transition_to_failed(subscription.id, reason)
        except InvalidStateError as e:
            log_event(
                "info",
                "reconcile.failure_ignored",
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                event_type="reconcile.failure_ignored",
                extra={"status": e.current_status, "reason": reason},
            )
            return ReconcileResult("ignored", subscription.id)

        log_event(
            "info",
            "subscription.failed",
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            event_type="subscription.failed",
            extra={"reason": reason, "result_code": result.result_code},
        )
        return ReconcileResult("failed", subscription.id)

    def _project(self, subscription: Subscription) -> bool:
        """Projection lag is a warning; the ledger stays authoritative."""
        try:
            self.projector.apply(subscription.user_id, subscription.expiry_date)
            return True
        except Exception as e:
            log_event(
                "warning",
                "entitlement.projection_failed",
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                event_type="entitlement.projection_failed",
                extra={"error": str(e)},
            )
            return False

    def check_status(self, user_id: str, correlation_id: str) -> Subscription:
        """Raw ledger row for a polling client that owns it."""
        subscription = self.ledger.find_by_correlation_id(correlation_id)
        if subscription.user_id != user_id:
            raise ForbiddenError("Access denied")
        return subscription

    def status_snapshot(self, user_id: str) -> dict:
        now = self._clock()
        current = self.ledger.find_current(user_id, now)
        if current is None:
            return {
                "has_subscription": False,
                "is_active": False,
                "plan": None,
                "days_remaining": 0,
                "expiry": None,
                "subscription": None,
            }

        plan = self.plans.get(current.plan_id)
        return {
            "has_subscription": True,
            "is_active": True,
            "plan": plan,
            "days_remaining": current.days_remaining(now),
            "expiry": current.expiry_date,
            "subscription": current,
        }


def build_subscription_service(initiator: Optional[PaymentInitiator] = None) -> SubscriptionService:
    """Default wiring from settings."""
    if initiator is None:
        from directory_api.features.payments.mpesa_provider import MpesaInitiator

        initiator = MpesaInitiator()
    return SubscriptionService(
        ledger=SubscriptionLedger(),
        initiator=initiator,
        plans=PlanCatalog(),
        projector=EntitlementProjector(),
        fallback_phone=settings.MPESA_FALLBACK_PHONE,
        amount_tolerance=settings.AMOUNT_TOLERANCE,
        country_code=settings.MPESA_COUNTRY_CODE,
    )
