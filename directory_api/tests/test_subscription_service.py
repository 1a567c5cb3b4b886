"""
Activation engine: create ordering, reconcile idempotence and failure paths.
"""
from datetime import timedelta
from unittest.mock import Mock

import httpx
import pytest

from directory_api.core.errors import (
    AppError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransientLookupMiss,
    UpstreamError,
    ValidationError,
)
from directory_api.features.entitlements.service import get_entitlement, is_entitled
from directory_api.features.payments.callback import decode_callback
from directory_api.features.payments.mpesa_provider import MpesaInitiator
from directory_api.features.payments.provider import PaymentInitiatorError
from directory_api.features.plans.service import PlanCatalog
from directory_api.models.subscription import SubscriptionStatus
from directory_api.tests.mocks import stk_callback_bytes


@pytest.fixture
def alice(make_user):
    return make_user("user_alice")


def _result(correlation_id, **kwargs):
    return decode_callback(stk_callback_bytes(correlation_id, **kwargs))


def test_create_subscription_scenario(service, initiator, ledger, basic_plan, alice, clock):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert initiated.correlation_id == initiator.last_correlation_id
    assert initiated.masked_phone == "254****678"
    assert initiated.amount == 10

    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.status == SubscriptionStatus.PENDING
    assert sub.amount == 10
    assert sub.expiry_date == clock.now + timedelta(days=5)
    assert sub.phone_used == "254712345678"

    call = initiator.calls[0]
    assert call["phone"] == "254712345678"
    assert call["amount"] == 10
    assert call["account_reference"] == f"SUB-{sub.id}"
    assert call["description"] == "Subscription: 5-Day Basic"


def test_pending_row_exists_before_initiator_call(service, initiator, ledger, basic_plan, alice):
    seen = {}

    def start(**kwargs):
        rows, _ = ledger.list(status="pending")
        seen["pending"] = [r.id for r in rows]
        seen["reference"] = kwargs["account_reference"]
        raise PaymentInitiatorError("boom")

    initiator.start = start

    with pytest.raises(UpstreamError):
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert len(seen["pending"]) == 1
    assert seen["reference"] == f"SUB-{seen['pending'][0]}"


def test_unknown_plan(service, initiator, alice):
    with pytest.raises(NotFoundError):
        service.create_subscription(alice, "no-such-plan", "0712345678")
    assert initiator.calls == []


def test_inactive_plan(service, initiator, basic_plan, alice):
    PlanCatalog().update(basic_plan.plan_id, is_active=False)
    with pytest.raises(NotFoundError):
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    assert initiator.calls == []


def test_conflict_never_calls_initiator(service, initiator, basic_plan, alice):
    first = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    service.reconcile(_result(first.correlation_id))
    initiator.calls.clear()

    with pytest.raises(ConflictError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert initiator.calls == []
    assert "expires" in exc.value.details
    assert "expires on" in exc.value.message


def test_pending_subscription_also_blocks(service, initiator, basic_plan, alice):
    service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    with pytest.raises(ConflictError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    assert len(initiator.calls) == 1
    assert "already pending" in exc.value.message
    assert exc.value.details["status"] == "pending"


def test_phone_required_without_fallback(service, initiator, basic_plan, alice):
    with pytest.raises(ValidationError):
        service.create_subscription(alice, basic_plan.plan_id, None)
    assert initiator.calls == []


def test_fallback_phone_used_when_request_has_none(service, initiator, basic_plan, alice):
    service.fallback_phone = "0700111222"
    service.create_subscription(alice, basic_plan.plan_id, None)
    assert initiator.calls[0]["phone"] == "254700111222"


def test_request_phone_wins_over_fallback(service, initiator, basic_plan, alice):
    service.fallback_phone = "0700111222"
    service.create_subscription(alice, basic_plan.plan_id, "+254712345678")
    assert initiator.calls[0]["phone"] == "254712345678"


def test_invalid_phone_rejected(service, initiator, basic_plan, alice):
    with pytest.raises(ValidationError):
        service.create_subscription(alice, basic_plan.plan_id, "12ab")
    assert initiator.calls == []


def test_initiator_failure_marks_failed(service, initiator, ledger, basic_plan, alice):
    initiator.error = PaymentInitiatorError("MPESA rejected request: Invalid Access Token")

    with pytest.raises(UpstreamError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert exc.value.retryable is False
    rows, _ = ledger.list(status="failed")
    assert len(rows) == 1
    assert rows[0].failure_reason == "MPESA rejected request: Invalid Access Token"

    # User is not blocked by the failed attempt
    initiator.error = None
    service.create_subscription(alice, basic_plan.plan_id, "0712345678")


def test_initiator_timeout_is_retryable(service, initiator, basic_plan, alice):
    initiator.error = PaymentInitiatorError("M-Pesa request timed out", retryable=True)
    with pytest.raises(UpstreamError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    assert exc.value.retryable is True


def test_unexpected_initiator_error_marks_failed(service, initiator, ledger, basic_plan, alice):
    initiator.error = AttributeError("'str' object has no attribute 'get'")

    with pytest.raises(UpstreamError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert exc.value.retryable is False
    assert ledger.list(status="pending")[0] == []
    failed, _ = ledger.list(status="failed")
    assert len(failed) == 1

    initiator.error = None
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    assert ledger.find_by_correlation_id(initiated.correlation_id).status == SubscriptionStatus.PENDING


def test_gateway_error_from_mpesa_releases_pending_row(service, ledger, basic_plan, alice):
    def daraja(request):
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "tok-123"})
        return httpx.Response(502, json="Bad Gateway")

    service.initiator = MpesaInitiator(
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://example.test/mpesa/callback",
        client=httpx.Client(transport=httpx.MockTransport(daraja)),
    )

    with pytest.raises(UpstreamError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert exc.value.retryable is True
    failed, _ = ledger.list(status="failed")
    assert len(failed) == 1
    assert ledger.find_blocking(alice, ledger.now()) is None


def test_correlation_write_failure_is_degraded(service, ledger, basic_plan, alice):
    service.ledger.attach_correlation_id = Mock(side_effect=RuntimeError("db down"))

    with pytest.raises(AppError) as exc:
        service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert exc.value.code == "subscription_degraded"
    stale = ledger.list_stale_pending(timedelta(0), now=ledger.now() + timedelta(seconds=1))
    assert len(stale) == 1
    assert stale[0].checkout_id is None
    assert exc.value.details["account_reference"] == stale[0].account_reference


def test_success_activates_and_projects(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    outcome = service.reconcile(_result(initiated.correlation_id, amount=10, receipt="ABC123"))

    assert outcome.outcome == "activated"
    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.mpesa_receipt == "ABC123"
    assert sub.payer_phone == "254712345678"
    assert sub.paid_at is not None

    entitlement = get_entitlement(alice)
    assert entitlement.has_active_subscription is True
    assert entitlement.subscription_expiry == sub.expiry_date
    assert is_entitled(alice)


@pytest.mark.parametrize("deliveries", [1, 2, 5])
def test_duplicate_success_deliveries_are_idempotent(service, ledger, basic_plan, alice, deliveries):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    outcomes = [
        service.reconcile(_result(initiated.correlation_id, amount=10, receipt=f"RCPT{i}"))
        for i in range(deliveries)
    ]

    assert outcomes[0].outcome == "activated"
    assert all(o.outcome == "duplicate" for o in outcomes[1:])
    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.mpesa_receipt == "RCPT0"


def test_redelivered_old_success_keeps_newer_expiry(service, ledger, plans, basic_plan, alice, clock):
    first = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    service.reconcile(_result(first.correlation_id, amount=10, receipt="RCPTA"))

    clock.advance(days=6)
    premium = plans["1-Month Premium"]
    second = service.create_subscription(alice, premium.plan_id, "0712345678")
    service.reconcile(_result(second.correlation_id, amount=3000, receipt="RCPTB"))
    newer = ledger.find_by_correlation_id(second.correlation_id)

    outcome = service.reconcile(_result(first.correlation_id, amount=10, receipt="RCPTA"))

    assert outcome.outcome == "duplicate"
    assert get_entitlement(alice).subscription_expiry == newer.expiry_date
    assert is_entitled(alice, now=clock.now)


def test_late_activation_of_old_pending_keeps_newer_expiry(service, ledger, plans, basic_plan, alice, clock):
    orphan = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    clock.advance(days=6)
    premium = plans["1-Month Premium"]
    current = service.create_subscription(alice, premium.plan_id, "0712345678")
    service.reconcile(_result(current.correlation_id, amount=3000, receipt="RCPTB"))
    newer = ledger.find_by_correlation_id(current.correlation_id)

    outcome = service.reconcile(_result(orphan.correlation_id, amount=10, receipt="RCPTA"))

    assert outcome.outcome == "activated"
    assert get_entitlement(alice).subscription_expiry == newer.expiry_date


def test_success_then_failure_keeps_active(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    service.reconcile(_result(initiated.correlation_id))
    outcome = service.reconcile(_result(initiated.correlation_id, result_code=1032))

    assert outcome.outcome == "ignored"
    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.failure_reason is None


def test_failure_then_success_keeps_failed(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    service.reconcile(_result(initiated.correlation_id, result_code=1032))
    outcome = service.reconcile(_result(initiated.correlation_id))

    assert outcome.outcome == "ignored"
    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.status == SubscriptionStatus.FAILED
    assert sub.failure_reason == "Request cancelled by user"
    assert get_entitlement(alice).has_active_subscription is False


def test_failure_without_description_uses_result_code(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    service.reconcile(_result(initiated.correlation_id, result_code=2001, result_desc=""))

    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.failure_reason == "M-Pesa result code 2001"


def test_unknown_correlation_id_is_transient_miss(service, ledger, alice):
    with pytest.raises(TransientLookupMiss):
        service.reconcile(_result("ws_CO_UNKNOWN", result_code=1))

    rows, total = ledger.list()
    assert total == 0
    assert get_entitlement(alice).has_active_subscription is False


def test_amount_mismatch_still_activates(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    outcome = service.reconcile(_result(initiated.correlation_id, amount=8))

    assert outcome.outcome == "activated"
    assert outcome.amount_mismatch is True
    sub = ledger.find_by_correlation_id(initiated.correlation_id)
    assert sub.amount == 8
    assert sub.expected_amount == 10
    assert sub.amount_mismatch is True
    assert get_entitlement(alice).has_active_subscription is True


def test_amount_within_tolerance_is_not_mismatch(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    outcome = service.reconcile(_result(initiated.correlation_id, amount=10.0))
    assert outcome.amount_mismatch is False


def test_projection_failure_leaves_ledger_active(service, ledger, basic_plan, alice):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    service.projector.apply = Mock(side_effect=RuntimeError("users table locked"))

    outcome = service.reconcile(_result(initiated.correlation_id))

    assert outcome.outcome == "activated"
    assert outcome.projection_ok is False
    assert ledger.find_by_correlation_id(initiated.correlation_id).status == SubscriptionStatus.ACTIVE
    # Projection lags, the ledger fallback still grants entitlement
    assert get_entitlement(alice).has_active_subscription is False
    assert is_entitled(alice)


def test_check_status_ownership(service, basic_plan, alice, make_user):
    make_user("user_bob")
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")

    assert service.check_status(alice, initiated.correlation_id).status == SubscriptionStatus.PENDING
    with pytest.raises(ForbiddenError):
        service.check_status("user_bob", initiated.correlation_id)
    with pytest.raises(NotFoundError):
        service.check_status(alice, "ws_CO_missing")


def test_status_snapshot_days_remaining(service, basic_plan, alice, clock):
    initiated = service.create_subscription(alice, basic_plan.plan_id, "0712345678")
    service.reconcile(_result(initiated.correlation_id))

    snapshot = service.status_snapshot(alice)
    assert snapshot["is_active"] is True
    assert snapshot["days_remaining"] == 5
    assert snapshot["plan"].name == "5-Day Basic"

    clock.advance(days=2, hours=12)
    assert service.status_snapshot(alice)["days_remaining"] == 2

    clock.advance(days=10)
    snapshot = service.status_snapshot(alice)
    assert snapshot["is_active"] is False
    assert snapshot["days_remaining"] == 0
