"""
Entitlement projection and the public provider listing it gates.
"""
from datetime import timedelta

import pytest

from directory_api.core.database import utc_now
from directory_api.core.errors import NotFoundError
from directory_api.features.entitlements.service import EntitlementProjector, get_entitlement, is_entitled


def test_apply_overwrites_projection(make_user, clock):
    make_user("user_alice")
    projector = EntitlementProjector(clock=clock)
    expiry = clock.now + timedelta(days=5)

    projector.apply("user_alice", expiry)

    entitlement = get_entitlement("user_alice")
    assert entitlement.has_active_subscription is True
    assert entitlement.subscription_expiry == expiry
    assert entitlement.last_payment_date == clock.now


def test_apply_twice_converges(make_user, clock):
    make_user("user_alice")
    projector = EntitlementProjector(clock=clock)
    expiry = clock.now + timedelta(days=5)

    projector.apply("user_alice", expiry)
    projector.apply("user_alice", expiry)

    assert get_entitlement("user_alice").subscription_expiry == expiry


def test_apply_never_moves_expiry_backwards(make_user, clock):
    make_user("user_alice")
    projector = EntitlementProjector(clock=clock)
    later = clock.now + timedelta(days=30)
    earlier = clock.now + timedelta(days=5)

    assert projector.apply("user_alice", later) is True
    assert projector.apply("user_alice", earlier) is False

    assert get_entitlement("user_alice").subscription_expiry == later


def test_apply_unknown_user():
    with pytest.raises(NotFoundError):
        EntitlementProjector().apply("user_ghost", utc_now())


def test_expired_projection_not_entitled(make_user):
    past = utc_now() - timedelta(days=1)
    make_user("user_alice", has_active_subscription=True, subscription_expiry=past)

    assert get_entitlement("user_alice").has_active_subscription is True
    assert is_entitled("user_alice") is False


def test_unknown_user_not_entitled():
    assert is_entitled("user_ghost") is False


def test_providers_lists_only_visible(client, make_user):
    future = utc_now() + timedelta(days=3)
    past = utc_now() - timedelta(days=1)
    make_user("user_visible", is_active=True, has_active_subscription=True,
              subscription_expiry=future, phone_no="254712345678", location="Nairobi")
    make_user("user_unapproved", is_active=False, has_active_subscription=True, subscription_expiry=future)
    make_user("user_expired", is_active=True, has_active_subscription=True, subscription_expiry=past)
    make_user("user_unpaid", is_active=True)

    response = client.get("/providers")

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    provider = body["providers"][0]
    assert provider["user_id"] == "user_visible"
    assert provider["phone"] == "254****678"


def test_providers_pagination_bounds(client):
    assert client.get("/providers?limit=101").status_code == 422
    assert client.get("/providers?page=0").status_code == 422


def test_paid_approved_provider_becomes_visible(client, auth_headers, admin_headers, basic_plan):
    from directory_api.tests.mocks import stk_callback

    headers = auth_headers("user_alice")
    client.patch("/me", json={"display_name": "Alice", "phone_no": "254712345678"}, headers=headers)
    client.patch("/admin/providers/user_alice", json={"is_active": True}, headers=admin_headers)
    assert client.get("/providers").json()["total"] == 0

    correlation_id = client.post(
        "/subscribe", json={"plan_id": basic_plan.plan_id, "phone": "0712345678"}, headers=headers
    ).json()["correlation_id"]
    client.post("/mpesa/callback", json=stk_callback(correlation_id))

    listing = client.get("/providers").json()
    assert [p["display_name"] for p in listing["providers"]] == ["Alice"]

    me = client.get("/me", headers=headers).json()
    assert me["approved"] is True
    assert me["entitled"] is True
