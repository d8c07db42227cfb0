"""Affiliate accounts, click tracking, withdrawals, and the HTTP surface."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import select

from cvpay.common.config import settings
from cvpay.services.affiliates.main import create_app
from cvpay.services.affiliates.models import Affiliate, ReferralClick
from cvpay.services.affiliates.service import (
    AffiliateConflict,
    AffiliateError,
    AffiliateNotApproved,
    AffiliateNotFound,
    commission_for,
    generate_referral_code,
)


def _fund(session_factory, affiliate_id, amount):
    with session_factory() as db:
        affiliate = db.get(Affiliate, affiliate_id)
        affiliate.available_balance = amount
        db.commit()


def _balance(session_factory, affiliate_id):
    with session_factory() as db:
        return db.get(Affiliate, affiliate_id).available_balance


def test_commission_rounds_half_up():
    assert commission_for(5000, Decimal("10")) == 500
    assert commission_for(5000, 12.5) == 625
    assert commission_for(4999, Decimal("10")) == 500
    assert commission_for(4994, Decimal("10")) == 499


def test_referral_code_uses_name_prefix():
    code = generate_referral_code("Neema J. Juma")

    assert code.startswith("neemaj")
    assert len(code) == 10


def test_register_opens_pending_account(affiliates):
    affiliate = affiliates.register("user-1", "Baraka Mollel", "baraka@example.com", "255700111222")

    assert affiliate.status == "pending"
    assert affiliate.referral_code.startswith("baraka")
    assert affiliate.commission_rate == Decimal("10")
    assert affiliate.created_at is not None


def test_register_twice_conflicts(affiliates):
    affiliates.register("user-1", "Baraka Mollel", "baraka@example.com", "255700111222")

    with pytest.raises(AffiliateConflict):
        affiliates.register("user-1", "Baraka Mollel", "baraka@example.com", "255700111222")


def test_register_requires_fields(affiliates):
    with pytest.raises(AffiliateError):
        affiliates.register("user-1", "", "baraka@example.com", "255700111222")


def test_only_approved_codes_validate_and_track(affiliates, session_factory):
    pending = affiliates.register("user-2", "Zawadi Kimaro", "z@example.com", "255700333444")

    assert affiliates.validate_code(pending.referral_code) is None
    with pytest.raises(AffiliateNotFound):
        affiliates.track_click(pending.referral_code)

    affiliates.set_status(pending.id, "approved")
    assert affiliates.validate_code(pending.referral_code).id == pending.id

    affiliates.track_click(pending.referral_code, ip_address="41.59.1.2, 10.0.0.1", user_agent="Mozilla")
    with session_factory() as db:
        click = db.execute(select(ReferralClick)).scalar_one()
        assert db.get(Affiliate, pending.id).total_clicks == 1
    assert click.ip_address == "41.59.1.2"
    assert click.landing_page == "/"


def test_set_status_rejects_unknown_values(affiliates, approved_affiliate):
    with pytest.raises(AffiliateError):
        affiliates.set_status(approved_affiliate.id, "vip")


def test_withdrawal_holds_balance(affiliates, session_factory, approved_affiliate):
    _fund(session_factory, approved_affiliate.id, 12000)

    payout = affiliates.request_withdrawal(approved_affiliate.user_id, 10000, "255755000111")

    assert payout.status == "pending"
    assert payout.amount == 10000
    assert _balance(session_factory, approved_affiliate.id) == 2000


def test_withdrawal_rules(affiliates, session_factory, approved_affiliate):
    _fund(session_factory, approved_affiliate.id, 12000)

    with pytest.raises(AffiliateError, match="Minimum withdrawal"):
        affiliates.request_withdrawal(approved_affiliate.user_id, 1000, "255755000111")
    with pytest.raises(AffiliateError, match="Insufficient balance"):
        affiliates.request_withdrawal(approved_affiliate.user_id, 13000, "255755000111")

    affiliates.request_withdrawal(approved_affiliate.user_id, 5000, "255755000111")
    with pytest.raises(AffiliateConflict):
        affiliates.request_withdrawal(approved_affiliate.user_id, 5000, "255755000111")


def test_withdrawal_requires_approval(affiliates, session_factory):
    pending = affiliates.register("user-3", "Imani Said", "i@example.com", "255700555666")
    _fund(session_factory, pending.id, 9000)

    with pytest.raises(AffiliateNotApproved):
        affiliates.request_withdrawal("user-3", 5000, "255700555666")


def test_rejected_payout_returns_hold(affiliates, session_factory, approved_affiliate):
    _fund(session_factory, approved_affiliate.id, 6000)
    payout = affiliates.request_withdrawal(approved_affiliate.user_id, 6000, "255755000111")

    settled = affiliates.settle_payout(payout.id, "rejected")

    assert settled.status == "rejected"
    assert settled.settled_at is not None
    assert _balance(session_factory, approved_affiliate.id) == 6000
    with pytest.raises(AffiliateConflict):
        affiliates.settle_payout(payout.id, "paid")


def test_paid_payout_keeps_balance_deducted(affiliates, session_factory, approved_affiliate):
    _fund(session_factory, approved_affiliate.id, 6000)
    payout = affiliates.request_withdrawal(approved_affiliate.user_id, 6000, "255755000111")

    assert affiliates.settle_payout(payout.id, "paid").status == "paid"
    assert _balance(session_factory, approved_affiliate.id) == 0


@pytest.fixture
def client(affiliates):
    return TestClient(create_app(affiliates))


def test_register_and_stats_over_http(client, affiliates):
    unauthenticated = client.post("/affiliates/register", json={"full_name": "A", "email": "a@x", "phone": "1"})
    assert unauthenticated.status_code == 401

    resp = client.post(
        "/affiliates/register",
        json={"full_name": "Baraka Mollel", "email": "baraka@example.com", "phone": "255700111222"},
        headers={"X-User-Id": "user-9"},
    )
    assert resp.status_code == 200
    affiliate = resp.json()["affiliate"]
    assert affiliate["status"] == "pending"

    again = client.post(
        "/affiliates/register",
        json={"full_name": "Baraka Mollel", "email": "baraka@example.com", "phone": "255700111222"},
        headers={"X-User-Id": "user-9"},
    )
    assert again.status_code == 409
    assert "already have an affiliate account" in again.json()["error"]

    stats = client.get("/affiliates/stats", headers={"X-User-Id": "user-9"})
    assert stats.status_code == 200
    body = stats.json()
    assert body["affiliate"]["referral_code"] == affiliate["referral_code"]
    assert body["conversions"] == []
    assert body["payouts"] == []
    assert body["monthly_clicks"] == 0


def test_validate_code_and_track_click_over_http(client, approved_affiliate):
    assert client.get("/affiliates/validate-code", params={"code": "nope"}).json() == {
        "valid": False,
        "affiliate_id": None,
        "name": None,
    }
    valid = client.get("/affiliates/validate-code", params={"code": approved_affiliate.referral_code}).json()
    assert valid["valid"] is True
    assert valid["name"] == "Neema Juma"

    tracked = client.post(
        "/affiliates/track-click",
        json={"referral_code": approved_affiliate.referral_code, "landing_page": "/templates"},
        headers={"X-Forwarded-For": "41.59.1.2"},
    )
    assert tracked.status_code == 200
    assert tracked.json() == {"success": True, "affiliate_id": approved_affiliate.id}


def test_admin_endpoints_require_api_key(client, approved_affiliate):
    denied = client.post(f"/admin/affiliates/{approved_affiliate.id}/status", json={"status": "suspended"})
    assert denied.status_code == 401

    resp = client.post(
        f"/admin/affiliates/{approved_affiliate.id}/status",
        json={"status": "suspended"},
        headers={"x-api-key": "test-api-key"},
    )
    assert resp.status_code == 200
    assert resp.json()["affiliate"]["status"] == "suspended"

    missing = client.post("/admin/payouts/nope", json={"status": "paid"}, headers={"x-api-key": "test-api-key"})
    assert missing.status_code == 404


def test_withdraw_over_http(client, session_factory, approved_affiliate):
    _fund(session_factory, approved_affiliate.id, 7000)

    resp = client.post(
        "/affiliates/withdraw",
        json={"amount": 5000, "phone": "255755000111"},
        headers={"X-User-Id": approved_affiliate.user_id},
    )

    assert resp.status_code == 200
    assert resp.json()["payout"]["status"] == "pending"
    assert _balance(session_factory, approved_affiliate.id) == 2000


def test_affiliate_requests_are_counted(client):
    labels = {
        "service": settings.service_name,
        "route": "/affiliates/validate-code",
        "method": "GET",
        "status_code": "200",
    }
    before = REGISTRY.get_sample_value("http_requests_total", labels) or 0.0

    client.get("/affiliates/validate-code", params={"code": "nope"})

    assert REGISTRY.get_sample_value("http_requests_total", labels) == before + 1
