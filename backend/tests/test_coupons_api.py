import asyncio
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import add_coupon, make_test_client, utcnow
from injapanfood.core.security import ROLE_ADMIN, ROLE_SERVICE, create_access_token
from injapanfood.db.session import get_session
from injapanfood.main import app


def auth_headers(subject: str, role: str = "customer") -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(subject, role=role)}"}


@pytest.fixture
def api(tmp_path: Path):
    client, SessionLocal = make_test_client(tmp_path)
    return client, SessionLocal


def _seed(SessionLocal, **overrides):
    return asyncio.run(add_coupon(SessionLocal, **overrides))


def test_guest_validation_returns_priced_discount(api) -> None:
    client, SessionLocal = api
    _seed(SessionLocal, code="SAVE10", value=Decimal("10"), max_discount_amount=Decimal("500"))

    res = client.post("/api/v1/coupons/validate", json={"code": "save10", "cart_total": "10000"})

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["valid"] is True
    assert body["reason"] is None
    assert Decimal(body["discount_amount"]) == Decimal("500")
    assert body["currency"] == "JPY"
    assert body["coupon"]["code"] == "SAVE10"


def test_ineligible_coupon_is_a_normal_response(api) -> None:
    client, SessionLocal = api
    _seed(SessionLocal, code="SNACKS", applicable_categories=["snacks"])

    missing = client.post("/api/v1/coupons/validate", json={"code": "NOPE", "cart_total": 100})
    scoped = client.post(
        "/api/v1/coupons/validate",
        json={"code": "SNACKS", "cart_total": 100, "category_ids": ["drinks"]},
        headers=auth_headers("u-1"),
    )

    assert missing.status_code == 200
    assert missing.json() == {"valid": False, "reason": "coupon not found", "discount_amount": None, "currency": None, "coupon": None}
    assert scoped.json()["reason"] == "not applicable to cart items"


def test_validation_rejects_bad_token_and_bad_payload(api) -> None:
    client, _ = api

    bad_token = client.post(
        "/api/v1/coupons/validate",
        json={"code": "SAVE10", "cart_total": 100},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    negative = client.post("/api/v1/coupons/validate", json={"code": "SAVE10", "cart_total": -5})

    assert bad_token.status_code == 401
    assert negative.status_code == 422
    assert negative.json()["code"] == "validation_error"


def test_validation_is_rate_limited(api, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = api
    monkeypatch.setattr(app.state.coupon_validate_limiter, "limit", 2)

    for _ in range(2):
        assert client.post("/api/v1/coupons/validate", json={"code": "X", "cart_total": 1}).status_code == 200
    limited = client.post("/api/v1/coupons/validate", json={"code": "X", "cart_total": 1})

    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1


def test_redeem_requires_authentication(api) -> None:
    client, SessionLocal = api
    coupon = _seed(SessionLocal, code="AUTH")

    res = client.post(
        "/api/v1/coupons/redeem",
        json={"coupon_id": str(coupon.id), "order_id": "order-1", "discount_amount": 100},
    )

    assert res.status_code == 401


def test_customer_redeems_for_self_only(api) -> None:
    client, SessionLocal = api
    coupon = _seed(SessionLocal, code="SELF")

    own = client.post(
        "/api/v1/coupons/redeem",
        json={"coupon_id": str(coupon.id), "order_id": "order-1", "discount_amount": "250"},
        headers=auth_headers("u-1"),
    )
    other = client.post(
        "/api/v1/coupons/redeem",
        json={"coupon_id": str(coupon.id), "user_id": "u-2", "order_id": "order-2", "discount_amount": "250"},
        headers=auth_headers("u-1"),
    )

    assert own.status_code == 200, own.text
    assert own.json()["user_id"] == "u-1"
    assert own.json()["replayed"] is False
    assert other.status_code == 403


def test_service_redemption_replay_and_limit(api) -> None:
    client, SessionLocal = api
    coupon = _seed(SessionLocal, code="ONEOFF", usage_limit=1)
    headers = auth_headers("order-service", role=ROLE_SERVICE)
    payload = {"coupon_id": str(coupon.id), "user_id": "u-9", "order_id": "order-1", "discount_amount": 300}

    first = client.post("/api/v1/coupons/redeem", json=payload, headers=headers)
    replay = client.post("/api/v1/coupons/redeem", json=payload, headers=headers)
    exhausted = client.post("/api/v1/coupons/redeem", json={**payload, "order_id": "order-2"}, headers=headers)

    assert first.status_code == 200, first.text
    assert first.json()["used_count"] == 1
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True
    assert replay.json()["usage_id"] == first.json()["usage_id"]
    assert exhausted.status_code == 409
    assert exhausted.json() == {"detail": "usage limit exceeded at redemption time", "code": "usage_limit_exceeded"}

    metrics = client.get("/api/v1/metrics").json()
    assert metrics["coupon_redemptions"] == 1
    assert metrics["coupon_redemption_replays"] == 1
    assert metrics["coupon_redemption_conflicts"] == 1


def test_admin_endpoints_require_admin_role(api) -> None:
    client, _ = api

    assert client.get("/api/v1/coupons/admin").status_code == 401
    assert client.get("/api/v1/coupons/admin", headers=auth_headers("u-1")).status_code == 403


def test_admin_coupon_lifecycle(api) -> None:
    client, _ = api
    admin = auth_headers("admin-1", role=ROLE_ADMIN)
    now = utcnow()
    create_payload = {
        "code": "summer",
        "name": "Summer",
        "type": "fixed_amount",
        "value": 800,
        "min_order_amount": 3000,
        "usage_limit": 100,
        "valid_from": (now - timedelta(days=1)).isoformat(),
        "valid_until": (now + timedelta(days=30)).isoformat(),
    }

    created = client.post("/api/v1/coupons/admin", json=create_payload, headers=admin)
    assert created.status_code == 201, created.text
    coupon = created.json()
    assert coupon["code"] == "SUMMER"
    assert coupon["used_count"] == 0
    assert coupon["created_by"] == "admin-1"

    duplicate = client.post("/api/v1/coupons/admin", json={**create_payload, "code": "SUMMER"}, headers=admin)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "coupon_code_exists"

    by_code = client.get("/api/v1/coupons/admin/by-code/summer", headers=admin)
    assert by_code.status_code == 200
    assert by_code.json()["id"] == coupon["id"]

    patched = client.patch(f"/api/v1/coupons/admin/{coupon['id']}", json={"name": "Summer sale", "usage_limit": 50}, headers=admin)
    assert patched.status_code == 200
    assert patched.json()["name"] == "Summer sale"
    assert patched.json()["usage_limit"] == 50

    invalid = client.patch(f"/api/v1/coupons/admin/{coupon['id']}", json={"type": "percentage"}, headers=admin)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "coupon_invalid"

    redeemed = client.post(
        "/api/v1/coupons/redeem",
        json={"coupon_id": coupon["id"], "user_id": "u-5", "order_id": "order-5", "discount_amount": 800},
        headers=admin,
    )
    assert redeemed.status_code == 200, redeemed.text

    usages = client.get(f"/api/v1/coupons/admin/{coupon['id']}/usages", headers=admin)
    assert [u["order_id"] for u in usages.json()] == ["order-5"]

    active = client.get("/api/v1/coupons/active")
    assert [c["code"] for c in active.json()] == ["SUMMER"]

    assert client.delete(f"/api/v1/coupons/admin/{coupon['id']}", headers=admin).status_code == 204
    gone = client.get(f"/api/v1/coupons/admin/{coupon['id']}", headers=admin)
    assert gone.status_code == 404
    assert gone.json() == {"detail": "Coupon not found", "code": "coupon_not_found"}
    assert len(client.get(f"/api/v1/coupons/admin/{coupon['id']}/usages", headers=admin).json()) == 1


class _DownSession:
    async def execute(self, _stmt: object) -> object:
        raise OperationalError("SELECT", {}, ConnectionError("connection refused"))

    async def rollback(self) -> None:
        return None


def test_store_outage_maps_to_503() -> None:
    async def override_get_session():
        yield _DownSession()

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)

    res = client.post("/api/v1/coupons/validate", json={"code": "SAVE10", "cart_total": 100})

    assert res.status_code == 503
    assert res.json()["code"] == "store_unavailable"
    assert client.get("/api/v1/metrics").json()["coupon_store_faults"] == 1
