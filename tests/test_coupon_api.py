from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from storefront.core.security import create_access_token
from storefront.models.cart import AppliedCoupon, CartItem
from storefront.models.coupon import Coupon, DiscountKind
from storefront.models.coupon_redemption import CouponRedemption
from storefront.models.order import Order
from storefront.services import coupon_service
from storefront.services.discount_engine import DiscountEngine
from storefront.services.order_service import generate_order_number


def _auth_headers(user_id: str, role: str = "customer") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


ADMIN = _auth_headers("admin-1", role="admin")


def _create_coupon(db: Session, code: str, **overrides) -> Coupon:
    now = datetime.utcnow()
    fields = dict(
        code=code,
        description=f"{code} promotion",
        discount_kind=DiscountKind.PERCENTAGE,
        value=10.0,
        min_purchase=50.0,
        max_discount=20.0,
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=30),
    )
    fields.update(overrides)
    coupon = Coupon(**fields)
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    return coupon


def _add_to_cart(client: TestClient, headers: dict, unit_price: float, quantity: int = 1, **extra) -> None:
    payload = {
        "product_id": extra.pop("product_id", f"sku-{uuid4().hex[:8]}"),
        "product_name": "Linen Shirt",
        "category": "Shirts",
        "unit_price": unit_price,
        "quantity": quantity,
    }
    payload.update(extra)
    response = client.post("/api/v1/cart/items", json=payload, headers=headers)
    assert response.status_code == 201


def _coupon_payload(code: str, **overrides) -> dict:
    now = datetime.utcnow()
    payload = {
        "code": code,
        "description": "Spring sale",
        "discount_kind": "percentage",
        "value": 15,
        "valid_until": (now + timedelta(days=10)).isoformat(),
    }
    payload.update(overrides)
    return payload


def test_admin_creates_coupon_with_normalized_code(client: TestClient):
    response = client.post("/api/v1/coupons/", json=_coupon_payload("spring15"), headers=ADMIN)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["code"] == "SPRING15"
    assert data["usage_count"] == 0
    assert data["state"] == "live"


def test_coupon_code_uniqueness_is_case_insensitive(client: TestClient, db_session: Session):
    _create_coupon(db_session, "SPRING15")
    other = _create_coupon(db_session, "SUMMER20")

    duplicate = client.post("/api/v1/coupons/", json=_coupon_payload("Spring15"), headers=ADMIN)
    assert duplicate.status_code == 400
    assert duplicate.json()["message"] == "Coupon code already exists"

    rename = client.put(f"/api/v1/coupons/{other.id}", json={"code": "spring15"}, headers=ADMIN)
    assert rename.status_code == 400
    assert rename.json()["message"] == "Coupon code already exists"


def test_admin_can_schedule_future_coupon(client: TestClient):
    now = datetime.utcnow()
    payload = _coupon_payload(
        "LATER",
        valid_from=(now + timedelta(days=2)).isoformat(),
        valid_until=(now + timedelta(days=9)).isoformat(),
    )

    response = client.post("/api/v1/coupons/", json=payload, headers=ADMIN)

    assert response.status_code == 201
    assert response.json()["data"]["state"] == "scheduled"


def test_admin_rejects_percentage_over_100(client: TestClient):
    response = client.post("/api/v1/coupons/", json=_coupon_payload("TOOMUCH", value=150), headers=ADMIN)

    assert response.status_code == 400
    assert response.json()["message"] == "Percentage discount cannot exceed 100%"


def test_coupon_admin_requires_admin_role(client: TestClient):
    assert client.get("/api/v1/coupons/").status_code == 401
    assert client.get("/api/v1/coupons/", headers=_auth_headers("u1")).status_code == 403


def test_admin_deletes_coupon(client: TestClient, db_session: Session):
    coupon = _create_coupon(db_session, "GONE")

    response = client.delete(f"/api/v1/coupons/{coupon.id}", headers=ADMIN)

    assert response.status_code == 200
    assert client.get(f"/api/v1/coupons/{coupon.id}", headers=ADMIN).status_code == 404


def test_validate_previews_discount_without_consuming_usage(client: TestClient, db_session: Session):
    coupon = _create_coupon(db_session, "SAVE10", usage_limit=1)
    headers = _auth_headers("u1")
    _add_to_cart(client, headers, unit_price=100.0, quantity=3)

    for _ in range(3):
        response = client.post("/api/v1/coupons/validate", json={"code": "save10"}, headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["valid"] is True
        assert data["discount_amount"] == 20.0
        assert data["coupon"]["code"] == "SAVE10"

    db_session.refresh(coupon)
    assert coupon.usage_count == 0


def test_validate_reports_rejection_as_ordinary_response(client: TestClient, db_session: Session):
    _create_coupon(db_session, "SAVE10")
    headers = _auth_headers("u1")
    _add_to_cart(client, headers, unit_price=40.0)

    response = client.post("/api/v1/coupons/validate", json={"code": "SAVE10"}, headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is False
    assert data["reason"] == "minimum_purchase_not_met"
    assert data["context"]["shortfall"] == 10.0

    missing = client.post("/api/v1/coupons/validate", json={"code": "NOPE"}, headers=headers)
    assert missing.json()["data"]["reason"] == "not_found"


def test_validate_requires_items_in_cart(client: TestClient, db_session: Session):
    _create_coupon(db_session, "SAVE10")

    response = client.post("/api/v1/coupons/validate", json={"code": "SAVE10"}, headers=_auth_headers("u1"))

    assert response.status_code == 400
    assert response.json()["message"] == "Cart is empty"


def test_apply_and_remove_coupon(client: TestClient, db_session: Session):
    _create_coupon(db_session, "SAVE10")
    headers = _auth_headers("u1")
    _add_to_cart(client, headers, unit_price=150.0, quantity=2)

    applied = client.post("/api/v1/coupons/apply", json={"code": "Save10"}, headers=headers)
    assert applied.status_code == 200
    data = applied.json()["data"]
    assert data["coupon_code"] == "SAVE10"
    assert data["discount_amount"] == 20.0
    assert data["cart_total"] == 300.0
    assert data["final_total"] == 280.0

    cart = client.get("/api/v1/cart/", headers=headers).json()
    assert cart["applied_coupon"]["code"] == "SAVE10"
    assert cart["applied_coupon"]["still_valid"] is True
    assert cart["final_total"] == 280.0

    removed = client.post("/api/v1/coupons/remove", headers=headers)
    assert removed.status_code == 200
    assert removed.json()["data"]["removed"] is True
    assert db_session.query(AppliedCoupon).count() == 0


def test_apply_rejections(client: TestClient, db_session: Session):
    _create_coupon(db_session, "MEMBERS", one_time_per_user=True, min_purchase=0.0)
    guest = {"X-Guest-Token": "guest-abc"}
    _add_to_cart(client, guest, unit_price=60.0)

    missing = client.post("/api/v1/coupons/apply", json={"code": "NOPE"}, headers=guest)
    assert missing.status_code == 404
    assert missing.json()["errors"]["reason"] == "not_found"

    anonymous = client.post("/api/v1/coupons/apply", json={"code": "MEMBERS"}, headers=guest)
    assert anonymous.status_code == 400
    assert anonymous.json()["errors"]["reason"] == "authentication_required"
    assert db_session.query(AppliedCoupon).count() == 0


def test_checkout_commits_coupon_once(client: TestClient, db_session: Session):
    coupon = _create_coupon(db_session, "SAVE10", one_time_per_user=True)
    headers = _auth_headers("u1")
    _add_to_cart(client, headers, unit_price=100.0, quantity=3)
    assert client.post("/api/v1/coupons/apply", json={"code": "SAVE10"}, headers=headers).status_code == 200

    key = str(uuid4())
    response = client.post("/api/v1/orders/checkout", json={"idempotency_key": key}, headers=headers)
    assert response.status_code == 201
    order = response.json()["data"]
    assert order["coupon_code"] == "SAVE10"
    assert order["discount_amount"] == 20.0
    assert order["subtotal"] == 300.0
    assert order["total_amount"] == 280.0 + order["shipping_charge"]

    replay = client.post("/api/v1/orders/checkout", json={"idempotency_key": key}, headers=headers)
    assert replay.status_code == 200
    assert replay.json()["data"]["order_number"] == order["order_number"]

    db_session.refresh(coupon)
    assert coupon.usage_count == 1
    assert coupon.redeemed_by_users == ["u1"]
    assert db_session.query(Order).count() == 1
    assert db_session.query(CouponRedemption).one().discount_amount == 20.0
    assert db_session.query(CartItem).count() == 0


def test_checkout_with_coupon_that_became_invalid_keeps_cart(client: TestClient, db_session: Session):
    coupon = _create_coupon(db_session, "FLASH")
    headers = _auth_headers("u2")
    _add_to_cart(client, headers, unit_price=80.0)
    assert client.post("/api/v1/coupons/apply", json={"code": "FLASH"}, headers=headers).status_code == 200

    coupon.is_active = False
    db_session.commit()

    response = client.post("/api/v1/orders/checkout", json={}, headers=headers)

    assert response.status_code == 409
    body = response.json()
    assert body["message"] == "Your coupon is no longer valid, please review your order"
    assert body["errors"][0]["reason"] == "inactive"
    assert db_session.query(CartItem).count() == 1
    assert db_session.query(AppliedCoupon).count() == 0
    assert db_session.query(Order).count() == 0


def test_free_shipping_coupon_waives_shipping(client: TestClient, db_session: Session):
    _create_coupon(
        db_session,
        "FREESHIP",
        discount_kind=DiscountKind.FREE_SHIPPING,
        value=5.99,
        min_purchase=25.0,
        max_discount=None,
    )
    headers = {"X-Guest-Token": "guest-ship"}
    _add_to_cart(client, headers, unit_price=30.0)

    applied = client.post("/api/v1/coupons/apply", json={"code": "freeship"}, headers=headers)
    assert applied.status_code == 200
    assert applied.json()["data"]["free_shipping"] is True
    assert applied.json()["data"]["discount_amount"] == 0.0

    order = client.post("/api/v1/orders/checkout", json={}, headers=headers).json()["data"]
    assert order["shipping_charge"] == 0.0
    assert order["discount_amount"] == 0.0
    assert order["total_amount"] == 30.0


def test_malformed_coupon_surfaces_as_retryable_error(client: TestClient, db_session: Session):
    _create_coupon(db_session, "BROKEN", value=150.0)
    headers = _auth_headers("u1")
    _add_to_cart(client, headers, unit_price=100.0)

    response = client.post("/api/v1/coupons/validate", json={"code": "BROKEN"}, headers=headers)

    assert response.status_code == 503
    assert response.json()["message"] == "Unable to process coupon right now. Please try again."


@pytest.mark.parametrize("limits", [{"one_time_per_user": True}, {"usage_limit": 1}])
def test_checkout_retry_after_coupon_commit_replays_redemption(client: TestClient, db_session: Session, limits):
    coupon = _create_coupon(db_session, "ONEUSE", **limits)
    headers = _auth_headers("u1")
    _add_to_cart(client, headers, unit_price=100.0, quantity=3)
    assert client.post("/api/v1/coupons/apply", json={"code": "ONEUSE"}, headers=headers).status_code == 200

    # First attempt redeemed the coupon but never wrote the order
    key = str(uuid4())
    order_number = generate_order_number(db_session, "user:u1", key)
    first = DiscountEngine.commit(
        db_session, coupon.id, "u1", datetime.utcnow(), order_ref=order_number, discount_amount=20.0
    )
    assert first.committed is True

    response = client.post("/api/v1/orders/checkout", json={"idempotency_key": key}, headers=headers)

    assert response.status_code == 201
    order = response.json()["data"]
    assert order["order_number"] == order_number
    assert order["coupon_code"] == "ONEUSE"
    assert order["discount_amount"] == 20.0
    db_session.refresh(coupon)
    assert coupon.usage_count == 1
    assert db_session.query(CouponRedemption).count() == 1


def test_admin_cannot_lower_usage_limit_below_usage_count(client: TestClient, db_session: Session):
    coupon = _create_coupon(db_session, "POPULAR", usage_limit=10, usage_count=5)

    response = client.put(f"/api/v1/coupons/{coupon.id}", json={"usage_limit": 1}, headers=ADMIN)

    assert response.status_code == 400
    assert "usage_limit" in response.json()["message"]
    db_session.refresh(coupon)
    assert coupon.usage_limit == 10

    assert client.put(f"/api/v1/coupons/{coupon.id}", json={"usage_limit": 5}, headers=ADMIN).status_code == 200


def test_code_claimed_concurrently_is_reported_as_duplicate(
    client: TestClient, db_session: Session, monkeypatch: pytest.MonkeyPatch
):
    _create_coupon(db_session, "SPRING15")
    # Both requests pass the pre-check, the unique index decides
    monkeypatch.setattr(coupon_service, "_code_taken", lambda *args, **kwargs: False)

    response = client.post("/api/v1/coupons/", json=_coupon_payload("spring15"), headers=ADMIN)

    assert response.status_code == 400
    assert response.json()["message"] == "Coupon code already exists"
    assert db_session.query(Coupon).filter(Coupon.code == "SPRING15").count() == 1
