"""
Authentication, admin console and health endpoint tests.

Verifies:
- Register/login/logout issue and revoke bearer sessions
- Admin routes reject anonymous (401) and non-admin (403) callers
- Admin changes (promotion, plan, disable) take effect immediately
"""

from datetime import timedelta

import pytest

from shopfront.extensions import db
from shopfront.models import Order, PendingPayment, TransactionLog
from shopfront.services import account_service, checkout_service, fraud_service
from shopfront.services.checkout_service import CheckoutContext, DeliveryChoice
from shopfront.time_utils import utcnow

from conftest import TEST_PASSWORD, auth_headers


# =============================================================================
# AUTH
# =============================================================================


class TestAuthRoutes:

    def test_register_signs_in(self, client, db_session):
        resp = client.post("/api/auth/register", json={
            "username": "alice",
            "email": "Alice@Example.com",
            "password": TEST_PASSWORD,
            "address": "3 Raffles Place",
        })
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["plan"] == "basic"
        assert data["user"]["role"] == "user"

        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert resp.status_code == 200
        assert resp.get_json()["user"]["username"] == "alice"

    @pytest.mark.parametrize("password", ["short1!", "password123!", "PASSWORD123!", "Password!!!", "Password123"])
    def test_register_rejects_weak_password(self, client, db_session, password):
        resp = client.post("/api/auth/register", json={"email": "bob@example.com", "password": password})
        assert resp.status_code == 400

    def test_register_duplicate_email(self, client, shopper):
        resp = client.post("/api/auth/register", json={"email": "SHOPPER@example.com", "password": TEST_PASSWORD})
        assert resp.status_code == 409

    def test_login_by_email_or_username(self, client, shopper):
        for identifier in ("shopper@example.com", "shopper"):
            resp = client.post("/api/auth/login", json={"email": identifier, "password": TEST_PASSWORD})
            assert resp.status_code == 200
            data = resp.get_json()
            assert data["token"]
            assert data["expires_at"].endswith("Z")

    def test_login_failures(self, client, shopper):
        resp = client.post("/api/auth/login", json={"email": "shopper", "password": "Wrong123!"})
        assert resp.status_code == 401
        assert resp.get_json() == {"error": "Invalid credentials"}

        resp = client.post("/api/auth/login", json={"email": "shopper"})
        assert resp.status_code == 400

    def test_disabled_user_cannot_log_in(self, client, shopper):
        shopper.disabled = True
        db.session.commit()

        resp = client.post("/api/auth/login", json={"email": "shopper", "password": TEST_PASSWORD})
        assert resp.status_code == 401

    def test_logout_revokes_token(self, client, shopper_headers):
        assert client.post("/api/auth/logout", headers=shopper_headers).status_code == 200
        assert client.get("/api/auth/me", headers=shopper_headers).status_code == 401

    def test_logout_keeps_other_sessions(self, client, admin_user):
        first = auth_headers(admin_user)
        second = auth_headers(admin_user)
        client.post("/api/auth/logout", headers=first)
        assert client.get("/api/auth/me", headers=first).status_code == 401
        assert client.get("/api/admin/users", headers=second).status_code == 200

    def test_garbage_token(self, client, db_session):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401


# =============================================================================
# ADMIN ACCESS
# =============================================================================


ADMIN_ENDPOINTS = [
    ("get", "/api/admin/promotion"),
    ("put", "/api/admin/promotion"),
    ("get", "/api/admin/orders"),
    ("get", "/api/admin/refunds"),
    ("get", "/api/admin/transactions"),
    ("get", "/api/admin/users"),
    ("post", "/api/admin/products"),
]


class TestAdminAccess:

    @pytest.mark.parametrize("method,path", ADMIN_ENDPOINTS)
    def test_anonymous(self, client, db_session, method, path):
        assert getattr(client, method)(path, json={}).status_code == 401

    @pytest.mark.parametrize("method,path", ADMIN_ENDPOINTS)
    def test_shopper_forbidden(self, client, shopper_headers, method, path):
        assert getattr(client, method)(path, json={}, headers=shopper_headers).status_code == 403


# =============================================================================
# ADMIN CONSOLE
# =============================================================================


class TestAdminCatalog:

    def test_product_lifecycle(self, client, admin_headers):
        resp = client.post("/api/admin/products", json={
            "name": "Butter",
            "price_cents": 500,
            "stock_quantity": 5,
            "discount_percent": 10,
        }, headers=admin_headers)
        assert resp.status_code == 201
        product = resp.get_json()["product"]
        assert product["effective_price_cents"] == 450

        resp = client.patch(
            f"/api/admin/products/{product['id']}", json={"stock_quantity": 7}, headers=admin_headers
        )
        assert resp.status_code == 200
        assert resp.get_json()["product"]["stock_quantity"] == 7

        resp = client.delete(f"/api/admin/products/{product['id']}", headers=admin_headers)
        assert resp.status_code == 200
        assert client.get(f"/api/products/{product['id']}").status_code == 404

    def test_invalid_product(self, client, admin_headers):
        resp = client.post("/api/admin/products", json={"name": "", "price_cents": 100}, headers=admin_headers)
        assert resp.status_code == 400


class TestAdminPromotion:

    def test_update_changes_next_quote(self, client, admin_headers, shopper_headers, filled_cart):
        quote = client.post("/api/checkout/quote", json={}, headers=shopper_headers).get_json()
        assert quote["breakdown"]["final_cents"] == 666

        resp = client.put(
            "/api/admin/promotion", json={"keywords": "bread", "percent": 20}, headers=admin_headers
        )
        assert resp.status_code == 200
        assert resp.get_json() == {"promotion": {"keywords": ["bread"], "percent": 20}}

        breakdown = client.post("/api/checkout/quote", json={}, headers=shopper_headers).get_json()["breakdown"]
        assert breakdown["promo_savings_cents"] == 40
        assert breakdown["membership_savings_cents"] == 76
        assert breakdown["final_cents"] == 684

    @pytest.mark.parametrize("payload", [
        {"keywords": ["milk"], "percent": 0},
        {"keywords": ["milk"], "percent": 101},
        {"keywords": [], "percent": 10},
        {"keywords": ["milk"], "percent": True},
    ])
    def test_invalid_update_keeps_current(self, client, admin_headers, payload):
        resp = client.put("/api/admin/promotion", json=payload, headers=admin_headers)
        assert resp.status_code == 400

        current = client.get("/api/admin/promotion", headers=admin_headers).get_json()["promotion"]
        assert current == {"keywords": ["milk"], "percent": 10}


class TestAdminOrders:

    @pytest.fixture
    def order(self, shopper, filled_cart):
        ctx = CheckoutContext(
            user_id=shopper.id,
            payment_method="wallet",
            delivery=DeliveryChoice(method="delivery", address=shopper.address),
        )
        return checkout_service.checkout(ctx).order

    def test_list_and_update_status(self, client, admin_headers, order):
        resp = client.get("/api/admin/orders", headers=admin_headers)
        assert [o["id"] for o in resp.get_json()["items"]] == [order.id]

        resp = client.patch(f"/api/admin/orders/{order.id}", json={"status": "completed"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "completed"

        resp = client.get("/api/admin/orders?status=processing", headers=admin_headers)
        assert resp.get_json()["count"] == 0

    def test_invalid_status(self, client, admin_headers, order):
        resp = client.patch(f"/api/admin/orders/{order.id}", json={"status": "shipped"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_delete(self, client, admin_headers, order):
        order_id = order.id
        assert client.delete(f"/api/admin/orders/{order_id}", headers=admin_headers).status_code == 200
        assert db.session.get(Order, order_id) is None


class TestAdminUsers:

    def test_list(self, client, admin_headers, shopper):
        resp = client.get("/api/admin/users", headers=admin_headers)
        data = resp.get_json()
        assert data["count"] == 2
        assert {u["username"] for u in data["items"]} == {"admin", "shopper"}

    def test_disable_revokes_sessions(self, client, admin_headers, shopper, shopper_headers):
        resp = client.patch(f"/api/admin/users/{shopper.id}", json={"disabled": True}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["user"]["disabled"] is True
        assert client.get("/api/auth/me", headers=shopper_headers).status_code == 401

    def test_cannot_disable_self(self, client, admin_user, admin_headers):
        resp = client.patch(f"/api/admin/users/{admin_user.id}", json={"disabled": True}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "You cannot disable your own account"

    def test_disabled_must_be_bool(self, client, admin_headers, shopper):
        resp = client.patch(f"/api/admin/users/{shopper.id}", json={"disabled": "yes"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_plan_and_points(self, client, admin_headers, shopper):
        resp = client.patch(
            f"/api/admin/users/{shopper.id}",
            json={"plan": "silver", "points_delta": -150},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        user = resp.get_json()["user"]
        assert user["plan"] == "silver"
        # Points floor at zero
        assert user["loyalty_points"] == 0
        assert account_service.get_points(shopper.id) == 0

    def test_points_adjustment_is_logged(self, client, admin_user, admin_headers, shopper):
        client.patch(f"/api/admin/users/{shopper.id}", json={"points_delta": -150}, headers=admin_headers)
        client.patch(f"/api/admin/users/{shopper.id}", json={"points_delta": 40}, headers=admin_headers)
        client.patch(f"/api/admin/users/{shopper.id}", json={"points_delta": -40}, headers=admin_headers)
        # Already at the floor: nothing moved, nothing logged
        client.patch(f"/api/admin/users/{shopper.id}", json={"points_delta": -10}, headers=admin_headers)

        logs = (
            db.session.query(TransactionLog)
            .filter(TransactionLog.action_type == "POINTS_ADJUST")
            .order_by(TransactionLog.id.asc())
            .all()
        )
        assert [(log.amount, log.previous_balance, log.new_balance) for log in logs] == [
            (-100, 100, 0),
            (40, 0, 40),
            (-40, 40, 0),
        ]
        assert {log.user_id for log in logs} == {shopper.id}
        assert {log.actor_user_id for log in logs} == {admin_user.id}

    def test_clear_fraud_warning(self, client, admin_headers, shopper):
        fraud_service.apply_strike(shopper.id, "First")
        db.session.commit()

        resp = client.patch(
            f"/api/admin/users/{shopper.id}", json={"clear_fraud_warning": True}, headers=admin_headers
        )
        assert resp.get_json()["user"]["fraud_warning_at"] is None
        assert fraud_service.apply_strike(shopper.id, "Again") == "warned"

    def test_unknown_user(self, client, admin_headers):
        resp = client.patch("/api/admin/users/999", json={"plan": "gold"}, headers=admin_headers)
        assert resp.status_code == 404


class TestAdminTransactions:

    def test_suspicious_filter(self, client, admin_headers, shopper, other_shopper):
        for _ in range(5):
            fraud_service.record_transaction(user_id=shopper.id, action_type="PAYMENT", amount=100)
        fraud_service.record_transaction(user_id=other_shopper.id, action_type="TOPUP", amount=100)
        db.session.commit()

        data = client.get("/api/admin/transactions", headers=admin_headers).get_json()
        assert data["pagination"]["total"] == 6

        data = client.get("/api/admin/transactions?suspicious=1", headers=admin_headers).get_json()
        assert data["count"] == 1
        assert data["items"][0]["user_email"] == "shopper@example.com"
        assert data["items"][0]["is_suspicious"] is True

        data = client.get(f"/api/admin/transactions?user_id={other_shopper.id}", headers=admin_headers).get_json()
        assert [i["action_type"] for i in data["items"]] == ["TOPUP"]


# =============================================================================
# HEALTH
# =============================================================================


class TestHealth:

    def test_healthy(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["payments"]["details"]["overdue_qr_payments"] == 0

    def test_overdue_qr_is_degraded(self, client, nets, shopper):
        pending, _ = checkout_service.start_nets_payment(shopper.id, "topup", 500)
        pending.expires_at = utcnow() - timedelta(minutes=5)
        db.session.commit()

        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "degraded"
        assert data["checks"]["payments"]["details"]["overdue_qr_payments"] == 1
        assert db.session.query(PendingPayment).count() == 1
