"""
Refund workflow tests.

Verifies:
- Per-line refunds credit exactly the requested lines and track quantities
- One open or approved request per order; denied requests do not block
- Refund window, ownership and quantity checks
- Velocity auto-flagging suspends further requests
- Original-rail refunds go back to the PayPal capture
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from shopfront.errors import AuthorizationError, ConflictError, ExternalGatewayError, NotFoundError, ValidationError
from shopfront.extensions import db
from shopfront.models import OrderItem, TransactionLog
from shopfront.services import account_service, cart_service, checkout_service, fraud_service, order_service, refund_service
from shopfront.services.checkout_service import CheckoutContext, DeliveryChoice
from shopfront.time_utils import utcnow

from conftest import VALID_CARD, auth_headers


def buy(user, lines, method="card"):
    """Place a real order for [(product, qty)] and return it."""
    for product, qty in lines:
        cart_service.add_item(user.id, product.id, qty)
    ctx = CheckoutContext(
        user_id=user.id,
        payment_method=method,
        delivery=DeliveryChoice(method="delivery", address="1 Orchard Road"),
        card=VALID_CARD if method == "card" else {},
    )
    return checkout_service.checkout(ctx).order


def buy_with_paypal(user, milk, bread):
    """2 x Fresh Milk and 1 x Bread captured through PayPal."""
    cart_service.add_item(user.id, milk.id, 2)
    cart_service.add_item(user.id, bread.id, 1)
    pending, _ = checkout_service.start_paypal_checkout(
        user, 0, DeliveryChoice(method="delivery", address="1 Orchard Road")
    )
    return checkout_service.capture_paypal_payment(user.id, pending.reference).order


@pytest.fixture
def order(shopper, milk, bread):
    """636 cents: 2 x Fresh Milk, 1 x Bread, paid from the wallet with 30 points."""
    cart_service.add_item(shopper.id, milk.id, 2)
    cart_service.add_item(shopper.id, bread.id, 1)
    ctx = CheckoutContext(
        user_id=shopper.id,
        payment_method="wallet",
        delivery=DeliveryChoice(method="delivery", address="1 Orchard Road"),
        redeem_points=35,
    )
    return checkout_service.checkout(ctx).order


def line_for(order, product):
    return db.session.query(OrderItem).filter(
        OrderItem.order_id == order.id,
        OrderItem.product_id == product.id,
    ).one()


# =============================================================================
# SUBMIT + APPROVE
# =============================================================================


class TestPartialRefund:

    def test_one_of_two_milk(self, shopper, admin_user, milk, order):
        assert account_service.get_wallet(shopper.id) == 364

        refund = refund_service.submit_request(
            shopper, order.id, "One carton was spoiled", items=[{"product_id": milk.id, "quantity": 1}]
        )
        assert refund.status == "pending"
        assert refund.amount_cents == 300

        refund = refund_service.approve_request(refund.id, admin_user.id, "Sorry about that")

        assert refund.status == "approved"
        assert refund.processed_by_user_id == admin_user.id
        assert account_service.get_wallet(shopper.id) == 664
        assert line_for(order, milk).refunded_quantity == 1
        assert refund_service.refundable_amount(order) == 336

        log = db.session.query(TransactionLog).filter(TransactionLog.action_type == "REFUND").one()
        assert (log.amount, log.previous_balance, log.new_balance) == (300, 364, 664)
        assert log.actor_user_id == admin_user.id
        assert log.refund_id == refund.id
        assert log.is_suspicious is False

    def test_by_order_item_id(self, shopper, bread, order):
        order_items = order_service.ensure_order_items(order)
        bread_line = next(i for i in order_items if i.product_id == bread.id)

        refund = refund_service.submit_request(
            shopper, order.id, "Stale", items=[{"order_item_id": bread_line.id, "quantity": 1}]
        )
        assert refund.amount_cents == 200
        assert [i.order_item_id for i in refund.items] == [bread_line.id]

    def test_quantity_above_purchased(self, shopper, milk, order):
        with pytest.raises(ValidationError, match="Only 2 of Fresh Milk can still be refunded"):
            refund_service.submit_request(shopper, order.id, "All bad", items=[{"product_id": milk.id, "quantity": 3}])

    def test_unknown_line(self, shopper, order):
        with pytest.raises(ValidationError, match="Item is not part of this order"):
            refund_service.submit_request(shopper, order.id, "Huh", items=[{"product_id": 9999, "quantity": 1}])


class TestWholeOrderRefund:

    def test_full_refund_credits_total(self, shopper, admin_user, milk, bread, order):
        refund = refund_service.submit_request(shopper, order.id, "Wrong delivery")
        assert refund.amount_cents == 636

        refund_service.approve_request(refund.id, admin_user.id)

        assert account_service.get_wallet(shopper.id) == 1000
        assert line_for(order, milk).refunded_quantity == 2
        assert line_for(order, bread).refunded_quantity == 1
        assert refund_service.refundable_amount(order) == 0

    def test_full_refund_trips_ratio_rule(self, shopper, admin_user, order):
        refund = refund_service.submit_request(shopper, order.id, "Changed my mind")
        refund_service.approve_request(refund.id, admin_user.id)

        log = db.session.query(TransactionLog).filter(TransactionLog.action_type == "REFUND").one()
        assert log.is_suspicious is True
        assert log.suspicious_reason.startswith("Refund-to-spend ratio")
        db.session.refresh(shopper)
        assert shopper.fraud_warning_at is not None
        assert shopper.disabled is False


# =============================================================================
# ELIGIBILITY
# =============================================================================


class TestEligibility:

    def test_open_request_blocks_another(self, shopper, order):
        refund_service.submit_request(shopper, order.id, "First")
        with pytest.raises(ConflictError, match="A refund request already exists for this order"):
            refund_service.submit_request(shopper, order.id, "Second")

    def test_approved_request_blocks_another(self, shopper, admin_user, milk, order):
        refund = refund_service.submit_request(shopper, order.id, "One", items=[{"product_id": milk.id, "quantity": 1}])
        refund_service.approve_request(refund.id, admin_user.id)
        with pytest.raises(ConflictError):
            refund_service.submit_request(shopper, order.id, "Another")

    def test_denied_request_does_not_block(self, shopper, admin_user, order):
        refund = refund_service.submit_request(shopper, order.id, "First")
        refund_service.deny_request(refund.id, admin_user.id, "Not eligible")
        again = refund_service.submit_request(shopper, order.id, "Second try")
        assert again.status == "pending"

    def test_window_closed(self, shopper, order):
        order.confirmed_at = utcnow() - timedelta(minutes=31)
        db.session.commit()
        with pytest.raises(ValidationError, match="within 30 minutes"):
            refund_service.submit_request(shopper, order.id, "Late")

    def test_not_owner(self, other_shopper, order):
        with pytest.raises(AuthorizationError):
            refund_service.submit_request(other_shopper, order.id, "Not mine")

    def test_missing_order(self, shopper):
        with pytest.raises(NotFoundError):
            refund_service.submit_request(shopper, 9999, "Ghost")

    def test_reason_required(self, shopper, order):
        with pytest.raises(ValidationError, match="reason is required"):
            refund_service.submit_request(shopper, order.id, "   ")

    def test_bad_destination(self, shopper, order):
        with pytest.raises(ValidationError, match="destination must be one of"):
            refund_service.submit_request(shopper, order.id, "Why", destination="cash")

    def test_disabled_user(self, shopper, order):
        shopper.disabled = True
        db.session.commit()
        with pytest.raises(AuthorizationError):
            refund_service.submit_request(shopper, order.id, "Please")


# =============================================================================
# VELOCITY FLAG
# =============================================================================


class TestVelocityFlag:

    def test_third_request_is_flagged_and_suspends(self, shopper, milk):
        orders = [buy(shopper, [(milk, 1)]) for _ in range(4)]

        first = refund_service.submit_request(shopper, orders[0].id, "r1")
        second = refund_service.submit_request(shopper, orders[1].id, "r2")
        third = refund_service.submit_request(shopper, orders[2].id, "r3")

        assert (first.status, second.status) == ("pending", "pending")
        assert third.status == "flagged"
        assert third.admin_note == "Auto-flagged due to frequent refunds."
        db.session.refresh(shopper)
        assert shopper.refund_suspended_until is not None

        with pytest.raises(ConflictError, match="unusually frequent refund requests"):
            refund_service.submit_request(shopper, orders[3].id, "r4")

    def test_flagged_request_cannot_be_approved(self, shopper, admin_user, milk):
        orders = [buy(shopper, [(milk, 1)]) for _ in range(3)]
        refunds = [refund_service.submit_request(shopper, o.id, "again") for o in orders]

        with pytest.raises(ConflictError, match="Refund request already processed"):
            refund_service.approve_request(refunds[2].id, admin_user.id)

    def test_suspension_expires(self, shopper, milk):
        order = buy(shopper, [(milk, 1)])
        shopper.refund_suspended_until = utcnow() - timedelta(minutes=1)
        db.session.commit()
        assert refund_service.submit_request(shopper, order.id, "ok now").status == "pending"


# =============================================================================
# ADMIN DECISIONS
# =============================================================================


class TestDecisions:

    def test_approve_twice(self, shopper, admin_user, order):
        refund = refund_service.submit_request(shopper, order.id, "Bad")
        refund_service.approve_request(refund.id, admin_user.id)
        with pytest.raises(ConflictError, match="Refund request already processed"):
            refund_service.approve_request(refund.id, admin_user.id)
        assert account_service.get_wallet(shopper.id) == 1000

    def test_deny_is_terminal(self, shopper, admin_user, order):
        refund = refund_service.submit_request(shopper, order.id, "Bad")
        refund_service.deny_request(refund.id, admin_user.id)
        with pytest.raises(ConflictError):
            refund_service.approve_request(refund.id, admin_user.id)
        assert account_service.get_wallet(shopper.id) == 364

    def test_original_destination_refunds_paypal_capture(self, paypal, shopper, admin_user, milk, bread):
        cart_service.add_item(shopper.id, milk.id, 2)
        cart_service.add_item(shopper.id, bread.id, 1)
        pending, _ = checkout_service.start_paypal_checkout(
            shopper, 0, DeliveryChoice(method="delivery", address="1 Orchard Road")
        )
        paid = checkout_service.capture_paypal_payment(shopper.id, pending.reference).order

        refund = refund_service.submit_request(
            shopper, paid.id, "Bread was stale", items=[{"product_id": bread.id, "quantity": 1}], destination="original"
        )
        refund = refund_service.approve_request(refund.id, admin_user.id)

        assert "/v2/payments/captures/CAPTURE-PAYPAL-ORDER-1/refund" in paypal.paths()
        assert refund.external_ref == "PAYPAL-REFUND-1"
        assert account_service.get_wallet(shopper.id) == 1000
        log = db.session.query(TransactionLog).filter(TransactionLog.action_type == "REFUND").one()
        assert log.payment_method == "paypal"

    def test_paypal_outage_leaves_request_pending(self, paypal, shopper, admin_user, milk, bread):
        paid = buy_with_paypal(shopper, milk, bread)
        refund = refund_service.submit_request(shopper, paid.id, "Never arrived", destination="original")
        refund_id, submitted_amount = refund.id, refund.amount_cents
        paypal.refund_fails = True

        with pytest.raises(ExternalGatewayError):
            refund_service.approve_request(refund_id, admin_user.id, "ok")

        stored = refund_service.get_request(refund_id)
        assert stored.status == "pending"
        assert stored.amount_cents == submitted_amount
        assert stored.processed_by_user_id is None
        assert db.session.query(TransactionLog).filter(TransactionLog.action_type == "REFUND").count() == 0

        paypal.refund_fails = False
        approved = refund_service.approve_request(refund_id, admin_user.id)
        assert approved.status == "approved"
        assert approved.external_ref == "PAYPAL-REFUND-1"
        assert paypal.refund_count == 1

    def test_bookkeeping_failure_after_paypal_refund_cannot_pay_twice(
        self, monkeypatch, paypal, shopper, admin_user, milk, bread
    ):
        paid = buy_with_paypal(shopper, milk, bread)
        refund_id = refund_service.submit_request(shopper, paid.id, "Never arrived", destination="original").id

        def failing_log(**kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(fraud_service, "record_transaction", failing_log)
        with pytest.raises(SQLAlchemyError):
            refund_service.approve_request(refund_id, admin_user.id)
        monkeypatch.undo()

        assert refund_service.get_request(refund_id).status == "approved"
        with pytest.raises(ConflictError, match="Refund request already processed"):
            refund_service.approve_request(refund_id, admin_user.id)
        assert paypal.refund_count == 1
        assert paypal.paths().count("/v2/payments/captures/CAPTURE-PAYPAL-ORDER-1/refund") == 1

    def test_admin_listing(self, shopper, admin_user, order):
        refund_service.submit_request(shopper, order.id, "Bad")
        listing = refund_service.list_requests(status="pending")
        assert listing["count"] == 1
        assert listing["items"][0]["user_email"] == "shopper@example.com"
        assert listing["items"][0]["order_total_cents"] == 636


# =============================================================================
# ROUTES
# =============================================================================


class TestRefundRoutes:

    def test_submit_and_approve(self, client, shopper, shopper_headers, admin_headers, milk, order):
        resp = client.post("/api/refunds", json={
            "order_id": order.id,
            "reason": "Leaking carton",
            "items": [{"product_id": milk.id, "quantity": 1}],
        }, headers=shopper_headers)
        assert resp.status_code == 201
        refund_id = resp.get_json()["refund"]["id"]

        resp = client.get("/api/refunds", headers=shopper_headers)
        assert resp.get_json()["count"] == 1

        resp = client.post(f"/api/admin/refunds/{refund_id}/approve", json={}, headers=shopper_headers)
        assert resp.status_code == 403

        resp = client.post(f"/api/admin/refunds/{refund_id}/approve", json={"admin_note": "ok"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["refund"]["status"] == "approved"

        resp = client.get(f"/api/orders/{order.id}", headers=shopper_headers)
        lines = {i["product_id"]: i["refunded_quantity"] for i in resp.get_json()["order"]["order_items"]}
        assert lines[milk.id] == 1

    def test_duplicate_is_conflict(self, client, shopper_headers, order):
        body = {"order_id": order.id, "reason": "Bad"}
        assert client.post("/api/refunds", json=body, headers=shopper_headers).status_code == 201
        assert client.post("/api/refunds", json=body, headers=shopper_headers).status_code == 409

    def test_other_users_order(self, client, other_shopper, order):
        resp = client.post(
            "/api/refunds", json={"order_id": order.id, "reason": "Mine?"}, headers=auth_headers(other_shopper)
        )
        assert resp.status_code == 403
