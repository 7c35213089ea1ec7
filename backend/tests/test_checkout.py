"""
Checkout pipeline tests (wallet and card rails).

Verifies:
- A successful checkout commits order, stock, points and ledger together
- Declined payments leave no order and an intact cart
- Stock lost between validation and commit is never oversold
- Ledger failures after commit do not undo the order
"""

import pytest

from shopfront.errors import ConflictError, InsufficientBalanceError, ValidationError
from shopfront.extensions import db
from shopfront.models import CartLine, Order, TransactionLog
from shopfront.services import (
    account_service,
    cart_service,
    catalog_service,
    checkout_service,
    fraud_service,
)
from shopfront.services.checkout_service import CheckoutContext, DeliveryChoice, parse_delivery

from conftest import VALID_CARD


def make_ctx(user, method="wallet", redeem_points=0, card=None):
    return CheckoutContext(
        user_id=user.id,
        payment_method=method,
        delivery=DeliveryChoice(method="delivery", address=user.address),
        redeem_points=redeem_points,
        card=card or {},
    )


def order_count():
    return db.session.query(Order).count()


def log_actions(user_id):
    rows = (
        db.session.query(TransactionLog)
        .filter(TransactionLog.user_id == user_id)
        .order_by(TransactionLog.id.asc())
        .all()
    )
    return [(r.action_type, r.amount, r.previous_balance, r.new_balance) for r in rows]


# =============================================================================
# WALLET
# =============================================================================


class TestWalletCheckout:

    def test_success_settles_everything(self, shopper, milk, bread, filled_cart):
        result = checkout_service.checkout(make_ctx(shopper, redeem_points=35))

        order = result.order
        assert order.total_cents == 636
        assert order.subtotal_cents == 800
        assert order.savings_cents == 164
        assert order.points_spent == 30
        assert order.points_earned == 63
        assert order.membership_plan == "gold"
        assert order.payment_method == "wallet"
        assert order.payment_ref.startswith("WALLET-")
        assert order.delivery_address == "1 Orchard Road"
        assert order.status == "processing"
        assert [i["quantity"] for i in order.items] == [2, 1]

        assert account_service.get_wallet(shopper.id) == 364
        assert account_service.get_points(shopper.id) == 133
        assert catalog_service.get_stock(milk.id) == 8
        assert catalog_service.get_stock(bread.id) == 9
        assert cart_service.get_cart(shopper.id) == []

        assert log_actions(shopper.id) == [
            ("POINTS_REDEEM", 30, 100, 70),
            ("POINTS_EARN", 63, 70, 133),
            ("PAYMENT", 636, 1000, 364),
        ]

    def test_success_message(self, shopper, filled_cart):
        result = checkout_service.checkout(make_ctx(shopper, redeem_points=35))
        assert result.message == (
            f"Payment successful! Order #{result.order.id} placed. "
            "You saved $1.64 (promo $0.60, membership $0.74, points $0.30). "
            "You earned 63 points."
        )

    def test_insufficient_balance_leaves_no_trace(self, shopper, milk, filled_cart):
        account_service.adjust_wallet(shopper.id, -500)
        db.session.commit()

        with pytest.raises(InsufficientBalanceError):
            checkout_service.checkout(make_ctx(shopper, redeem_points=35))

        assert order_count() == 0
        assert account_service.get_wallet(shopper.id) == 500
        assert account_service.get_points(shopper.id) == 100
        assert catalog_service.get_stock(milk.id) == 10
        assert len(cart_service.get_cart(shopper.id)) == 2

    def test_empty_cart(self, shopper):
        with pytest.raises(ValidationError, match="Your cart is empty"):
            checkout_service.checkout(make_ctx(shopper))

    def test_stock_checked_before_payment(self, shopper, bread, filled_cart):
        catalog_service.update_product(bread.id, {"stock_quantity": 0})

        with pytest.raises(ValidationError, match="Bread is out of stock"):
            checkout_service.checkout(make_ctx(shopper))
        assert account_service.get_wallet(shopper.id) == 1000

    def test_stock_lost_before_commit(self, monkeypatch, shopper, milk, bread, filled_cart):
        catalog_service.update_product(bread.id, {"stock_quantity": 0})
        # Simulate a concurrent buyer taking the last loaf after validation
        monkeypatch.setattr(checkout_service, "validate_cart", cart_service.get_cart)

        with pytest.raises(ConflictError) as exc_info:
            checkout_service.checkout(make_ctx(shopper))

        assert str(exc_info.value) == "Bread is out of stock. You were not charged."
        assert order_count() == 0
        assert account_service.get_wallet(shopper.id) == 1000
        assert catalog_service.get_stock(milk.id) == 10
        assert catalog_service.get_stock(bread.id) == 0

    def test_ledger_failure_keeps_order(self, monkeypatch, shopper, filled_cart):
        def broken(**kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(fraud_service, "record_transaction", broken)

        result = checkout_service.checkout(make_ctx(shopper, redeem_points=35))

        assert order_count() == 1
        assert result.order.total_cents == 636
        assert account_service.get_wallet(shopper.id) == 364
        # Points movement rolled back with the failed ledger write
        assert account_service.get_points(shopper.id) == 100
        assert db.session.query(CartLine).count() == 0


# =============================================================================
# CARD
# =============================================================================


class TestCardCheckout:

    def test_success_does_not_touch_wallet(self, shopper, filled_cart):
        result = checkout_service.checkout(make_ctx(shopper, method="card", card=VALID_CARD))

        assert result.order.payment_method == "card"
        assert result.order.payment_ref.startswith("CARD-****1111-")
        assert result.order.total_cents == 666
        assert account_service.get_wallet(shopper.id) == 1000
        assert log_actions(shopper.id)[-1] == ("PAYMENT", 666, 1000, 1000)

    @pytest.mark.parametrize("card,message", [
        ({**VALID_CARD, "name": ""}, "Cardholder name is required"),
        ({**VALID_CARD, "number": "1234"}, "Card number must be 13-19 digits"),
        ({**VALID_CARD, "expiry": "13/30"}, "MM/YY"),
        ({**VALID_CARD, "expiry": "01/20"}, "Card has expired"),
        ({**VALID_CARD, "cvv": "12"}, "CVV must be 3 or 4 digits"),
    ])
    def test_invalid_card(self, shopper, filled_cart, card, message):
        with pytest.raises(ValidationError, match=message):
            checkout_service.checkout(make_ctx(shopper, method="card", card=card))
        assert order_count() == 0
        assert len(cart_service.get_cart(shopper.id)) == 2

    def test_unknown_method(self, shopper, filled_cart):
        with pytest.raises(ValidationError, match="payment method must be one of"):
            checkout_service.checkout(make_ctx(shopper, method="cheque"))


# =============================================================================
# DELIVERY
# =============================================================================


class TestDelivery:

    def test_delivery_defaults_to_account_address(self, shopper):
        choice = parse_delivery({}, shopper)
        assert choice == DeliveryChoice(method="delivery", address="1 Orchard Road")

    def test_delivery_requires_an_address(self, admin_user):
        with pytest.raises(ValidationError, match="A delivery address is required"):
            parse_delivery({"delivery_method": "delivery"}, admin_user)

    def test_pickup_requires_outlet(self, shopper):
        with pytest.raises(ValidationError, match="pickup_outlet is required"):
            parse_delivery({"delivery_method": "pickup"}, shopper)

        choice = parse_delivery({"delivery_method": "pickup", "pickup_outlet": "Tampines"}, shopper)
        assert choice.outlet == "Tampines"
        assert choice.address is None

    def test_unknown_method(self, shopper):
        with pytest.raises(ValidationError):
            parse_delivery({"delivery_method": "drone"}, shopper)


# =============================================================================
# ROUTES
# =============================================================================


class TestCheckoutRoutes:

    def test_quote(self, client, shopper_headers, filled_cart):
        resp = client.post("/api/checkout/quote", json={"redeem_points": 35}, headers=shopper_headers)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["breakdown"]["final_cents"] == 636
        assert data["breakdown"]["points_redeemed"] == 30
        assert data["points_balance"] == 100
        assert data["max_redeemable_points"] == 100
        assert data["wallet_balance_cents"] == 1000
        assert data["membership"]["key"] == "gold"

    def test_wallet_checkout(self, client, shopper, shopper_headers, filled_cart):
        resp = client.post("/api/checkout/wallet", json={"redeem_points": 35}, headers=shopper_headers)
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["order"]["total_cents"] == 636
        assert data["message"].startswith("Payment successful!")
        assert data["already_settled"] is False

    def test_wallet_declined(self, client, shopper, shopper_headers, filled_cart):
        account_service.adjust_wallet(shopper.id, -900)
        db.session.commit()

        resp = client.post("/api/checkout/wallet", json={}, headers=shopper_headers)
        assert resp.status_code == 402
        body = resp.get_json()
        assert body["error"] == "Insufficient wallet balance"
        assert body["details"] == {"balance_cents": 100, "required_cents": 666}

    def test_card_checkout(self, client, shopper_headers, filled_cart):
        resp = client.post(
            "/api/checkout/card",
            json={"card": VALID_CARD, "delivery_method": "pickup", "pickup_outlet": "Jurong Point"},
            headers=shopper_headers,
        )
        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert order["delivery_method"] == "pickup"
        assert order["pickup_outlet"] == "Jurong Point"

    def test_negative_redeem_rejected(self, client, shopper_headers, filled_cart):
        resp = client.post("/api/checkout/wallet", json={"redeem_points": -10}, headers=shopper_headers)
        assert resp.status_code == 400
