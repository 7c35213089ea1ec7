"""
Pricing engine tests.

Verifies:
- Promotion -> membership -> loyalty ordering and half-up rounding
- Redemption is floored to 10 points and capped by balance and percentage
- Totals never go negative and savings add up
"""

from decimal import Decimal

import pytest

from shopfront.services.cart_service import CartItem
from shopfront.services.pricing import (
    LoyaltyPolicy,
    PriceBreakdown,
    floor_to_step,
    max_redeemable_points,
    normalize_redeem_points,
    percent_of,
    price,
)
from shopfront.services.promotion_service import PromotionConfig

MILK_PROMO = PromotionConfig(keywords=("milk",), percent=10)
GOLD = 10


def line(name, unit, qty):
    return CartItem(product_id=hash(name) % 1000, product_name=name, unit_price_cents=unit, quantity=qty)


@pytest.fixture
def basket():
    return [line("Fresh Milk", 300, 2), line("Bread", 200, 1)]


# =============================================================================
# END-TO-END BREAKDOWN
# =============================================================================


class TestBreakdown:

    def test_promo_then_membership(self, basket):
        b = price(basket, promotion=MILK_PROMO, membership_percent=GOLD)

        assert b.subtotal_cents == 800
        assert b.promo_savings_cents == 60
        assert b.membership_savings_cents == 74
        assert b.pre_loyalty_cents == 666
        assert b.loyalty_discount_cents == 0
        assert b.final_cents == 666
        assert b.total_savings_cents == 134
        assert b.points_earned == 66

    def test_points_redemption_floored_to_ten(self, basket):
        b = price(basket, promotion=MILK_PROMO, membership_percent=GOLD, redeem_points=35, points_balance=100)

        assert b.points_redeemed == 30
        assert b.loyalty_discount_cents == 30
        assert b.final_cents == 636
        assert b.points_earned == 63
        assert b.total_savings_cents == 164

    def test_empty_cart_prices_to_zero(self):
        assert price([], promotion=MILK_PROMO, membership_percent=GOLD) == PriceBreakdown()

    def test_no_promotion_configured(self, basket):
        b = price(basket, promotion=None, membership_percent=0)
        assert b.promo_savings_cents == 0
        assert b.final_cents == 800
        assert b.points_earned == 80

    def test_membership_applies_to_promo_discounted_amount(self):
        b = price([line("Milk Tea", 1000, 1)], promotion=PromotionConfig(("milk",), 50), membership_percent=10)
        assert b.promo_savings_cents == 500
        assert b.membership_savings_cents == 50
        assert b.final_cents == 450

    def test_promotion_match_is_case_insensitive_substring(self):
        b = price([line("SKIMMED MILK 1L", 250, 1), line("Cheddar", 400, 1)], promotion=MILK_PROMO)
        assert b.promo_savings_cents == 25

    def test_savings_add_up(self, basket):
        b = price(basket, promotion=MILK_PROMO, membership_percent=5, redeem_points=500, points_balance=500)
        assert b.subtotal_cents - b.total_savings_cents == b.final_cents
        assert 0 <= b.final_cents <= b.subtotal_cents


# =============================================================================
# LOYALTY CAPS
# =============================================================================


class TestLoyaltyCaps:

    def test_capped_by_balance(self, basket):
        b = price(basket, promotion=MILK_PROMO, membership_percent=GOLD, redeem_points=100, points_balance=47)
        assert b.points_redeemed == 40

    def test_capped_by_redemption_percentage(self):
        b = price([line("Bread", 100, 1)], redeem_points=1000, points_balance=1000)
        # 50% of 100 cents
        assert b.points_redeemed == 50
        assert b.loyalty_discount_cents == 50
        assert b.final_cents == 50

    def test_cap_rounds_points_down_to_step(self):
        cap_amount, cap_points = max_redeemable_points(333, LoyaltyPolicy())
        assert cap_amount == 166
        assert cap_points == 160

    def test_negative_or_garbage_request_redeems_nothing(self):
        policy = LoyaltyPolicy()
        assert normalize_redeem_points(-20, 500, 1000, policy) == 0
        assert normalize_redeem_points("lots", 500, 1000, policy) == 0
        assert normalize_redeem_points(None, 500, 1000, policy) == 0

    def test_custom_point_value(self):
        policy = LoyaltyPolicy(earn_rate=1, point_value=Decimal("0.05"), max_redemption_percent=100)
        b = price([line("Bread", 1000, 1)], redeem_points=40, points_balance=40, policy=policy)
        assert b.loyalty_discount_cents == 200
        assert b.final_cents == 800
        assert b.points_earned == 8


# =============================================================================
# ARITHMETIC HELPERS
# =============================================================================


class TestHelpers:

    @pytest.mark.parametrize("amount,percent,expected", [
        (5, 10, 1),      # 0.5 rounds up
        (4, 10, 0),
        (740, 10, 74),
        (0, 10, 0),
        (100, 0, 0),
    ])
    def test_percent_of_half_up(self, amount, percent, expected):
        assert percent_of(amount, percent) == expected

    @pytest.mark.parametrize("points,expected", [(0, 0), (9, 0), (10, 10), (35, 30), (-15, 0)])
    def test_floor_to_step(self, points, expected):
        assert floor_to_step(points) == expected

    def test_policy_from_config(self):
        policy = LoyaltyPolicy.from_config({
            "LOYALTY_EARN_RATE": 5,
            "LOYALTY_POINT_VALUE": Decimal("0.02"),
            "LOYALTY_MAX_REDEMPTION_PERCENT": 25,
        })
        assert policy.earn_rate == 5
        assert policy.point_value_cents == Decimal("2.00")
        assert policy.max_redemption_percent == 25
