# Overview: Pure price computation for a cart: promotion, membership, loyalty.

"""
Pricing Engine

WHY: The same cart must price to the same cents on quote, on payment intent
creation and on settlement. This module is pure (no DB, no Flask) so every
caller gets identical arithmetic.

ORDER (not commutative, do not reorder):
1. subtotal            = sum(unit x qty)
2. promotion savings   = matching lines x promo% / 100
3. membership savings  = max(subtotal - promo, 0) x plan% / 100
4. pre-loyalty total   = max(subtotal - promo - membership, 0)
5. loyalty discount    = redeemed points x point value, capped at
                         max_redemption% of pre-loyalty and at pre-loyalty
6. final total         = max(pre-loyalty - loyalty, 0)
7. total savings       = promo + membership + loyalty
8. points earned       = floor(final x earn rate)

ROUNDING: amounts are integer cents. Each percentage component is rounded
half-up to a whole cent where it is produced. The redemption cap amount is
floored so it is never exceeded. Redeemed points are always a multiple of 10.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Protocol

POINTS_STEP = 10


class PricedLine(Protocol):
    product_name: str
    unit_price_cents: int
    quantity: int


@dataclass(frozen=True)
class LoyaltyPolicy:
    earn_rate: int = 10                       # points per currency unit of final total
    point_value: Decimal = Decimal("0.01")    # currency per point
    max_redemption_percent: int = 50          # of pre-loyalty total

    @classmethod
    def from_config(cls, config) -> "LoyaltyPolicy":
        return cls(
            earn_rate=int(config["LOYALTY_EARN_RATE"]),
            point_value=Decimal(str(config["LOYALTY_POINT_VALUE"])),
            max_redemption_percent=int(config["LOYALTY_MAX_REDEMPTION_PERCENT"]),
        )

    @property
    def point_value_cents(self) -> Decimal:
        return self.point_value * 100


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal_cents: int = 0
    promo_savings_cents: int = 0
    membership_savings_cents: int = 0
    pre_loyalty_cents: int = 0
    loyalty_discount_cents: int = 0
    final_cents: int = 0
    total_savings_cents: int = 0
    points_redeemed: int = 0
    points_earned: int = 0
    promo_percent: int = 0
    membership_percent: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _floor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_FLOOR))


def floor_to_step(points: int, step: int = POINTS_STEP) -> int:
    """Round a point count down to a multiple of step; negatives become 0."""
    if points <= 0:
        return 0
    return points - (points % step)


def percent_of(amount_cents: int, percent) -> int:
    if amount_cents <= 0 or not percent:
        return 0
    return _half_up(Decimal(amount_cents) * Decimal(percent) / 100)


def max_redeemable_points(pre_loyalty_cents: int, policy: LoyaltyPolicy) -> tuple[int, int]:
    """
    Returns (cap_amount_cents, max_points): the redemption cap in cents
    (floored) and the largest multiple of 10 points whose value fits under it.
    """
    if pre_loyalty_cents <= 0 or policy.point_value_cents <= 0:
        return 0, 0
    cap_amount = _floor(Decimal(pre_loyalty_cents) * Decimal(policy.max_redemption_percent) / 100)
    max_points = floor_to_step(_floor(Decimal(cap_amount) / policy.point_value_cents))
    return cap_amount, max_points


def normalize_redeem_points(requested, balance: int, pre_loyalty_cents: int, policy: LoyaltyPolicy) -> int:
    """
    Points that will actually be spent for a redemption request.

    requested is floored to a multiple of 10, then clamped to the balance
    (floored to 10) and to the percentage cap.
    """
    try:
        requested = int(requested or 0)
    except (TypeError, ValueError):
        requested = 0
    _, cap_points = max_redeemable_points(pre_loyalty_cents, policy)
    return min(floor_to_step(requested), floor_to_step(balance or 0), cap_points)


def price(
    lines: Iterable[PricedLine],
    promotion=None,
    membership_percent: int = 0,
    redeem_points=0,
    points_balance: int = 0,
    policy: LoyaltyPolicy | None = None,
) -> PriceBreakdown:
    """
    Price a cart.

    promotion: any object with .percent and .matches(product_name), or None.
    Quantities must already be validated as positive by the caller.
    """
    policy = policy or LoyaltyPolicy()
    lines = list(lines)
    if not lines:
        return PriceBreakdown()

    subtotal = sum(line.unit_price_cents * line.quantity for line in lines)

    promo_percent = int(promotion.percent) if promotion is not None else 0
    promo_savings = 0
    if promo_percent > 0:
        matching = sum(
            line.unit_price_cents * line.quantity
            for line in lines
            if promotion.matches(line.product_name)
        )
        promo_savings = percent_of(matching, promo_percent)

    membership_savings = percent_of(max(subtotal - promo_savings, 0), membership_percent)
    pre_loyalty = max(subtotal - promo_savings - membership_savings, 0)

    points = normalize_redeem_points(redeem_points, points_balance, pre_loyalty, policy)
    cap_amount, _ = max_redeemable_points(pre_loyalty, policy)
    loyalty_discount = 0
    if points > 0:
        loyalty_discount = min(_half_up(points * policy.point_value_cents), cap_amount, pre_loyalty)

    final = max(pre_loyalty - loyalty_discount, 0)
    points_earned = _floor(Decimal(final) * policy.earn_rate / 100)

    return PriceBreakdown(
        subtotal_cents=subtotal,
        promo_savings_cents=promo_savings,
        membership_savings_cents=membership_savings,
        pre_loyalty_cents=pre_loyalty,
        loyalty_discount_cents=loyalty_discount,
        final_cents=final,
        total_savings_cents=promo_savings + membership_savings + loyalty_discount,
        points_redeemed=points,
        points_earned=points_earned,
        promo_percent=promo_percent,
        membership_percent=int(membership_percent or 0),
    )
