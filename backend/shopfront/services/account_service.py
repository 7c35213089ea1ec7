# Overview: Membership plans, loyalty points and wallet balances for a user.

"""
Membership & Loyalty Ledger

WHY: Plan, points and wallet are read together by every price computation
and changed together by every settlement. All balance changes go through
this module so they share one update discipline.

UPDATE DISCIPLINE:
- Relative UPDATEs evaluated by the database; never read-modify-write.
- adjust_* floors at zero (CASE WHEN x + d < 0 THEN 0 ELSE x + d).
- debit_wallet is conditional (WHERE balance >= amount) and fails cleanly.
- Returned balances are fresh column reads, not ORM attributes.
- Nothing here commits; the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import case

from ..extensions import db
from ..models import User
from ..errors import InsufficientBalanceError, NotFoundError, ValidationError
from . import fraud_service


@dataclass(frozen=True)
class MembershipPlan:
    key: str
    name: str
    discount_percent: int
    price_cents: int
    perks: tuple[str, ...] = ()

    @property
    def is_paid(self) -> bool:
        return self.price_cents > 0

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "discount_percent": self.discount_percent,
            "price_cents": self.price_cents,
            "perks": list(self.perks),
        }


MEMBERSHIP_PLANS = {
    "basic": MembershipPlan("basic", "Basic", 0, 0, ("Standard checkout",)),
    "silver": MembershipPlan("silver", "Silver", 5, 499, ("Free delivery over $50", "5% off selected items")),
    "gold": MembershipPlan("gold", "Gold", 10, 999, ("Free delivery", "10% off storewide", "Priority support")),
}


def normalize_plan_key(plan) -> str:
    return str(plan or "").strip().lower()


def get_membership_plan(plan_key) -> MembershipPlan:
    """Unknown or missing keys resolve to basic."""
    return MEMBERSHIP_PLANS.get(normalize_plan_key(plan_key), MEMBERSHIP_PLANS["basic"])


def require_membership_plan(plan_key) -> MembershipPlan:
    plan = MEMBERSHIP_PLANS.get(normalize_plan_key(plan_key))
    if plan is None:
        raise ValidationError(f"plan must be one of: {', '.join(MEMBERSHIP_PLANS)}")
    return plan


def _require_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


# =============================================================================
# PLAN
# =============================================================================

def get_plan(user_id: int) -> MembershipPlan:
    plan_key = db.session.query(User.plan).filter(User.id == user_id).scalar()
    return get_membership_plan(plan_key)


def set_plan(user_id: int, plan_key: str) -> MembershipPlan:
    """Switch plan; takes effect on the next price computation. Does not commit."""
    plan = require_membership_plan(plan_key)
    updated = db.session.query(User).filter(User.id == user_id).update(
        {User.plan: plan.key}, synchronize_session=False
    )
    if not updated:
        raise NotFoundError("User not found")
    return plan


# =============================================================================
# LOYALTY POINTS
# =============================================================================

def get_points(user_id: int) -> int:
    return db.session.query(User.loyalty_points).filter(User.id == user_id).scalar() or 0


def adjust_points(user_id: int, delta: int) -> tuple[int, int]:
    """
    Add delta (may be negative) to the points balance, flooring at zero.

    Returns (previous_balance, new_balance).
    """
    previous = get_points(user_id)
    if delta:
        new_value = case(
            (User.loyalty_points + delta < 0, 0),
            else_=User.loyalty_points + delta,
        )
        db.session.query(User).filter(User.id == user_id).update(
            {User.loyalty_points: new_value}, synchronize_session=False
        )
    return previous, get_points(user_id)


# =============================================================================
# WALLET
# =============================================================================

def get_wallet(user_id: int) -> int:
    return db.session.query(User.wallet_balance_cents).filter(User.id == user_id).scalar() or 0


def adjust_wallet(user_id: int, delta_cents: int) -> tuple[int, int]:
    """
    Add delta_cents (may be negative) to the wallet, flooring at zero.

    Returns (previous_balance, new_balance).
    """
    previous = get_wallet(user_id)
    if delta_cents:
        new_value = case(
            (User.wallet_balance_cents + delta_cents < 0, 0),
            else_=User.wallet_balance_cents + delta_cents,
        )
        db.session.query(User).filter(User.id == user_id).update(
            {User.wallet_balance_cents: new_value}, synchronize_session=False
        )
    return previous, get_wallet(user_id)


def debit_wallet(user_id: int, amount_cents: int) -> tuple[int, int]:
    """
    Take amount_cents from the wallet only if the balance covers it.

    Raises InsufficientBalanceError without touching the balance otherwise.
    Returns (previous_balance, new_balance).
    """
    if amount_cents < 0:
        raise ValidationError("Debit amount must be >= 0")

    previous = get_wallet(user_id)
    if amount_cents == 0:
        return previous, previous

    updated = db.session.query(User).filter(
        User.id == user_id,
        User.wallet_balance_cents >= amount_cents,
    ).update(
        {User.wallet_balance_cents: User.wallet_balance_cents - amount_cents},
        synchronize_session=False,
    )
    if updated != 1:
        raise InsufficientBalanceError(
            "Insufficient wallet balance",
            details={"balance_cents": previous, "required_cents": amount_cents},
        )
    return previous, get_wallet(user_id)


def refresh_user(user: User) -> User:
    """Reload balance columns changed by relative UPDATEs."""
    db.session.refresh(user)
    return user


# =============================================================================
# TOP-UP AND MEMBERSHIP PURCHASE
# =============================================================================

def complete_topup(user_id: int, amount_cents: int, payment_method: str) -> tuple[int, int]:
    """
    Credit an already-paid top-up and log it. Does not commit.

    Returns (previous_balance, new_balance).
    """
    if amount_cents <= 0:
        raise ValidationError("Top-up amount must be greater than zero")
    _require_user(user_id)

    previous, new = adjust_wallet(user_id, amount_cents)
    fraud_service.record_transaction(
        user_id=user_id,
        action_type="TOPUP",
        amount=amount_cents,
        previous_balance=previous,
        new_balance=new,
        payment_method=payment_method,
    )
    return previous, new


def purchase_membership_with_wallet(user_id: int, plan_key: str) -> MembershipPlan:
    """
    Pay for a plan from the wallet and switch to it. Does not commit.

    Switching to the free plan costs nothing and writes no log row.
    """
    plan = require_membership_plan(plan_key)
    _require_user(user_id)

    if not plan.is_paid:
        return set_plan(user_id, plan.key)

    previous, new = debit_wallet(user_id, plan.price_cents)
    set_plan(user_id, plan.key)
    fraud_service.record_transaction(
        user_id=user_id,
        action_type="MEMBERSHIP",
        amount=plan.price_cents,
        previous_balance=previous,
        new_balance=new,
        payment_method="wallet",
    )
    return plan


def complete_membership_purchase(user_id: int, plan_key: str, payment_method: str) -> MembershipPlan:
    """
    Switch plan after an external rail (card, PayPal) collected the price.
    Wallet balance is untouched. Does not commit.
    """
    plan = require_membership_plan(plan_key)
    _require_user(user_id)
    set_plan(user_id, plan.key)

    if plan.is_paid:
        balance = get_wallet(user_id)
        fraud_service.record_transaction(
            user_id=user_id,
            action_type="MEMBERSHIP",
            amount=plan.price_cents,
            previous_balance=balance,
            new_balance=balance,
            payment_method=payment_method,
        )
    return plan


def account_summary(user: User) -> dict:
    """Payload for GET /api/account."""
    plan = get_membership_plan(user.plan)
    data = user.to_dict()
    data["membership"] = plan.to_dict()
    data["plans"] = [p.to_dict() for p in MEMBERSHIP_PLANS.values()]
    data["fraud_warning"] = None
    if user.fraud_warning_at is not None and not user.fraud_warning_dismissed:
        data["fraud_warning"] = {
            "reason": user.fraud_warning_reason,
            "at": data["fraud_warning_at"],
        }
    return data
