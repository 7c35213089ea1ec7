# Overview: Velocity and anomaly rules evaluated on every payment and refund.

"""
Fraud/Velocity Monitor

WHY: Wallet top-ups and wallet refunds make the store a place where money
can be cycled. These rules flag patterns that look like that cycling.

RULES (thresholds from app config, counts include the event being recorded):
- PAYMENT: >= FRAUD_PAYMENT_LIMIT payments within FRAUD_PAYMENT_WINDOW_MINUTES
- PAYMENT: order total > FRAUD_AVERAGE_MULTIPLIER x the user's historical
  average, once the user has FRAUD_AVERAGE_MIN_ORDERS prior orders
- REFUND: >= FRAUD_REFUND_LIMIT refunds within FRAUD_REFUND_WINDOW_MINUTES
- REFUND: refunded / spent over FRAUD_RATIO_WINDOW_DAYS > FRAUD_REFUND_RATIO
- REFUND: any wallet top-up within FRAUD_TOPUP_REFUND_WINDOW_MINUTES

TWO STRIKES:
- First suspicious event: fraud_warning_at/fraud_warning_reason are set and
  surfaced on the account endpoint until dismissed.
- Any later suspicious event: the account is disabled and its sessions revoked.

The verdict never blocks the money movement it was computed for; it is
stored on the TransactionLog row and acted on through the strike policy.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, TransactionLog, User
from . import ledger_service, session_service
from shopfront.time_utils import utcnow


@dataclass(frozen=True)
class FraudVerdict:
    suspicious: bool = False
    reason: str | None = None


CLEAN = FraudVerdict()


def _count_actions(user_id: int, action_type: str, since) -> int:
    return db.session.query(func.count(TransactionLog.id)).filter(
        TransactionLog.user_id == user_id,
        TransactionLog.action_type == action_type,
        TransactionLog.occurred_at >= since,
    ).scalar() or 0


def _sum_actions(user_id: int, action_type: str, since) -> int:
    return db.session.query(func.coalesce(func.sum(TransactionLog.amount), 0)).filter(
        TransactionLog.user_id == user_id,
        TransactionLog.action_type == action_type,
        TransactionLog.occurred_at >= since,
    ).scalar() or 0


def check_payment_velocity(user_id: int) -> FraudVerdict:
    cfg = current_app.config
    minutes = cfg["FRAUD_PAYMENT_WINDOW_MINUTES"]
    count = _count_actions(user_id, "PAYMENT", utcnow() - timedelta(minutes=minutes)) + 1
    if count >= cfg["FRAUD_PAYMENT_LIMIT"]:
        return FraudVerdict(True, f"High payment velocity: {count} payments within {minutes} minutes")
    return CLEAN


def check_order_against_average(user_id: int, amount_cents: int, order_id: int | None = None) -> FraudVerdict:
    cfg = current_app.config
    query = db.session.query(func.count(Order.id), func.avg(Order.total_cents)).filter(Order.user_id == user_id)
    if order_id is not None:
        query = query.filter(Order.id != order_id)
    prior_count, average = query.one()

    if not prior_count or prior_count < cfg["FRAUD_AVERAGE_MIN_ORDERS"] or not average:
        return CLEAN

    limit = Decimal(str(average)) * cfg["FRAUD_AVERAGE_MULTIPLIER"]
    if Decimal(amount_cents) > limit:
        return FraudVerdict(
            True,
            f"Order total is more than {cfg['FRAUD_AVERAGE_MULTIPLIER']}x the customer's average order",
        )
    return CLEAN


def check_refund_velocity(user_id: int) -> FraudVerdict:
    cfg = current_app.config
    minutes = cfg["FRAUD_REFUND_WINDOW_MINUTES"]
    count = _count_actions(user_id, "REFUND", utcnow() - timedelta(minutes=minutes)) + 1
    if count >= cfg["FRAUD_REFUND_LIMIT"]:
        return FraudVerdict(True, f"High refund velocity: {count} refunds within {minutes} minutes")
    return CLEAN


def check_refund_ratio(user_id: int, amount_cents: int) -> FraudVerdict:
    cfg = current_app.config
    since = utcnow() - timedelta(days=cfg["FRAUD_RATIO_WINDOW_DAYS"])
    spent = _sum_actions(user_id, "PAYMENT", since)
    if spent <= 0:
        return CLEAN

    refunded = _sum_actions(user_id, "REFUND", since) + amount_cents
    ratio = Decimal(refunded) / Decimal(spent)
    if ratio > cfg["FRAUD_REFUND_RATIO"]:
        return FraudVerdict(True, f"Refund-to-spend ratio {ratio:.0%} over {cfg['FRAUD_RATIO_WINDOW_DAYS']} days")
    return CLEAN


def check_refund_after_topup(user_id: int) -> FraudVerdict:
    minutes = current_app.config["FRAUD_TOPUP_REFUND_WINDOW_MINUTES"]
    if _count_actions(user_id, "TOPUP", utcnow() - timedelta(minutes=minutes)) > 0:
        return FraudVerdict(True, f"Refund requested within {minutes} minutes of a wallet top-up")
    return CLEAN


def evaluate(user_id: int, action_type: str, amount_cents: int, order_id: int | None = None) -> FraudVerdict:
    """
    Run the rules for one event before it is logged.

    First matching rule wins; events other than PAYMENT and REFUND are clean.
    """
    if action_type == "PAYMENT":
        checks = (
            lambda: check_payment_velocity(user_id),
            lambda: check_order_against_average(user_id, amount_cents, order_id),
        )
    elif action_type == "REFUND":
        checks = (
            lambda: check_refund_velocity(user_id),
            lambda: check_refund_ratio(user_id, amount_cents),
            lambda: check_refund_after_topup(user_id),
        )
    else:
        return CLEAN

    for check in checks:
        verdict = check()
        if verdict.suspicious:
            return verdict
    return CLEAN


def apply_strike(user_id: int, reason: str) -> str:
    """
    Escalate a suspicious event against the user. Does not commit.

    Returns "warned" or "disabled".
    """
    user = db.session.get(User, user_id)
    if user is None:
        return "ignored"

    if user.fraud_warning_at is None:
        user.fraud_warning_at = utcnow()
        user.fraud_warning_reason = reason
        user.fraud_warning_dismissed = False
        current_app.logger.warning("Fraud warning for user %s: %s", user_id, reason)
        return "warned"

    user.disabled = True
    session_service.revoke_all_user_sessions(user_id)
    current_app.logger.warning("User %s disabled after repeated suspicious activity: %s", user_id, reason)
    return "disabled"


def record_transaction(
    *,
    user_id: int,
    action_type: str,
    amount: int = 0,
    previous_balance: int | None = None,
    new_balance: int | None = None,
    payment_method: str | None = None,
    order_id: int | None = None,
    refund_id: int | None = None,
    actor_user_id: int | None = None,
) -> TransactionLog:
    """
    Evaluate the fraud rules, append the log row with the verdict, and apply
    the strike policy when suspicious. Does not commit.
    """
    verdict = evaluate(user_id, action_type, amount, order_id=order_id)

    log = ledger_service.append_transaction(
        user_id=user_id,
        action_type=action_type,
        amount=amount,
        previous_balance=previous_balance,
        new_balance=new_balance,
        payment_method=payment_method,
        order_id=order_id,
        refund_id=refund_id,
        actor_user_id=actor_user_id,
        is_suspicious=verdict.suspicious,
        suspicious_reason=verdict.reason,
    )

    if verdict.suspicious:
        apply_strike(user_id, verdict.reason)

    return log


def dismiss_warning(user: User) -> User:
    """Hide the warning banner. The strike itself stays on record."""
    if user.fraud_warning_at is not None:
        user.fraud_warning_dismissed = True
        db.session.commit()
    return user
