# Overview: Flask API routes for the shopper's account: plan, wallet, points, fraud warning.

# backend/shopfront/routes/account.py
"""
Account API Routes

- GET  /api/account                         profile, plan, balances, warning
- POST /api/account/fraud-warning/dismiss   hide the first-strike warning
- POST /api/account/membership              buy or switch a plan
- POST /api/account/wallet/topup            add money to the wallet
- GET  /api/account/transactions            own transaction log (paged)

Membership and top-up accept "method": wallet (membership only), card,
paypal or nets. PayPal and NETS return an intent / QR code that is settled
through the checkout capture and confirm endpoints.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import ShopError, ValidationError, error_response
from ..services import account_service, checkout_service, fraud_service, ledger_service
from ..decorators import require_auth
from ..validation import parse_amount_cents, parse_positive_int

account_bp = Blueprint("account", __name__, url_prefix="/api/account")


def _summary(user):
    account_service.refresh_user(user)
    return account_service.account_summary(user)


def _async_payment_response(method: str, user_id: int, purpose: str, amount_cents: int, context: dict):
    if method == "paypal":
        pending = checkout_service.start_paypal_payment(user_id, purpose, amount_cents, context)
        return jsonify({"id": pending.reference, "amount_cents": pending.amount_cents, "purpose": purpose}), 201

    pending, code = checkout_service.start_nets_payment(user_id, purpose, amount_cents, context)
    return jsonify({
        "reference": pending.reference,
        "qr_code": code.qr_code,
        "amount_cents": pending.amount_cents,
        "expires_at": pending.to_dict()["expires_at"],
        "purpose": purpose,
    }), 201


@account_bp.get("")
@require_auth
def get_account_route():
    return jsonify(_summary(g.current_user))


@account_bp.post("/fraud-warning/dismiss")
@require_auth
def dismiss_fraud_warning_route():
    fraud_service.dismiss_warning(g.current_user)
    return jsonify(_summary(g.current_user))


@account_bp.post("/membership")
@require_auth
def purchase_membership_route():
    """
    Buy or switch a membership plan.

    Request body:
    {
        "plan": "gold",
        "method": "wallet" | "card" | "paypal" | "nets",
        "card": {...}  (card only)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        user = g.current_user
        plan = account_service.require_membership_plan(data.get("plan"))
        method = str(data.get("method") or "wallet").strip().lower()

        if method in ("paypal", "nets"):
            return _async_payment_response(method, user.id, "membership", plan.price_cents, {"plan": plan.key})

        result = checkout_service.purchase_membership(user.id, plan.key, method, data.get("card"))
        return jsonify({**result.to_dict(), "account": _summary(user)})
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Membership purchase failed")
        return jsonify({"error": "Internal server error"}), 500


@account_bp.post("/wallet/topup")
@require_auth
def topup_wallet_route():
    """
    Top up the wallet.

    Request body:
    {
        "amount": "20.00"  (or "amount_cents": 2000),
        "method": "card" | "paypal" | "nets",
        "card": {...}  (card only)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        user = g.current_user
        if data.get("amount_cents") is not None:
            amount_cents = parse_positive_int(data.get("amount_cents"), "amount_cents")
        else:
            amount_cents = parse_amount_cents(data.get("amount"), "amount")
        method = str(data.get("method") or "card").strip().lower()

        if method in ("paypal", "nets"):
            return _async_payment_response(method, user.id, "topup", amount_cents, {})
        if method != "card":
            raise ValidationError("method must be one of: card, paypal, nets")

        result = checkout_service.topup_with_card(user.id, amount_cents, data.get("card"))
        return jsonify({**result.to_dict(), "account": _summary(user)})
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Wallet top-up failed")
        return jsonify({"error": "Internal server error"}), 500


@account_bp.get("/transactions")
@require_auth
def list_own_transactions_route():
    try:
        page = parse_positive_int(request.args.get("page", 1), "page")
        return jsonify(ledger_service.list_transactions(page=page, user_id=g.current_user.id))
    except ShopError as e:
        return error_response(e)
