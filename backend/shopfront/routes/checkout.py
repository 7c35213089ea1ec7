# Overview: Flask API routes for checkout on every payment rail; parses input and returns JSON responses.

# backend/shopfront/routes/checkout.py
"""
Checkout API Routes

RAILS:
- wallet, card: one request, order created synchronously
- paypal: POST /paypal/orders creates the intent, the client approves it on
  PayPal, POST /paypal/capture captures and settles
- nets: POST /nets/qr returns a QR code; the client polls /status or
  listens on /events, then POST /confirm settles

/paypal/capture and /nets/<ref>/confirm settle whatever the payment was
created for (checkout, wallet top-up or membership plan).

Delivery fields (all rails):
    "delivery_method": "delivery" | "pickup",
    "delivery_address": "...",   (delivery; defaults to the account address)
    "pickup_outlet": "..."       (pickup)
"""

from flask import Blueprint, Response, request, jsonify, g, current_app, stream_with_context

from ..errors import ShopError, error_response
from ..services import account_service, checkout_service, qr_service
from ..services.checkout_service import CheckoutContext
from ..services.payment_adapters import require_pending_payment
from ..services.pricing import LoyaltyPolicy, floor_to_step, max_redeemable_points
from ..decorators import require_auth
from ..validation import parse_non_negative_int, require_text

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


def _redeem_points(data: dict) -> int:
    return parse_non_negative_int(data.get("redeem_points"), "redeem_points")


def _settlement_response(result):
    status = 200 if result.already_settled or result.order is None else 201
    return jsonify(result.to_dict()), status


def _run_checkout(method: str):
    data = request.get_json(silent=True) or {}
    user = g.current_user
    ctx = CheckoutContext(
        user_id=user.id,
        payment_method=method,
        delivery=checkout_service.parse_delivery(data, user),
        redeem_points=_redeem_points(data),
        card=data.get("card") or {},
    )
    return _settlement_response(checkout_service.checkout(ctx))


# =============================================================================
# QUOTE
# =============================================================================

@checkout_bp.post("/quote")
@require_auth
def quote_route():
    """
    Price the current cart without paying.

    Request body: {"redeem_points": 35}  (optional)

    Returns the breakdown plus the shopper's points balance and the most
    points that may be redeemed on this cart.
    """
    try:
        data = request.get_json(silent=True) or {}
        user = g.current_user
        items, breakdown = checkout_service.quote(user.id, _redeem_points(data))

        balance = account_service.get_points(user.id)
        _, cap_points = max_redeemable_points(
            breakdown.pre_loyalty_cents, LoyaltyPolicy.from_config(current_app.config)
        )
        return jsonify({
            "items": [{**item.to_snapshot(), "line_total_cents": item.line_total_cents} for item in items],
            "breakdown": breakdown.to_dict(),
            "points_balance": balance,
            "max_redeemable_points": min(floor_to_step(balance), cap_points),
            "wallet_balance_cents": account_service.get_wallet(user.id),
            "membership": account_service.get_plan(user.id).to_dict(),
        })
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to quote checkout")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SYNCHRONOUS RAILS
# =============================================================================

@checkout_bp.post("/wallet")
@require_auth
def wallet_checkout_route():
    """
    Pay from the wallet balance.

    Returns:
        201: Order created
        402: Insufficient wallet balance (no order, cart intact)
        409: Stock ran out while placing the order
    """
    try:
        return _run_checkout("wallet")
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Wallet checkout failed")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/card")
@require_auth
def card_checkout_route():
    """
    Pay by card (local format validation only).

    Request body adds:
    "card": {"name": "...", "number": "4111111111111111", "expiry": "12/30", "cvv": "123"}
    """
    try:
        return _run_checkout("card")
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Card checkout failed")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYPAL
# =============================================================================

@checkout_bp.post("/paypal/orders")
@require_auth
def create_paypal_order_route():
    """
    Create a PayPal intent for the current cart.

    The priced amount, redeemed points and delivery choice are kept server
    side; capture re-prices the cart and refuses if the total changed.
    """
    try:
        data = request.get_json(silent=True) or {}
        user = g.current_user
        delivery = checkout_service.parse_delivery(data, user)
        pending, breakdown = checkout_service.start_paypal_checkout(user, _redeem_points(data), delivery)
        return jsonify({
            "id": pending.reference,
            "amount_cents": pending.amount_cents,
            "breakdown": breakdown.to_dict(),
        }), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create PayPal order")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/paypal/capture")
@require_auth
def capture_paypal_order_route():
    """
    Capture an approved PayPal intent and settle it.

    Request body: {"order_id": "5O190127TN364715T"}
    """
    try:
        data = request.get_json(silent=True) or {}
        intent_id = require_text(data.get("order_id") or data.get("orderID"), "order_id", max_length=128)
        result = checkout_service.capture_paypal_payment(g.current_user.id, intent_id)
        return _settlement_response(result)
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("PayPal capture failed")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# NETS QR
# =============================================================================

@checkout_bp.post("/nets/qr")
@require_auth
def create_nets_qr_route():
    """
    Request a QR code for the current cart.

    Returns the base64 PNG, the retrieval reference used by the status,
    events and confirm endpoints, and the expiry time.
    """
    try:
        data = request.get_json(silent=True) or {}
        user = g.current_user
        delivery = checkout_service.parse_delivery(data, user)
        pending, code, breakdown = checkout_service.start_nets_checkout(user, _redeem_points(data), delivery)
        return jsonify({
            "reference": pending.reference,
            "qr_code": code.qr_code,
            "amount_cents": pending.amount_cents,
            "expires_at": pending.to_dict()["expires_at"],
            "breakdown": breakdown.to_dict(),
        }), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create NETS QR code")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.get("/nets/<reference>/status")
@require_auth
def nets_status_route(reference: str):
    """Client poll; queries the gateway while the payment is still pending."""
    try:
        pending = require_pending_payment("nets", reference, g.current_user.id)
        qr_service.poll_status(pending)
        return jsonify(qr_service.status_payload(pending))
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to read NETS payment status")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.get("/nets/<reference>/events")
@require_auth
def nets_events_route(reference: str):
    """Server-sent events until the payment resolves or the window closes."""
    try:
        pending = require_pending_payment("nets", reference, g.current_user.id)
    except ShopError as e:
        return error_response(e)

    cfg = current_app.config
    stream = qr_service.stream_events(
        pending.id,
        poll_seconds=cfg["QR_STREAM_POLL_SECONDS"],
        timeout_seconds=cfg["QR_PAYMENT_TIMEOUT_SECONDS"],
    )
    return Response(
        stream_with_context(stream),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@checkout_bp.post("/nets/<reference>/confirm")
@require_auth
def nets_confirm_route(reference: str):
    """
    Settle a confirmed QR payment. Safe to repeat: a second call returns the
    order created by the first.

    Returns:
        201: Order placed
        200: Top-up or plan applied, or already settled
        402: Payment failed or timed out
        409: Payment not confirmed yet
    """
    try:
        result = checkout_service.confirm_nets_payment(g.current_user.id, reference)
        return _settlement_response(result)
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("NETS confirmation failed")
        return jsonify({"error": "Internal server error"}), 500
