# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/shopfront/routes/admin.py
"""
Admin API Routes

SECURITY: Every route requires an authenticated user with role admin.

AREAS:
- Catalog: create / update / delete products
- Promotion: read and replace the live promotion config
- Orders: list, change status, delete
- Refunds: list, approve, deny
- Transactions: paged transaction log with fraud flags
- Users: list, change plan, enable/disable, adjust points
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import NotFoundError, ShopError, ValidationError, error_response
from ..extensions import db
from ..models import User
from ..services import (
    account_service,
    catalog_service,
    ledger_service,
    order_service,
    refund_service,
    session_service,
)
from ..services.promotion_service import get_registry
from ..decorators import require_auth, require_admin
from ..validation import parse_int, parse_positive_int

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _page() -> int:
    return parse_positive_int(request.args.get("page", 1), "page")


# =============================================================================
# CATALOG
# =============================================================================

@admin_bp.post("/products")
@require_auth
@require_admin
def create_product_route():
    """
    Request body:
    {
        "name": "Fresh Milk 1L",
        "price_cents": 300,
        "stock_quantity": 50,
        "discount_percent": 0,  (clamped to 0-50)
        "image": "milk.png"  (optional)
    }
    """
    try:
        product = catalog_service.create_product(request.get_json(silent=True) or {})
        return jsonify({"product": product.to_dict()}), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/products/<int:product_id>")
@require_auth
@require_admin
def update_product_route(product_id: int):
    try:
        product = catalog_service.update_product(product_id, request.get_json(silent=True) or {})
        return jsonify({"product": product.to_dict()})
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.delete("/products/<int:product_id>")
@require_auth
@require_admin
def delete_product_route(product_id: int):
    try:
        catalog_service.delete_product(product_id)
        return jsonify({"message": "Product deleted"})
    except ShopError as e:
        return error_response(e)


# =============================================================================
# PROMOTION
# =============================================================================

@admin_bp.get("/promotion")
@require_auth
@require_admin
def get_promotion_route():
    return jsonify({"promotion": get_registry().snapshot().to_dict()})


@admin_bp.put("/promotion")
@require_auth
@require_admin
def update_promotion_route():
    """
    Replace the promotion. Takes effect on the next price computation.

    Request body:
    {
        "keywords": ["milk", "cheese"]  (or "milk, cheese"),
        "percent": 15
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        config = get_registry().update(data.get("keywords"), data.get("percent"))
        current_app.logger.info(
            "Promotion updated by user %s: %s%% on %s", g.current_user.id, config.percent, ", ".join(config.keywords)
        )
        return jsonify({"promotion": config.to_dict()})
    except ShopError as e:
        return error_response(e)


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/orders")
@require_auth
@require_admin
def list_orders_route():
    try:
        return jsonify(order_service.list_orders(page=_page(), status=request.args.get("status")))
    except ShopError as e:
        return error_response(e)


@admin_bp.patch("/orders/<int:order_id>")
@require_auth
@require_admin
def update_order_status_route(order_id: int):
    """Request body: {"status": "processing" | "completed" | "pending"}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_status(order_id, data.get("status"))
        return jsonify({"order": order.to_dict()})
    except ShopError as e:
        return error_response(e)


@admin_bp.delete("/orders/<int:order_id>")
@require_auth
@require_admin
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(order_id)
        current_app.logger.warning("Order %s deleted by user %s", order_id, g.current_user.id)
        return jsonify({"message": "Order deleted"})
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFUNDS
# =============================================================================

@admin_bp.get("/refunds")
@require_auth
@require_admin
def list_refunds_route():
    try:
        return jsonify(refund_service.list_requests(page=_page(), status=request.args.get("status")))
    except ShopError as e:
        return error_response(e)


@admin_bp.post("/refunds/<int:refund_id>/approve")
@require_auth
@require_admin
def approve_refund_route(refund_id: int):
    """
    Approve a pending request and return the money.

    Request body: {"admin_note": "..."}  (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        refund = refund_service.approve_request(refund_id, g.current_user.id, data.get("admin_note"))
        return jsonify({
            "refund": refund.to_dict(),
            "message": f"Refund approved for order #{refund.order_id}.",
        })
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve refund %s", refund_id)
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/refunds/<int:refund_id>/deny")
@require_auth
@require_admin
def deny_refund_route(refund_id: int):
    try:
        data = request.get_json(silent=True) or {}
        refund = refund_service.deny_request(refund_id, g.current_user.id, data.get("admin_note"))
        return jsonify({
            "refund": refund.to_dict(),
            "message": f"Refund denied for order #{refund.order_id}.",
        })
    except ShopError as e:
        return error_response(e)


# =============================================================================
# TRANSACTIONS
# =============================================================================

@admin_bp.get("/transactions")
@require_auth
@require_admin
def list_transactions_route():
    """
    Query params:
    - page: int (20 per page)
    - user_id: int (optional)
    - suspicious: "1" to show flagged rows only
    """
    try:
        user_id_raw = request.args.get("user_id")
        return jsonify(ledger_service.list_transactions(
            page=_page(),
            user_id=parse_positive_int(user_id_raw, "user_id") if user_id_raw else None,
            suspicious_only=request.args.get("suspicious") in ("1", "true"),
        ))
    except ShopError as e:
        return error_response(e)


# =============================================================================
# USERS
# =============================================================================

@admin_bp.get("/users")
@require_auth
@require_admin
def list_users_route():
    users = db.session.query(User).order_by(User.id.asc()).all()
    return jsonify({"items": [u.to_dict() for u in users], "count": len(users)})


@admin_bp.patch("/users/<int:user_id>")
@require_auth
@require_admin
def update_user_route(user_id: int):
    """
    Request body (all optional):
    {
        "plan": "basic" | "silver" | "gold",
        "disabled": true | false,
        "points_delta": -20,
        "clear_fraud_warning": true
    }

    Disabling revokes all of the user's sessions. A points change is logged
    as POINTS_ADJUST with the admin as actor. Clearing the warning resets the
    strike count.
    """
    try:
        data = request.get_json(silent=True) or {}
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        if "plan" in data:
            account_service.set_plan(user.id, data.get("plan"))

        if "disabled" in data:
            if not isinstance(data["disabled"], bool):
                raise ValidationError("disabled must be true or false")
            if data["disabled"] and user.id == g.current_user.id:
                raise ValidationError("You cannot disable your own account")
            user.disabled = data["disabled"]
            if user.disabled:
                session_service.revoke_all_user_sessions(user.id)

        if data.get("points_delta") is not None:
            previous, new = account_service.adjust_points(user.id, parse_int(data["points_delta"], "points_delta"))
            if new != previous:
                ledger_service.append_transaction(
                    user_id=user.id,
                    action_type="POINTS_ADJUST",
                    amount=new - previous,
                    previous_balance=previous,
                    new_balance=new,
                    actor_user_id=g.current_user.id,
                )

        if data.get("clear_fraud_warning"):
            user.fraud_warning_at = None
            user.fraud_warning_reason = None
            user.fraud_warning_dismissed = False

        db.session.commit()
        account_service.refresh_user(user)
        current_app.logger.info("User %s updated by admin %s: %s", user.id, g.current_user.id, sorted(data))
        return jsonify({"user": user.to_dict()})
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update user %s", user_id)
        return jsonify({"error": "Internal server error"}), 500
