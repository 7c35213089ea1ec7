# Overview: Flask API routes for order history and refund requests.

# backend/shopfront/routes/orders.py
"""
Order history and refund request routes (shopper side).

Admin order and refund management lives in routes/admin.py.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import ShopError, error_response
from ..services import order_service, refund_service
from ..decorators import require_auth
from ..validation import parse_positive_int

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")
refunds_bp = Blueprint("refunds", __name__, url_prefix="/api/refunds")


@orders_bp.get("")
@require_auth
def list_orders_route():
    orders = order_service.list_orders_for_user(g.current_user.id)
    return jsonify({"items": [o.to_dict() for o in orders], "count": len(orders)})


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    """Owner or admin. Includes refund requests made against the order."""
    try:
        order = order_service.get_order_for_user(order_id, g.current_user)
        data = order.to_dict()
        data["order_items"] = [item.to_dict() for item in order.order_items]
        data["refund_requests"] = [r.to_dict() for r in order.refund_requests]
        return jsonify({"order": data})
    except ShopError as e:
        return error_response(e)


@refunds_bp.post("")
@require_auth
def submit_refund_route():
    """
    Request a refund within the refund window of purchase.

    Request body:
    {
        "order_id": 12,
        "reason": "Milk was spoiled",
        "items": [{"order_item_id": 3, "quantity": 1}],  (optional; omit for whole order)
        "destination": "wallet" | "original",  (optional, default wallet)
        "document_ref": "receipt-123.jpg"  (optional)
    }

    Returns:
        201: Request created (status pending, or flagged on frequent requests)
        400: Outside window / invalid items
        403: Not your order, or account disabled
        404: Order not found
        409: A request already exists, or refunds temporarily suspended
    """
    try:
        data = request.get_json(silent=True) or {}
        refund = refund_service.submit_request(
            user=g.current_user,
            order_id=parse_positive_int(data.get("order_id"), "order_id"),
            reason=data.get("reason"),
            items=data.get("items"),
            destination=data.get("destination") or "wallet",
            document_ref=data.get("document_ref"),
        )
        return jsonify({"refund": refund.to_dict()}), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to submit refund request")
        return jsonify({"error": "Internal server error"}), 500


@refunds_bp.get("")
@require_auth
def list_refunds_route():
    refunds = refund_service.list_for_user(g.current_user.id)
    return jsonify({"items": [r.to_dict() for r in refunds], "count": len(refunds)})
