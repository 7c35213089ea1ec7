# Overview: Flask API routes for the shopper's cart; parses input and returns JSON responses.

# backend/shopfront/routes/cart.py
"""
Cart routes

The cart is stored server-side per user. Every response returns the whole
cart so clients never merge partial state.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import ShopError, error_response
from ..extensions import db
from ..services import cart_service
from ..decorators import require_auth
from ..validation import parse_positive_int

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
def get_cart_route():
    items = cart_service.get_cart(g.current_user.id)
    return jsonify(cart_service.cart_payload(items))


@cart_bp.post("/items")
@require_auth
def add_item_route():
    """
    Add a product (merges with an existing line).

    Request body:
    {
        "product_id": 1,
        "quantity": 2
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = parse_positive_int(data.get("product_id"), "product_id")
        items = cart_service.add_item(g.current_user.id, product_id, data.get("quantity", 1))
        return jsonify(cart_service.cart_payload(items)), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.patch("/items/<int:product_id>")
@require_auth
def update_item_route(product_id: int):
    """Set quantity; 0 removes the line."""
    try:
        data = request.get_json(silent=True) or {}
        items = cart_service.update_item(g.current_user.id, product_id, data.get("quantity"))
        return jsonify(cart_service.cart_payload(items))
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/items/<int:product_id>")
@require_auth
def remove_item_route(product_id: int):
    items = cart_service.remove_item(g.current_user.id, product_id)
    return jsonify(cart_service.cart_payload(items))


@cart_bp.delete("")
@require_auth
def clear_cart_route():
    try:
        cart_service.clear_cart(g.current_user.id)
        db.session.commit()
        return jsonify(cart_service.cart_payload([]))
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500
