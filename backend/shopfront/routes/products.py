# Overview: Flask API routes for catalog reads; parses input and returns JSON responses.

# backend/shopfront/routes/products.py
"""
Catalog routes

Reads are public. Writes live under /api/admin/products (routes/admin.py).
"""
from flask import Blueprint, request, jsonify, current_app

from ..errors import ShopError, error_response
from ..services import catalog_service
from ..services.promotion_service import get_registry
from ..validation import parse_positive_int

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products():
    """
    List products with optional name search and pagination.

    Query params:
    - q: str (optional) - case-insensitive name filter
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)

    Each item carries `on_promotion` for the current promotion snapshot.
    """
    try:
        page_raw = request.args.get("page")
        per_page_raw = request.args.get("per_page")
        page = parse_positive_int(page_raw, "page") if page_raw else None
        per_page = parse_positive_int(per_page_raw, "per_page") if per_page_raw else None

        result = catalog_service.list_products(q=request.args.get("q"), page=page, per_page=per_page)

        promotion = get_registry().snapshot()
        for item in result["items"]:
            item["on_promotion"] = promotion.matches(item["name"])
        result["promotion"] = promotion.to_dict()
        return jsonify(result)
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
def get_product(product_id: int):
    try:
        product = catalog_service.require_product(product_id)
        data = product.to_dict()
        data["on_promotion"] = get_registry().snapshot().matches(product.name)
        return jsonify({"product": data})
    except ShopError as e:
        return error_response(e)
