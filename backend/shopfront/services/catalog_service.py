# Overview: Catalog reads, admin CRUD and stock movements for products.

"""
Catalog Service

STOCK INVARIANT: stock_quantity never goes below zero. Every change is a
relative UPDATE evaluated by the database, never read-modify-write in Python:
- decrement_stock: unconditional, floors at zero (admin/reconciliation use)
- reserve_stock: conditional, succeeds only if the full quantity is on hand
  (checkout uses this inside the order transaction)
"""
from __future__ import annotations

from sqlalchemy import case

from ..extensions import db
from ..models import Product, CartLine
from ..errors import NotFoundError
from ..validation import ModelValidationPolicy, validate_payload, enforce_rules_product

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "price_cents", "stock_quantity", "discount_percent", "image"},
    required_on_create={"name", "price_cents"},
)


def get_product(product_id: int) -> Product | None:
    return db.session.get(Product, product_id)


def require_product(product_id: int) -> Product:
    product = get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


def list_products(
    q: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing with optional name filter and pagination.

    Returns dict with 'items', 'count' and, when paginated, 'pagination'.
    """
    base_query = db.session.query(Product)
    if q:
        base_query = base_query.filter(Product.name.ilike(f"%{q.strip()}%"))
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def create_product(payload: dict) -> Product:
    """Validate and insert a product. discount_percent is clamped to 0-50."""
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)

    product = Product(**patch)
    db.session.add(product)
    db.session.commit()
    return product


def update_product(product_id: int, payload: dict) -> Product:
    """
    Apply a partial update.

    Existing cart lines keep the unit price they were added at.
    """
    product = require_product(product_id)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)

    for key, value in patch.items():
        setattr(product, key, value)
    db.session.commit()
    return product


def delete_product(product_id: int) -> None:
    """
    Delete a product and every cart line that references it.

    Orders keep their own snapshot in items_json and are unaffected.
    """
    product = require_product(product_id)
    db.session.query(CartLine).filter(CartLine.product_id == product.id).delete(synchronize_session=False)
    db.session.delete(product)
    db.session.commit()


def decrement_stock(product_id: int, qty: int) -> int:
    """
    Subtract qty from stock, flooring at zero. Does not commit.

    Returns rows affected (0 if the product no longer exists).
    """
    if qty <= 0:
        return 0
    new_value = case(
        (Product.stock_quantity - qty < 0, 0),
        else_=Product.stock_quantity - qty,
    )
    return db.session.query(Product).filter(Product.id == product_id).update(
        {Product.stock_quantity: new_value}, synchronize_session=False
    )


def reserve_stock(product_id: int, qty: int) -> bool:
    """
    Atomically take qty units if and only if qty units are available.

    Does not commit: the caller owns the transaction and rolls back every
    reservation it made if any line fails.
    """
    if qty <= 0:
        return True
    updated = db.session.query(Product).filter(
        Product.id == product_id,
        Product.stock_quantity >= qty,
    ).update(
        {Product.stock_quantity: Product.stock_quantity - qty},
        synchronize_session=False,
    )
    return updated == 1


def get_stock(product_id: int) -> int | None:
    """Fresh read of stock_quantity, bypassing any stale identity-map copy."""
    return db.session.query(Product.stock_quantity).filter(Product.id == product_id).scalar()
