# Overview: Server-persisted per-user carts.

"""
Cart Store

WHY: The persisted cart is authoritative across devices. Every mutation
reloads the stored lines first and writes the whole result back, so two tabs
resolve as last-write-wins instead of silently diverging.

PRICE LOCK: unit_price_cents is captured when a product is first added
(product price after its own discount percent). Repeat adds merge the
quantity and keep the original locked price.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import CartLine
from ..errors import NotFoundError, ValidationError
from ..validation import parse_positive_int
from . import catalog_service


@dataclass(frozen=True)
class CartItem:
    """Detached cart line handed to pricing and checkout."""
    product_id: int
    product_name: str
    unit_price_cents: int
    quantity: int
    image: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_snapshot(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "image": self.image,
        }


def get_cart(user_id: int) -> list[CartItem]:
    lines = (
        db.session.query(CartLine)
        .filter(CartLine.user_id == user_id)
        .order_by(CartLine.id.asc())
        .all()
    )
    return [
        CartItem(
            product_id=line.product_id,
            product_name=line.product_name,
            unit_price_cents=line.unit_price_cents,
            quantity=line.quantity,
            image=line.image,
        )
        for line in lines
    ]


def save_cart(user_id: int, items: list[CartItem]) -> list[CartItem]:
    """
    Replace the stored cart with items. Commits.

    Lines with the same product are merged; non-positive quantities are dropped.
    """
    merged: dict[int, CartItem] = {}
    for item in items:
        if item.quantity <= 0:
            continue
        existing = merged.get(item.product_id)
        if existing:
            merged[item.product_id] = CartItem(
                product_id=existing.product_id,
                product_name=existing.product_name,
                unit_price_cents=existing.unit_price_cents,
                quantity=existing.quantity + item.quantity,
                image=existing.image,
            )
        else:
            merged[item.product_id] = item

    db.session.query(CartLine).filter(CartLine.user_id == user_id).delete(synchronize_session=False)
    for item in merged.values():
        db.session.add(CartLine(
            user_id=user_id,
            product_id=item.product_id,
            product_name=item.product_name,
            unit_price_cents=item.unit_price_cents,
            quantity=item.quantity,
            image=item.image,
        ))
    db.session.commit()
    return list(merged.values())


def _replace_line(items: list[CartItem], product_id: int, quantity: int) -> list[CartItem]:
    updated = []
    for item in items:
        if item.product_id != product_id:
            updated.append(item)
        elif quantity > 0:
            updated.append(CartItem(
                product_id=item.product_id,
                product_name=item.product_name,
                unit_price_cents=item.unit_price_cents,
                quantity=quantity,
                image=item.image,
            ))
    return updated


def add_item(user_id: int, product_id: int, quantity=1) -> list[CartItem]:
    qty = parse_positive_int(quantity, "quantity")
    product = catalog_service.require_product(product_id)

    items = get_cart(user_id)
    current = next((i for i in items if i.product_id == product.id), None)
    wanted = qty + (current.quantity if current else 0)
    if wanted > product.stock_quantity:
        raise ValidationError(
            f"Only {product.stock_quantity} left in stock for {product.name}",
            details={"product_id": product.id, "available": product.stock_quantity},
        )

    if current:
        items = _replace_line(items, product.id, wanted)
    else:
        items.append(CartItem(
            product_id=product.id,
            product_name=product.name,
            unit_price_cents=product.effective_price_cents,
            quantity=qty,
            image=product.image,
        ))
    return save_cart(user_id, items)


def update_item(user_id: int, product_id: int, quantity) -> list[CartItem]:
    """Set a line's quantity; zero removes the line."""
    qty = parse_positive_int(quantity, "quantity") if quantity not in (0, "0") else 0

    items = get_cart(user_id)
    if not any(i.product_id == product_id for i in items):
        raise NotFoundError("Item is not in your cart")

    if qty > 0:
        product = catalog_service.require_product(product_id)
        if qty > product.stock_quantity:
            raise ValidationError(
                f"Only {product.stock_quantity} left in stock for {product.name}",
                details={"product_id": product.id, "available": product.stock_quantity},
            )
    return save_cart(user_id, _replace_line(items, product_id, qty))


def remove_item(user_id: int, product_id: int) -> list[CartItem]:
    items = get_cart(user_id)
    return save_cart(user_id, [i for i in items if i.product_id != product_id])


def clear_cart(user_id: int) -> None:
    """Does not commit; checkout clears the cart in its own unit of work."""
    db.session.query(CartLine).filter(CartLine.user_id == user_id).delete(synchronize_session=False)


def cart_payload(items: list[CartItem]) -> dict:
    return {
        "items": [
            {**item.to_snapshot(), "line_total_cents": item.line_total_cents}
            for item in items
        ],
        "count": sum(item.quantity for item in items),
        "subtotal_cents": sum(item.line_total_cents for item in items),
    }
