from __future__ import annotations

from ..extensions import db
from shopfront.time_utils import to_utc_z


class CartLine(db.Model):
    """
    One product in a user's persisted cart.

    unit_price_cents is locked when the line is first added (the product's
    own discount already applied). Cart-level promotions are applied later,
    at checkout, by the pricing engine.
    """
    __tablename__ = "cart_lines"
    __table_args__ = (
        db.UniqueConstraint("user_id", "product_id", name="uq_cart_lines_user_product"),
        db.CheckConstraint("quantity > 0", name="ck_cart_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    # Display snapshot, resilient to later catalog edits
    product_name = db.Column(db.String(255), nullable=False)
    image = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "image": self.image,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "created_at": to_utc_z(self.created_at),
        }
