from __future__ import annotations

from ..extensions import db
from shopfront.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data.

    WHY: Pricing reads price and discount here; checkout reads and decrements
    stock_quantity. Stock is only ever changed with relative SQL updates
    (see catalog_service) so concurrent checkouts cannot lose updates.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    # Per-product markdown, 0-50, applied when a line is added to a cart
    discount_percent = db.Column(db.Integer, nullable=False, default=0)

    image = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"

    @property
    def effective_price_cents(self) -> int:
        """Unit price after the product's own discount, rounded half-up to cents."""
        pct = self.discount_percent or 0
        if pct <= 0:
            return self.price_cents
        return (self.price_cents * (100 - pct) + 50) // 100

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price_cents": self.price_cents,
            "effective_price_cents": self.effective_price_cents,
            "stock_quantity": self.stock_quantity,
            "discount_percent": self.discount_percent,
            "image": self.image,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
