from __future__ import annotations

import json

from ..extensions import db
from shopfront.time_utils import to_utc_z


class Order(db.Model):
    """
    Committed, paid order.

    WHY: The order row is the durability point of checkout. Everything the
    buyer saw at payment time is snapshotted here (items, price breakdown,
    delivery, payment) so later catalog edits never change what was sold.

    MUTABILITY: only `status` (admin) changes after insert. Refund progress
    is tracked on OrderItem, not here.

    DEDUP: (payment_method, payment_ref) is unique, so the same capture id or
    QR retrieval reference can never settle into two orders.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("payment_method", "payment_ref", name="uq_orders_payment_ref"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # JSON array of {product_id, product_name, unit_price_cents, quantity, image}
    items_json = db.Column(db.Text, nullable=False, default="[]")

    # Price breakdown (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    promo_savings_cents = db.Column(db.Integer, nullable=False, default=0)
    membership_savings_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_savings_cents = db.Column(db.Integer, nullable=False, default=0)
    savings_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    points_spent = db.Column(db.Integer, nullable=False, default=0)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    membership_plan = db.Column(db.String(16), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="processing", index=True)  # processing, completed, pending

    delivery_method = db.Column(db.String(16), nullable=False, default="delivery")  # delivery, pickup
    delivery_address = db.Column(db.String(255), nullable=True)
    pickup_outlet = db.Column(db.String(128), nullable=True)

    payment_method = db.Column(db.String(16), nullable=False)  # card, paypal, wallet, nets
    payment_ref = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    # Refund window is measured from here
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def items(self) -> list[dict]:
        try:
            return json.loads(self.items_json or "[]")
        except ValueError:
            return []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": self.items,
            "subtotal_cents": self.subtotal_cents,
            "promo_savings_cents": self.promo_savings_cents,
            "membership_savings_cents": self.membership_savings_cents,
            "loyalty_savings_cents": self.loyalty_savings_cents,
            "savings_cents": self.savings_cents,
            "total_cents": self.total_cents,
            "points_spent": self.points_spent,
            "points_earned": self.points_earned,
            "membership_plan": self.membership_plan,
            "status": self.status,
            "delivery_method": self.delivery_method,
            "delivery_address": self.delivery_address,
            "pickup_outlet": self.pickup_outlet,
            "payment_method": self.payment_method,
            "payment_ref": self.payment_ref,
            "created_at": to_utc_z(self.created_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
        }


class OrderItem(db.Model):
    """
    Normalized order line, materialized lazily from Order.items_json the
    first time a refund flow touches the order.

    INVARIANT: 0 <= refunded_quantity <= quantity; line_total_cents is fixed
    at creation and never recomputed from the current catalog price.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", name="uq_order_items_order_product"),
        db.CheckConstraint("refunded_quantity >= 0 AND refunded_quantity <= quantity", name="ck_order_items_refunded_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False)
    product_name = db.Column(db.String(255), nullable=False)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)
    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("order_items", lazy=True, order_by="OrderItem.id"))

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - (self.refunded_quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "line_total_cents": self.line_total_cents,
            "refunded_quantity": self.refunded_quantity,
            "remaining_quantity": self.remaining_quantity,
        }
