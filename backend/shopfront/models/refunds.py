from __future__ import annotations

from ..extensions import db
from shopfront.time_utils import to_utc_z


class RefundRequest(db.Model):
    """
    Customer refund request for a committed order.

    LIFECYCLE:
    - pending: submitted, awaiting admin decision
    - flagged: auto-flagged by refund velocity; never processed
    - approved: money returned (terminal)
    - denied: no monetary effect (terminal)

    INVARIANT: at most one pending or approved request per order.
    """
    __tablename__ = "refund_requests"
    __table_args__ = (
        db.Index("ix_refund_requests_order_status", "order_id", "status"),
        db.Index("ix_refund_requests_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    reason = db.Column(db.Text, nullable=False)
    # Opaque reference to uploaded evidence (storage is handled elsewhere)
    document_ref = db.Column(db.String(255), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    destination = db.Column(db.String(16), nullable=False, default="wallet")  # wallet, original
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    admin_note = db.Column(db.Text, nullable=True)

    # External refund id when the refund went back to the hosted-redirect capture
    external_ref = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("refund_requests", lazy=True))
    user = db.relationship("User", foreign_keys=[user_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_whole_order(self) -> bool:
        return not self.items

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "reason": self.reason,
            "document_ref": self.document_ref,
            "amount_cents": self.amount_cents,
            "destination": self.destination,
            "status": self.status,
            "admin_note": self.admin_note,
            "external_ref": self.external_ref,
            "items": [item.to_dict() for item in self.items],
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at),
            "processed_by_user_id": self.processed_by_user_id,
        }


class RefundRequestItem(db.Model):
    """Requested quantity of one order line."""
    __tablename__ = "refund_request_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_refund_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refund_requests.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    refund = db.relationship("RefundRequest", backref=db.backref("items", lazy=True, order_by="RefundRequestItem.id"))
    order_item = db.relationship("OrderItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "product_id": self.order_item.product_id if self.order_item else None,
            "product_name": self.order_item.product_name if self.order_item else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "amount_cents": self.amount_cents,
        }
