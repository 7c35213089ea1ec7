from __future__ import annotations

import json

from ..extensions import db
from shopfront.time_utils import to_utc_z


class PendingPayment(db.Model):
    """
    Server-side stash for an asynchronous payment (hosted-redirect intent or
    QR code) until its confirmation arrives as a separate request.

    STATE MACHINE:
    - PENDING -> CONFIRMED | FAILED | TIMED_OUT   (gateway outcome)
    - CONFIRMED -> SETTLED                         (order/top-up/plan committed)

    context_json carries what the confirming request no longer has: delivery
    choice, loyalty redemption, membership plan.

    DEDUP: (provider, reference) is unique; once SETTLED, order_id points at
    the order created for it and further confirmations return that order.
    """
    __tablename__ = "pending_payments"
    __table_args__ = (
        db.UniqueConstraint("provider", "reference", name="uq_pending_payments_provider_ref"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(16), nullable=False)  # paypal, nets
    reference = db.Column(db.String(128), nullable=False)
    purpose = db.Column(db.String(16), nullable=False, default="checkout")  # checkout, topup, membership

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    context_json = db.Column(db.Text, nullable=False, default="{}")

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    gateway_ref = db.Column(db.String(128), nullable=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def context(self) -> dict:
        try:
            return json.loads(self.context_json or "{}")
        except ValueError:
            return {}

    @property
    def is_terminal(self) -> bool:
        return self.status in ("FAILED", "TIMED_OUT", "SETTLED")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "reference": self.reference,
            "purpose": self.purpose,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "order_id": self.order_id,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "resolved_at": to_utc_z(self.resolved_at),
            "settled_at": to_utc_z(self.settled_at),
        }
