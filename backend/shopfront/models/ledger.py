from __future__ import annotations

from ..extensions import db
from shopfront.time_utils import to_utc_z


class TransactionLog(db.Model):
    """
    Append-only ledger of balance-affecting events.

    ACTION TYPES:
    - PAYMENT: order paid (any rail)
    - POINTS_REDEEM / POINTS_EARN: loyalty movements (balances are points)
    - POINTS_ADJUST: admin correction of a points balance (actor_user_id set)
    - REFUND: refund credited (wallet or original rail)
    - TOPUP: wallet funded
    - MEMBERSHIP: plan purchase

    previous_balance/new_balance are wallet cents for money events and
    point counts for POINTS_* events. The fraud verdict is computed before
    insert and stored with the row.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "transaction_logs"
    __table_args__ = (
        db.Index("ix_transaction_logs_user_action_occurred", "user_id", "action_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    action_type = db.Column(db.String(20), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False, default=0)
    previous_balance = db.Column(db.Integer, nullable=True)
    new_balance = db.Column(db.Integer, nullable=True)
    payment_method = db.Column(db.String(16), nullable=True)

    # Plain references: log rows outlive admin-deleted orders and refunds
    order_id = db.Column(db.Integer, nullable=True, index=True)
    refund_id = db.Column(db.Integer, nullable=True, index=True)

    is_suspicious = db.Column(db.Boolean, nullable=False, default=False, index=True)
    suspicious_reason = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    user = db.relationship("User", foreign_keys=[user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "actor_user_id": self.actor_user_id,
            "action_type": self.action_type,
            "amount": self.amount,
            "previous_balance": self.previous_balance,
            "new_balance": self.new_balance,
            "payment_method": self.payment_method,
            "order_id": self.order_id,
            "refund_id": self.refund_id,
            "is_suspicious": self.is_suspicious,
            "suspicious_reason": self.suspicious_reason,
            "occurred_at": to_utc_z(self.occurred_at),
        }
