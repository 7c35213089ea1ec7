from __future__ import annotations

from ..extensions import db
from shopfront.time_utils import to_utc_z


class User(db.Model):
    """
    Shopper or admin account.

    One identifier (`id`) everywhere. Membership plan, wallet balance and
    loyalty points live here because every checkout reads them together.

    WALLET / POINTS: never assign these attributes directly in services;
    use account_service.adjust_wallet / adjust_points, which issue relative
    UPDATEs that floor at zero.

    FRAUD: fraud_warning_at marks the first strike; a second suspicious
    event sets disabled. refund_suspended_until is the time-boxed refund
    block set by refund velocity auto-flagging.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_users_email"),
        db.CheckConstraint("wallet_balance_cents >= 0", name="ck_users_wallet_non_negative"),
        db.CheckConstraint("loyalty_points >= 0", name="ck_users_points_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(16), nullable=False, default="user")  # user, admin
    address = db.Column(db.String(255), nullable=True)

    plan = db.Column(db.String(16), nullable=False, default="basic")  # basic, silver, gold
    wallet_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)

    disabled = db.Column(db.Boolean, nullable=False, default=False)
    fraud_warning_at = db.Column(db.DateTime(timezone=True), nullable=True)
    fraud_warning_reason = db.Column(db.String(255), nullable=True)
    fraud_warning_dismissed = db.Column(db.Boolean, nullable=False, default=False)
    refund_suspended_until = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "address": self.address,
            "plan": self.plan,
            "wallet_balance_cents": self.wallet_balance_cents,
            "loyalty_points": self.loyalty_points,
            "disabled": self.disabled,
            "fraud_warning_at": to_utc_z(self.fraud_warning_at),
            "fraud_warning_reason": self.fraud_warning_reason,
            "refund_suspended_until": to_utc_z(self.refund_suspended_until),
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at),
        }


class SessionToken(db.Model):
    """
    Bearer session. Only the SHA-256 of the token is stored.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "revoked_at": to_utc_z(self.revoked_at),
        }
