# Overview: Bearer session tokens: issue, validate, revoke.

"""
Session Token Management Service

WHY: Secure session management with automatic timeout and revocation.
Tokens are cryptographically secure, hashed in database, and time-limited.

SECURITY FEATURES:
- 32 bytes of randomness per token
- Tokens hashed with SHA-256 before storage
- 24-hour absolute timeout, 2-hour idle timeout
- Revoked on logout and when the account is disabled
"""

import hashlib
import secrets
from datetime import timedelta

from ..extensions import db
from ..models import SessionToken, User
from shopfront.time_utils import utcnow, as_naive_utc


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)
SESSION_IDLE_TIMEOUT = timedelta(hours=2)


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """
    WHY SHA-256 not bcrypt: Tokens are already high-entropy (unlike passwords).
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """
    Create new session token for user.

    Returns (session_record, plaintext_token). Only the hash is stored.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + SESSION_ABSOLUTE_TIMEOUT,
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
    )

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> User | None:
    """
    Return the session's user if the token is valid, else None.

    Idle sessions and sessions of disabled users are revoked on sight.
    Updates last_used_at on success.
    """
    now = utcnow()

    session = db.session.query(SessionToken).filter(
        SessionToken.token_hash == hash_token(token),
        SessionToken.revoked_at.is_(None),
    ).first()

    if not session:
        return None

    if as_naive_utc(session.expires_at) < now:
        return None

    last_used = as_naive_utc(session.last_used_at) or as_naive_utc(session.created_at)
    if last_used and now - last_used > SESSION_IDLE_TIMEOUT:
        session.revoked_at = now
        db.session.commit()
        return None

    user = session.user
    if not user or user.disabled:
        session.revoked_at = now
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()
    return user


def revoke_session(token: str) -> bool:
    """Returns True if an active session was revoked."""
    session = db.session.query(SessionToken).filter(
        SessionToken.token_hash == hash_token(token),
        SessionToken.revoked_at.is_(None),
    ).first()

    if not session:
        return False

    session.revoked_at = utcnow()
    db.session.commit()
    return True


def revoke_all_user_sessions(user_id: int) -> int:
    """
    Revoke all active sessions for a user (account disabled by the fraud
    monitor or by an admin). Does not commit.
    """
    return db.session.query(SessionToken).filter(
        SessionToken.user_id == user_id,
        SessionToken.revoked_at.is_(None),
    ).update({SessionToken.revoked_at: utcnow()}, synchronize_session=False)
