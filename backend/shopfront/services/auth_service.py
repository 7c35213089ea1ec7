# Overview: Password hashing, account creation and credential checks.

"""
Authentication Service

WHY: Every order, refund and ledger row is attributed to a user id, so the
entry point that proves who the caller is must be strict.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters with upper, lower, digit and special character
- Disabled accounts cannot authenticate
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt

from ..extensions import db
from ..models import User
from ..errors import ConflictError, ValidationError
from shopfront.time_utils import utcnow


ROLES = ("user", "admin")


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    email: str,
    password: str,
    role: str = "user",
    plan: str = "basic",
    address: str | None = None,
) -> User:
    """
    Create a user with a bcrypt password hash.

    Raises:
        ValidationError: unknown role, bad email or weak password
        ConflictError: email already registered
    """
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")

    existing = db.session.query(User).filter(User.email == email).first()
    if existing:
        raise ConflictError("Email already registered")

    user = User(
        username=(username or "").strip() or email.split("@", 1)[0],
        email=email,
        password_hash=hash_password(password),
        role=role,
        plan=plan,
        address=address,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(identifier: str, password: str) -> User | None:
    """
    Authenticate by email (or username) and password.

    Returns User if credentials valid and the account is enabled, None otherwise.
    Updates last_login_at on success.
    """
    identifier = (identifier or "").strip()
    if not identifier or not password:
        return None

    user = db.session.query(User).filter(
        db.or_(User.email == identifier.lower(), User.username == identifier),
    ).first()

    if not user or user.disabled:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
