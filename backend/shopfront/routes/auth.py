# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/shopfront/routes/auth.py
"""
Authentication API routes

SECURITY FEATURES:
- Password strength validation on registration
- bcrypt password hashes
- Session management with hashed bearer tokens (absolute + idle timeout)
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import ShopError, error_response
from ..services import auth_service
from ..services import session_service
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/register")
def register_route():
    """
    Create a shopper account on the basic plan and sign it in.

    Request body:
    {
        "username": "alice",
        "email": "alice@example.com",
        "password": "Password123!",
        "address": "1 Orchard Road"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        user = auth_service.create_user(
            username=data.get("username"),
            email=data.get("email"),
            password=data.get("password") or "",
            address=data.get("address"),
        )
        _, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({"user": user.to_dict(), "token": token}), 201
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to register user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        identifier = data.get("email") or data.get("username") or data.get("identifier")
        password = data.get("password")

        if not all([identifier, password]):
            return jsonify({"error": "email/username and password required"}), 400

        user = auth_service.authenticate(identifier, password)
        if not user:
            current_app.logger.info("Failed login for %s from %s", identifier, request.remote_addr)
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": session.to_dict()["expires_at"],
        })
    except ShopError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to log in")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(g.session_token)
    return jsonify({"message": "Logged out"})


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()})
