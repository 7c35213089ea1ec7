# Overview: Exception taxonomy shared by services and routes.

"""
Domain errors

Every error carries the HTTP status it maps to and an optional `details`
dict that routes pass through to the JSON body. Services raise these; routes
translate them with `error_response()` and never leak anything else.
"""

from __future__ import annotations


class ShopError(Exception):
    """Base class for user-facing domain errors."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(ShopError, ValueError):
    """400-level input problem; always user-correctable."""
    status_code = 400


class AuthorizationError(ShopError):
    """Wrong user or role for the resource."""
    status_code = 403


class NotFoundError(ShopError):
    status_code = 404


class ConflictError(ShopError):
    """409-level business rule conflict (e.g., refund already pending)."""
    status_code = 409


class PaymentDeclinedError(ShopError):
    """The payment adapter reported failure. No order was created."""
    status_code = 402


class InsufficientBalanceError(PaymentDeclinedError):
    pass


class ExternalGatewayError(ShopError):
    """
    Timeout or non-2xx from a payment gateway.

    The message is operator-facing; routes show a generic text instead.
    """
    status_code = 502
    public_message = "Payment provider unavailable. Please try again later."


class PersistenceError(ShopError):
    status_code = 500
    public_message = "Something went wrong on our side. Please try again later."


def error_body(exc: ShopError) -> dict:
    message = getattr(exc, "public_message", None) or str(exc)
    body = {"error": message}
    if exc.details and not isinstance(exc, (ExternalGatewayError, PersistenceError)):
        body["details"] = exc.details
    return body


def error_response(exc: ShopError):
    """(json, status) tuple for a domain error."""
    from flask import jsonify
    return jsonify(error_body(exc)), exc.status_code
