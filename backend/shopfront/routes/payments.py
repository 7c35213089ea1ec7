# Overview: Flask API routes for gateway callbacks; parses input and returns JSON responses.

# backend/shopfront/routes/payments.py
"""
Payment gateway callbacks

The NETS webhook is a hint: its claimed outcome is checked against a gateway
query before the PendingPayment changes. Settlement happens on the buyer's
confirm call (or event stream), which always runs under the buyer's session.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import qr_service

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/nets/webhook")
def nets_webhook_route():
    """
    Push confirmation from the QR gateway.

    Always answers 200 so the gateway does not retry payloads we cannot use.
    """
    try:
        payload = request.get_json(silent=True) or {}
        pending = qr_service.record_webhook(payload)
        if pending is None:
            return jsonify({"received": True, "status": "ignored"})
        return jsonify({"received": True, "reference": pending.reference, "status": pending.status})
    except Exception:
        current_app.logger.exception("Failed to process NETS webhook")
        return jsonify({"received": False}), 500
