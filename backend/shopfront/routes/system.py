# backend/shopfront/routes/system.py
"""
System health endpoint.

Reports database reachability and the state of the payment plumbing that
operators watch: QR payments stuck in PENDING and gateway configuration.
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import PendingPayment, Product, User
from shopfront.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        product_count = db.session.query(Product).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "products": product_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_payments_health() -> dict:
    """Overdue PENDING QR payments mean the expiry sweep is not running."""
    try:
        overdue = db.session.query(PendingPayment).filter(
            PendingPayment.status == "PENDING",
            PendingPayment.expires_at.isnot(None),
            PendingPayment.expires_at < utcnow(),
        ).count()
    except Exception:
        current_app.logger.exception("Payments health check failed")
        return {"status": "unhealthy", "error": "Payments table error"}

    cfg = current_app.config
    details = {
        "overdue_qr_payments": overdue,
        "paypal_configured": bool(cfg.get("PAYPAL_CLIENT_ID") and cfg.get("PAYPAL_CLIENT_SECRET")),
        "nets_configured": bool(cfg.get("NETS_API_KEY") and cfg.get("NETS_PROJECT_ID")),
    }
    if overdue:
        return {"status": "degraded", "warning": f"{overdue} QR payments past expiry", "details": details}
    return {"status": "healthy", "details": details}


@system_bp.get("/api/health")
def health():
    checks = {
        "database": check_database_health(),
        "payments": check_payments_health(),
    }
    statuses = {c["status"] for c in checks.values()}
    if "unhealthy" in statuses:
        overall, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall, http_status = "degraded", 200
    else:
        overall, http_status = "healthy", 200

    return {"status": overall, "checks": checks}, http_status
