# Overview: NETS QR confirmation state machine: webhook push, gateway pull, event stream.

"""
QR Payment State Machine

STATES (PendingPayment.status):
    PENDING --(response_code "00", txn_status 1)--> CONFIRMED
    PENDING --(other response_code, or txn_status 2)--> FAILED
    PENDING --(expires_at passed)--> TIMED_OUT
    CONFIRMED --(order/top-up/plan committed)--> SETTLED   (checkout_service)

Any other combination leaves the payment PENDING. Terminal and CONFIRMED
states never move back; a late "00" for a TIMED_OUT payment is ignored.

Status arrives three ways, all funnelled through apply_status():
- push: the gateway webhook (record_webhook), verified by a gateway query
- pull: the client's status poll (poll_status -> gateway query)
- stream: server-sent events that poll until resolved or timed out
"""

from __future__ import annotations

import json
import time

from flask import current_app

from ..extensions import db
from ..errors import ExternalGatewayError
from ..models import PendingPayment
from .nets_client import get_nets_client
from .payment_adapters import find_pending_payment
from shopfront.time_utils import utcnow, as_naive_utc

CONFIRMED = "CONFIRMED"
FAILED = "FAILED"
PENDING = "PENDING"
TIMED_OUT = "TIMED_OUT"


def interpret_status(payload: dict | None) -> str:
    """
    Map a gateway status payload (webhook body or query result) onto
    CONFIRMED / FAILED / PENDING.
    """
    payload = payload or {}
    if isinstance(payload.get("result"), dict):
        payload = payload["result"].get("data") or {}

    code = payload.get("response_code")
    code = str(code).strip() if code is not None else ""
    try:
        txn_status = int(payload.get("txn_status"))
    except (TypeError, ValueError):
        txn_status = None

    if code and code != "00":
        return FAILED
    if txn_status == 2:
        return FAILED
    if code == "00" and txn_status == 1:
        return CONFIRMED
    return PENDING


def is_expired(pending: PendingPayment, now=None) -> bool:
    if pending.expires_at is None:
        return False
    return (now or utcnow()) >= as_naive_utc(pending.expires_at)


def _expire_if_due(pending: PendingPayment) -> bool:
    if pending.status == PENDING and is_expired(pending):
        pending.status = TIMED_OUT
        pending.failure_reason = "No confirmation before the QR code expired"
        pending.resolved_at = utcnow()
        return True
    return False


def apply_status(pending: PendingPayment, payload: dict | None, source: str) -> str:
    """Advance a PENDING payment from a gateway payload. Commits."""
    if pending.status != PENDING:
        return pending.status

    if _expire_if_due(pending):
        db.session.commit()
        current_app.logger.warning("QR payment %s timed out (%s)", pending.reference, source)
        return pending.status

    outcome = interpret_status(payload)
    if outcome == CONFIRMED:
        pending.status = CONFIRMED
        pending.resolved_at = utcnow()
    elif outcome == FAILED:
        pending.status = FAILED
        pending.failure_reason = f"Gateway reported failure via {source} (response_code={(payload or {}).get('response_code', 'N.A.')})"
        pending.resolved_at = utcnow()
    else:
        return pending.status

    db.session.commit()
    current_app.logger.info("QR payment %s -> %s via %s", pending.reference, pending.status, source)
    return pending.status


def record_webhook(payload: dict | None) -> PendingPayment | None:
    """
    Push channel. The body is unauthenticated, so it is only a hint: a push
    reporting an outcome triggers a gateway query, and only the query result
    moves the state machine. Settlement happens when the buyer's confirm
    call (or stream) observes CONFIRMED.
    """
    payload = payload or {}
    data = payload.get("result", {}).get("data") if isinstance(payload.get("result"), dict) else payload
    reference = (data or {}).get("txn_retrieval_ref") or payload.get("txn_retrieval_ref")
    if not reference:
        return None

    pending = find_pending_payment("nets", str(reference))
    if pending is None:
        current_app.logger.warning("NETS webhook for unknown reference %s", reference)
        return None

    claimed = interpret_status(data)
    if claimed == PENDING:
        return pending

    verified = poll_status(pending)
    if verified != claimed:
        current_app.logger.warning(
            "NETS webhook for %s claimed %s but the gateway reports %s", reference, claimed, verified
        )
    return pending


def poll_status(pending: PendingPayment) -> str:
    """
    Pull channel. Gateway errors leave the payment PENDING so the client
    can simply poll again.
    """
    if pending.status != PENDING:
        return pending.status

    if _expire_if_due(pending):
        db.session.commit()
        return pending.status

    try:
        data = get_nets_client().query_status(pending.reference)
    except ExternalGatewayError:
        current_app.logger.warning("NETS status query failed for %s", pending.reference, exc_info=True)
        return pending.status

    return apply_status(pending, data, "poll")


def status_payload(pending: PendingPayment) -> dict:
    return {
        "reference": pending.reference,
        "status": pending.status,
        "purpose": pending.purpose,
        "amount_cents": pending.amount_cents,
        "order_id": pending.order_id,
        "expires_at": pending.to_dict()["expires_at"],
        "failure_reason": pending.failure_reason,
    }


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def stream_events(pending_id: int, poll_seconds: float, timeout_seconds: float, sleep=time.sleep):
    """
    Server-sent events for one QR payment.

    Emits a 'status' event whenever the state changes and closes after
    CONFIRMED/FAILED/TIMED_OUT or when timeout_seconds elapse, in which case
    the payment is forced to TIMED_OUT. Must run inside an app context
    (the route wraps it with stream_with_context).
    """
    started = time.monotonic()
    last_status = None

    while True:
        pending = db.session.get(PendingPayment, pending_id)
        if pending is None:
            yield _sse("error", {"error": "Payment not found"})
            return

        status = poll_status(pending)
        if status != last_status:
            last_status = status
            yield _sse("status", status_payload(pending))

        if status != PENDING:
            return

        if time.monotonic() - started >= timeout_seconds:
            pending.status = TIMED_OUT
            pending.failure_reason = "Confirmation stream timed out"
            pending.resolved_at = utcnow()
            db.session.commit()
            yield _sse("status", status_payload(pending))
            return

        # Drop the cached row so the next read sees webhook updates
        db.session.expire(pending)
        sleep(poll_seconds)


def expire_stale_payments() -> int:
    """Mark every overdue PENDING QR payment TIMED_OUT. Commits."""
    now = utcnow()
    count = 0
    rows = db.session.query(PendingPayment).filter(
        PendingPayment.provider == "nets",
        PendingPayment.status == PENDING,
        PendingPayment.expires_at.isnot(None),
    ).all()
    for pending in rows:
        if is_expired(pending, now):
            pending.status = TIMED_OUT
            pending.failure_reason = "No confirmation before the QR code expired"
            pending.resolved_at = now
            count += 1
    db.session.commit()
    return count
