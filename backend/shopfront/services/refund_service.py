# Overview: Refund requests: submission rules, admin approval/denial, money return.

"""
Refund Processing Service

WHY: A refund returns money that already left the shop's books, so every
request is checked against the order it came from and the money goes back
exactly once.

LIFECYCLE:
1. submit_request()  -> pending (or flagged when the user requests too often)
2. approve_request() -> approved: money returned, refunded quantities counted
   deny_request()    -> denied: no monetary effect
approved and denied are terminal. flagged requests are never processed.

AMOUNTS:
- Item request: sum of unit_price x quantity from the order lines
- Whole-order request: the order total
Both are capped at what is still refundable on the order, so item refunds
never exceed (quantity - refunded) x unit price.

REMAINING QUANTITY: max(tracked refunded_quantity, quantity summed over
approved request items). The counter may lag behind historical approvals
recorded before it existed; the larger value wins.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Order, OrderItem, RefundRequest, RefundRequestItem, User
from ..errors import (
    AuthorizationError,
    ConflictError,
    ExternalGatewayError,
    NotFoundError,
    ValidationError,
)
from ..validation import format_cents, parse_positive_int, require_text
from . import account_service, fraud_service, order_service
from .paypal_client import get_paypal_client
from shopfront.time_utils import utcnow, as_naive_utc


# =============================================================================
# REFUND STATUS CONSTANTS
# =============================================================================

REFUND_STATUS_PENDING = "pending"
REFUND_STATUS_FLAGGED = "flagged"
REFUND_STATUS_APPROVED = "approved"
REFUND_STATUS_DENIED = "denied"

BLOCKING_STATUSES = (REFUND_STATUS_PENDING, REFUND_STATUS_APPROVED)
DESTINATIONS = ("wallet", "original")


# =============================================================================
# QUANTITY BOOKKEEPING
# =============================================================================

def approved_quantities(order_id: int) -> dict[int, int]:
    """order_item_id -> quantity refunded by approved requests."""
    rows = (
        db.session.query(RefundRequestItem.order_item_id, func.sum(RefundRequestItem.quantity))
        .join(RefundRequest, RefundRequest.id == RefundRequestItem.refund_id)
        .filter(
            RefundRequest.order_id == order_id,
            RefundRequest.status == REFUND_STATUS_APPROVED,
        )
        .group_by(RefundRequestItem.order_item_id)
        .all()
    )
    return {item_id: int(qty or 0) for item_id, qty in rows}


def remaining_quantity(item: OrderItem, approved: dict[int, int]) -> int:
    refunded = max(item.refunded_quantity or 0, approved.get(item.id, 0))
    return max(item.quantity - refunded, 0)


def refundable_amount(order: Order) -> int:
    """What is still refundable on the order, in cents."""
    refunded = db.session.query(func.coalesce(func.sum(RefundRequest.amount_cents), 0)).filter(
        RefundRequest.order_id == order.id,
        RefundRequest.status == REFUND_STATUS_APPROVED,
    ).scalar() or 0
    return max(order.total_cents - refunded, 0)


def _parse_items(raw_items, order_items: list[OrderItem], approved: dict[int, int]) -> list[tuple[OrderItem, int]]:
    """
    Resolve [{order_item_id | product_id, quantity}] against the order.

    Raises ValidationError for unknown lines, duplicates, or quantities above
    what is still refundable.
    """
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")

    by_id = {item.id: item for item in order_items}
    by_product = {item.product_id: item for item in order_items}
    wanted: dict[int, int] = {}

    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object")
        item = None
        if raw.get("order_item_id") is not None:
            item = by_id.get(parse_positive_int(raw.get("order_item_id"), "order_item_id"))
        elif raw.get("product_id") is not None:
            item = by_product.get(parse_positive_int(raw.get("product_id"), "product_id"))
        if item is None:
            raise ValidationError("Item is not part of this order")
        qty = parse_positive_int(raw.get("quantity", 1), "quantity")
        wanted[item.id] = wanted.get(item.id, 0) + qty

    if not wanted:
        raise ValidationError("Select at least one item to refund")

    resolved = []
    for item_id, qty in wanted.items():
        item = by_id[item_id]
        available = remaining_quantity(item, approved)
        if qty > available:
            raise ValidationError(
                f"Only {available} of {item.product_name} can still be refunded",
                details={"order_item_id": item.id, "available": available},
            )
        resolved.append((item, qty))
    return resolved


# =============================================================================
# SUBMISSION
# =============================================================================

def _check_user_can_request(user: User) -> None:
    if user.disabled:
        raise AuthorizationError("Your account is disabled")
    until = as_naive_utc(user.refund_suspended_until)
    if until is not None and until > utcnow():
        raise ConflictError(
            "Your account is currently flagged due to unusually frequent refund requests. "
            "Refunds will be available again later.",
            details={"suspended_until": user.to_dict()["refund_suspended_until"]},
        )


def submit_request(
    user: User,
    order_id: int,
    reason: str,
    items=None,
    destination: str = "wallet",
    document_ref: str | None = None,
) -> RefundRequest:
    """
    Create a refund request (status: pending, or flagged on velocity).

    Checks, in order: order exists and belongs to the requester; within the
    refund window of confirmation; order total > 0; no pending/approved
    request; item quantities within what remains; user not disabled or
    suspended.

    Args:
        user: Requesting shopper
        order_id: Order being refunded
        reason: Free-text reason (required)
        items: Optional [{order_item_id | product_id, quantity}]; None means
            the whole order
        destination: "wallet" or "original"
        document_ref: Opaque reference to uploaded evidence

    Raises:
        NotFoundError, AuthorizationError, ValidationError, ConflictError
    """
    reason = require_text(reason, "reason", max_length=2000)
    destination = (destination or "wallet").strip().lower()
    if destination not in DESTINATIONS:
        raise ValidationError(f"destination must be one of: {', '.join(DESTINATIONS)}")

    order = order_service.get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != user.id:
        raise AuthorizationError("You are not authorized to request a refund for this order")

    window = timedelta(minutes=current_app.config["REFUND_WINDOW_MINUTES"])
    confirmed_at = as_naive_utc(order.confirmed_at or order.created_at)
    if confirmed_at is not None and utcnow() - confirmed_at > window:
        raise ValidationError(
            f"Refund requests can only be made within {current_app.config['REFUND_WINDOW_MINUTES']} "
            "minutes after purchase confirmation"
        )

    if order.total_cents <= 0:
        raise ValidationError("This order is not eligible for a refund")

    blocked = db.session.query(RefundRequest.id).filter(
        RefundRequest.order_id == order.id,
        RefundRequest.status.in_(BLOCKING_STATUSES),
    ).first()
    if blocked:
        raise ConflictError("A refund request already exists for this order")

    order_items = order_service.ensure_order_items(order)
    approved = approved_quantities(order.id)
    lines = _parse_items(items, order_items, approved) if items else []

    _check_user_can_request(user)

    now = utcnow()
    refund = RefundRequest(
        order_id=order.id,
        user_id=user.id,
        reason=reason,
        document_ref=document_ref,
        destination=destination,
        status=REFUND_STATUS_PENDING,
        created_at=now,
    )
    db.session.add(refund)
    db.session.flush()

    requested = 0
    for item, qty in lines:
        amount = item.unit_price_cents * qty
        requested += amount
        db.session.add(RefundRequestItem(
            refund_id=refund.id,
            order_item_id=item.id,
            quantity=qty,
            unit_price_cents=item.unit_price_cents,
            amount_cents=amount,
        ))
    refund.amount_cents = min(requested if lines else order.total_cents, refundable_amount(order))

    # Velocity auto-flag; the count includes this request
    cfg = current_app.config
    since = now - timedelta(hours=cfg["REFUND_VELOCITY_WINDOW_HOURS"])
    recent = db.session.query(func.count(RefundRequest.id)).filter(
        RefundRequest.user_id == user.id,
        RefundRequest.created_at >= since,
    ).scalar() or 0
    if recent >= cfg["REFUND_VELOCITY_LIMIT"]:
        refund.status = REFUND_STATUS_FLAGGED
        refund.admin_note = "Auto-flagged due to frequent refunds."
        user.refund_suspended_until = now + timedelta(minutes=cfg["REFUND_SUSPENSION_MINUTES"])
        current_app.logger.warning(
            "Refund request %s auto-flagged: user %s made %s requests in %sh",
            refund.id, user.id, recent, cfg["REFUND_VELOCITY_WINDOW_HOURS"],
        )

    db.session.commit()
    return refund


# =============================================================================
# ADMIN DECISIONS
# =============================================================================

def get_request(refund_id: int) -> RefundRequest:
    refund = db.session.get(RefundRequest, refund_id)
    if refund is None:
        raise NotFoundError("Refund request not found")
    return refund


def _require_pending(refund: RefundRequest) -> None:
    if refund.status != REFUND_STATUS_PENDING:
        raise ConflictError(
            "Refund request already processed",
            details={"status": refund.status},
        )


def _refunds_to_paypal(refund: RefundRequest, order: Order) -> bool:
    """PayPal orders with destination "original" go back to the capture; all other refunds are wallet credits."""
    return refund.destination == "original" and order.payment_method == "paypal" and bool(order.payment_ref)


def _refund_paypal_capture(refund: RefundRequest, order: Order, amount_cents: int, claim: tuple) -> None:
    """
    Refund the capture for a request whose approval is already committed.

    A failed call releases the claim so the request can be approved again.
    The request id is derived from the refund id, so PayPal answers a repeat
    for the same request with the original refund instead of paying twice.
    """
    try:
        data = get_paypal_client().refund_capture(
            order.payment_ref,
            format_cents(amount_cents),
            request_id=f"shopfront-refund-{refund.id}",
        )
    except ExternalGatewayError:
        db.session.rollback()
        refund.status = REFUND_STATUS_PENDING
        refund.amount_cents, refund.admin_note, refund.processed_at, refund.processed_by_user_id = claim
        db.session.commit()
        raise
    refund.external_ref = (data or {}).get("id")


def approve_request(refund_id: int, admin_user_id: int, admin_note: str | None = None) -> RefundRequest:
    """
    Approve a pending request and return the money.

    Raises:
        NotFoundError: Unknown request
        ConflictError: Request not pending, or nothing left to refund
        ExternalGatewayError: PayPal refund failed (the request is pending again)
    """
    refund = get_request(refund_id)
    _require_pending(refund)
    order = order_service.get_order(refund.order_id)
    if order is None:
        raise NotFoundError("Order not found")

    order_items = order_service.ensure_order_items(order)
    approved = approved_quantities(order.id)

    if refund.items:
        for line in refund.items:
            available = remaining_quantity(line.order_item, approved)
            if line.quantity > available:
                raise ConflictError(
                    f"Only {available} of {line.order_item.product_name} can still be refunded",
                    details={"order_item_id": line.order_item_id, "available": available},
                )
        requested = sum(line.amount_cents for line in refund.items)
    else:
        requested = order.total_cents

    amount = min(requested, refundable_amount(order))
    if amount <= 0:
        raise ConflictError("Nothing left to refund on this order")

    # Claim the request before any money moves
    claim = (refund.amount_cents, refund.admin_note, refund.processed_at, refund.processed_by_user_id)
    refund.status = REFUND_STATUS_APPROVED
    refund.amount_cents = amount
    refund.admin_note = (admin_note or "").strip() or None
    refund.processed_at = utcnow()
    refund.processed_by_user_id = admin_user_id
    try:
        db.session.flush()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError("Refund request already processed")

    to_paypal = _refunds_to_paypal(refund, order)
    if to_paypal:
        # The gateway refund cannot roll back with the session
        db.session.commit()
        _refund_paypal_capture(refund, order, amount, claim)
        method = "paypal"
        previous = new = account_service.get_wallet(order.user_id)
    else:
        method = "wallet"
        previous, new = account_service.adjust_wallet(order.user_id, amount)

    try:
        if refund.items:
            for line in refund.items:
                item = line.order_item
                item.refunded_quantity = min(
                    max(item.refunded_quantity or 0, approved.get(item.id, 0)) + line.quantity,
                    item.quantity,
                )
        else:
            for item in order_items:
                item.refunded_quantity = item.quantity

        fraud_service.record_transaction(
            user_id=order.user_id,
            action_type="REFUND",
            amount=amount,
            previous_balance=previous,
            new_balance=new,
            payment_method=method,
            order_id=order.id,
            refund_id=refund.id,
            actor_user_id=admin_user_id,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        if to_paypal:
            # The approval stays committed, so the request cannot be paid again
            current_app.logger.error(
                "Refund %s paid by PayPal refund %s (%s cents, order %s) but bookkeeping failed; reconcile manually",
                refund.id, refund.external_ref, amount, order.id,
                exc_info=True,
            )
        raise
    current_app.logger.info(
        "Refund %s approved by user %s: %s cents to %s for order %s",
        refund.id, admin_user_id, amount, method, order.id,
    )
    return refund


def deny_request(refund_id: int, admin_user_id: int, admin_note: str | None = None) -> RefundRequest:
    refund = get_request(refund_id)
    _require_pending(refund)
    refund.status = REFUND_STATUS_DENIED
    refund.admin_note = (admin_note or "").strip() or None
    refund.processed_at = utcnow()
    refund.processed_by_user_id = admin_user_id
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError("Refund request already processed")
    return refund


# =============================================================================
# QUERIES
# =============================================================================

def list_for_user(user_id: int) -> list[RefundRequest]:
    return (
        db.session.query(RefundRequest)
        .filter(RefundRequest.user_id == user_id)
        .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
        .all()
    )


def list_requests(page: int = 1, per_page: int = 20, status: str | None = None) -> dict:
    per_page = min(max(per_page, 1), 100)
    page = max(page, 1)

    query = db.session.query(RefundRequest)
    if status:
        query = query.filter(RefundRequest.status == status)

    total = query.count()
    total_pages = max((total + per_page - 1) // per_page, 1)
    page = min(page, total_pages)
    rows = query.order_by(RefundRequest.id.desc()).offset((page - 1) * per_page).limit(per_page).all()

    items = []
    for refund in rows:
        data = refund.to_dict()
        data["user_email"] = refund.user.email if refund.user else None
        data["order_total_cents"] = refund.order.total_cents if refund.order else None
        items.append(data)

    return {
        "items": items,
        "count": len(items),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
