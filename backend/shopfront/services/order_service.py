# Overview: Order ledger: create, read, admin status changes and deletion.

"""
Order Ledger

WHY: Orders are the durable record of what was sold and paid. After insert,
only the status (admin) and OrderItem.refunded_quantity (approved refunds)
ever change.

ORDER ITEMS: normalized lines are materialized lazily from items_json the
first time a refund flow touches an order. ensure_order_items() is
idempotent: it does nothing when rows already exist.
"""

from __future__ import annotations

import json

from ..extensions import db
from ..models import Order, OrderItem, PendingPayment, RefundRequest, RefundRequestItem
from ..errors import AuthorizationError, NotFoundError, ValidationError
from shopfront.time_utils import utcnow

ORDER_STATUSES = ("processing", "completed", "pending")
DELIVERY_METHODS = ("delivery", "pickup")


def create_order(
    *,
    user_id: int,
    items: list,
    breakdown,
    delivery_method: str,
    delivery_address: str | None,
    pickup_outlet: str | None,
    payment_method: str,
    payment_ref: str | None,
    membership_plan: str | None = None,
    status: str = "processing",
) -> Order:
    """
    Insert the order snapshot. Flushes (id assigned) but does not commit:
    the orchestrator commits it together with the stock reservation.
    """
    if status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")

    now = utcnow()
    order = Order(
        user_id=user_id,
        items_json=json.dumps([item.to_snapshot() for item in items]),
        subtotal_cents=breakdown.subtotal_cents,
        promo_savings_cents=breakdown.promo_savings_cents,
        membership_savings_cents=breakdown.membership_savings_cents,
        loyalty_savings_cents=breakdown.loyalty_discount_cents,
        savings_cents=breakdown.total_savings_cents,
        total_cents=breakdown.final_cents,
        points_spent=breakdown.points_redeemed,
        points_earned=breakdown.points_earned,
        membership_plan=membership_plan,
        status=status,
        delivery_method=delivery_method,
        delivery_address=delivery_address,
        pickup_outlet=pickup_outlet,
        payment_method=payment_method,
        payment_ref=payment_ref,
        created_at=now,
        confirmed_at=now,
    )
    db.session.add(order)
    db.session.flush()
    return order


def get_order(order_id: int) -> Order | None:
    return db.session.get(Order, order_id)


def get_order_for_user(order_id: int, user) -> Order:
    """Owner or admin may read; anyone else gets 403, a missing id 404."""
    order = get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != user.id and not user.is_admin:
        raise AuthorizationError("You do not have access to this order")
    return order


def find_order_by_payment(payment_method: str, payment_ref: str) -> Order | None:
    return db.session.query(Order).filter(
        Order.payment_method == payment_method,
        Order.payment_ref == payment_ref,
    ).first()


def list_orders_for_user(user_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def list_orders(page: int = 1, per_page: int = 20, status: str | None = None) -> dict:
    per_page = min(max(per_page, 1), 100)
    page = max(page, 1)

    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    orders = query.order_by(Order.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [o.to_dict() for o in orders],
        "count": len(orders),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def update_status(order_id: int, status: str) -> Order:
    status = (status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
    order = get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    order.status = status
    db.session.commit()
    return order


def delete_order(order_id: int) -> None:
    """
    Admin-only hard delete. Refund requests and normalized lines go with the
    order; transaction log rows keep their plain order reference.
    """
    order = get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")

    refund_ids = [r.id for r in db.session.query(RefundRequest.id).filter(RefundRequest.order_id == order.id)]
    if refund_ids:
        db.session.query(RefundRequestItem).filter(
            RefundRequestItem.refund_id.in_(refund_ids)
        ).delete(synchronize_session=False)
        db.session.query(RefundRequest).filter(
            RefundRequest.id.in_(refund_ids)
        ).delete(synchronize_session=False)
    db.session.query(OrderItem).filter(OrderItem.order_id == order.id).delete(synchronize_session=False)
    db.session.query(PendingPayment).filter(PendingPayment.order_id == order.id).update(
        {PendingPayment.order_id: None}, synchronize_session=False
    )
    # Collections may still hold the bulk-deleted children
    db.session.expire(order, ["order_items", "refund_requests"])
    db.session.delete(order)
    db.session.commit()


def ensure_order_items(order: Order) -> list[OrderItem]:
    """Materialize OrderItem rows from the snapshot once. Does not commit."""
    existing = (
        db.session.query(OrderItem)
        .filter(OrderItem.order_id == order.id)
        .order_by(OrderItem.id.asc())
        .all()
    )
    if existing:
        return existing

    merged: dict[int, dict] = {}
    for raw in order.items:
        product_id = int(raw.get("product_id") or 0)
        qty = int(raw.get("quantity") or 0)
        if qty <= 0:
            continue
        if product_id in merged:
            merged[product_id]["quantity"] += qty
        else:
            merged[product_id] = {
                "product_name": raw.get("product_name") or f"Product {product_id}",
                "unit_price_cents": int(raw.get("unit_price_cents") or 0),
                "quantity": qty,
            }

    rows = []
    for product_id, line in merged.items():
        row = OrderItem(
            order_id=order.id,
            product_id=product_id,
            product_name=line["product_name"],
            unit_price_cents=line["unit_price_cents"],
            quantity=line["quantity"],
            line_total_cents=line["unit_price_cents"] * line["quantity"],
            refunded_quantity=0,
        )
        db.session.add(row)
        rows.append(row)
    db.session.flush()
    return rows
