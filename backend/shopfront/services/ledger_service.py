# Overview: Append-only transaction log writes and paged reads.

from __future__ import annotations

from ..extensions import db
from ..models import TransactionLog, User
from shopfront.time_utils import utcnow
"""
Transaction Log Invariants

- Append-only: rows are inserted, never updated or deleted.
- Rows are written inside the same DB transaction as the balance change
  they record; the caller commits.
- previous_balance/new_balance come from fresh column reads taken around
  the relative UPDATE, never from in-memory ORM attributes.
"""

ACTION_TYPES = ("PAYMENT", "POINTS_REDEEM", "POINTS_EARN", "POINTS_ADJUST", "REFUND", "TOPUP", "MEMBERSHIP")


def append_transaction(
    *,
    user_id: int,
    action_type: str,
    amount: int = 0,
    previous_balance: int | None = None,
    new_balance: int | None = None,
    payment_method: str | None = None,
    order_id: int | None = None,
    refund_id: int | None = None,
    actor_user_id: int | None = None,
    is_suspicious: bool = False,
    suspicious_reason: str | None = None,
) -> TransactionLog:
    if action_type not in ACTION_TYPES:
        raise ValueError(f"Unknown transaction action_type: {action_type}")

    log = TransactionLog(
        user_id=user_id,
        actor_user_id=actor_user_id,
        action_type=action_type,
        amount=amount,
        previous_balance=previous_balance,
        new_balance=new_balance,
        payment_method=payment_method,
        order_id=order_id,
        refund_id=refund_id,
        is_suspicious=bool(is_suspicious),
        suspicious_reason=suspicious_reason if is_suspicious else None,
        occurred_at=utcnow(),
    )
    db.session.add(log)
    db.session.flush()
    return log


def list_transactions(
    page: int = 1,
    per_page: int = 20,
    user_id: int | None = None,
    suspicious_only: bool = False,
) -> dict:
    """Newest first, 20 per page by default, with the owning user's name and email."""
    per_page = min(max(per_page, 1), 100)
    page = max(page, 1)

    query = db.session.query(TransactionLog, User.username, User.email).outerjoin(
        User, User.id == TransactionLog.user_id
    )
    if user_id is not None:
        query = query.filter(TransactionLog.user_id == user_id)
    if suspicious_only:
        query = query.filter(TransactionLog.is_suspicious.is_(True))

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    rows = query.order_by(TransactionLog.id.desc()).offset((page - 1) * per_page).limit(per_page).all()

    items = []
    for log, username, email in rows:
        item = log.to_dict()
        item["user_name"] = username
        item["user_email"] = email
        items.append(item)

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
