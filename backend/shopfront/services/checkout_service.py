# Overview: Settlement orchestrator: cart -> priced -> paid -> committed order.

"""
Settlement Orchestrator

STAGES (each fail-stop):
    VALIDATE_CART -> VALIDATE_PAYMENT_INPUT -> PRICE -> AUTHORIZE_PAYMENT
    -> COMMIT_ORDER + DEDUCT_STOCK -> SETTLE_LEDGERS -> CLEAR_CART

WHY: The order insert and the stock decrement share one transaction and
use conditional "decrement if sufficient" updates, so an order never exists
for stock that was not there. The wallet debit happens inside the same
transaction and rolls back with it.

FAILURE POLICY:
- Before COMMIT_ORDER: nothing persisted. Rails that already moved money
  outside the database (PayPal capture, QR payment) are compensated.
- After COMMIT_ORDER: the order stands. Ledger and cart failures are logged
  at ERROR for operator reconciliation.

ASYNC RAILS: PayPal and NETS settle later, from a PendingPayment stashed when
the intent/QR was created. Settlement first claims the PendingPayment by
flipping it to SETTLED (version-checked flush); a second confirm for the same
reference loses that race and returns the order the first one created.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Order, PendingPayment, User
from ..errors import (
    ConflictError,
    ExternalGatewayError,
    PaymentDeclinedError,
    PersistenceError,
    ShopError,
    ValidationError,
)
from ..validation import format_cents, parse_amount_cents, require_text
from . import account_service, cart_service, catalog_service, fraud_service, order_service, promotion_service, qr_service
from .cart_service import CartItem
from .payment_adapters import (
    AuthorizationResult,
    CardAdapter,
    NetsQrAdapter,
    PaymentAdapter,
    PaymentContext,
    PayPalAdapter,
    get_adapter,
    require_pending_payment,
)
from .pricing import LoyaltyPolicy, PriceBreakdown, price
from shopfront.time_utils import utcnow

STAGES = (
    "VALIDATE_CART",
    "VALIDATE_PAYMENT_INPUT",
    "PRICE",
    "AUTHORIZE_PAYMENT",
    "COMMIT_ORDER",
    "DEDUCT_STOCK",
    "SETTLE_LEDGERS",
    "CLEAR_CART",
)


@dataclass(frozen=True)
class DeliveryChoice:
    method: str = "delivery"
    address: str | None = None
    outlet: str | None = None

    def to_dict(self) -> dict:
        return {"method": self.method, "address": self.address, "outlet": self.outlet}

    @classmethod
    def from_dict(cls, data: dict | None) -> "DeliveryChoice":
        data = data or {}
        return cls(
            method=data.get("method") or "delivery",
            address=data.get("address"),
            outlet=data.get("outlet"),
        )


def parse_delivery(payload: dict | None, user: User) -> DeliveryChoice:
    """
    Delivery needs an address (falls back to the account address); pickup
    needs an outlet.
    """
    payload = payload or {}
    method = str(payload.get("delivery_method") or "delivery").strip().lower()
    if method not in order_service.DELIVERY_METHODS:
        raise ValidationError(f"delivery_method must be one of: {', '.join(order_service.DELIVERY_METHODS)}")

    if method == "pickup":
        outlet = require_text(payload.get("pickup_outlet"), "pickup_outlet", max_length=128)
        return DeliveryChoice(method="pickup", outlet=outlet)

    address = str(payload.get("delivery_address") or user.address or "").strip()
    if not address:
        raise ValidationError("A delivery address is required")
    return DeliveryChoice(method="delivery", address=address[:255])


@dataclass
class CheckoutContext:
    """Everything one checkout needs, passed explicitly through the stages."""
    user_id: int
    payment_method: str
    delivery: DeliveryChoice
    redeem_points: int = 0
    card: dict = field(default_factory=dict)
    reference: str | None = None

    def payment_context(self) -> PaymentContext:
        return PaymentContext(
            user_id=self.user_id,
            purpose="checkout",
            card=self.card,
            reference=self.reference,
        )


@dataclass(frozen=True)
class SettlementResult:
    purpose: str
    message: str
    order: Order | None = None
    breakdown: PriceBreakdown | None = None
    already_settled: bool = False

    def to_dict(self) -> dict:
        return {
            "purpose": self.purpose,
            "message": self.message,
            "order": self.order.to_dict() if self.order is not None else None,
            "breakdown": self.breakdown.to_dict() if self.breakdown is not None else None,
            "already_settled": self.already_settled,
        }


# =============================================================================
# VALIDATE_CART / PRICE
# =============================================================================

def _stock_message(available: int, product_name: str) -> str:
    if available <= 0:
        return f"{product_name} is out of stock"
    return f"Only {available} left in stock for {product_name}"


def validate_cart(user_id: int) -> list[CartItem]:
    items = cart_service.get_cart(user_id)
    if not items:
        raise ValidationError("Your cart is empty")

    for item in items:
        if item.quantity <= 0:
            raise ValidationError(f"Invalid quantity for {item.product_name}")
        available = catalog_service.get_stock(item.product_id)
        if available is None:
            raise ValidationError(
                f"{item.product_name} is no longer available",
                details={"product_id": item.product_id},
            )
        if item.quantity > available:
            raise ValidationError(
                _stock_message(available, item.product_name),
                details={"product_id": item.product_id, "available": available},
            )
    return items


def price_cart(user_id: int, items: list[CartItem], redeem_points=0) -> PriceBreakdown:
    """One promotion snapshot per computation; plan and points read fresh."""
    return price(
        items,
        promotion=promotion_service.get_registry().snapshot(),
        membership_percent=account_service.get_plan(user_id).discount_percent,
        redeem_points=redeem_points,
        points_balance=account_service.get_points(user_id),
        policy=LoyaltyPolicy.from_config(current_app.config),
    )


def quote(user_id: int, redeem_points=0) -> tuple[list[CartItem], PriceBreakdown]:
    items = validate_cart(user_id)
    return items, price_cart(user_id, items, redeem_points)


def build_success_message(order: Order, breakdown: PriceBreakdown) -> str:
    message = f"Payment successful! Order #{order.id} placed."
    parts = []
    if breakdown.promo_savings_cents:
        parts.append(f"promo ${format_cents(breakdown.promo_savings_cents)}")
    if breakdown.membership_savings_cents:
        parts.append(f"membership ${format_cents(breakdown.membership_savings_cents)}")
    if breakdown.loyalty_discount_cents:
        parts.append(f"points ${format_cents(breakdown.loyalty_discount_cents)}")
    if parts:
        message += f" You saved ${format_cents(breakdown.total_savings_cents)} ({', '.join(parts)})."
    if breakdown.points_earned:
        message += f" You earned {breakdown.points_earned} points."
    return message


def _gateway_call(func, *args, **kwargs):
    """Gateway outages surface to shoppers as a declined payment."""
    try:
        return func(*args, **kwargs)
    except ExternalGatewayError as exc:
        current_app.logger.error("Payment gateway error: %s", exc)
        raise PaymentDeclinedError(ExternalGatewayError.public_message) from exc


# =============================================================================
# COMPENSATION
# =============================================================================

def _compensate(
    adapter: PaymentAdapter,
    context: PaymentContext,
    result: AuthorizationResult,
    pending: PendingPayment | None,
    reason: str,
) -> str:
    """
    Undo an authorized payment that produced no order. Commits.

    Returns a sentence for the shopper. When the refund itself fails the
    payment is left for manual handling and logged at ERROR.
    """
    amount = result.amount_cents or 0
    try:
        if pending is not None:
            # Claim the payment first so a concurrent settle or refund loses
            pending.status = "FAILED"
            pending.failure_reason = reason[:255]
            pending.resolved_at = utcnow()
            db.session.flush()
        note = adapter.compensate(amount, context, result)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        current_app.logger.info("Payment %s was resolved concurrently; not compensating", result.external_ref)
        return "This payment was already processed."
    except (ShopError, SQLAlchemyError):
        db.session.rollback()
        current_app.logger.error(
            "Compensation failed for %s payment %s (%s cents, user %s); manual refund required",
            adapter.method, result.external_ref, amount, context.user_id,
            exc_info=True,
        )
        return "We could not return your payment automatically; our team has been notified."

    if amount and adapter.method in ("paypal", "nets"):
        current_app.logger.warning(
            "Compensated %s payment %s (%s cents): %s", adapter.method, result.external_ref, amount, reason
        )
    return note


# =============================================================================
# COMMIT_ORDER + DEDUCT_STOCK
# =============================================================================

def _existing_settlement(method: str, external_ref: str | None, pending: PendingPayment | None) -> Order | None:
    if pending is not None:
        db.session.refresh(pending)
        if pending.status == "SETTLED" and pending.order_id:
            return order_service.get_order(pending.order_id)
    if external_ref:
        return order_service.find_order_by_payment(method, external_ref)
    return None


def _commit_order(
    ctx: CheckoutContext,
    adapter: PaymentAdapter,
    payment_ctx: PaymentContext,
    items: list[CartItem],
    breakdown: PriceBreakdown,
    result: AuthorizationResult,
    pending: PendingPayment | None,
) -> tuple[Order, bool]:
    """
    Insert the order and reserve every line's stock in one transaction.

    Returns (order, already_settled).
    """
    shortfall = None
    try:
        if pending is not None:
            pending.status = "SETTLED"
            pending.settled_at = utcnow()
            db.session.flush()

        order = order_service.create_order(
            user_id=ctx.user_id,
            items=items,
            breakdown=breakdown,
            delivery_method=ctx.delivery.method,
            delivery_address=ctx.delivery.address,
            pickup_outlet=ctx.delivery.outlet,
            payment_method=adapter.method,
            payment_ref=result.external_ref,
            membership_plan=account_service.get_plan(ctx.user_id).key,
        )

        for item in items:
            if not catalog_service.reserve_stock(item.product_id, item.quantity):
                shortfall = item
                break

        if shortfall is None:
            if pending is not None:
                pending.order_id = order.id
            db.session.commit()
            return order, False
    except (IntegrityError, StaleDataError):
        db.session.rollback()
        existing = _existing_settlement(adapter.method, result.external_ref, pending)
        if existing is not None:
            current_app.logger.info("Payment %s already settled as order %s", result.external_ref, existing.id)
            return existing, True
        current_app.logger.exception("Order commit conflict for user %s", ctx.user_id)
        note = _compensate(adapter, payment_ctx, result, pending, "Order could not be saved")
        raise ConflictError(f"Your order could not be placed. {note}")
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Order commit failed for user %s", ctx.user_id)
        _compensate(adapter, payment_ctx, result, pending, "Order could not be saved")
        raise PersistenceError("Order could not be saved") from exc

    db.session.rollback()
    available = catalog_service.get_stock(shortfall.product_id) or 0
    message = _stock_message(available, shortfall.product_name)
    note = _compensate(adapter, payment_ctx, result, pending, message)
    raise ConflictError(
        f"{message}. {note}",
        details={"product_id": shortfall.product_id, "available": available},
    )


# =============================================================================
# SETTLE_LEDGERS / CLEAR_CART
# =============================================================================

def _settle_ledgers(order: Order, breakdown: PriceBreakdown, result: AuthorizationResult) -> None:
    """Points movement and the PAYMENT log row. Never raises."""
    user_id = order.user_id
    try:
        redeemed = breakdown.points_redeemed
        earned = breakdown.points_earned
        if redeemed or earned:
            previous, new = account_service.adjust_points(user_id, earned - redeemed)
            after_redeem = max(previous - redeemed, 0)
            if redeemed:
                fraud_service.record_transaction(
                    user_id=user_id,
                    action_type="POINTS_REDEEM",
                    amount=redeemed,
                    previous_balance=previous,
                    new_balance=after_redeem,
                    payment_method=order.payment_method,
                    order_id=order.id,
                )
            if earned:
                fraud_service.record_transaction(
                    user_id=user_id,
                    action_type="POINTS_EARN",
                    amount=earned,
                    previous_balance=after_redeem,
                    new_balance=new,
                    payment_method=order.payment_method,
                    order_id=order.id,
                )

        if result.previous_balance is not None:
            previous_wallet, new_wallet = result.previous_balance, result.new_balance
        else:
            previous_wallet = new_wallet = account_service.get_wallet(user_id)

        fraud_service.record_transaction(
            user_id=user_id,
            action_type="PAYMENT",
            amount=order.total_cents,
            previous_balance=previous_wallet,
            new_balance=new_wallet,
            payment_method=order.payment_method,
            order_id=order.id,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.error(
            "Ledger settlement failed for order %s (user %s, points -%s/+%s); reconcile manually",
            order.id, user_id, breakdown.points_redeemed, breakdown.points_earned,
            exc_info=True,
        )


def _clear_cart(user_id: int, order_id: int) -> None:
    try:
        cart_service.clear_cart(user_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.error("Cart clear failed after order %s (user %s)", order_id, user_id, exc_info=True)


# =============================================================================
# CHECKOUT
# =============================================================================

def checkout(ctx: CheckoutContext, pending: PendingPayment | None = None) -> SettlementResult:
    """
    Run the pipeline for one cart.

    `pending` is the stashed PendingPayment for PayPal/NETS settlement. For a
    QR payment the money was collected before this runs, so any failure up
    to COMMIT_ORDER credits it back to the wallet.
    """
    adapter = get_adapter(ctx.payment_method)
    payment_ctx = ctx.payment_context()
    prepaid = isinstance(adapter, NetsQrAdapter) and pending is not None and pending.status == "CONFIRMED"

    try:
        items = validate_cart(ctx.user_id)
        adapter.validate(payment_ctx)
        breakdown = price_cart(ctx.user_id, items, ctx.redeem_points)
        result = _gateway_call(adapter.authorize, breakdown.final_cents, payment_ctx)
        if result.amount_cents != breakdown.final_cents:
            raise ConflictError(
                "Your total changed after the QR code was issued",
                details={"paid_cents": result.amount_cents, "current_cents": breakdown.final_cents},
            )
    except ShopError as exc:
        db.session.rollback()
        if not prepaid:
            raise
        db.session.refresh(pending)
        if pending.status == "SETTLED":
            return _already_settled(pending)
        result = AuthorizationResult(success=True, external_ref=pending.reference, amount_cents=pending.amount_cents)
        note = _compensate(adapter, payment_ctx, result, pending, str(exc))
        raise ConflictError(f"{exc}. {note}", details=exc.details) from exc

    order, already_settled = _commit_order(ctx, adapter, payment_ctx, items, breakdown, result, pending)
    if already_settled:
        return SettlementResult(
            purpose="checkout",
            message=f"Order #{order.id} was already placed.",
            order=order,
            already_settled=True,
        )

    current_app.logger.info(
        "Order %s placed by user %s via %s for %s cents", order.id, ctx.user_id, adapter.method, order.total_cents
    )
    _settle_ledgers(order, breakdown, result)
    _clear_cart(ctx.user_id, order.id)
    return SettlementResult(
        purpose="checkout",
        message=build_success_message(order, breakdown),
        order=order,
        breakdown=breakdown,
    )


def _context_from_pending(pending: PendingPayment, method: str) -> CheckoutContext:
    stashed = pending.context
    return CheckoutContext(
        user_id=pending.user_id,
        payment_method=method,
        delivery=DeliveryChoice.from_dict(stashed.get("delivery")),
        redeem_points=stashed.get("redeem_points") or 0,
        reference=pending.reference,
    )


def _already_settled(pending: PendingPayment) -> SettlementResult:
    order = order_service.get_order(pending.order_id) if pending.order_id else None
    if order is not None:
        message = f"Order #{order.id} was already placed."
    else:
        message = "This payment has already been applied."
    return SettlementResult(purpose=pending.purpose, message=message, order=order, already_settled=True)


# =============================================================================
# TOP-UP AND MEMBERSHIP SETTLEMENT
# =============================================================================

def _apply_side_purchase(user_id: int, purpose: str, amount_cents: int, plan_key: str | None, method: str) -> str:
    """Credit a top-up or switch plan after payment. Does not commit."""
    if purpose == "topup":
        _, new = account_service.complete_topup(user_id, amount_cents, method)
        return f"Wallet topped up by ${format_cents(amount_cents)}. New balance ${format_cents(new)}."
    plan = account_service.complete_membership_purchase(user_id, plan_key, method)
    return f"You are now a {plan.name} member."


def _settle_pending_side_purchase(pending: PendingPayment, adapter: PaymentAdapter) -> SettlementResult:
    method = adapter.method
    try:
        pending.status = "SETTLED"
        pending.settled_at = utcnow()
        db.session.flush()
        message = _apply_side_purchase(
            pending.user_id, pending.purpose, pending.amount_cents, pending.context.get("plan"), method
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        db.session.refresh(pending)
        return _already_settled(pending)
    except ShopError as exc:
        db.session.rollback()
        payment_ctx = PaymentContext(user_id=pending.user_id, purpose=pending.purpose, reference=pending.reference)
        result = AuthorizationResult(
            success=True,
            external_ref=pending.gateway_ref or pending.reference,
            amount_cents=pending.amount_cents,
        )
        note = _compensate(adapter, payment_ctx, result, pending, str(exc))
        raise ConflictError(f"{exc}. {note}", details=exc.details) from exc

    current_app.logger.info(
        "%s of %s cents settled via %s for user %s", pending.purpose, pending.amount_cents, method, pending.user_id
    )
    return SettlementResult(purpose=pending.purpose, message=message)


def topup_with_card(user_id: int, amount, card: dict) -> SettlementResult:
    amount_cents = parse_amount_cents(amount, "amount")
    if amount_cents <= 0:
        raise ValidationError("Top-up amount must be greater than zero")
    adapter = CardAdapter()
    context = PaymentContext(user_id=user_id, purpose="topup", card=card)
    adapter.validate(context)
    adapter.authorize(amount_cents, context)
    message = _apply_side_purchase(user_id, "topup", amount_cents, None, adapter.method)
    db.session.commit()
    return SettlementResult(purpose="topup", message=message)


def purchase_membership(user_id: int, plan_key, method: str, card: dict | None = None) -> SettlementResult:
    """Synchronous plan purchase from the wallet or a card."""
    plan = account_service.require_membership_plan(plan_key)
    method = (method or "wallet").strip().lower()

    if method == "wallet":
        account_service.purchase_membership_with_wallet(user_id, plan.key)
    elif method == "card":
        if plan.is_paid:
            adapter = CardAdapter()
            context = PaymentContext(user_id=user_id, purpose="membership", card=card or {})
            adapter.validate(context)
            adapter.authorize(plan.price_cents, context)
        account_service.complete_membership_purchase(user_id, plan.key, "card")
    else:
        raise ValidationError("Use the PayPal or QR flow for this payment method")

    db.session.commit()
    return SettlementResult(purpose="membership", message=f"You are now a {plan.name} member.")


# =============================================================================
# PAYPAL (hosted redirect)
# =============================================================================

def start_paypal_checkout(user: User, redeem_points, delivery: DeliveryChoice) -> tuple[PendingPayment, PriceBreakdown]:
    _, breakdown = quote(user.id, redeem_points)
    pending = _gateway_call(
        PayPalAdapter().create_intent,
        breakdown.final_cents,
        user.id,
        "checkout",
        {"redeem_points": breakdown.points_redeemed, "delivery": delivery.to_dict()},
    )
    return pending, breakdown


def start_paypal_payment(user_id: int, purpose: str, amount_cents: int, context: dict | None = None) -> PendingPayment:
    """Intent for a top-up or a membership plan."""
    return _gateway_call(PayPalAdapter().create_intent, amount_cents, user_id, purpose, context)


def capture_paypal_payment(user_id: int, intent_id: str) -> SettlementResult:
    """
    Capture and settle an intent created by this user. Idempotent: capturing
    an already settled intent returns its outcome again.
    """
    if not intent_id:
        raise ValidationError("PayPal order id is required")
    pending = require_pending_payment("paypal", intent_id, user_id)
    if pending.status == "SETTLED":
        return _already_settled(pending)

    if pending.purpose == "checkout":
        return checkout(_context_from_pending(pending, "paypal"), pending=pending)

    adapter = PayPalAdapter()
    context = PaymentContext(user_id=user_id, purpose=pending.purpose, reference=intent_id)
    _gateway_call(adapter.authorize, pending.amount_cents, context)
    return _settle_pending_side_purchase(pending, adapter)


# =============================================================================
# NETS QR (asynchronous)
# =============================================================================

def start_nets_checkout(user: User, redeem_points, delivery: DeliveryChoice):
    """Returns (pending, qr_code, breakdown)."""
    _, breakdown = quote(user.id, redeem_points)
    pending, code = _gateway_call(
        NetsQrAdapter().generate_code,
        breakdown.final_cents,
        user.id,
        "checkout",
        {"redeem_points": breakdown.points_redeemed, "delivery": delivery.to_dict()},
    )
    return pending, code, breakdown


def start_nets_payment(user_id: int, purpose: str, amount_cents: int, context: dict | None = None):
    """QR code for a top-up or a membership plan. Returns (pending, qr_code)."""
    return _gateway_call(NetsQrAdapter().generate_code, amount_cents, user_id, purpose, context)


def confirm_nets_payment(user_id: int, reference: str) -> SettlementResult:
    """
    Settle a QR payment once the state machine reports CONFIRMED.

    Still PENDING after a fresh gateway poll -> ConflictError (try again);
    FAILED/TIMED_OUT -> PaymentDeclinedError; SETTLED -> previous outcome.
    """
    pending = require_pending_payment("nets", reference, user_id)
    if pending.status == "SETTLED":
        return _already_settled(pending)

    status = qr_service.poll_status(pending)
    if status in (qr_service.FAILED, qr_service.TIMED_OUT):
        raise PaymentDeclinedError(
            f"QR payment {status.lower().replace('_', ' ')}",
            details={"status": status, "reason": pending.failure_reason},
        )
    if status == qr_service.PENDING:
        raise ConflictError("Payment has not been confirmed yet", details={"status": status})
    if status == "SETTLED":
        return _already_settled(pending)

    if pending.purpose == "checkout":
        return checkout(_context_from_pending(pending, "nets"), pending=pending)
    return _settle_pending_side_purchase(pending, NetsQrAdapter())
