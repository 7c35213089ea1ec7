# Overview: One authorize() contract over wallet, card, PayPal and NETS QR.

"""
Payment Adapters

CONTRACT: authorize(amount_cents, context) -> AuthorizationResult
The settlement orchestrator calls every rail the same way; only the
preconditions (validate) and where the money moves differ.

RAILS:
- wallet: synchronous conditional debit inside the checkout transaction
- card:   synchronous local format checks only, no card network
- paypal: two-phase; create_intent() stashes a PendingPayment, authorize()
          captures it
- nets:   asynchronous; generate_code() stashes a PendingPayment, the QR
          state machine (qr_service) confirms it, authorize() accepts only a
          CONFIRMED payment

PENDING PAYMENTS: async rails keep the amount and the buyer's choices
(delivery, loyalty redemption, plan) server-side, keyed by the gateway
reference, because the confirming request carries no cart context.
"""

from __future__ import annotations

import json
import re
import secrets
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import PendingPayment
from ..errors import (
    ConflictError,
    ExternalGatewayError,
    NotFoundError,
    PaymentDeclinedError,
    ValidationError,
)
from ..validation import format_cents
from . import account_service, ledger_service
from .concurrency import lock_for_update
from .nets_client import get_nets_client, QrCode
from .paypal_client import get_paypal_client
from shopfront.time_utils import utcnow

PAYMENT_METHODS = ("card", "paypal", "wallet", "nets")
PENDING_PURPOSES = ("checkout", "topup", "membership")

_CARD_NUMBER_RE = re.compile(r"^\d{13,19}$")
_EXPIRY_RE = re.compile(r"^(0[1-9]|1[0-2])/(\d{2})$")
_CVV_RE = re.compile(r"^\d{3,4}$")


@dataclass(frozen=True)
class AuthorizationResult:
    success: bool
    external_ref: str | None = None
    # Amount actually collected; differs from the priced amount only for QR
    amount_cents: int | None = None
    previous_balance: int | None = None
    new_balance: int | None = None


@dataclass
class PaymentContext:
    """What a rail needs beyond the amount."""
    user_id: int
    purpose: str = "checkout"
    card: dict = field(default_factory=dict)
    reference: str | None = None


# =============================================================================
# PENDING PAYMENT STASH
# =============================================================================

def stash_pending_payment(
    *,
    provider: str,
    reference: str,
    purpose: str,
    user_id: int,
    amount_cents: int,
    context: dict | None = None,
    expires_at=None,
) -> PendingPayment:
    if purpose not in PENDING_PURPOSES:
        raise ValidationError(f"Unknown payment purpose: {purpose}")

    pending = PendingPayment(
        provider=provider,
        reference=reference,
        purpose=purpose,
        user_id=user_id,
        amount_cents=amount_cents,
        context_json=json.dumps(context or {}),
        status="PENDING",
        created_at=utcnow(),
        expires_at=expires_at,
    )
    db.session.add(pending)
    db.session.commit()
    return pending


def find_pending_payment(provider: str, reference: str, *, lock: bool = False) -> PendingPayment | None:
    query = db.session.query(PendingPayment).filter(
        PendingPayment.provider == provider,
        PendingPayment.reference == reference,
    )
    if lock:
        query = lock_for_update(query)
    return query.first()


def require_pending_payment(provider: str, reference: str, user_id: int, *, lock: bool = False) -> PendingPayment:
    """Pending payment owned by user_id; someone else's reference reads as missing."""
    pending = find_pending_payment(provider, reference, lock=lock)
    if pending is None or pending.user_id != user_id:
        raise NotFoundError("Payment not found")
    return pending


# =============================================================================
# ADAPTERS
# =============================================================================

class PaymentAdapter:
    method: str = ""

    def validate(self, context: PaymentContext) -> None:
        """Amount-independent input checks. Must not move money."""

    def authorize(self, amount_cents: int, context: PaymentContext) -> AuthorizationResult:
        raise NotImplementedError

    def compensate(self, amount_cents: int, context: PaymentContext, result: AuthorizationResult) -> str:
        """
        Give money back after a successful authorize() when no order could be
        committed. Does not commit. Rails whose debit rolls back with the
        transaction have nothing to do.
        """
        return "You were not charged."


class WalletAdapter(PaymentAdapter):
    method = "wallet"

    def authorize(self, amount_cents: int, context: PaymentContext) -> AuthorizationResult:
        """
        Conditional debit. Not committed here, so it rolls back with the
        order if COMMIT_ORDER fails. Raises InsufficientBalanceError.
        """
        previous, new = account_service.debit_wallet(context.user_id, amount_cents)
        return AuthorizationResult(
            success=True,
            external_ref=f"WALLET-{secrets.token_hex(6).upper()}",
            amount_cents=amount_cents,
            previous_balance=previous,
            new_balance=new,
        )


def validate_card(card: dict | None) -> dict:
    """
    Local format checks: holder name, 13-19 digit number, MM/YY expiry not in
    the past, 3-4 digit CVV. Returns the normalized card fields.
    """
    card = card or {}
    name = str(card.get("name") or card.get("card_name") or "").strip()
    number = re.sub(r"[\s-]", "", str(card.get("number") or card.get("card_number") or ""))
    expiry = str(card.get("expiry") or card.get("card_expiry") or "").strip()
    cvv = str(card.get("cvv") or card.get("card_cvv") or "").strip()

    if not name:
        raise ValidationError("Cardholder name is required")
    if not _CARD_NUMBER_RE.match(number):
        raise ValidationError("Card number must be 13-19 digits")

    match = _EXPIRY_RE.match(expiry)
    if not match:
        raise ValidationError("Card expiry must be in MM/YY format")
    month, year = int(match.group(1)), 2000 + int(match.group(2))
    now = utcnow()
    if (year, month) < (now.year, now.month):
        raise ValidationError("Card has expired")

    if not _CVV_RE.match(cvv):
        raise ValidationError("CVV must be 3 or 4 digits")

    return {"name": name, "number": number, "expiry": expiry, "last4": number[-4:]}


class CardAdapter(PaymentAdapter):
    method = "card"

    def validate(self, context: PaymentContext) -> None:
        validate_card(context.card)

    def authorize(self, amount_cents: int, context: PaymentContext) -> AuthorizationResult:
        card = validate_card(context.card)
        return AuthorizationResult(
            success=True,
            external_ref=f"CARD-****{card['last4']}-{secrets.token_hex(4).upper()}",
            amount_cents=amount_cents,
        )


class PayPalAdapter(PaymentAdapter):
    method = "paypal"

    def create_intent(self, amount_cents: int, user_id: int, purpose: str, context: dict | None = None) -> PendingPayment:
        if amount_cents <= 0:
            raise ValidationError("Nothing to pay")
        data = get_paypal_client().create_order(format_cents(amount_cents))
        return stash_pending_payment(
            provider="paypal",
            reference=data["id"],
            purpose=purpose,
            user_id=user_id,
            amount_cents=amount_cents,
            context=context,
        )

    def validate(self, context: PaymentContext) -> None:
        if not context.reference:
            raise ValidationError("PayPal order id is required")
        pending = require_pending_payment("paypal", context.reference, context.user_id)
        if pending.purpose != context.purpose:
            raise ValidationError("PayPal order was created for a different purchase")
        if pending.status == "SETTLED":
            raise ConflictError("This PayPal order has already been settled")
        if pending.status != "PENDING":
            raise PaymentDeclinedError("This PayPal order can no longer be captured")

    def _capture(self, pending: PendingPayment):
        """
        Capture, reading the order back when the capture call fails.

        INVARIANT: a capture the gateway completed is never treated as unpaid.
        A timeout may hide a successful capture, and the retry then gets
        ORDER_ALREADY_CAPTURED; both resolve through the order lookup. When
        the lookup fails too the payment stays PENDING for the next attempt
        and is logged at ERROR for reconciliation.
        """
        client = get_paypal_client()
        try:
            return client.capture_order(pending.reference)
        except ExternalGatewayError as capture_error:
            try:
                recovered = client.get_order(pending.reference)
            except ExternalGatewayError:
                current_app.logger.error(
                    "PayPal capture outcome unknown for order %s (%s cents, user %s); reconcile manually",
                    pending.reference, pending.amount_cents, pending.user_id,
                    exc_info=True,
                )
                pending.failure_reason = f"Capture outcome unknown: {capture_error}"[:255]
                db.session.commit()
                raise capture_error
            if not recovered.captured:
                raise
            current_app.logger.warning(
                "Recovered PayPal capture %s for order %s after: %s",
                recovered.capture_id, pending.reference, capture_error,
            )
            return recovered

    def authorize(self, amount_cents: int, context: PaymentContext) -> AuthorizationResult:
        """
        Capture the intent, but only if it was created for exactly the amount
        priced now; otherwise nothing is captured.
        """
        self.validate(context)
        pending = require_pending_payment("paypal", context.reference, context.user_id)
        if pending.amount_cents != amount_cents:
            raise ConflictError(
                "Your total changed since PayPal checkout started. Please start the payment again.",
                details={"intent_cents": pending.amount_cents, "current_cents": amount_cents},
            )

        result = self._capture(pending)
        now = utcnow()
        if not result.succeeded:
            pending.status = "FAILED"
            pending.failure_reason = f"Capture status {result.status or 'UNKNOWN'}"
            pending.resolved_at = now
            db.session.commit()
            raise PaymentDeclinedError("PayPal did not complete the payment")

        pending.status = "CONFIRMED"
        pending.gateway_ref = result.capture_id
        pending.failure_reason = None
        pending.resolved_at = now
        db.session.commit()
        return AuthorizationResult(
            success=True,
            external_ref=result.capture_id or result.order_id,
            amount_cents=amount_cents,
        )

    def compensate(self, amount_cents: int, context: PaymentContext, result: AuthorizationResult) -> str:
        get_paypal_client().refund_capture(result.external_ref, format_cents(amount_cents))
        return "Your payment has been refunded to your PayPal account."


class NetsQrAdapter(PaymentAdapter):
    method = "nets"

    def generate_code(
        self, amount_cents: int, user_id: int, purpose: str, context: dict | None = None
    ) -> tuple[PendingPayment, QrCode]:
        if amount_cents <= 0:
            raise ValidationError("Nothing to pay")
        code = get_nets_client().request_code(format_cents(amount_cents))
        timeout = current_app.config["QR_PAYMENT_TIMEOUT_SECONDS"]
        pending = stash_pending_payment(
            provider="nets",
            reference=code.retrieval_ref,
            purpose=purpose,
            user_id=user_id,
            amount_cents=amount_cents,
            context=context,
            expires_at=utcnow() + timedelta(seconds=timeout),
        )
        return pending, code

    def validate(self, context: PaymentContext) -> None:
        if not context.reference:
            raise ValidationError("QR retrieval reference is required")
        pending = require_pending_payment("nets", context.reference, context.user_id)
        if pending.status != "CONFIRMED":
            raise PaymentDeclinedError(f"QR payment is {pending.status.lower().replace('_', ' ')}")

    def authorize(self, amount_cents: int, context: PaymentContext) -> AuthorizationResult:
        """
        The buyer already paid when the QR was scanned; this only checks the
        record and reports what was collected.
        """
        self.validate(context)
        pending = require_pending_payment("nets", context.reference, context.user_id)
        return AuthorizationResult(
            success=True,
            external_ref=context.reference,
            amount_cents=pending.amount_cents,
        )

    def compensate(self, amount_cents: int, context: PaymentContext, result: AuthorizationResult) -> str:
        previous, new = account_service.adjust_wallet(context.user_id, amount_cents)
        ledger_service.append_transaction(
            user_id=context.user_id,
            action_type="REFUND",
            amount=amount_cents,
            previous_balance=previous,
            new_balance=new,
            payment_method="nets",
        )
        return "Your payment has been credited to your wallet."


ADAPTERS = {
    "wallet": WalletAdapter,
    "card": CardAdapter,
    "paypal": PayPalAdapter,
    "nets": NetsQrAdapter,
}


def get_adapter(method: str) -> PaymentAdapter:
    adapter_cls = ADAPTERS.get((method or "").strip().lower())
    if adapter_cls is None:
        raise ValidationError(f"payment method must be one of: {', '.join(PAYMENT_METHODS)}")
    return adapter_cls()
