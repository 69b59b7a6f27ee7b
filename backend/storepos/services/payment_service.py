# Overview: Service-layer operations for payment settlement; encapsulates business logic and database work.

"""
Payment Settlement Service

WHY: A sale is paid with one or more tenders (cash, card, UPI, debt). Cash,
card and debt settle immediately; UPI is asynchronous: the payment is
recorded PENDING, the customer scans a QR code, and a gateway webhook or a
cashier's "payment received" click confirms it later.

DESIGN PRINCIPLES:
- Payments are separate from sales (many-to-one relationship)
- Only COMPLETED payments count toward Sale.amount_paid
- PENDING -> COMPLETED | FAILED; COMPLETED never goes back to PENDING
- Confirmation is exactly-once: the status check and the update happen on a
  version-checked row, so a duplicate confirmation is a PaymentStateError,
  never a second credit
- Debt-method payments move the customer's debt in the same transaction
- QR generation happens after commit; its failure is logged for manual
  reconciliation and never undoes the recorded sale
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import update

from ..errors import NotFoundError, PaymentStateError, ServiceError, ValidationError
from ..extensions import db
from ..models import Customer, Payment, Sale
from ..models.customers import DEBT_KIND_SALE
from ..models.sales import (
    PAYMENT_COMPLETED,
    PAYMENT_DEBT,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_UPI,
    SALE_OVERPAID,
    SALE_PAID,
    SALE_PARTIAL,
    SALE_UNPAID,
)
from ..time_utils import utcnow
from . import customer_service
from .concurrency import lock_for_update, run_with_retry
from .config_service import require_upi_settings
from .qr_service import QRGenerationError, generate_payment_qr


RECONCILIATION = "RECONCILIATION"

WEBHOOK_COMPLETED_STATUSES = {"completed", "success", "captured", "paid"}
WEBHOOK_FAILED_STATUSES = {"failed", "failure", "declined", "expired"}


class WebhookSignatureError(ServiceError):
    status_code = 401


@dataclass
class SettlementResult:
    payment: Payment
    payment_qr: dict | None = None


# =============================================================================
# PAYMENT CREATION (inside the caller's transaction)
# =============================================================================

def new_reference() -> str:
    return uuid.uuid4().hex[:20].upper()


def create_payment(
    sale: Sale,
    *,
    method: str,
    amount: Decimal,
    user_id: int,
    customer: Customer | None = None,
    apply_debt: bool = True,
) -> Payment:
    """
    Record one tender against a sale. Does not commit.

    cash/card/debt are COMPLETED immediately; upi is PENDING. A debt payment
    adds its amount to the customer's debt unless apply_debt is False (sale
    edits apply the net change themselves).
    """
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")

    if method == PAYMENT_DEBT and customer is None:
        raise ValidationError("Please select a customer for debt payments")

    now = utcnow()
    pending = method == PAYMENT_UPI
    payment = Payment(
        sale_id=sale.id,
        user_id=user_id,
        amount=amount,
        payment_method=method,
        status=PAYMENT_PENDING if pending else PAYMENT_COMPLETED,
        reference=new_reference() if pending else None,
        created_at=now,
        completed_at=None if pending else now,
    )
    db.session.add(payment)
    db.session.flush()

    if method == PAYMENT_DEBT and apply_debt:
        customer_service.increase_debt(
            customer, amount,
            kind=DEBT_KIND_SALE,
            user_id=user_id,
            sale_id=sale.id,
            payment_id=payment.id,
            note=f"Sale {sale.id} on credit",
        )
    return payment


def close_payment(payment: Payment, status: str, reason: str) -> None:
    """Move a payment to a terminal state (FAILED / VOIDED). Does not commit."""
    payment.status = status
    payment.status_reason = reason
    payment.closed_at = utcnow()


def _sum_payments(sale_id: int, status: str) -> Decimal:
    total = db.session.query(
        db.func.coalesce(db.func.sum(Payment.amount), 0)
    ).filter(
        Payment.sale_id == sale_id,
        Payment.status == status,
    ).scalar()
    return Decimal(str(total or 0)).quantize(Decimal("0.01"))


def update_sale_payment_status(sale: Sale) -> None:
    """
    Recalculate Sale.amount_paid and Sale.payment_status from COMPLETED payments.

    PAYMENT STATUS:
    - unpaid: amount_paid = 0 (and something is due)
    - partial: 0 < amount_paid < amount_due
    - paid: amount_paid = amount_due
    - overpaid: amount_paid > amount_due (e.g. after an edit lowered the total)
    """
    db.session.flush()
    paid = _sum_payments(sale.id, PAYMENT_COMPLETED)
    due = sale.amount_due

    if paid == due:
        status = SALE_PAID
    elif paid == 0:
        status = SALE_UNPAID
    elif paid < due:
        status = SALE_PARTIAL
    else:
        status = SALE_OVERPAID

    sale.amount_paid = paid
    sale.payment_status = status


def outstanding_amount(sale: Sale) -> Decimal:
    """Amount not yet covered by completed or pending payments."""
    covered = _sum_payments(sale.id, PAYMENT_COMPLETED) + _sum_payments(sale.id, PAYMENT_PENDING)
    return sale.amount_due - covered


def issue_payment_qr(payment: Payment) -> dict | None:
    """
    Post-commit side effect for UPI payments. A failure leaves the payment
    PENDING and is logged for manual reconciliation.
    """
    try:
        return generate_payment_qr(payment)
    except QRGenerationError:
        current_app.logger.exception(
            "%s: sale %s recorded but UPI QR could not be generated for payment %s (amount %s)",
            RECONCILIATION, payment.sale_id, payment.id, payment.amount,
        )
        return None


# =============================================================================
# SETTLEMENT AGAINST AN EXISTING SALE
# =============================================================================

def settle_payment(
    sale_id: int,
    amount: Decimal | None,
    payment_method: str,
    user_id: int,
    customer_id: int | None = None,
) -> SettlementResult:
    """
    Add a payment to an existing, not fully covered sale.

    amount defaults to the outstanding balance (amount due minus completed and
    pending payments) and may not exceed it.
    """
    if payment_method == PAYMENT_UPI:
        require_upi_settings()

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})

        remaining = outstanding_amount(sale)
        if remaining <= 0:
            raise ValidationError(f"Sale {sale_id} has no outstanding balance")

        pay_amount = remaining if amount is None else amount
        if pay_amount > remaining:
            raise ValidationError(
                f"Payment of {pay_amount:.2f} exceeds outstanding balance {remaining:.2f}",
                details={"outstanding": f"{remaining:.2f}"},
            )

        customer = None
        if payment_method == PAYMENT_DEBT:
            if customer_id is not None and sale.customer_id not in (None, customer_id):
                raise ValidationError("Debt must be charged to the sale's customer")
            target_id = customer_id or sale.customer_id
            if target_id is None:
                raise ValidationError("Please select a customer for debt payments")
            customer = customer_service.get_customer(target_id, lock=True)
            if customer.is_blocked:
                raise ValidationError(f"{customer.display_name} is blocked from buying on credit")
            sale.customer_id = customer.id

        payment = create_payment(
            sale, method=payment_method, amount=pay_amount, user_id=user_id, customer=customer,
        )
        update_sale_payment_status(sale)
        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    payment_qr = issue_payment_qr(payment) if payment.status == PAYMENT_PENDING else None
    return SettlementResult(payment=payment, payment_qr=payment_qr)


# =============================================================================
# CONFIRMATION / FAILURE OF PENDING PAYMENTS
# =============================================================================

def _get_payment_locked(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found", details={"payment_id": payment_id})
    return payment


def confirm_payment(
    payment_id: int,
    transaction_id: str | None = None,
    user_id: int | None = None,
) -> Payment:
    """
    PENDING -> COMPLETED. Any other current status raises PaymentStateError,
    so a second confirmation can never count the money twice.

    The status check and the transition are one conditional UPDATE
    (WHERE status = 'pending'); of two racing confirmations exactly one
    matches a row.
    """
    def _op():
        payment = _get_payment_locked(payment_id)

        values = {
            "status": PAYMENT_COMPLETED,
            "completed_at": utcnow(),
            "version_id": Payment.version_id + 1,
        }
        if transaction_id:
            values["transaction_id"] = transaction_id
        if user_id is not None:
            values["status_reason"] = f"Confirmed by user {user_id}"

        result = db.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PAYMENT_PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.expire(payment)
        if result.rowcount == 0:
            raise PaymentStateError(
                f"Payment {payment_id} is not pending (status: {payment.status})",
                details={"payment_id": payment_id, "status": payment.status},
            )

        sale = db.session.get(Sale, payment.sale_id)
        update_sale_payment_status(sale)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def fail_payment(payment_id: int, reason: str | None = None) -> Payment:
    """PENDING -> FAILED. The sale (and its stock decrement) is left as is."""
    def _op():
        payment = _get_payment_locked(payment_id)
        if payment.status != PAYMENT_PENDING:
            raise PaymentStateError(
                f"Payment {payment_id} is not pending (status: {payment.status})",
                details={"payment_id": payment_id, "status": payment.status},
            )
        close_payment(payment, PAYMENT_FAILED, reason or "Marked failed")
        db.session.commit()
        return payment

    return run_with_retry(_op)


def expire_pending_payments(older_than_minutes: int) -> list[Payment]:
    """
    Fail UPI payments left PENDING longer than older_than_minutes.

    Stock sold with the sale is NOT returned: each expiry is logged so an
    operator can decide between chasing the payment and editing the sale.
    """
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)

    def _op():
        stale = lock_for_update(
            db.session.query(Payment).filter(
                Payment.status == PAYMENT_PENDING,
                Payment.created_at < cutoff,
            )
        ).all()
        for payment in stale:
            close_payment(payment, PAYMENT_FAILED, f"Expired after {older_than_minutes} minutes")
        db.session.commit()
        return stale

    expired = run_with_retry(_op)
    for payment in expired:
        current_app.logger.warning(
            "%s: pending %s payment %s for sale %s (amount %s) expired; sale stock remains decremented",
            RECONCILIATION, payment.payment_method, payment.id, payment.sale_id, payment.amount,
        )
    return expired


# =============================================================================
# GATEWAY WEBHOOK
# =============================================================================

def verify_webhook_signature(raw_body: bytes, signature: str | None) -> bool:
    """HMAC-SHA256 of the raw body; always true when no secret is configured."""
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _resolve_webhook_payment(payload: dict) -> Payment:
    payment_id = payload.get("paymentId")
    reference = payload.get("reference")

    if payment_id is not None:
        payment = db.session.get(Payment, payment_id) if str(payment_id).isdigit() else None
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    if reference:
        payment = db.session.query(Payment).filter_by(reference=str(reference)).first()
        if payment is None:
            raise NotFoundError(f"No payment with reference {reference}")
        return payment

    raise ValidationError("paymentId or reference is required")


def handle_payment_webhook(
    payload: dict,
    raw_body: bytes = b"",
    signature: str | None = None,
) -> dict:
    """
    Apply a gateway notification. Returns {"result": ..., "payment": ...}
    where result is "confirmed", "failed" or "duplicate".

    A success notification for a payment that is already COMPLETED is a
    duplicate delivery and is acknowledged without any change. A success
    notification for a FAILED payment means money arrived for an abandoned
    payment: it is rejected and logged for reconciliation.
    """
    if not verify_webhook_signature(raw_body, signature):
        current_app.logger.warning("Rejected payment webhook with invalid signature")
        raise WebhookSignatureError("Invalid webhook signature")

    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    status = str(payload.get("status") or "").strip().lower()
    if status not in WEBHOOK_COMPLETED_STATUSES | WEBHOOK_FAILED_STATUSES:
        raise ValidationError(f"Unsupported payment status: {payload.get('status')}")

    payment = _resolve_webhook_payment(payload)
    transaction_id = payload.get("transactionId")

    if status in WEBHOOK_COMPLETED_STATUSES:
        if payment.status == PAYMENT_COMPLETED:
            return {"result": "duplicate", "payment": payment}
        try:
            payment = confirm_payment(payment.id, transaction_id=transaction_id)
        except PaymentStateError as exc:
            current_app.logger.error(
                "%s: gateway reported success for payment %s of sale %s (transaction %s) but it is %s",
                RECONCILIATION, payment.id, payment.sale_id, transaction_id, exc.details.get("status"),
            )
            if exc.details.get("status") == PAYMENT_COMPLETED:
                return {"result": "duplicate", "payment": db.session.get(Payment, payment.id)}
            raise
        return {"result": "confirmed", "payment": payment}

    if payment.status == PAYMENT_FAILED:
        return {"result": "duplicate", "payment": payment}
    payment = fail_payment(payment.id, reason=payload.get("reason") or f"Gateway reported {status}")
    return {"result": "failed", "payment": payment}


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def get_sale_payments(sale_id: int) -> list[Payment]:
    return db.session.query(Payment).filter_by(sale_id=sale_id).order_by(Payment.id).all()


def get_payment_summary(sale_id: int) -> dict:
    """
    - amount_due: what payments must settle
    - amount_paid: completed payments only
    - amount_pending: unconfirmed UPI
    - remaining: amount_due - amount_paid
    """
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found")

    paid = _sum_payments(sale_id, PAYMENT_COMPLETED)
    pending = _sum_payments(sale_id, PAYMENT_PENDING)

    return {
        "sale_id": sale.id,
        "amount_due": f"{sale.amount_due:.2f}",
        "amount_paid": f"{paid:.2f}",
        "amount_pending": f"{pending:.2f}",
        "remaining": f"{sale.amount_due - paid:.2f}",
        "payment_status": sale.payment_status,
        "is_settled": paid >= sale.amount_due,
        "payments": [p.to_dict() for p in get_sale_payments(sale_id)],
    }
