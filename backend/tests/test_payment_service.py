"""
Payment settlement tests.

Verifies:
- Pending UPI payments confirm exactly once (second attempt is a 409-class error)
- Failed payments cannot be confirmed
- Gateway webhooks resolve by reference, acknowledge duplicates and
  enforce the HMAC signature when a secret is configured
- Debt repayments stay within 0 < amount <= outstanding debt
- Stale pending payments expire without touching stock
"""

import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from storepos.errors import InvalidAmountError, PaymentStateError, ValidationError
from storepos.extensions import db
from storepos.models import CustomerDebtTransaction, Payment, Product, Sale
from storepos.services import customer_service, payment_service, sales_service
from storepos.services.payment_service import WebhookSignatureError
from storepos.time_utils import utcnow
from storepos.validation import CartLine


def upi_sale(user, product, qty="2"):
    result = sales_service.create_sale(
        cart=[CartLine(product.id, Decimal(qty))],
        user_id=user.id,
        payment_method="upi",
    )
    payment = db.session.query(Payment).filter_by(sale_id=result.sale.id).one()
    return result.sale, payment


# =============================================================================
# CONFIRM / FAIL
# =============================================================================


class TestConfirmPayment:

    def test_confirm_pending_completes_and_marks_sale_paid(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)

        confirmed = payment_service.confirm_payment(payment.id, transaction_id="UPI-778899", user_id=cashier_user.id)

        assert confirmed.status == "completed"
        assert confirmed.transaction_id == "UPI-778899"
        assert confirmed.completed_at is not None
        sale = db.session.get(Sale, sale.id)
        assert sale.payment_status == "paid"
        assert sale.amount_paid == Decimal("100.00")

    def test_second_confirmation_is_rejected(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        payment_service.confirm_payment(payment.id)

        with pytest.raises(PaymentStateError) as exc:
            payment_service.confirm_payment(payment.id)

        assert exc.value.status_code == 409
        assert exc.value.details["status"] == "completed"
        # Money counted once
        assert db.session.get(Sale, sale.id).amount_paid == Decimal("100.00")

    def test_failed_payment_cannot_be_confirmed(self, db_session, cashier_user, product):
        _, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id, reason="Customer walked away")

        with pytest.raises(PaymentStateError):
            payment_service.confirm_payment(payment.id)

        payment = db.session.get(Payment, payment.id)
        assert payment.status == "failed"
        assert payment.status_reason == "Customer walked away"

    def test_failing_keeps_sale_stock(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id)

        assert db.session.get(Product, product.id).stock == Decimal("8")
        assert db.session.get(Sale, sale.id).payment_status == "unpaid"

    def test_cash_payment_is_not_confirmable(self, db_session, cashier_user, product):
        sale = sales_service.create_sale(
            cart=[CartLine(product.id, Decimal("1"))], user_id=cashier_user.id, payment_method="cash",
        ).sale
        payment = db_session.query(Payment).filter_by(sale_id=sale.id).one()

        with pytest.raises(PaymentStateError):
            payment_service.confirm_payment(payment.id)


# =============================================================================
# SETTLEMENT AGAINST EXISTING SALES
# =============================================================================


class TestSettlePayment:

    def test_settles_remaining_after_failed_upi(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id)

        result = payment_service.settle_payment(sale.id, None, "cash", cashier_user.id)

        assert result.payment.amount == Decimal("100.00")
        assert result.payment.status == "completed"
        assert db.session.get(Sale, sale.id).payment_status == "paid"

    def test_pending_amount_counts_as_covered(self, db_session, cashier_user, product):
        sale, _ = upi_sale(cashier_user, product)

        with pytest.raises(ValidationError, match="no outstanding balance"):
            payment_service.settle_payment(sale.id, None, "cash", cashier_user.id)

    def test_cannot_exceed_outstanding(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id)

        with pytest.raises(ValidationError, match="exceeds outstanding"):
            payment_service.settle_payment(sale.id, Decimal("150.00"), "card", cashier_user.id)

    def test_partial_then_debt(self, db_session, cashier_user, product, customer):
        sale, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id)

        payment_service.settle_payment(sale.id, Decimal("40.00"), "cash", cashier_user.id)
        assert db.session.get(Sale, sale.id).payment_status == "partial"

        payment_service.settle_payment(sale.id, None, "debt", cashier_user.id, customer_id=customer.id)
        sale = db.session.get(Sale, sale.id)
        assert sale.payment_status == "paid"
        assert sale.customer_id == customer.id
        assert customer.debt_amount == Decimal("60.00")

    def test_upi_settlement_returns_qr(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id)

        result = payment_service.settle_payment(sale.id, None, "upi", cashier_user.id)

        assert result.payment.status == "pending"
        assert result.payment_qr["reference"] == result.payment.reference

    def test_summary(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        summary = payment_service.get_payment_summary(sale.id)

        assert summary["amount_due"] == "100.00"
        assert summary["amount_paid"] == "0.00"
        assert summary["amount_pending"] == "100.00"
        assert summary["remaining"] == "100.00"
        assert summary["is_settled"] is False
        assert [p["id"] for p in summary["payments"]] == [payment.id]


# =============================================================================
# WEBHOOK
# =============================================================================


class TestPaymentWebhook:

    def test_confirms_by_reference_and_acknowledges_duplicates(self, db_session, cashier_user, product):
        sale, payment = upi_sale(cashier_user, product)
        payload = {"reference": payment.reference, "status": "success", "transactionId": "TXN1"}

        first = payment_service.handle_payment_webhook(payload)
        second = payment_service.handle_payment_webhook(payload)

        assert first["result"] == "confirmed"
        assert second["result"] == "duplicate"
        assert db.session.get(Sale, sale.id).amount_paid == Decimal("100.00")

    def test_failure_notification(self, db_session, cashier_user, product):
        _, payment = upi_sale(cashier_user, product)

        outcome = payment_service.handle_payment_webhook({"paymentId": payment.id, "status": "failed"})

        assert outcome["result"] == "failed"
        assert db.session.get(Payment, payment.id).status == "failed"

    def test_success_for_failed_payment_is_logged_for_reconciliation(self, db_session, cashier_user, product, caplog):
        _, payment = upi_sale(cashier_user, product)
        payment_service.fail_payment(payment.id)

        with pytest.raises(PaymentStateError):
            payment_service.handle_payment_webhook({"paymentId": payment.id, "status": "completed"})
        assert "RECONCILIATION" in caplog.text

    def test_unknown_status(self, db_session, cashier_user, product):
        _, payment = upi_sale(cashier_user, product)
        with pytest.raises(ValidationError, match="Unsupported"):
            payment_service.handle_payment_webhook({"paymentId": payment.id, "status": "maybe"})

    def test_signature_enforced_when_secret_set(self, app, db_session, cashier_user, product, monkeypatch):
        monkeypatch.setitem(app.config, "PAYMENT_WEBHOOK_SECRET", "whsec-test")
        _, payment = upi_sale(cashier_user, product)
        payload = {"paymentId": payment.id, "status": "completed"}
        body = json.dumps(payload).encode()

        with pytest.raises(WebhookSignatureError):
            payment_service.handle_payment_webhook(payload, raw_body=body, signature="bogus")
        assert db.session.get(Payment, payment.id).status == "pending"

        signature = hmac.new(b"whsec-test", body, hashlib.sha256).hexdigest()
        outcome = payment_service.handle_payment_webhook(payload, raw_body=body, signature=signature)
        assert outcome["result"] == "confirmed"


# =============================================================================
# EXPIRY
# =============================================================================


class TestExpirePendingPayments:

    def test_expires_only_stale_pending(self, db_session, cashier_user, product, caplog):
        _, old = upi_sale(cashier_user, product)
        _, fresh = upi_sale(cashier_user, product)
        old.created_at = utcnow() - timedelta(minutes=45)
        db_session.commit()

        expired = payment_service.expire_pending_payments(30)

        assert [p.id for p in expired] == [old.id]
        assert db.session.get(Payment, old.id).status == "failed"
        assert db.session.get(Payment, fresh.id).status == "pending"
        # Stock is not returned automatically
        assert db.session.get(Product, product.id).stock == Decimal("6")
        assert "RECONCILIATION" in caplog.text


# =============================================================================
# CUSTOMER DEBT REPAYMENT
# =============================================================================


class TestDebtPayment:

    def test_debt_lifecycle(self, db_session, cashier_user, make_product, customer):
        item = make_product(name="Ghee", price="200.00", stock="5")
        sales_service.create_sale(
            cart=[CartLine(item.id, Decimal("1"))],
            user_id=cashier_user.id,
            payment_method="debt",
            customer_id=customer.id,
        )
        assert customer.debt_amount == Decimal("200.00")

        customer_service.apply_debt_payment(customer.id, Decimal("50.00"), cashier_user.id)
        assert customer.debt_amount == Decimal("150.00")

        with pytest.raises(InvalidAmountError):
            customer_service.apply_debt_payment(customer.id, Decimal("200.00"), cashier_user.id)
        assert customer.debt_amount == Decimal("150.00")

        kinds = [t.kind for t in db_session.query(CustomerDebtTransaction).order_by(CustomerDebtTransaction.id)]
        assert kinds == ["SALE_DEBT", "DEBT_PAYMENT"]

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10.00")])
    def test_non_positive_amount(self, db_session, cashier_user, make_customer, amount):
        customer = make_customer(debt="100.00")
        with pytest.raises(InvalidAmountError):
            customer_service.apply_debt_payment(customer.id, amount, cashier_user.id)
        assert customer.debt_amount == Decimal("100.00")

    def test_exact_payoff(self, db_session, cashier_user, make_customer):
        customer = make_customer(debt="75.50")
        customer_service.apply_debt_payment(customer.id, Decimal("75.50"), cashier_user.id)
        assert customer.debt_amount == Decimal("0.00")
