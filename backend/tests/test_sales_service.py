"""
Sale transaction engine tests.

Verifies:
- A cash sale decrements stock and records a completed payment
- Insufficient stock rejects the sale with nothing persisted
- A failure on a later cart line leaves earlier lines untouched
- total_amount always equals the sum of line subtotals
- Debt sales move customer debt; blocked customers cannot buy on credit
- UPI sales stay pending and return a QR payload
"""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import update

from storepos import create_app
from storepos.errors import InsufficientStockError, NotFoundError, PersistenceError, ValidationError
from storepos.extensions import db
from storepos.models import CustomerDebtTransaction, Payment, Product, Sale, SaleItem, User
from storepos.services import payment_service, sales_service
from storepos.services.auth_service import hash_password
from storepos.services.qr_service import QRGenerationError
from storepos.services.stock_service import adjust_stock
from storepos.validation import CartLine, PaymentInstruction


def cart(*lines):
    return [CartLine(product_id=pid, quantity=Decimal(str(qty))) for pid, qty in lines]


# =============================================================================
# CASH / CARD
# =============================================================================


class TestCashSale:

    def test_cash_sale_decrements_stock_and_completes_payment(self, db_session, cashier_user, product):
        result = sales_service.create_sale(
            cart=cart((product.id, 3)),
            user_id=cashier_user.id,
            payment_method="cash",
        )

        sale = result.sale
        assert sale.total_amount == Decimal("150.00")
        assert sale.amount_due == Decimal("150.00")
        assert sale.amount_paid == Decimal("150.00")
        assert sale.payment_status == "paid"
        assert db.session.get(Product, product.id).stock == Decimal("7")

        payments = db_session.query(Payment).filter_by(sale_id=sale.id).all()
        assert len(payments) == 1
        assert payments[0].payment_method == "cash"
        assert payments[0].status == "completed"
        assert payments[0].amount == Decimal("150.00")
        assert result.payment_qr is None

    def test_item_snapshots_price(self, db_session, cashier_user, product):
        sale = sales_service.create_sale(
            cart=cart((product.id, 2)), user_id=cashier_user.id, payment_method="card",
        ).sale

        product.retail_price = Decimal("80.00")
        db_session.commit()

        item = db_session.query(SaleItem).filter_by(sale_id=sale.id).one()
        assert item.price == Decimal("50.00")
        assert item.subtotal == Decimal("100.00")

    def test_total_equals_sum_of_subtotals(self, db_session, cashier_user, make_product):
        rice = make_product(name="Rice", price="52.50", stock="20")
        sugar = make_product(name="Sugar", price="41.25", stock="5.5", unit_type="weight")

        sale = sales_service.create_sale(
            cart=cart((rice.id, 3), (sugar.id, "1.25")),
            user_id=cashier_user.id,
            payment_method="cash",
        ).sale

        items = db_session.query(SaleItem).filter_by(sale_id=sale.id).all()
        assert sale.total_amount == sum(i.subtotal for i in items)
        # 157.50 + 51.5625 rounded to 51.56
        assert sale.total_amount == Decimal("209.06")

    def test_stock_never_negative_after_selling_everything(self, db_session, cashier_user, product):
        sales_service.create_sale(cart=cart((product.id, 10)), user_id=cashier_user.id, payment_method="cash")
        assert db.session.get(Product, product.id).stock == Decimal("0")

        with pytest.raises(InsufficientStockError):
            sales_service.create_sale(cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cash")


# =============================================================================
# STOCK GUARD / ATOMICITY
# =============================================================================


class TestInsufficientStock:

    def test_rejects_and_persists_nothing(self, db_session, cashier_user, product):
        with pytest.raises(InsufficientStockError) as exc:
            sales_service.create_sale(
                cart=cart((product.id, 11)),
                user_id=cashier_user.id,
                payment_method="cash",
            )

        assert "Rice 1kg" in exc.value.message
        assert exc.value.details["requested"] == "11"
        assert exc.value.details["available"] == "10"
        assert db.session.get(Product, product.id).stock == Decimal("10")
        assert db_session.query(Sale).count() == 0
        assert db_session.query(Payment).count() == 0

    def test_failure_on_later_line_rolls_back_earlier_lines(self, db_session, cashier_user, make_product):
        first = make_product(name="Tea", stock="10")
        second = make_product(name="Coffee", stock="1")

        with pytest.raises(InsufficientStockError):
            sales_service.create_sale(
                cart=cart((first.id, 4), (second.id, 2)),
                user_id=cashier_user.id,
                payment_method="cash",
            )

        assert db.session.get(Product, first.id).stock == Decimal("10")
        assert db.session.get(Product, second.id).stock == Decimal("1")
        assert db_session.query(Sale).count() == 0
        assert db_session.query(SaleItem).count() == 0

    def test_stock_check_uses_database_row_not_loaded_value(self, db_session, product):
        # Another till sold 8 units after this session loaded the product
        db_session.execute(
            update(Product).where(Product.id == product.id).values(stock=Decimal("2"))
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(InsufficientStockError):
            adjust_stock(product, Decimal("-5"))
        db_session.rollback()

        assert db.session.get(Product, product.id).stock == Decimal("10")

    def test_sequential_sales_cannot_oversell(self, db_session, cashier_user, product):
        sales_service.create_sale(cart=cart((product.id, 6)), user_id=cashier_user.id, payment_method="cash")

        with pytest.raises(InsufficientStockError):
            sales_service.create_sale(cart=cart((product.id, 6)), user_id=cashier_user.id, payment_method="cash")

        assert db.session.get(Product, product.id).stock == Decimal("4")
        assert db_session.query(Sale).count() == 1


class TestConcurrentCheckout:
    """Two tills, each with its own app context and session, selling the last units."""

    @pytest.fixture
    def till_app(self, tmp_path):
        till_app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'till.db'}",
            'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 15}},
            'UPI_ID': None,
        })
        with till_app.app_context():
            db.create_all()
        yield till_app
        with till_app.app_context():
            db.engine.dispose()

    def test_parallel_sales_cannot_oversell(self, till_app):
        with till_app.app_context():
            user = User(username="till", password_hash=hash_password("Password123!", rounds=4), role="cashier")
            rice = Product(name="Rice 1kg", retail_price=Decimal("50.00"), stock=Decimal("10"))
            db.session.add_all([user, rice])
            db.session.commit()
            user_id, product_id = user.id, rice.id

        barrier = threading.Barrier(2)
        outcomes = []

        def till():
            with till_app.app_context():
                barrier.wait()
                try:
                    sales_service.create_sale(
                        cart=cart((product_id, 6)), user_id=user_id, payment_method="cash",
                    )
                    outcomes.append("sold")
                except InsufficientStockError:
                    outcomes.append("rejected")
                except PersistenceError:
                    outcomes.append("busy")

        threads = [threading.Thread(target=till) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted(outcomes) in (["rejected", "sold"], ["busy", "sold"])
        with till_app.app_context():
            assert db.session.get(Product, product_id).stock == Decimal("4")
            assert db.session.query(Sale).count() == 1
            assert db.session.query(SaleItem).count() == 1


class TestCartValidation:

    def test_empty_cart(self, db_session, cashier_user):
        with pytest.raises(ValidationError, match="At least one item"):
            sales_service.create_sale(cart=[], user_id=cashier_user.id, payment_method="cash")

    def test_unknown_product(self, db_session, cashier_user):
        with pytest.raises(NotFoundError):
            sales_service.create_sale(cart=cart((999, 1)), user_id=cashier_user.id, payment_method="cash")

    def test_deleted_product_is_not_found(self, db_session, cashier_user, make_product):
        gone = make_product(is_deleted=True)
        with pytest.raises(NotFoundError):
            sales_service.create_sale(cart=cart((gone.id, 1)), user_id=cashier_user.id, payment_method="cash")

    def test_inactive_product_cannot_be_sold(self, db_session, cashier_user, make_product):
        inactive = make_product(active=False)
        with pytest.raises(ValidationError, match="inactive"):
            sales_service.create_sale(cart=cart((inactive.id, 1)), user_id=cashier_user.id, payment_method="cash")
        assert db.session.get(Product, inactive.id).stock == Decimal("10")

    def test_piece_products_need_whole_quantities(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="whole number"):
            sales_service.create_sale(cart=cart((product.id, "1.5")), user_id=cashier_user.id, payment_method="cash")

    def test_weight_products_accept_fractions(self, db_session, cashier_user, make_product):
        dal = make_product(name="Dal", price="120.00", stock="3", unit_type="weight")
        sale = sales_service.create_sale(
            cart=cart((dal.id, "0.25")), user_id=cashier_user.id, payment_method="cash",
        ).sale
        assert sale.total_amount == Decimal("30.00")
        assert db.session.get(Product, dal.id).stock == Decimal("2.75")

    def test_unknown_payment_method(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="Invalid payment method"):
            sales_service.create_sale(cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cheque")


# =============================================================================
# SALE TYPES
# =============================================================================


class TestSaleTypes:

    def test_wholesale_uses_wholesale_price(self, db_session, cashier_user, make_product):
        oil = make_product(name="Oil", price="150.00", stock="50", wholesale_price=Decimal("130.00"))
        sale = sales_service.create_sale(
            cart=cart((oil.id, 10)), user_id=cashier_user.id, payment_method="cash", sale_type="wholesale",
        ).sale
        assert sale.sale_type == "wholesale"
        assert sale.total_amount == Decimal("1300.00")

    def test_wholesale_without_wholesale_price_falls_back_to_retail(self, db_session, cashier_user, product):
        sale = sales_service.create_sale(
            cart=cart((product.id, 2)), user_id=cashier_user.id, payment_method="cash", sale_type="wholeSale",
        ).sale
        assert sale.total_amount == Decimal("100.00")

    def test_hotel_uses_retail_price(self, db_session, cashier_user, make_product):
        oil = make_product(name="Oil", price="150.00", stock="50", wholesale_price=Decimal("130.00"))
        sale = sales_service.create_sale(
            cart=cart((oil.id, 1)), user_id=cashier_user.id, payment_method="cash", sale_type="hotel",
        ).sale
        assert sale.total_amount == Decimal("150.00")

    def test_final_amount_is_recorded_as_discount(self, db_session, cashier_user, product):
        sale = sales_service.create_sale(
            cart=cart((product.id, 4)),
            user_id=cashier_user.id,
            payment_method="cash",
            sale_type="wholesale",
            final_amount="180.00",
        ).sale

        assert sale.total_amount == Decimal("200.00")
        assert sale.discount_amount == Decimal("20.00")
        assert sale.discount_reason == sales_service.DEFAULT_DISCOUNT_REASON
        assert sale.amount_due == Decimal("180.00")
        payment = db_session.query(Payment).filter_by(sale_id=sale.id).one()
        assert payment.amount == Decimal("180.00")
        assert sale.payment_status == "paid"

    def test_final_amount_only_for_wholesale(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="wholesale"):
            sales_service.create_sale(
                cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cash", final_amount="40",
            )

    def test_final_amount_cannot_exceed_total(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="cannot exceed"):
            sales_service.create_sale(
                cart=cart((product.id, 1)),
                user_id=cashier_user.id,
                payment_method="cash",
                sale_type="wholesale",
                final_amount="60.00",
            )
        assert db.session.get(Product, product.id).stock == Decimal("10")


# =============================================================================
# SPLIT PAYMENTS
# =============================================================================


class TestSplitPayments:

    def test_split_must_match_amount_due(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="does not match"):
            sales_service.create_sale(
                cart=cart((product.id, 2)),
                user_id=cashier_user.id,
                payments=[
                    PaymentInstruction("cash", Decimal("50.00")),
                    PaymentInstruction("card", Decimal("40.00")),
                ],
            )
        assert db.session.get(Product, product.id).stock == Decimal("10")

    def test_cash_and_debt_split(self, db_session, cashier_user, product, customer):
        sale = sales_service.create_sale(
            cart=cart((product.id, 2)),
            user_id=cashier_user.id,
            customer_id=customer.id,
            payments=[
                PaymentInstruction("cash", Decimal("30.00")),
                PaymentInstruction("debt", Decimal("70.00")),
            ],
        ).sale

        assert sale.amount_paid == Decimal("100.00")
        assert sale.payment_status == "paid"
        assert customer.debt_amount == Decimal("70.00")

    def test_cannot_give_method_and_split(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="not both"):
            sales_service.create_sale(
                cart=cart((product.id, 1)),
                user_id=cashier_user.id,
                payment_method="cash",
                payments=[PaymentInstruction("cash", Decimal("50.00"))],
            )


# =============================================================================
# DEBT
# =============================================================================


class TestDebtSale:

    def test_debt_sale_increases_customer_debt(self, db_session, cashier_user, make_product, customer):
        item = make_product(name="Ghee", price="200.00", stock="5")

        sale = sales_service.create_sale(
            cart=cart((item.id, 1)),
            user_id=cashier_user.id,
            payment_method="debt",
            customer_id=customer.id,
        ).sale

        assert customer.debt_amount == Decimal("200.00")
        assert customer.last_purchase_amount == Decimal("200.00")
        assert sale.customer_id == customer.id

        ledger = db_session.query(CustomerDebtTransaction).filter_by(customer_id=customer.id).one()
        assert ledger.kind == "SALE_DEBT"
        assert ledger.amount == Decimal("200.00")
        assert ledger.balance_after == Decimal("200.00")
        assert ledger.sale_id == sale.id

    def test_debt_requires_customer(self, db_session, cashier_user, product):
        with pytest.raises(ValidationError, match="customer"):
            sales_service.create_sale(cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="debt")
        assert db.session.get(Product, product.id).stock == Decimal("10")

    def test_blocked_customer_cannot_take_debt(self, db_session, cashier_user, product, customer):
        customer.is_blocked = True
        db_session.commit()

        with pytest.raises(ValidationError, match="blocked"):
            sales_service.create_sale(
                cart=cart((product.id, 1)),
                user_id=cashier_user.id,
                payment_method="debt",
                customer_id=customer.id,
            )
        assert customer.debt_amount == Decimal("0")
        assert db.session.get(Product, product.id).stock == Decimal("10")

    def test_blocked_customer_can_still_pay_cash(self, db_session, cashier_user, product, customer):
        customer.is_blocked = True
        db_session.commit()

        sale = sales_service.create_sale(
            cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cash", customer_id=customer.id,
        ).sale
        assert sale.payment_status == "paid"


# =============================================================================
# UPI
# =============================================================================


class TestUpiSale:

    def test_upi_sale_is_pending_with_qr(self, db_session, cashier_user, product):
        result = sales_service.create_sale(
            cart=cart((product.id, 2)), user_id=cashier_user.id, payment_method="upi",
        )

        sale = result.sale
        assert sale.payment_status == "unpaid"
        assert sale.amount_paid == Decimal("0")
        assert db.session.get(Product, product.id).stock == Decimal("8")

        payment = db_session.query(Payment).filter_by(sale_id=sale.id).one()
        assert payment.status == "pending"
        assert payment.reference

        qr = result.payment_qr
        assert qr["payment_id"] == payment.id
        assert qr["amount"] == "100.00"
        assert qr["upi_link"].startswith("upi://pay?pa=corner-store@okbank")
        assert f"tr={payment.reference}" in qr["upi_link"]
        assert qr["qr_code"].startswith("data:image/png;base64,")

    def test_qr_failure_keeps_sale_and_logs_reconciliation(self, db_session, cashier_user, product, monkeypatch, caplog):
        def broken(payment):
            raise QRGenerationError("encoder unavailable")

        monkeypatch.setattr(payment_service, "generate_payment_qr", broken)

        result = sales_service.create_sale(
            cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="upi",
        )

        assert result.payment_qr is None
        assert db_session.query(Sale).count() == 1
        assert db_session.query(Payment).one().status == "pending"
        assert "RECONCILIATION" in caplog.text

    def test_upi_requires_configured_id(self, app, db_session, cashier_user, product, monkeypatch):
        monkeypatch.setitem(app.config, "UPI_ID", None)

        with pytest.raises(ValidationError, match="not configured"):
            sales_service.create_sale(cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="upi")
        assert db.session.get(Product, product.id).stock == Decimal("10")


class TestListSales:

    def test_filters_by_customer_and_type(self, db_session, cashier_user, product, customer):
        sales_service.create_sale(cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cash")
        sales_service.create_sale(
            cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cash", customer_id=customer.id,
        )
        sales_service.create_sale(
            cart=cart((product.id, 1)), user_id=cashier_user.id, payment_method="cash", sale_type="hotel",
        )

        assert sales_service.list_sales()["count"] == 3
        assert sales_service.list_sales(customer_id=customer.id)["count"] == 1
        assert sales_service.list_sales(sale_type="hotel")["count"] == 1

        page = sales_service.list_sales(page=1, per_page=2)
        assert page["count"] == 2
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["has_next"] is True
