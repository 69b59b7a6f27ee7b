# Overview: Service-layer operations for sales; the checkout transaction and edit-sale reconciliation.

"""
Sale Transaction Engine

WHY: A checkout touches stock, the sale document, payments and customer debt.
All of it commits together or not at all: a sale that fails half way (say the
third cart line is out of stock) leaves no stock decremented and no sale row.

FLOW (create_sale):
1. Validate the request without touching the database
2. In one transaction: decrement stock line by line (conditional UPDATE),
   price the lines, write Sale + SaleItems, record payments, move debt
3. After commit: build the UPI QR for a pending UPI payment

PRICING:
- retail and hotel sales use Product.retail_price
- wholesale sales use Product.wholesale_price when set, else retail_price
- SaleItem.price is a snapshot and never changes afterwards
- a negotiated wholesale finalAmount is a discount; total_amount always
  equals the sum of line subtotals
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, Product, Sale, SaleItem
from ..models.customers import DEBT_KIND_SALE_EDIT
from ..models.sales import (
    PAYMENT_COMPLETED,
    PAYMENT_DEBT,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_UPI,
    PAYMENT_VOIDED,
    SALE_TYPE_WHOLESALE,
)
from ..time_utils import end_of_day, today
from ..validation import (
    CartLine,
    PaymentInstruction,
    normalize_payment_method,
    normalize_sale_type,
    parse_amount,
    parse_cart,
    quantize_money,
)
from . import customer_service, payment_service
from .concurrency import lock_for_update, run_with_retry
from .config_service import require_upi_settings
from .pagination import paginate
from .stock_service import adjust_stock, ensure_unit_quantity, get_product_for_update


DEFAULT_DISCOUNT_REASON = "Negotiated wholesale price"

_UNCHANGED = object()


@dataclass
class SaleResult:
    sale: Sale
    payment_qr: dict | None = None


# =============================================================================
# REQUEST NORMALIZATION (no database access)
# =============================================================================

def _coerce_cart(cart) -> list[CartLine]:
    if isinstance(cart, list) and cart and all(isinstance(line, CartLine) for line in cart):
        return list(cart)
    return parse_cart(cart)


def _resolve_plan(payment_method, payments) -> list[PaymentInstruction]:
    """
    Either a single method paying the whole amount due or an explicit split.
    """
    if payments is not None and payment_method is not None:
        raise ValidationError("Provide either paymentMethod or payments, not both")
    if payments is None:
        if payment_method is None:
            raise ValidationError("paymentMethod is required")
        return [PaymentInstruction(method=normalize_payment_method(payment_method))]
    if not payments:
        raise ValidationError("payments must be a non-empty list")
    for p in payments:
        if not isinstance(p, PaymentInstruction) or p.amount is None:
            raise ValidationError("Each split payment needs a method and an amount")
    return list(payments)


def _check_plan(plan: list[PaymentInstruction], customer_id: int | None) -> None:
    methods = [p.method for p in plan]
    if PAYMENT_DEBT in methods and customer_id is None:
        raise ValidationError("Please select a customer for debt payments")
    if methods.count(PAYMENT_UPI) > 1:
        raise ValidationError("Only one UPI payment per sale is supported")
    if PAYMENT_UPI in methods:
        require_upi_settings()


def _parse_final_amount(final_amount, sale_type: str) -> Decimal | None:
    if final_amount is None:
        return None
    if sale_type != SALE_TYPE_WHOLESALE:
        raise ValidationError("A final amount can only be set on wholesale sales")
    return parse_amount(final_amount, "finalAmount", allow_zero=True)


# =============================================================================
# PRICING
# =============================================================================

def unit_price(product: Product, sale_type: str) -> Decimal:
    if sale_type == SALE_TYPE_WHOLESALE and product.wholesale_price is not None:
        return product.wholesale_price
    return product.retail_price


def _apply_discount(sale: Sale, final_amount: Decimal | None, reason: str | None) -> None:
    if final_amount is None:
        sale.discount_amount = Decimal("0.00")
        sale.discount_reason = None
    else:
        if final_amount > sale.total_amount:
            raise ValidationError(
                f"Final amount {final_amount:.2f} cannot exceed the sale total {sale.total_amount:.2f}",
                details={"total_amount": f"{sale.total_amount:.2f}"},
            )
        sale.discount_amount = sale.total_amount - final_amount
        sale.discount_reason = reason or DEFAULT_DISCOUNT_REASON
    sale.amount_due = sale.total_amount - sale.discount_amount


def _record_payments(
    sale: Sale,
    plan: list[PaymentInstruction],
    *,
    user_id: int,
    customer: Customer | None,
    apply_debt: bool = True,
) -> list:
    """
    Create the plan's payments against sale.amount_due. A split must add up
    to the amount due exactly.
    """
    if len(plan) == 1 and plan[0].amount is None:
        tenders = [(plan[0].method, sale.amount_due)]
    else:
        split_total = sum((p.amount for p in plan), Decimal("0.00"))
        if split_total != sale.amount_due:
            raise ValidationError(
                f"Payments total {split_total:.2f} does not match amount due {sale.amount_due:.2f}",
                details={"payments_total": f"{split_total:.2f}", "amount_due": f"{sale.amount_due:.2f}"},
            )
        tenders = [(p.method, p.amount) for p in plan]

    if customer is not None and customer.is_blocked and any(m == PAYMENT_DEBT for m, _ in tenders):
        raise ValidationError(f"{customer.display_name} is blocked from buying on credit")

    created = []
    for method, amount in tenders:
        if amount <= 0:
            continue
        created.append(payment_service.create_payment(
            sale,
            method=method,
            amount=amount,
            user_id=user_id,
            customer=customer,
            apply_debt=apply_debt,
        ))
    return created


def _issue_qr(payments: list) -> dict | None:
    for payment in payments:
        if payment.payment_method == PAYMENT_UPI and payment.status == PAYMENT_PENDING:
            return payment_service.issue_payment_qr(payment)
    return None


# =============================================================================
# CREATE
# =============================================================================

def create_sale(
    *,
    cart,
    user_id: int,
    payment_method: str | None = None,
    payments: list[PaymentInstruction] | None = None,
    customer_id: int | None = None,
    sale_type: str | None = "retail",
    final_amount=None,
    discount_reason: str | None = None,
) -> SaleResult:
    """
    Check out a cart. Raises ValidationError / NotFoundError /
    InsufficientStockError with nothing persisted.
    """
    lines = _coerce_cart(cart)
    sale_type = normalize_sale_type(sale_type)
    plan = _resolve_plan(payment_method, payments)
    _check_plan(plan, customer_id)
    final = _parse_final_amount(final_amount, sale_type)

    def _op():
        customer = customer_service.get_customer(customer_id, lock=True) if customer_id is not None else None

        priced = []
        total = Decimal("0.00")
        for line in lines:
            product = get_product_for_update(line.product_id, for_sale=True)
            ensure_unit_quantity(product, line.quantity)
            adjust_stock(product, -line.quantity)

            price = unit_price(product, sale_type)
            subtotal = quantize_money(price * line.quantity)
            total += subtotal
            priced.append((product, line.quantity, price, subtotal))

        sale = Sale(
            user_id=user_id,
            customer_id=customer.id if customer else None,
            sale_type=sale_type,
            sale_date=today(),
            total_amount=total,
        )
        _apply_discount(sale, final, discount_reason)
        db.session.add(sale)
        db.session.flush()

        for product, quantity, price, subtotal in priced:
            db.session.add(SaleItem(
                sale_id=sale.id,
                product_id=product.id,
                quantity=quantity,
                price=price,
                subtotal=subtotal,
            ))

        created = _record_payments(sale, plan, user_id=user_id, customer=customer)

        if customer is not None:
            customer_service.record_purchase(customer, sale.amount_due)

        payment_service.update_sale_payment_status(sale)
        db.session.commit()
        return sale, created

    sale, created = run_with_retry(_op)
    return SaleResult(sale=sale, payment_qr=_issue_qr(created))


# =============================================================================
# EDIT
# =============================================================================

def _aggregate(lines) -> dict[int, Decimal]:
    """product_id -> total quantity, in first-seen order."""
    totals: dict[int, Decimal] = {}
    for product_id, quantity in lines:
        totals[product_id] = totals.get(product_id, Decimal("0")) + quantity
    return totals


def _reconcile_stock(sale: Sale, lines: list[CartLine]) -> dict[int, Product]:
    """
    Apply the per-product quantity difference between the stored items and
    the new cart. Returns the products of the new cart by id.
    """
    old = _aggregate((item.product_id, item.quantity) for item in sale.items)
    new = _aggregate((line.product_id, line.quantity) for line in lines)

    products: dict[int, Product] = {}
    for product_id, quantity in new.items():
        delta = quantity - old.get(product_id, Decimal("0"))
        if delta > 0:
            product = get_product_for_update(product_id, for_sale=True)
        else:
            product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).one()
        ensure_unit_quantity(product, quantity)
        adjust_stock(product, -delta)
        products[product_id] = product

    for product_id, quantity in old.items():
        if product_id in new:
            continue
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).one()
        adjust_stock(product, quantity)

    return products


def _retire_payments(sale: Sale, reason: str) -> tuple[Decimal, list]:
    """
    Close the sale's live payments: PENDING -> FAILED, COMPLETED -> VOIDED.
    Returns the debt amount that had been charged and the closed payments.
    """
    debt = Decimal("0.00")
    closed = []
    for payment in sale.payments:
        if payment.status == PAYMENT_PENDING:
            payment_service.close_payment(payment, PAYMENT_FAILED, reason)
        elif payment.status == PAYMENT_COMPLETED:
            if payment.payment_method == PAYMENT_DEBT:
                debt += payment.amount
            payment_service.close_payment(payment, PAYMENT_VOIDED, reason)
        else:
            continue
        closed.append(payment)
    return debt, closed


def _move_debt(customer: Customer | None, delta: Decimal, *, sale_id: int, user_id: int) -> None:
    if customer is None or delta == 0:
        return
    note = f"Sale {sale_id} edited"
    if delta > 0:
        customer_service.increase_debt(customer, delta, kind=DEBT_KIND_SALE_EDIT, user_id=user_id, sale_id=sale_id, note=note)
    else:
        customer_service.decrease_debt(customer, -delta, kind=DEBT_KIND_SALE_EDIT, user_id=user_id, sale_id=sale_id, note=note)


def edit_sale(
    sale_id: int,
    *,
    cart,
    user_id: int,
    payment_method: str | None = None,
    payments: list[PaymentInstruction] | None = None,
    customer_id=_UNCHANGED,
    final_amount=None,
    discount_reason: str | None = None,
) -> SaleResult:
    """
    Replace a sale's items (and optionally its payments) in one transaction.

    - Stock moves by the per-product difference only
    - Products already on the sale keep their snapshot price; new products
      are priced from the catalog now
    - A supplied payment set replaces the old one; the customer's debt moves
      by the net change of debt-method amounts
    - Without new payments the old ones stay and the payment status is
      recomputed against the new amount due
    - A negotiated final amount applies only if sent again with the edit
    """
    lines = _coerce_cart(cart)
    replace_payments = payment_method is not None or payments is not None
    plan = _resolve_plan(payment_method, payments) if replace_payments else None

    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})

        old_customer = sale.customer
        new_customer_id = sale.customer_id if customer_id is _UNCHANGED else customer_id
        if plan is not None:
            _check_plan(plan, new_customer_id)
        final = _parse_final_amount(final_amount, sale.sale_type)

        new_customer = (
            customer_service.get_customer(new_customer_id, lock=True)
            if new_customer_id is not None else None
        )
        customer_changed = (old_customer.id if old_customer else None) != new_customer_id
        if customer_changed and plan is None and any(
            p.payment_method == PAYMENT_DEBT and p.status == PAYMENT_COMPLETED for p in sale.payments
        ):
            raise ValidationError("Changing the customer of a sale paid on credit requires new payments")

        snapshot_prices = {}
        for item in sale.items:
            snapshot_prices.setdefault(item.product_id, item.price)

        products = _reconcile_stock(sale, lines)

        sale.items.clear()
        total = Decimal("0.00")
        for line in lines:
            price = snapshot_prices.get(line.product_id)
            if price is None:
                price = unit_price(products[line.product_id], sale.sale_type)
            subtotal = quantize_money(price * line.quantity)
            total += subtotal
            sale.items.append(SaleItem(
                product_id=line.product_id,
                quantity=line.quantity,
                price=price,
                subtotal=subtotal,
            ))

        sale.total_amount = total
        _apply_discount(sale, final, discount_reason)
        sale.customer_id = new_customer.id if new_customer else None
        sale.edited_by_user_id = user_id

        created = []
        if plan is not None:
            old_debt, _ = _retire_payments(sale, f"Replaced by edit of sale {sale.id}")
            created = _record_payments(sale, plan, user_id=user_id, customer=new_customer, apply_debt=False)
            new_debt = sum(
                (p.amount for p in created if p.payment_method == PAYMENT_DEBT), Decimal("0.00")
            )
            if customer_changed:
                _move_debt(old_customer, -old_debt, sale_id=sale.id, user_id=user_id)
                _move_debt(new_customer, new_debt, sale_id=sale.id, user_id=user_id)
            else:
                _move_debt(new_customer, new_debt - old_debt, sale_id=sale.id, user_id=user_id)

        payment_service.update_sale_payment_status(sale)
        db.session.commit()
        return sale, created

    sale, created = run_with_retry(_op)
    return SaleResult(sale=sale, payment_qr=_issue_qr(created))


# =============================================================================
# QUERIES
# =============================================================================

def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def list_sales(
    *,
    date_from=None,
    date_to=None,
    customer_id: int | None = None,
    sale_type: str | None = None,
    payment_status: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Newest first. date_from / date_to are inclusive dates."""
    query = db.session.query(Sale)
    if date_from is not None:
        query = query.filter(Sale.created_at >= datetime.combine(date_from, time.min))
    if date_to is not None:
        query = query.filter(Sale.created_at < end_of_day(date_to))
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if sale_type:
        query = query.filter(Sale.sale_type == normalize_sale_type(sale_type))
    if payment_status:
        query = query.filter(Sale.payment_status == payment_status)
    query = query.order_by(Sale.created_at.desc(), Sale.id.desc())
    return paginate(query, page, per_page, lambda s: s.to_dict())
