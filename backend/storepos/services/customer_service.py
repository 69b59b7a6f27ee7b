# Overview: Service-layer operations for the customer registry and customer debt.

"""
Customer Debt Bookkeeping

debt_amount is shared mutable state: several tills may sell on credit to the
same customer while a manager records a repayment. It is therefore never
read-modify-written. increase_debt / decrease_debt issue conditional UPDATEs
(decrease only WHERE debt_amount >= :amount) and append a
CustomerDebtTransaction carrying the resulting balance.

increase_debt / decrease_debt never commit; they run inside the caller's
sale, edit or payment transaction.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InvalidAmountError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, CustomerDebtTransaction, Sale
from ..models.customers import DEBT_KIND_PAYMENT
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .pagination import paginate


CUSTOMER_MUTABLE_FIELDS = {"name", "phone", "address", "is_blocked"}


def get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter_by(id=customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None or customer.is_deleted:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def _find_by_phone(phone: str) -> Customer | None:
    return db.session.query(Customer).filter_by(phone=phone).first()


def create_customer(patch: dict) -> tuple[Customer, bool]:
    """
    Get-or-create by phone number.

    Returns (customer, created). An existing phone returns the stored
    customer untouched so the till can keep using it.
    """
    phone = (patch.get("phone") or "").strip()
    if not phone:
        raise ValidationError("Phone number is required")

    existing = _find_by_phone(phone)
    if existing is not None:
        return existing, False

    customer = Customer(
        name=patch.get("name"),
        phone=phone,
        address=patch.get("address"),
        debt_amount=Decimal("0"),
    )
    db.session.add(customer)
    try:
        db.session.commit()
    except IntegrityError:
        # Another till registered the same phone between lookup and insert
        db.session.rollback()
        existing = _find_by_phone(phone)
        if existing is None:
            raise
        return existing, False
    return customer, True


def update_customer(customer_id: int, patch: dict) -> Customer:
    customer = get_customer(customer_id)
    if "phone" in patch and patch["phone"] != customer.phone:
        clash = db.session.query(Customer).filter(
            Customer.phone == patch["phone"], Customer.id != customer.id
        ).first()
        if clash is not None:
            raise ConflictError(f"Phone {patch['phone']} belongs to another customer")

    for k, v in patch.items():
        if k in CUSTOMER_MUTABLE_FIELDS:
            setattr(customer, k, v)
    db.session.commit()
    return customer


def list_customers(
    *,
    search: str | None = None,
    with_debt_only: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    base_query = db.session.query(Customer).filter(Customer.is_deleted.is_(False))
    if search:
        like = f"%{search.strip()}%"
        base_query = base_query.filter(or_(Customer.name.ilike(like), Customer.phone.ilike(like)))
    if with_debt_only:
        base_query = base_query.filter(Customer.debt_amount > 0)
    base_query = base_query.order_by(Customer.name.asc(), Customer.id.asc())
    return paginate(base_query, page, per_page, lambda c: c.to_dict())


def get_customer_details(customer_id: int, *, recent_sales: int = 20) -> dict:
    customer = get_customer(customer_id)
    sales = (
        db.session.query(Sale)
        .filter(Sale.customer_id == customer.id)
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .limit(recent_sales)
        .all()
    )
    ledger = (
        db.session.query(CustomerDebtTransaction)
        .filter_by(customer_id=customer.id)
        .order_by(CustomerDebtTransaction.id.desc())
        .limit(50)
        .all()
    )
    return {
        "customer": customer.to_dict(),
        "sales": [s.to_dict() for s in sales],
        "debt_transactions": [t.to_dict() for t in ledger],
    }


def record_purchase(customer: Customer, amount: Decimal) -> None:
    customer.last_purchase_date = utcnow()
    customer.last_purchase_amount = amount


# =============================================================================
# DEBT BOOKKEEPING (no commit)
# =============================================================================

def _append_debt_transaction(
    customer: Customer,
    amount: Decimal,
    *,
    kind: str,
    user_id: int | None,
    sale_id: int | None,
    payment_id: int | None,
    note: str | None,
) -> CustomerDebtTransaction:
    db.session.expire(customer, ["debt_amount"])
    txn = CustomerDebtTransaction(
        customer_id=customer.id,
        sale_id=sale_id,
        payment_id=payment_id,
        kind=kind,
        amount=amount,
        balance_after=customer.debt_amount,
        user_id=user_id,
        note=note,
        occurred_at=utcnow(),
    )
    db.session.add(txn)
    return txn


def increase_debt(
    customer: Customer,
    amount: Decimal,
    *,
    kind: str,
    user_id: int | None,
    sale_id: int | None = None,
    payment_id: int | None = None,
    note: str | None = None,
) -> CustomerDebtTransaction:
    if amount <= 0:
        raise InvalidAmountError("Debt increase must be positive")

    db.session.execute(
        update(Customer)
        .where(Customer.id == customer.id)
        .values(debt_amount=Customer.debt_amount + amount)
        .execution_options(synchronize_session=False)
    )
    return _append_debt_transaction(
        customer, amount,
        kind=kind, user_id=user_id, sale_id=sale_id, payment_id=payment_id, note=note,
    )


def decrease_debt(
    customer: Customer,
    amount: Decimal,
    *,
    kind: str,
    user_id: int | None,
    sale_id: int | None = None,
    payment_id: int | None = None,
    note: str | None = None,
) -> CustomerDebtTransaction:
    """Reduce debt by amount; refuses (InvalidAmountError) to go below zero."""
    if amount <= 0:
        raise InvalidAmountError("Debt payment must be greater than zero")

    result = db.session.execute(
        update(Customer)
        .where(Customer.id == customer.id, Customer.debt_amount >= amount)
        .values(debt_amount=Customer.debt_amount - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.expire(customer, ["debt_amount"])
        raise InvalidAmountError(
            f"Amount {amount:.2f} exceeds outstanding debt {customer.debt_amount:.2f} "
            f"for {customer.display_name}",
            details={
                "customer_id": customer.id,
                "amount": f"{amount:.2f}",
                "debt_amount": f"{customer.debt_amount:.2f}",
            },
        )
    return _append_debt_transaction(
        customer, -amount,
        kind=kind, user_id=user_id, sale_id=sale_id, payment_id=payment_id, note=note,
    )


def apply_debt_payment(customer_id: int, amount: Decimal, user_id: int | None) -> Customer:
    """
    Settle (part of) a customer's existing debt.

    Precondition 0 < amount <= debt_amount; otherwise InvalidAmountError and
    the balance is left unchanged.
    """
    if amount is None or amount <= 0:
        raise InvalidAmountError("Debt payment must be greater than zero")

    def _op():
        customer = get_customer(customer_id, lock=True)
        decrease_debt(
            customer, amount,
            kind=DEBT_KIND_PAYMENT, user_id=user_id, note="Debt payment received",
        )
        db.session.commit()
        return customer

    return run_with_retry(_op)
