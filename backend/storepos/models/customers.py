from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


DEBT_KIND_SALE = "SALE_DEBT"
DEBT_KIND_PAYMENT = "DEBT_PAYMENT"
DEBT_KIND_SALE_EDIT = "SALE_EDIT"


class Customer(db.Model):
    """
    Customer registry entry, keyed by phone number.

    DEBT INVARIANT: debt_amount >= 0. It only changes through a debt-method
    payment on a sale (increase) or an explicit debt payment (decrease), and
    every change is mirrored by a CustomerDebtTransaction row.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.CheckConstraint("debt_amount >= 0", name="ck_customers_debt_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=True)
    phone = db.Column(db.String(32), nullable=False, unique=True, index=True)
    address = db.Column(db.Text, nullable=True)

    debt_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    last_purchase_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_purchase_amount = db.Column(db.Numeric(12, 2), nullable=True)

    is_blocked = db.Column(db.Boolean, nullable=False, default=False)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    @property
    def display_name(self) -> str:
        return self.name or self.phone

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "debt_amount": f"{self.debt_amount:.2f}" if self.debt_amount is not None else "0.00",
            "last_purchase_date": to_utc_z(self.last_purchase_date),
            "last_purchase_amount": (
                f"{self.last_purchase_amount:.2f}" if self.last_purchase_amount is not None else None
            ),
            "is_blocked": self.is_blocked,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CustomerDebtTransaction(db.Model):
    """
    Append-only ledger of customer debt changes.

    WHY: debt_amount is a denormalized balance; the ledger is what an operator
    reads when reconciling it by hand. amount is signed (+ owed, - paid).

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "customer_debt_transactions"
    __table_args__ = (
        db.Index("ix_debt_txns_customer_occurred", "customer_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)

    kind = db.Column(db.String(16), nullable=False)  # SALE_DEBT, DEBT_PAYMENT, SALE_EDIT
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    balance_after = db.Column(db.Numeric(12, 2), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("debt_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "payment_id": self.payment_id,
            "kind": self.kind,
            "amount": f"{self.amount:.2f}",
            "balance_after": f"{self.balance_after:.2f}",
            "user_id": self.user_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
