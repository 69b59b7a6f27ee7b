from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


SALE_TYPE_RETAIL = "retail"
SALE_TYPE_WHOLESALE = "wholesale"
SALE_TYPE_HOTEL = "hotel"

PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_UPI = "upi"
PAYMENT_DEBT = "debt"

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_VOIDED = "voided"

SALE_UNPAID = "unpaid"
SALE_PARTIAL = "partial"
SALE_PAID = "paid"
SALE_OVERPAID = "overpaid"


def _money(value) -> str | None:
    return None if value is None else f"{value:.2f}"


class Sale(db.Model):
    """
    One checkout.

    TOTAL INVARIANT: total_amount == sum(item.subtotal). A negotiated wholesale
    price never overwrites it; it is stored as discount_amount/discount_reason
    and amount_due = total_amount - discount_amount is what payments settle.

    Payment tracking (amount_paid, payment_status) is recomputed from the
    completed payments whenever payments change.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_sale_date", "sale_date"),
        db.Index("ix_sales_customer_date", "customer_id", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_reason = db.Column(db.String(255), nullable=True)
    amount_due = db.Column(db.Numeric(12, 2), nullable=False)

    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default=SALE_UNPAID, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    sale_type = db.Column(db.String(16), nullable=False, default=SALE_TYPE_RETAIL)
    sale_date = db.Column(db.Date, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    edited_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )
    payments = db.relationship("Payment", backref="sale", lazy=True, order_by="Payment.id")
    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    user = db.relationship("User", foreign_keys=[user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "total_amount": _money(self.total_amount),
            "discount_amount": _money(self.discount_amount),
            "discount_reason": self.discount_reason,
            "amount_due": _money(self.amount_due),
            "amount_paid": _money(self.amount_paid),
            "payment_status": self.payment_status,
            "user_id": self.user_id,
            "username": self.user.username if self.user else None,
            "customer_id": self.customer_id,
            "customer_name": self.customer.display_name if self.customer else None,
            "sale_type": self.sale_type,
            "sale_date": to_iso_date(self.sale_date),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "edited_by_user_id": self.edited_by_user_id,
            "version_id": self.version_id,
            "items": [item.to_dict() for item in self.items],
            "payments": [payment.to_dict() for payment in self.payments],
        }


class SaleItem(db.Model):
    """
    Line item snapshot: price is the unit price at the time of sale and is
    never refreshed from the catalog.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": f"{self.quantity:.3f}",
            "price": _money(self.price),
            "subtotal": _money(self.subtotal),
        }


class Payment(db.Model):
    """
    Funds (or debt) applied toward a sale. A sale may have several (split tender).

    STATE MACHINE:
    - cash / card / debt are created COMPLETED
    - upi is created PENDING and becomes COMPLETED on confirmation, or FAILED
    - an edit that replaces a sale's payments moves PENDING -> FAILED and
      COMPLETED -> VOIDED
    No transition ever leads back to PENDING. Only COMPLETED payments count
    toward Sale.amount_paid.

    version_id makes concurrent confirmations of the same payment collide
    (StaleDataError) instead of both succeeding.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        db.Index("ix_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)

    # Reference embedded in the UPI QR (tr=...), echoed back by the gateway
    reference = db.Column(db.String(64), nullable=True, unique=True)
    # Gateway / UPI transaction id reported on confirmation
    transaction_id = db.Column(db.String(128), nullable=True)
    status_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "user_id": self.user_id,
            "amount": _money(self.amount),
            "payment_method": self.payment_method,
            "status": self.status,
            "reference": self.reference,
            "transaction_id": self.transaction_id,
            "status_reason": self.status_reason,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "closed_at": to_utc_z(self.closed_at),
        }
