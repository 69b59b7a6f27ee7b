from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, to_iso_date


UNIT_PIECE = "piece"
UNIT_WEIGHT = "weight"
UNIT_TYPES = (UNIT_PIECE, UNIT_WEIGHT)


def _money(value) -> str | None:
    return None if value is None else f"{value:.2f}"


def _qty(value) -> str | None:
    return None if value is None else f"{value:.3f}"


class Product(db.Model):
    """
    Product master data.

    STOCK INVARIANT: stock >= 0 at all times. stock is only changed through
    stock_service.adjust_stock (conditional UPDATE), never read-modify-written.

    Weight-based products carry fractional stock (kg with gram precision);
    piece products only ever move in whole units.

    Products are never physically deleted: is_deleted hides them from the
    catalog while historical sale items keep their foreign key.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_active_deleted", "active", "is_deleted"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    category = db.Column(db.String(64), nullable=True)

    retail_price = db.Column(db.Numeric(12, 2), nullable=False)
    wholesale_price = db.Column(db.Numeric(12, 2), nullable=True)

    stock = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    unit_type = db.Column(db.String(16), nullable=False, default=UNIT_PIECE)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=10)

    active = db.Column(db.Boolean, nullable=False, default=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_low_stock(self) -> bool:
        return self.stock is not None and self.stock <= self.low_stock_threshold

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "barcode": self.barcode,
            "category": self.category,
            "retail_price": _money(self.retail_price),
            "wholesale_price": _money(self.wholesale_price),
            "stock": _qty(self.stock),
            "unit_type": self.unit_type,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "active": self.active,
            "is_deleted": self.is_deleted,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockEntry(db.Model):
    """
    Inbound stock received from a supplier.

    Each entry increments Product.stock in the same transaction it is written.
    """
    __tablename__ = "stock_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    supplier_name = db.Column(db.String(128), nullable=True)

    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    purchase_price = db.Column(db.Numeric(12, 2), nullable=True)

    batch_number = db.Column(db.String(64), nullable=True)
    received_date = db.Column(db.Date, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "supplier_name": self.supplier_name,
            "quantity": _qty(self.quantity),
            "purchase_price": _money(self.purchase_price),
            "batch_number": self.batch_number,
            "received_date": to_iso_date(self.received_date),
            "expiry_date": to_iso_date(self.expiry_date),
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
