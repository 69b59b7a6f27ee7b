# Overview: Service-layer operations for stock levels; the only code that mutates Product.stock.

"""
Stock Invariants (authoritative)

- Product.stock >= 0 at all times.
- Every mutation goes through adjust_stock(), which issues a single
  conditional UPDATE:

      UPDATE products SET stock = stock + :delta
      WHERE id = :id [AND stock >= -:delta when delta < 0]

  and checks the affected row count. Two concurrent sales of the same product
  can therefore never both pass the stock check for more than is on hand,
  with or without SELECT ... FOR UPDATE support in the database.
- Decrements happen only from the sale engine; increments come from stock
  entries, manual restocks and sale edits that return goods.
- adjust_stock() never commits. The caller owns the transaction.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import update

from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, StockEntry
from ..models.catalog import UNIT_PIECE
from ..time_utils import today
from .concurrency import lock_for_update, run_with_retry


def get_product_for_update(product_id: int, *, for_sale: bool = False) -> Product:
    """Load a live (not soft-deleted) product, locked where supported."""
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None or product.is_deleted:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    if for_sale and not product.active:
        raise ValidationError(
            f"{product.name} is inactive and cannot be sold",
            details={"product_id": product.id},
        )
    return product


def ensure_unit_quantity(product: Product, quantity: Decimal) -> None:
    """Piece products only move in whole units."""
    if product.unit_type == UNIT_PIECE and quantity != quantity.to_integral_value():
        raise ValidationError(
            f"Quantity for {product.name} must be a whole number",
            details={"product_id": product.id, "quantity": str(quantity)},
        )


def adjust_stock(product: Product, delta: Decimal) -> Product:
    """
    Apply a signed stock change. Raises InsufficientStockError (and changes
    nothing) when a decrement would take stock below zero.
    """
    if delta == 0:
        return product

    stmt = update(Product).where(Product.id == product.id)
    if delta < 0:
        stmt = stmt.where(Product.stock >= -delta)
    stmt = stmt.values(stock=Product.stock + delta).execution_options(synchronize_session=False)

    result = db.session.execute(stmt)

    # Reload stock on next access, whatever the outcome
    db.session.expire(product, ["stock"])

    if result.rowcount == 0:
        raise InsufficientStockError(
            product_id=product.id,
            product_name=product.name,
            requested=-delta,
            available=product.stock,
        )
    return product


def restock_product(product_id: int, quantity: Decimal) -> Product:
    """Manual restock (quantity > 0) outside of a supplier stock entry."""
    def _op():
        product = get_product_for_update(product_id)
        ensure_unit_quantity(product, quantity)
        adjust_stock(product, quantity)
        db.session.commit()
        return product

    return run_with_retry(_op)


def receive_stock(
    *,
    product_id: int,
    quantity: Decimal,
    user_id: int | None,
    purchase_price: Decimal | None = None,
    supplier_name: str | None = None,
    batch_number: str | None = None,
    received_date: date | None = None,
    expiry_date: date | None = None,
    note: str | None = None,
) -> StockEntry:
    """Record inbound stock from a supplier and increment the product in one transaction."""
    if expiry_date and received_date and expiry_date < received_date:
        raise ValidationError("expiry_date cannot be before received_date")

    def _op():
        product = get_product_for_update(product_id)
        ensure_unit_quantity(product, quantity)

        entry = StockEntry(
            product_id=product.id,
            supplier_name=supplier_name,
            quantity=quantity,
            purchase_price=purchase_price,
            batch_number=batch_number,
            received_date=received_date or today(),
            expiry_date=expiry_date,
            note=note,
            created_by_user_id=user_id,
        )
        db.session.add(entry)
        adjust_stock(product, quantity)

        db.session.commit()
        return entry

    return run_with_retry(_op)


def list_stock_entries(product_id: int | None = None, limit: int = 100) -> list[StockEntry]:
    query = db.session.query(StockEntry)
    if product_id is not None:
        query = query.filter(StockEntry.product_id == product_id)
    return query.order_by(StockEntry.id.desc()).limit(limit).all()


def list_low_stock_products() -> list[Product]:
    """Live products at or below their low-stock threshold."""
    return (
        db.session.query(Product)
        .filter(
            Product.is_deleted.is_(False),
            Product.stock <= Product.low_stock_threshold,
        )
        .order_by(Product.stock.asc(), Product.name.asc())
        .all()
    )
