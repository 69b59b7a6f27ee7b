# backend/storepos/services/products_service.py
"""
Product catalog service.

Stock is deliberately absent from PRODUCT_MUTABLE_FIELDS: an initial stock
level can be given on create, afterwards it only moves via stock_service.
"""
from __future__ import annotations

from decimal import Decimal

from sqlalchemy import or_

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product
from ..models.catalog import UNIT_PIECE, UNIT_TYPES
from .pagination import paginate

PRODUCT_MUTABLE_FIELDS = {
    "name", "barcode", "category", "retail_price", "wholesale_price",
    "unit_type", "low_stock_threshold", "active",
}


def enforce_rules_product(patch: dict, product: Product | None = None) -> None:
    """Business rules that column metadata alone does not capture."""
    unit_type = patch.get("unit_type", product.unit_type if product else UNIT_PIECE)
    if unit_type not in UNIT_TYPES:
        raise ValidationError(f"unit_type must be one of {list(UNIT_TYPES)}")

    if "retail_price" in patch and patch["retail_price"] is not None:
        if patch["retail_price"] != patch["retail_price"].quantize(Decimal("0.01")):
            raise ValidationError("retail_price supports at most 2 decimal places")

    if patch.get("wholesale_price") is not None:
        if patch["wholesale_price"] != patch["wholesale_price"].quantize(Decimal("0.01")):
            raise ValidationError("wholesale_price supports at most 2 decimal places")

    if "stock" in patch:
        stock = patch["stock"]
        if unit_type == UNIT_PIECE and stock != stock.to_integral_value():
            raise ValidationError("stock must be a whole number for piece-based products")

    if "low_stock_threshold" in patch and patch["low_stock_threshold"] < 0:
        raise ValidationError("low_stock_threshold must be >= 0")


def _ensure_unique_barcode(barcode: str | None, exclude_id: int | None = None) -> None:
    if not barcode:
        return
    query = db.session.query(Product).filter(Product.barcode == barcode)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"Barcode {barcode} is already assigned to another product")


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.is_deleted:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def get_product_by_barcode(barcode: str) -> Product:
    product = (
        db.session.query(Product)
        .filter(Product.barcode == barcode, Product.is_deleted.is_(False))
        .first()
    )
    if product is None:
        raise NotFoundError(f"No product with barcode {barcode}")
    return product


def list_products(
    *,
    search: str | None = None,
    include_inactive: bool = True,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    base_query = db.session.query(Product).filter(Product.is_deleted.is_(False))
    if not include_inactive:
        base_query = base_query.filter(Product.active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        base_query = base_query.filter(or_(Product.name.ilike(like), Product.barcode.ilike(like)))
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())
    return paginate(base_query, page, per_page, lambda p: p.to_dict())


def create_product(patch: dict) -> Product:
    enforce_rules_product(patch)
    _ensure_unique_barcode(patch.get("barcode"))

    product = Product(**patch)
    if product.stock is None:
        product.stock = Decimal("0")
    db.session.add(product)
    db.session.commit()
    return product


def update_product(product_id: int, patch: dict) -> Product:
    product = get_product(product_id)
    enforce_rules_product(patch, product)
    if "barcode" in patch:
        _ensure_unique_barcode(patch["barcode"], exclude_id=product.id)

    for k, v in patch.items():
        if k in PRODUCT_MUTABLE_FIELDS:
            setattr(product, k, v)
    db.session.commit()
    return product


def toggle_product(product_id: int) -> Product:
    product = get_product(product_id)
    product.active = not product.active
    db.session.commit()
    return product


def soft_delete_product(product_id: int) -> Product:
    """Hide a product from the catalog; sale history keeps referencing it."""
    product = get_product(product_id)
    product.is_deleted = True
    product.active = False
    db.session.commit()
    return product
