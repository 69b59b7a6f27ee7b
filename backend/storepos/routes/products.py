# Overview: Flask API routes for products operations; parses input and returns JSON responses.

"""
Product catalog routes.

SECURITY: All routes require authentication.
- Read operations require VIEW_INVENTORY permission
- Write operations require MANAGE_PRODUCTS permission
- Restocking requires RECEIVE_INVENTORY permission
"""
from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ServiceError
from ..models import Product
from ..services import products_service, stock_service
from ..validation import ModelValidationPolicy, parse_quantity, validate_payload

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "barcode", "category", "retail_price", "wholesale_price",
        "stock", "unit_type", "low_stock_threshold", "active",
    },
    required_on_create={"name", "retail_price"},
)

# Stock only moves through stock entries, restocks and sales after creation
PRODUCT_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=PRODUCT_POLICY.writable_fields - {"stock"},
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_products():
    """
    Query params:
    - search: matches name or barcode
    - active_only: "true" hides inactive products
    - page / per_page: optional pagination (default 20, max 100)
    """
    result = products_service.list_products(
        search=request.args.get("search"),
        include_inactive=request.args.get("active_only", "").lower() != "true",
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@products_bp.get("/low-stock")
@require_auth
@require_permission("VIEW_INVENTORY")
def low_stock_products():
    products = stock_service.list_low_stock_products()
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)}), 200


@products_bp.get("/barcode/<barcode>")
@require_auth
@require_permission("VIEW_INVENTORY")
def product_by_barcode(barcode: str):
    try:
        return jsonify({"product": products_service.get_product_by_barcode(barcode).to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@products_bp.get("/<int:product_id>")
@require_auth
@require_permission("VIEW_INVENTORY")
def get_product(product_id: int):
    try:
        return jsonify({"product": products_service.get_product(product_id).to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@products_bp.post("")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def create_product():
    try:
        patch = validate_payload(
            model=Product,
            payload=request.get_json(silent=True),
            policy=PRODUCT_POLICY,
            partial=False,
        )
        product = products_service.create_product(patch)
        return jsonify({"product": product.to_dict()}), 201
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


def _update(product_id: int):
    try:
        patch = validate_payload(
            model=Product,
            payload=request.get_json(silent=True),
            policy=PRODUCT_UPDATE_POLICY,
            partial=True,
        )
        product = products_service.update_product(product_id, patch)
        return jsonify({"product": product.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update product %s", product_id)
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/<int:product_id>")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def replace_product(product_id: int):
    return _update(product_id)


@products_bp.patch("/<int:product_id>")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def patch_product(product_id: int):
    return _update(product_id)


@products_bp.post("/<int:product_id>/stock")
@require_auth
@require_permission("RECEIVE_INVENTORY")
def restock_product(product_id: int):
    """Body: {quantity}. Adds to the current stock."""
    try:
        data = request.get_json(silent=True) or {}
        product = stock_service.restock_product(product_id, parse_quantity(data.get("quantity")))
        return jsonify({"product": product.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to restock product %s", product_id)
        return jsonify({"error": "Internal server error"}), 500


@products_bp.patch("/<int:product_id>/toggle")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def toggle_product(product_id: int):
    try:
        product = products_service.toggle_product(product_id)
        return jsonify({"product": product.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@products_bp.delete("/<int:product_id>")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def delete_product(product_id: int):
    try:
        product = products_service.soft_delete_product(product_id)
        return jsonify({"product": product.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
