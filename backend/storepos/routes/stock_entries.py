# Overview: Flask API routes for supplier stock entries; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ServiceError, ValidationError
from ..services import stock_service
from ..time_utils import parse_iso_date
from ..validation import parse_amount, parse_id, parse_quantity


stock_entries_bp = Blueprint("stock_entries", __name__, url_prefix="/api/stock-entries")


def _optional_date(data: dict, key: str):
    try:
        return parse_iso_date(data.get(key))
    except (TypeError, AttributeError, ValueError):
        raise ValidationError(f"{key} must be YYYY-MM-DD")


@stock_entries_bp.post("")
@require_auth
@require_permission("RECEIVE_INVENTORY")
def create_stock_entry_route():
    """
    Body: {productId, quantity, purchasePrice?, supplierName?, batchNumber?,
           receivedDate?, expiryDate?, note?}
    """
    try:
        data = request.get_json(silent=True) or {}
        purchase_price = data.get("purchasePrice")

        entry = stock_service.receive_stock(
            product_id=parse_id(data.get("productId"), "productId"),
            quantity=parse_quantity(data.get("quantity")),
            user_id=g.current_user.id,
            purchase_price=None if purchase_price is None else parse_amount(purchase_price, "purchasePrice", allow_zero=True),
            supplier_name=data.get("supplierName"),
            batch_number=data.get("batchNumber"),
            received_date=_optional_date(data, "receivedDate"),
            expiry_date=_optional_date(data, "expiryDate"),
            note=data.get("note"),
        )
        return jsonify({"stock_entry": entry.to_dict()}), 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record stock entry")
        return jsonify({"error": "Internal server error"}), 500


@stock_entries_bp.get("")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_stock_entries_route():
    """Query params: product_id, limit (default 100)"""
    entries = stock_service.list_stock_entries(
        product_id=request.args.get("product_id", type=int),
        limit=min(request.args.get("limit", 100, type=int), 500),
    )
    return jsonify({"items": [e.to_dict() for e in entries], "count": len(entries)}), 200
