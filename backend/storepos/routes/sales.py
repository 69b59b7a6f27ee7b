# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""Sales API routes with permission enforcement"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ServiceError, ValidationError
from ..services import sales_service
from ..time_utils import parse_iso_date
from ..validation import parse_cart, parse_optional_id, parse_split_payments


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _parse_date_arg(name: str):
    try:
        return parse_iso_date(request.args.get(name))
    except ValueError:
        raise ValidationError(f"{name} must be YYYY-MM-DD")


@sales_bp.post("")
@require_auth
@require_permission("CREATE_SALE")
def create_sale_route():
    """
    Check out a cart.

    Body: {items: [{productId, quantity}], paymentMethod | payments,
           customerId?, saleType?, finalAmount?, discountReason?}

    Requires: CREATE_SALE permission
    Available to: admin, manager, cashier
    """
    try:
        data = request.get_json(silent=True) or {}

        result = sales_service.create_sale(
            cart=parse_cart(data.get("items")),
            user_id=g.current_user.id,
            payment_method=data.get("paymentMethod"),
            payments=parse_split_payments(data.get("payments")),
            customer_id=parse_optional_id(data.get("customerId"), "customerId"),
            sale_type=data.get("saleType"),
            final_amount=data.get("finalAmount"),
            discount_reason=data.get("discountReason"),
        )

        return jsonify({"sale": result.sale.to_dict(), "paymentQR": result.payment_qr}), 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.put("/<int:sale_id>")
@require_auth
@require_permission("EDIT_SALE")
def edit_sale_route(sale_id: int):
    """
    Replace a sale's items, and its payments when paymentMethod/payments is sent.

    Requires: EDIT_SALE permission
    Available to: admin, manager
    """
    try:
        data = request.get_json(silent=True) or {}

        kwargs = {}
        if "customerId" in data:
            kwargs["customer_id"] = parse_optional_id(data.get("customerId"), "customerId")

        result = sales_service.edit_sale(
            sale_id,
            cart=parse_cart(data.get("items")),
            user_id=g.current_user.id,
            payment_method=data.get("paymentMethod"),
            payments=parse_split_payments(data.get("payments")),
            final_amount=data.get("finalAmount"),
            discount_reason=data.get("discountReason"),
            **kwargs,
        )

        return jsonify({"sale": result.sale.to_dict(), "paymentQR": result.payment_qr}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to edit sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
@require_auth
@require_permission("VIEW_SALES")
def list_sales_route():
    """
    Query params: from, to (YYYY-MM-DD, inclusive), customer_id, sale_type,
    payment_status, page, per_page
    """
    try:
        result = sales_service.list_sales(
            date_from=_parse_date_arg("from"),
            date_to=_parse_date_arg("to"),
            customer_id=request.args.get("customer_id", type=int),
            sale_type=request.args.get("sale_type"),
            payment_status=request.args.get("payment_status"),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
        return jsonify(result), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_permission("VIEW_SALES")
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"sale": sale.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
