# Overview: Flask API routes for customers operations; parses input and returns JSON responses.

"""
Customer registry and debt routes.

Customers are identified by phone number: POST /api/customers returns the
existing record (200) when the phone is already known, otherwise creates
one (201).
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ServiceError
from ..models import Customer
from ..services import customer_service
from ..validation import ModelValidationPolicy, parse_signed_amount, validate_payload


CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "address", "is_blocked"},
    required_on_create={"phone"},
)

customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("")
@require_auth
@require_permission("VIEW_CUSTOMERS")
def list_customers_route():
    """
    Query params: search (name or phone), with_debt ("true"), page, per_page
    """
    result = customer_service.list_customers(
        search=request.args.get("search"),
        with_debt_only=request.args.get("with_debt", "").lower() == "true",
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return jsonify(result), 200


@customers_bp.post("")
@require_auth
@require_permission("MANAGE_CUSTOMERS")
def create_customer_route():
    try:
        patch = validate_payload(
            model=Customer,
            payload=request.get_json(silent=True),
            policy=CUSTOMER_POLICY,
            partial=False,
        )
        customer, created = customer_service.create_customer(patch)
        return jsonify({"customer": customer.to_dict(), "created": created}), 201 if created else 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>")
@require_auth
@require_permission("VIEW_CUSTOMERS")
def get_customer_route(customer_id: int):
    """Customer with recent sales and debt history."""
    try:
        return jsonify(customer_service.get_customer_details(customer_id)), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.patch("/<int:customer_id>")
@require_auth
@require_permission("MANAGE_CUSTOMERS")
def update_customer_route(customer_id: int):
    try:
        patch = validate_payload(
            model=Customer,
            payload=request.get_json(silent=True),
            policy=CUSTOMER_POLICY,
            partial=True,
        )
        customer = customer_service.update_customer(customer_id, patch)
        return jsonify({"customer": customer.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update customer %s", customer_id)
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.put("/debt/<int:customer_id>")
@require_auth
@require_permission("RECORD_DEBT_PAYMENT")
def debt_payment_route(customer_id: int):
    """
    Body: {debtAmount}. Reduces the customer's outstanding debt.
    400 if the amount is not positive or exceeds the debt.
    """
    try:
        data = request.get_json(silent=True) or {}
        customer = customer_service.apply_debt_payment(
            customer_id,
            parse_signed_amount(data.get("debtAmount"), "debtAmount"),
            user_id=g.current_user.id,
        )
        return jsonify({"customer": customer.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record debt payment for customer %s", customer_id)
        return jsonify({"error": "Internal server error"}), 500
