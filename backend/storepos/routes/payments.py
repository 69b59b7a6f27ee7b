# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

"""
Payment API Routes

- initiatePayment: add a payment to an existing sale (UPI answers with a QR)
- handlePaymentWebhook: gateway callback, unauthenticated but HMAC-signed
  when PAYMENT_WEBHOOK_SECRET is set
- confirm / fail: cashier's manual resolution of a pending UPI payment
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ServiceError
from ..services import payment_service
from ..validation import normalize_payment_method, parse_amount, parse_id, parse_optional_id


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

SIGNATURE_HEADER = "X-Payment-Signature"


@payments_bp.post("/initiatePayment")
@require_auth
@require_permission("PROCESS_PAYMENT")
def initiate_payment_route():
    """
    Body: {saleId, paymentMethod, amount?, customerId?}
    amount defaults to the sale's outstanding balance.
    """
    try:
        data = request.get_json(silent=True) or {}
        amount = data.get("amount")

        result = payment_service.settle_payment(
            sale_id=parse_id(data.get("saleId"), "saleId"),
            amount=None if amount is None else parse_amount(amount, "amount"),
            payment_method=normalize_payment_method(data.get("paymentMethod")),
            user_id=g.current_user.id,
            customer_id=parse_optional_id(data.get("customerId"), "customerId"),
        )

        return jsonify({
            "payment": result.payment.to_dict(),
            "paymentQR": result.payment_qr,
        }), 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/handlePaymentWebhook")
def payment_webhook_route():
    """
    Body: {paymentId | reference, status, transactionId?, reason?}

    Duplicate deliveries are answered 200 with result "duplicate".
    """
    try:
        outcome = payment_service.handle_payment_webhook(
            request.get_json(silent=True),
            raw_body=request.get_data(),
            signature=request.headers.get(SIGNATURE_HEADER),
        )
        return jsonify({
            "result": outcome["result"],
            "payment": outcome["payment"].to_dict(),
        }), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.put("/<int:payment_id>/confirm")
@require_auth
@require_permission("CONFIRM_PAYMENT")
def confirm_payment_route(payment_id: int):
    """Cashier saw the money arrive. 409 if the payment is no longer pending."""
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.confirm_payment(
            payment_id,
            transaction_id=data.get("transactionId"),
            user_id=g.current_user.id,
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to confirm payment %s", payment_id)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.put("/<int:payment_id>/fail")
@require_auth
@require_permission("CONFIRM_PAYMENT")
def fail_payment_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        payment = payment_service.fail_payment(payment_id, reason=data.get("reason"))
        return jsonify({"payment": payment.to_dict()}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to fail payment %s", payment_id)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/sale/<int:sale_id>")
@require_auth
@require_permission("VIEW_SALES")
def sale_payment_summary_route(sale_id: int):
    try:
        return jsonify(payment_service.get_payment_summary(sale_id)), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@payments_bp.get("/<int:payment_id>")
@require_auth
@require_permission("VIEW_SALES")
def get_payment_route(payment_id: int):
    try:
        return jsonify({"payment": payment_service.get_payment(payment_id).to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
