# Overview: Flask API routes for shop configuration; parses input and returns JSON responses.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import ServiceError
from ..services import config_service


config_bp = Blueprint("config", __name__, url_prefix="/api/config")


@config_bp.get("/upi-id")
@require_auth
def get_upi_id_route():
    """Any signed-in till may read the UPI ID (it is printed on every QR)."""
    settings = config_service.get_upi_settings()
    if settings is None:
        return jsonify({"upi_id": None, "payee_name": None, "configured": False}), 200
    return jsonify({
        "upi_id": settings.upi_id,
        "payee_name": settings.payee_name,
        "configured": True,
    }), 200


@config_bp.post("/upi-id")
@require_auth
@require_permission("MANAGE_SETTINGS")
def set_upi_id_route():
    """Body: {upiId, payeeName?}"""
    try:
        data = request.get_json(silent=True) or {}
        row = config_service.set_upi_id(
            data.get("upiId"),
            payee_name=data.get("payeeName"),
            user_id=g.current_user.id,
        )
        return jsonify({"config": row.to_dict()}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
