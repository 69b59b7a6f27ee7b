# Overview: Shop-level configuration (UPI collection account) with environment fallback.

from __future__ import annotations

import re
from dataclasses import dataclass

from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..models import ProjectConfig


UPI_ID_PATTERN = re.compile(r"^[A-Za-z0-9.\-_]{2,256}@[A-Za-z]{2,64}$")


@dataclass(frozen=True)
class UpiSettings:
    upi_id: str
    payee_name: str
    currency: str


def get_upi_settings() -> UpiSettings | None:
    """Stored ProjectConfig wins over the UPI_ID environment setting."""
    row = db.session.query(ProjectConfig).order_by(ProjectConfig.id.asc()).first()
    upi_id = row.upi_id if row else current_app.config.get("UPI_ID")
    if not upi_id:
        return None
    payee_name = (row.payee_name if row and row.payee_name else None) or current_app.config.get("UPI_PAYEE_NAME") or "Store"
    return UpiSettings(
        upi_id=upi_id,
        payee_name=payee_name,
        currency=current_app.config.get("UPI_CURRENCY", "INR"),
    )


def require_upi_settings() -> UpiSettings:
    settings = get_upi_settings()
    if settings is None:
        raise ValidationError("UPI payments are not configured: set a UPI ID first")
    return settings


def set_upi_id(upi_id: str, payee_name: str | None = None, user_id: int | None = None) -> ProjectConfig:
    upi_id = (upi_id or "").strip()
    if not UPI_ID_PATTERN.match(upi_id):
        raise ValidationError(f"Invalid UPI ID: {upi_id or '(empty)'}")

    row = db.session.query(ProjectConfig).order_by(ProjectConfig.id.asc()).first()
    if row is None:
        row = ProjectConfig(upi_id=upi_id)
        db.session.add(row)
    row.upi_id = upi_id
    if payee_name is not None:
        row.payee_name = payee_name.strip() or None
    row.updated_by_user_id = user_id
    db.session.commit()
    return row
