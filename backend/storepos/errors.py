# Overview: Service-layer exception taxonomy shared by the sale and payment engines.

"""
Every error a service raises for a client-visible reason derives from
ServiceError. Routes translate them to JSON as {"error": message, "details": ...}
with the class' HTTP status. Anything else reaching a route is a 500.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base for errors surfaced verbatim to the API caller."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    """400-level input problem (empty cart, bad quantity, missing field)."""


class ConflictError(ServiceError):
    """409-level business rule conflict (e.g., duplicate barcode or phone)."""
    status_code = 409


class NotFoundError(ServiceError):
    """Referenced product / customer / sale / payment does not exist."""
    status_code = 404


class InsufficientStockError(ServiceError):
    """A cart line asks for more than the product has on hand."""

    def __init__(self, product_id: int, product_name: str, requested, available):
        super().__init__(
            f"Insufficient stock for {product_name}: "
            f"requested {format_quantity(requested)}, available {format_quantity(available)}",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "requested": format_quantity(requested),
                "available": format_quantity(available),
            },
        )


class InvalidAmountError(ServiceError):
    """Debt payment is non-positive or exceeds the outstanding debt."""


class PaymentStateError(ServiceError):
    """Payment is not in a state that allows the requested transition."""
    status_code = 409


class PersistenceError(ServiceError):
    """Transaction could not be committed; nothing was persisted."""
    status_code = 500


def format_quantity(value) -> str:
    """Render a Decimal quantity without trailing zeros ("5", "0.25")."""
    if value is None:
        return "0"
    text = f"{value:f}" if not isinstance(value, str) else value
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
