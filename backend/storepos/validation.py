from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .time_utils import parse_iso_date, parse_iso_datetime


MONEY_QUANTUM = Decimal("0.01")
QUANTITY_QUANTUM = Decimal("0.001")

# Largest price / amount accepted from clients: 99,999,999.99
MAX_AMOUNT = Decimal("99999999.99")
# Largest quantity accepted from clients (fits Numeric(14, 3))
MAX_QUANTITY = Decimal("99999999999.999")

PAYMENT_METHODS = ("cash", "card", "upi", "debt")
SALE_TYPES = ("retail", "wholesale", "hotel")

# Client spellings seen from older POS front-ends
_SALE_TYPE_ALIASES = {"wholeSale": "wholesale", "whole_sale": "wholesale"}


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_quantity(value: Decimal) -> Decimal:
    return value.quantize(QUANTITY_QUANTUM, rounding=ROUND_HALF_UP)


def _to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def parse_signed_amount(value: Any, field: str) -> Decimal:
    """Money within +/-MAX_AMOUNT; the sign is left for the caller to judge."""
    amount = _to_decimal(value, field)
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    if amount != quantize_money(amount):
        raise ValidationError(f"{field} supports at most 2 decimal places")
    return quantize_money(amount)


def parse_quantity(value: Any, field: str = "quantity") -> Decimal:
    """PositiveQuantity: > 0, at most three decimal places (grams for kg units)."""
    qty = _to_decimal(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if qty > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}")
    if qty != quantize_quantity(qty):
        raise ValidationError(f"{field} supports at most 3 decimal places")
    return quantize_quantity(qty)


def parse_amount(value: Any, field: str = "amount", *, allow_zero: bool = False) -> Decimal:
    """Monetary amount with two decimal places; positive unless allow_zero."""
    amount = _to_decimal(value, field)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'zero or more' if allow_zero else 'greater than zero'}")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    if amount != quantize_money(amount):
        raise ValidationError(f"{field} supports at most 2 decimal places")
    return quantize_money(amount)


def parse_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer id")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().isdigit():
        result = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer id")
    if result <= 0:
        raise ValidationError(f"{field} must be a positive integer id")
    return result


def parse_optional_id(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    return parse_id(value, field)


def normalize_sale_type(value: Any) -> str:
    if value is None or value == "":
        return "retail"
    sale_type = _SALE_TYPE_ALIASES.get(value, value) if isinstance(value, str) else None
    if sale_type is None or sale_type.lower() not in SALE_TYPES:
        raise ValidationError(f"Invalid sale type: {value}. Must be one of {list(SALE_TYPES)}")
    return sale_type.lower()


def normalize_payment_method(value: Any) -> str:
    if not isinstance(value, str) or value.strip().lower() not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {value}. Must be one of {list(PAYMENT_METHODS)}")
    return value.strip().lower()


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: Decimal


@dataclass(frozen=True)
class PaymentInstruction:
    """One tender of a checkout. amount=None means "whatever is due"."""
    method: str
    amount: Decimal | None = None


def parse_cart(items: Any) -> list[CartLine]:
    """Validate the submitted cart, preserving its order."""
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one item is required")

    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if item.get("productId") is None:
            raise ValidationError("Product ID is required for each item")
        if item.get("quantity") is None:
            raise ValidationError("Quantity is required for each item")
        lines.append(CartLine(
            product_id=parse_id(item["productId"], f"items[{index}].productId"),
            quantity=parse_quantity(item["quantity"], f"items[{index}].quantity"),
        ))
    return lines


def parse_split_payments(payments: Any) -> list[PaymentInstruction] | None:
    """[{paymentMethod, amount}, ...] -> PaymentInstructions. None passes through."""
    if payments is None:
        return None
    if not isinstance(payments, list) or not payments:
        raise ValidationError("payments must be a non-empty list")

    plan = []
    for index, entry in enumerate(payments):
        if not isinstance(entry, dict):
            raise ValidationError(f"payments[{index}] must be an object")
        plan.append(PaymentInstruction(
            method=normalize_payment_method(entry.get("paymentMethod")),
            amount=parse_amount(entry.get("amount"), f"payments[{index}].amount"),
        ))
    return plan


# =============================================================================
# GENERIC MODEL PAYLOADS (catalog / registry CRUD)
# =============================================================================

@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = frozenset()  # type: ignore[assignment]


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if isinstance(coltype, Numeric):
        number = _to_decimal(value, col.key)
        if number < 0:
            raise ValidationError(f"{col.key} must be >= 0")
        if number > MAX_AMOUNT:
            raise ValidationError(f"{col.key} cannot exceed {MAX_AMOUNT}")
        return number

    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false")

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        try:
            dt = parse_iso_datetime(value) if isinstance(value, str) else None
        except ValueError:
            dt = None
        if dt is None:
            raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
        return dt

    if isinstance(coltype, Date):
        if isinstance(value, date):
            return value
        try:
            d = parse_iso_date(value) if isinstance(value, str) else None
        except ValueError:
            d = None
        if d is None:
            raise ValidationError(f"{col.key} must be an ISO-8601 date")
        return d

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against the model's column metadata
    and the policy allowlist. Returns a cleaned patch with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields or k not in cols:
            raise ValidationError(f"Field not allowed: {k}")

    patch: dict = {}
    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch
