# Overview: Builds UPI deep links for pending payments and renders them as QR codes.

"""
UPI QR payloads

The QR encodes a standard UPI deep link:

    upi://pay?pa=<upi id>&pn=<payee>&am=<amount>&cu=INR&tr=<reference>&tn=Sale <id>

tr carries Payment.reference so a gateway callback (or the cashier) can tie
the incoming money back to exactly one pending payment.

Generation always happens after the sale transaction has committed; callers
treat a failure here as a reconciliation problem, not a failed sale.
"""

from __future__ import annotations

import base64
import io
from urllib.parse import quote, urlencode

import qrcode

from ..models import Payment
from .config_service import UpiSettings, require_upi_settings


class QRGenerationError(Exception):
    """Raised when a QR payload cannot be produced."""


def build_upi_link(settings: UpiSettings, *, amount, reference: str, note: str) -> str:
    params = {
        "pa": settings.upi_id,
        "pn": settings.payee_name,
        "am": f"{amount:.2f}",
        "cu": settings.currency,
        "tr": reference,
        "tn": note,
    }
    return "upi://pay?" + urlencode(params, quote_via=quote, safe="@")


def render_qr_data_url(payload: str) -> str:
    """PNG QR code as a data: URL the POS screen can show directly."""
    image = qrcode.make(payload)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def generate_payment_qr(payment: Payment) -> dict:
    try:
        settings = require_upi_settings()
        link = build_upi_link(
            settings,
            amount=payment.amount,
            reference=payment.reference,
            note=f"Sale {payment.sale_id}",
        )
        qr_code = render_qr_data_url(link)
    except Exception as exc:
        raise QRGenerationError(f"QR generation failed for payment {payment.id}") from exc

    return {
        "payment_id": payment.id,
        "sale_id": payment.sale_id,
        "amount": f"{payment.amount:.2f}",
        "reference": payment.reference,
        "upi_link": link,
        "qr_code": qr_code,
    }
