"""Local checks run before an invoice leaves the process."""
from __future__ import annotations

import base64
import binascii
import re

from stdnum.util import clean

from ..exceptions import InvalidInvoiceError
from ..schemas import InvoiceData
from .tax import compute_tax, tax_category

_CURRENCY = re.compile(r"^[A-Z]{3}$")
_TOTAL_TOLERANCE = 0.01


def normalize_vat_number(value: str) -> str:
    """Strip separators and upper-case, e.g. ``be 0123.456.789`` -> ``BE0123456789``."""

    return clean(value, " -./").upper().strip()


def validate_invoice_data(invoice: InvoiceData, currency: str | None = None) -> None:
    """Raise :class:`InvalidInvoiceError` for content an access point would reject."""

    if not invoice.invoice_number.strip():
        raise InvalidInvoiceError.missing_required("invoice_number")
    if not invoice.buyer.name.strip():
        raise InvalidInvoiceError.missing_required("buyer.name")
    if not invoice.lines:
        raise InvalidInvoiceError.missing_required("lines")
    if not _CURRENCY.match(invoice.currency):
        raise InvalidInvoiceError.invalid_format("currency", "expected an ISO 4217 code")
    if currency and invoice.currency != currency.upper():
        raise InvalidInvoiceError.invalid_format(
            "currency", f"{invoice.currency} does not match the configured currency {currency.upper()}"
        )
    if invoice.due_date and invoice.due_date < invoice.invoice_date:
        raise InvalidInvoiceError.invalid_format("due_date", "due date lies before the invoice date")

    for index, line in enumerate(invoice.lines, start=1):
        if not line.description.strip():
            raise InvalidInvoiceError.missing_required(f"lines[{index}].description")
        if line.quantity <= 0:
            raise InvalidInvoiceError.invalid_format(f"lines[{index}].quantity", "must be positive")
        if line.unit_price < 0 or line.line_total < 0:
            raise InvalidInvoiceError.invalid_format(f"lines[{index}].unit_price", "must not be negative")
        if line.vat_amount is not None and line.vat_amount < 0:
            raise InvalidInvoiceError.invalid_format(f"lines[{index}].vat_amount", "must not be negative")
        category = tax_category(line.vat_percentage, line.tax_category)
        if (category == "S") != (line.vat_percentage > 0):
            raise InvalidInvoiceError.invalid_format(
                f"lines[{index}].tax_category",
                f"category {category} does not match a VAT rate of {line.vat_percentage:g}%",
            )

    if invoice.total_amount < 0:
        raise InvalidInvoiceError.invalid_format("total_amount", "must not be negative")
    total_net, total_tax, _ = compute_tax(invoice.lines)
    expected = round(total_net + total_tax, 2)
    if abs(round(invoice.total_amount, 2) - expected) > _TOTAL_TOLERANCE:
        raise InvalidInvoiceError.invalid_format(
            "total_amount", f"{invoice.total_amount:.2f} differs from the line total {expected:.2f}"
        )

    if invoice.pdf_content is not None:
        try:
            base64.b64decode(invoice.pdf_content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidInvoiceError.invalid_format("pdf_content", "not valid base64") from exc
