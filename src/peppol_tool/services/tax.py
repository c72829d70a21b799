"""VAT totals for outbound invoices."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ..schemas import InvoiceLineData

# categories that carry no VAT and need an exemption reason (BR-E-10, BR-AE-10, ...)
EXEMPT_CATEGORIES = {"E", "AE", "K", "G", "O"}

_DEFAULT_EXEMPTION_REASONS = {
    "E": "Exempt from VAT",
    "AE": "Reverse charge",
    "K": "Intra-community supply",
    "G": "Export outside the EU",
    "O": "Not subject to VAT",
}


@dataclass
class TaxBreakdown:
    category: str
    base: float
    rate: float
    tax: float
    exemption_reason: Optional[str] = None


def tax_category(rate: float, category: Optional[str] = None) -> str:
    """UNCL5305 category code for a line; an explicit code wins over the percentage."""

    if category:
        return category
    return "S" if rate > 0 else "Z"


def exemption_reason(category: str, reason: Optional[str] = None) -> Optional[str]:
    if category not in EXEMPT_CATEGORIES:
        return None
    return reason or _DEFAULT_EXEMPTION_REASONS[category]


def line_tax(line: InvoiceLineData) -> float:
    if line.vat_amount is not None:
        return round(line.vat_amount, 2)
    return round(line.line_total * line.vat_percentage / 100, 2)


def compute_tax(lines: Iterable[InvoiceLineData]) -> tuple[float, float, list[TaxBreakdown]]:
    total_net = 0.0
    total_tax = 0.0
    breakdown: dict[tuple[str, float], TaxBreakdown] = {}

    for line in lines:
        base = line.line_total
        tax_amount = line_tax(line)
        total_net += base
        total_tax += tax_amount
        category = tax_category(line.vat_percentage, line.tax_category)
        key = (category, line.vat_percentage)
        if key not in breakdown:
            breakdown[key] = TaxBreakdown(
                category,
                0.0,
                line.vat_percentage,
                0.0,
                exemption_reason(category, line.exemption_reason),
            )
        entry = breakdown[key]
        entry.base = round(entry.base + base, 2)
        entry.tax = round(entry.tax + tax_amount, 2)

    return round(total_net, 2), round(total_tax, 2), list(breakdown.values())
