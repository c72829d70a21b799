"""Generate PEPPOL BIS Billing 3.0 (UBL 2.1) invoices and credit notes."""
from __future__ import annotations

from typing import Iterable, Optional

from lxml import etree

from ..schemas import InvoiceData, InvoiceLineData, PartyData
from .identifiers import parse_participant_id
from .tax import TaxBreakdown, compute_tax, tax_category

CUSTOMIZATION_ID = "urn:cen.eu:en16931:2017#compliant#urn:fdc:peppol.eu:2017:poacc:billing:3.0"
PROFILE_ID = "urn:fdc:peppol.eu:2017:poacc:billing:01:1.0"

INVOICE_NS = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
CREDIT_NOTE_NS = "urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2"
CAC = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
CBC = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"

INVOICE_DOCUMENT_TYPE = (
    "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2::Invoice##"
    f"{CUSTOMIZATION_ID}::2.1"
)
CREDIT_NOTE_DOCUMENT_TYPE = (
    "urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2::CreditNote##"
    f"{CUSTOMIZATION_ID}::2.1"
)


def _cac(parent: etree._Element, name: str) -> etree._Element:
    return etree.SubElement(parent, f"{{{CAC}}}{name}")


def _cbc(parent: etree._Element, name: str, text: Optional[str], **attrs: str) -> etree._Element:
    element = etree.SubElement(parent, f"{{{CBC}}}{name}", **attrs)
    element.text = text
    return element


def _amount(value: float) -> str:
    return f"{value:.2f}"


def document_type_for(invoice: InvoiceData) -> str:
    return CREDIT_NOTE_DOCUMENT_TYPE if invoice.credit_note else INVOICE_DOCUMENT_TYPE


def generate_ubl(invoice: InvoiceData, sender_participant_id: str, recipient_participant_id: Optional[str]) -> bytes:
    """Render ``invoice`` as a UBL document.

    ``recipient_participant_id`` may be ``None`` for invoices that are only
    archived; the buyer then carries no electronic address.
    """

    root_ns = CREDIT_NOTE_NS if invoice.credit_note else INVOICE_NS
    root_name = "CreditNote" if invoice.credit_note else "Invoice"
    root = etree.Element(f"{{{root_ns}}}{root_name}", nsmap={None: root_ns, "cac": CAC, "cbc": CBC})

    _cbc(root, "CustomizationID", CUSTOMIZATION_ID)
    _cbc(root, "ProfileID", PROFILE_ID)
    _cbc(root, "ID", invoice.invoice_number)
    _cbc(root, "IssueDate", invoice.invoice_date.isoformat())
    if invoice.due_date and not invoice.credit_note:
        _cbc(root, "DueDate", invoice.due_date.isoformat())
    if invoice.credit_note:
        _cbc(root, "CreditNoteTypeCode", "381")
    else:
        _cbc(root, "InvoiceTypeCode", "380")
    if invoice.note:
        _cbc(root, "Note", invoice.note)
    _cbc(root, "DocumentCurrencyCode", invoice.currency)
    # BT-10: either a buyer reference or an order reference is mandatory
    _cbc(root, "BuyerReference", invoice.buyer_reference or invoice.purchase_order_reference or invoice.invoice_number)
    if invoice.purchase_order_reference:
        order = _cac(root, "OrderReference")
        _cbc(order, "ID", invoice.purchase_order_reference)
    if invoice.pdf_content:
        _add_pdf_attachment(root, invoice)

    seller = invoice.seller
    _add_party(_cac(root, "AccountingSupplierParty"), seller, sender_participant_id)
    _add_party(_cac(root, "AccountingCustomerParty"), invoice.buyer, recipient_participant_id)

    total_net, total_tax, breakdown = compute_tax(invoice.lines)
    _add_tax_total(root, invoice.currency, total_tax, breakdown)
    _add_monetary_total(root, invoice.currency, total_net, total_tax)
    _add_lines(root, invoice, invoice.lines)

    return etree.tostring(root, pretty_print=True, encoding="utf-8", xml_declaration=True)


def _add_pdf_attachment(parent: etree._Element, invoice: InvoiceData) -> None:
    reference = _cac(parent, "AdditionalDocumentReference")
    _cbc(reference, "ID", invoice.invoice_number)
    attachment = _cac(reference, "Attachment")
    _cbc(
        attachment,
        "EmbeddedDocumentBinaryObject",
        invoice.pdf_content,
        mimeCode="application/pdf",
        filename=invoice.pdf_filename or f"{invoice.invoice_number}.pdf",
    )


def _add_party(parent: etree._Element, data: Optional[PartyData], participant_id: Optional[str]) -> None:
    party = _cac(parent, "Party")
    if participant_id:
        scheme, identifier = parse_participant_id(participant_id)
        _cbc(party, "EndpointID", identifier, schemeID=scheme)
    if data is None:
        return
    name = _cac(party, "PartyName")
    _cbc(name, "Name", data.name)
    address = _cac(party, "PostalAddress")
    if data.street:
        _cbc(address, "StreetName", data.street)
    if data.city:
        _cbc(address, "CityName", data.city)
    if data.postal_code:
        _cbc(address, "PostalZone", data.postal_code)
    country = _cac(address, "Country")
    _cbc(country, "IdentificationCode", data.country)
    if data.vat_number:
        tax_scheme = _cac(party, "PartyTaxScheme")
        _cbc(tax_scheme, "CompanyID", data.vat_number)
        _cbc(_cac(tax_scheme, "TaxScheme"), "ID", "VAT")
    legal = _cac(party, "PartyLegalEntity")
    _cbc(legal, "RegistrationName", data.name)
    if data.email:
        contact = _cac(party, "Contact")
        _cbc(contact, "ElectronicMail", data.email)


def _add_tax_category(
    parent: etree._Element,
    name: str,
    category: str,
    rate: float,
    reason: Optional[str] = None,
) -> None:
    element = _cac(parent, name)
    _cbc(element, "ID", category)
    # "not subject to VAT" carries no rate
    if category != "O":
        _cbc(element, "Percent", _amount(rate))
    if reason:
        _cbc(element, "TaxExemptionReason", reason)
    _cbc(_cac(element, "TaxScheme"), "ID", "VAT")


def _add_tax_total(parent: etree._Element, currency: str, total_tax: float, breakdown: list[TaxBreakdown]) -> None:
    tax_total = _cac(parent, "TaxTotal")
    _cbc(tax_total, "TaxAmount", _amount(total_tax), currencyID=currency)
    for entry in breakdown:
        subtotal = _cac(tax_total, "TaxSubtotal")
        _cbc(subtotal, "TaxableAmount", _amount(entry.base), currencyID=currency)
        _cbc(subtotal, "TaxAmount", _amount(entry.tax), currencyID=currency)
        _add_tax_category(subtotal, "TaxCategory", entry.category, entry.rate, entry.exemption_reason)


def _add_monetary_total(parent: etree._Element, currency: str, total_net: float, total_tax: float) -> None:
    summary = _cac(parent, "LegalMonetaryTotal")
    gross = round(total_net + total_tax, 2)
    _cbc(summary, "LineExtensionAmount", _amount(total_net), currencyID=currency)
    _cbc(summary, "TaxExclusiveAmount", _amount(total_net), currencyID=currency)
    _cbc(summary, "TaxInclusiveAmount", _amount(gross), currencyID=currency)
    _cbc(summary, "PayableAmount", _amount(gross), currencyID=currency)


def _add_lines(parent: etree._Element, invoice: InvoiceData, lines: Iterable[InvoiceLineData]) -> None:
    line_name = "CreditNoteLine" if invoice.credit_note else "InvoiceLine"
    quantity_name = "CreditedQuantity" if invoice.credit_note else "InvoicedQuantity"
    for index, line in enumerate(lines, start=1):
        element = _cac(parent, line_name)
        _cbc(element, "ID", str(index))
        _cbc(element, quantity_name, f"{line.quantity:.2f}", unitCode=line.unit_code)
        _cbc(element, "LineExtensionAmount", _amount(line.line_total), currencyID=invoice.currency)
        item = _cac(element, "Item")
        _cbc(item, "Name", line.description[:100])
        category = tax_category(line.vat_percentage, line.tax_category)
        _add_tax_category(item, "ClassifiedTaxCategory", category, line.vat_percentage)
        price = _cac(element, "Price")
        _cbc(price, "PriceAmount", _amount(line.unit_price), currencyID=invoice.currency)