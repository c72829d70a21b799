"""Pydantic schemas shared by the service and the API."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import InvoiceState, PeppolStatus


class Company(BaseModel):
    """Snapshot of a counterparty as seen by the PEPPOL directory."""

    vat_number: str
    country: Optional[str] = None
    participant_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    tax_number: Optional[str] = None
    tax_number_scheme: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    last_lookup_at: Optional[datetime] = None

    @property
    def is_on_peppol(self) -> bool:
        return bool(self.participant_id)


def _stringify_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class InvoiceReference(BaseModel):
    """Opaque pointer to an invoice owned by the calling application."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(min_length=1, description="Owning system or model, e.g. 'billing.invoice'")
    source_id: str = Field(min_length=1)

    _stringify = field_validator("source_id", mode="before")(_stringify_id)

    def __str__(self) -> str:
        return f"{self.source}:{self.source_id}"


class ScheduledInvoice(BaseModel):
    id: int
    reference: InvoiceReference
    recipient_vat_number: str
    recipient_participant_id: Optional[str] = None
    state: InvoiceState
    skip_delivery: bool
    dispatch_at: datetime
    created_at: datetime


class InvoiceStatus(BaseModel):
    """Current delivery outcome of one scheduled invoice."""

    invoice_id: int
    state: InvoiceState
    connector_status: Optional[PeppolStatus] = None
    connector_invoice_id: Optional[str] = None
    retryable: bool = False
    message: Optional[str] = None
    dispatch_attempts: int = 0
    next_retry_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime

    @property
    def is_final(self) -> bool:
        if self.state is InvoiceState.FAILED:
            return not self.retryable
        return self.state in {
            InvoiceState.DELIVERED,
            InvoiceState.ACCEPTED,
            InvoiceState.REJECTED,
            InvoiceState.STORED,
        }


class StatusLogEntry(BaseModel):
    from_state: Optional[InvoiceState] = None
    to_state: InvoiceState
    message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class PartyData(BaseModel):
    name: str
    vat_number: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = Field(pattern=r"^[A-Z]{2}$")
    email: Optional[str] = None


# UNCL5305 subset used by PEPPOL BIS Billing 3.0
TaxCategoryCode = Literal["S", "Z", "E", "AE", "K", "G", "O"]


class InvoiceLineData(BaseModel):
    description: str
    quantity: float = 1.0
    unit_price: float
    unit_code: str = "C62"
    vat_percentage: float = Field(21.0, ge=0, le=100)
    total_excl_vat: Optional[float] = Field(default=None, description="Overrides quantity * unit_price")
    vat_amount: Optional[float] = Field(default=None, description="Overrides the computed line VAT")
    tax_category: Optional[TaxCategoryCode] = Field(
        default=None,
        description="UNCL5305 code; derived from the percentage when omitted",
    )
    exemption_reason: Optional[str] = Field(default=None, description="Why a zero-rated line carries no VAT")

    @property
    def line_total(self) -> float:
        if self.total_excl_vat is not None:
            return round(self.total_excl_vat, 2)
        return round(self.quantity * self.unit_price, 2)


class InvoiceData(BaseModel):
    """Fully materialised invoice content handed over at dispatch time."""

    invoice_number: str
    invoice_date: date
    due_date: Optional[date] = None
    currency: str = "EUR"
    total_amount: float
    buyer: PartyData
    seller: Optional[PartyData] = None
    lines: list[InvoiceLineData] = Field(default_factory=list)
    credit_note: bool = False
    buyer_reference: Optional[str] = None
    purchase_order_reference: Optional[str] = None
    note: Optional[str] = None
    pdf_content: Optional[str] = Field(default=None, description="Base64 encoded PDF rendition")
    pdf_filename: Optional[str] = None
    already_sent_to_customer: bool = False

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class ScheduleRequest(BaseModel):
    source: str = Field(min_length=1)
    source_id: str = Field(min_length=1)
    recipient_vat_number: str
    dispatch_at: Optional[datetime] = None
    skip_peppol_delivery: Optional[bool] = None

    _stringify = field_validator("source_id", mode="before")(_stringify_id)

    @property
    def reference(self) -> InvoiceReference:
        return InvoiceReference(source=self.source, source_id=self.source_id)
