"""Database models for the PEPPOL integration."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import pendulum
from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp, the form every datetime column holds."""

    return pendulum.now("UTC")


class UTCDateTime(TypeDecorator):
    """Datetime column that always round-trips as aware UTC.

    SQLite keeps no offset, so values are normalised to UTC on the way in
    and tagged as UTC again on the way out. Naive input is taken as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TimestampMixin(SQLModel):
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    def touch(self) -> None:
        self.updated_at = utcnow()


class PeppolStatus(str, Enum):
    """Delivery status as reported by the access point."""

    CREATED = "CREATED"
    PENDING = "PENDING"
    DELIVERED_WITHOUT_CONFIRMATION = "DELIVERED_WITHOUT_CONFIRMATION"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    FAILED_DELIVERY = "FAILED_DELIVERY"

    def is_failed(self) -> bool:
        return self in {PeppolStatus.REJECTED, PeppolStatus.FAILED_DELIVERY}

    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    PeppolStatus.CREATED: "Created",
    PeppolStatus.PENDING: "Pending",
    PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION: "Delivered",
    PeppolStatus.ACCEPTED: "Accepted",
    PeppolStatus.REJECTED: "Rejected",
    PeppolStatus.FAILED_DELIVERY: "Failed",
}


class InvoiceState(str, Enum):
    """Lifecycle of a scheduled invoice.

    pending -> dispatching -> sent -> delivered | accepted | rejected | failed
    dispatching -> delivered | accepted | rejected | stored
    dispatching -> failed (retryable) -> dispatching
    """

    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    DELIVERED = "delivered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    STORED = "stored"

    def can_transition_to(self, new_state: "InvoiceState") -> bool:
        return new_state in _TRANSITIONS[self]

    def should_poll(self) -> bool:
        return self is InvoiceState.SENT


_TRANSITIONS: dict[InvoiceState, frozenset[InvoiceState]] = {
    InvoiceState.PENDING: frozenset({InvoiceState.DISPATCHING}),
    InvoiceState.DISPATCHING: frozenset(
        {
            InvoiceState.SENT,
            InvoiceState.DELIVERED,
            InvoiceState.ACCEPTED,
            InvoiceState.REJECTED,
            InvoiceState.FAILED,
            InvoiceState.STORED,
        }
    ),
    InvoiceState.SENT: frozenset(
        {InvoiceState.DELIVERED, InvoiceState.ACCEPTED, InvoiceState.REJECTED, InvoiceState.FAILED}
    ),
    InvoiceState.DELIVERED: frozenset(),
    # only a retryable failure goes back; the store checks the flag
    InvoiceState.FAILED: frozenset({InvoiceState.DISPATCHING}),
    InvoiceState.ACCEPTED: frozenset(),
    InvoiceState.REJECTED: frozenset(),
    InvoiceState.STORED: frozenset(),
}


class PeppolCompany(TimestampMixin, table=True):
    __tablename__ = "peppol_companies"

    id: Optional[int] = Field(default=None, primary_key=True)
    vat_number: str = Field(index=True)
    country: str = Field(default="")
    participant_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    tax_number: Optional[str] = None
    tax_number_scheme: Optional[str] = None
    details: Optional[str] = Field(default=None, description="JSON directory metadata")
    last_lookup_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    __table_args__ = (UniqueConstraint("vat_number", "country", name="peppol_company_unique"),)


class PeppolInvoice(TimestampMixin, table=True):
    __tablename__ = "peppol_invoices"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_source: str
    invoice_source_id: str
    recipient_company_id: Optional[int] = Field(default=None, foreign_key="peppol_companies.id")
    recipient_vat_number: str
    recipient_participant_id: Optional[str] = None
    state: InvoiceState = Field(default=InvoiceState.PENDING, index=True)
    connector_status: Optional[PeppolStatus] = None
    status_message: Optional[str] = None
    retryable: bool = Field(default=False)
    skip_delivery: bool = Field(default=False)
    connector_invoice_id: Optional[str] = None
    dispatch_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    dispatched_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    dispatch_attempts: int = Field(default=0)
    next_retry_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    poll_attempts: int = Field(default=0)
    next_poll_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    request_payload: Optional[str] = Field(default=None, description="Sanitized JSON request")
    poll_response: Optional[str] = Field(default=None, description="Last poll result as JSON")

    __table_args__ = (
        UniqueConstraint("invoice_source", "invoice_source_id", name="peppol_invoice_reference_unique"),
    )


class PeppolInvoiceLog(SQLModel, table=True):
    __tablename__ = "peppol_invoice_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    peppol_invoice_id: int = Field(foreign_key="peppol_invoices.id", index=True)
    from_state: Optional[str] = None
    to_state: str
    message: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class PeppolDocument(TimestampMixin, table=True):
    __tablename__ = "peppol_documents"

    id: Optional[int] = Field(default=None, primary_key=True)
    peppol_invoice_id: int = Field(foreign_key="peppol_invoices.id")
    filename: str
    storage_path: str
    sha256: str
    mime_type: str = Field(default="application/xml")
    source: str = Field(default="generated", description="generated or connector")

    __table_args__ = (UniqueConstraint("peppol_invoice_id", name="peppol_document_unique"),)
