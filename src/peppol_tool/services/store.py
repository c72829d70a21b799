"""Persistence of lookup results and scheduled invoices.

The service never hands ORM rows to callers; the ``to_*`` helpers turn rows
into the pydantic records defined in :mod:`peppol_tool.schemas`.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..db import get_session
from ..exceptions import ConflictError, NotFoundError
from ..models import InvoiceState, PeppolCompany, PeppolInvoice, PeppolInvoiceLog, utcnow
from ..schemas import Company, InvoiceReference, InvoiceStatus, ScheduledInvoice, StatusLogEntry
from .audit import fetch_history as fetch_log_rows
from .audit import record_transition

logger = logging.getLogger(__name__)


def _loads(value: Optional[str]) -> dict[str, Any]:
    return json.loads(value) if value else {}


def to_company(row: PeppolCompany) -> Company:
    return Company(
        vat_number=row.vat_number,
        country=row.country or None,
        participant_id=row.participant_id,
        name=row.name,
        email=row.email,
        tax_number=row.tax_number,
        tax_number_scheme=row.tax_number_scheme,
        details=_loads(row.details),
        last_lookup_at=row.last_lookup_at,
    )


def to_reference(row: PeppolInvoice) -> InvoiceReference:
    return InvoiceReference(source=row.invoice_source, source_id=row.invoice_source_id)


def to_scheduled(row: PeppolInvoice) -> ScheduledInvoice:
    return ScheduledInvoice(
        id=row.id,
        reference=to_reference(row),
        recipient_vat_number=row.recipient_vat_number,
        recipient_participant_id=row.recipient_participant_id,
        state=row.state,
        skip_delivery=row.skip_delivery,
        dispatch_at=row.dispatch_at,
        created_at=row.created_at,
    )


def to_status(row: PeppolInvoice) -> InvoiceStatus:
    return InvoiceStatus(
        invoice_id=row.id,
        state=row.state,
        connector_status=row.connector_status,
        connector_invoice_id=row.connector_invoice_id,
        retryable=row.retryable,
        message=row.status_message,
        dispatch_attempts=row.dispatch_attempts,
        next_retry_at=row.next_retry_at,
        dispatched_at=row.dispatched_at,
        completed_at=row.completed_at,
        updated_at=row.updated_at,
    )


def to_log_entry(row: PeppolInvoiceLog) -> StatusLogEntry:
    return StatusLogEntry(
        from_state=InvoiceState(row.from_state) if row.from_state else None,
        to_state=InvoiceState(row.to_state),
        message=row.message,
        details=_loads(row.details),
        created_at=row.created_at,
    )


# companies


def get_cached_company(vat_number: str, country: str) -> Optional[PeppolCompany]:
    with get_session() as session:
        statement = select(PeppolCompany).where(
            PeppolCompany.vat_number == vat_number,
            PeppolCompany.country == country,
        )
        return session.exec(statement).one_or_none()


def save_company(company: Company, country: str) -> PeppolCompany:
    """Insert or overwrite the cache entry for ``(vat_number, country)``.

    Concurrent lookups of the same counterparty race on the insert; the
    loser retries as an update, so the last writer wins.
    """

    try:
        return _upsert_company(company, country)
    except IntegrityError:
        logger.debug(
            "Concurrent cache insert for %s, updating instead",
            company.vat_number,
            extra={"vat_number": company.vat_number, "country": country},
        )
        return _upsert_company(company, country)


def _upsert_company(company: Company, country: str) -> PeppolCompany:
    with get_session() as session:
        statement = select(PeppolCompany).where(
            PeppolCompany.vat_number == company.vat_number,
            PeppolCompany.country == country,
        )
        row = session.exec(statement).one_or_none()
        if row is None:
            row = PeppolCompany(vat_number=company.vat_number, country=country)
        row.participant_id = company.participant_id
        row.name = company.name
        row.email = company.email
        row.tax_number = company.tax_number
        row.tax_number_scheme = company.tax_number_scheme
        row.details = json.dumps(company.details, ensure_ascii=False, default=str) if company.details else None
        row.last_lookup_at = company.last_lookup_at or utcnow()
        row.touch()
        session.add(row)
        session.flush()
        session.refresh(row)
        return row


# invoices


def get_invoice(invoice_id: int) -> Optional[PeppolInvoice]:
    with get_session() as session:
        return session.get(PeppolInvoice, invoice_id)


def require_invoice(invoice_id: int) -> PeppolInvoice:
    row = get_invoice(invoice_id)
    if row is None:
        raise NotFoundError(f"Scheduled invoice {invoice_id} not found", {"invoice_id": invoice_id})
    return row


def find_invoice(reference: InvoiceReference) -> Optional[PeppolInvoice]:
    with get_session() as session:
        statement = select(PeppolInvoice).where(
            PeppolInvoice.invoice_source == reference.source,
            PeppolInvoice.invoice_source_id == reference.source_id,
        )
        return session.exec(statement).one_or_none()


def create_invoice(reference: InvoiceReference, **fields: Any) -> PeppolInvoice:
    """Persist a new scheduled invoice in state ``pending``."""

    try:
        with get_session() as session:
            row = PeppolInvoice(
                invoice_source=reference.source,
                invoice_source_id=reference.source_id,
                state=InvoiceState.PENDING,
                **fields,
            )
            session.add(row)
            session.flush()
            record_transition(session, row.id, None, InvoiceState.PENDING, "Invoice scheduled")
            session.flush()
            session.refresh(row)
            return row
    except IntegrityError as exc:
        raise ConflictError(
            f"Invoice {reference} is already scheduled",
            {"source": reference.source, "source_id": reference.source_id},
        ) from exc


def claim_for_dispatch(
    invoice_id: int,
    expected: InvoiceState,
    stale_before: Optional[datetime] = None,
) -> Optional[PeppolInvoice]:
    """Compare-and-set ``expected`` -> ``dispatching``.

    Returns the claimed row, or ``None`` when another worker changed the
    state first. A failed invoice is only claimable while it is retryable,
    a dispatching one only when its claim was last touched before
    ``stale_before``.
    """

    conditions = [PeppolInvoice.id == invoice_id, PeppolInvoice.state == expected]
    if expected is InvoiceState.FAILED:
        conditions.append(PeppolInvoice.retryable == True)  # noqa: E712
    elif expected is InvoiceState.DISPATCHING:
        if stale_before is None:
            return None
        conditions.append(PeppolInvoice.updated_at <= stale_before)
    statement = (
        update(PeppolInvoice)
        .where(*conditions)
        .values(
            state=InvoiceState.DISPATCHING,
            dispatch_attempts=PeppolInvoice.dispatch_attempts + 1,
            next_retry_at=None,
            updated_at=utcnow(),
        )
    )
    message = "Dispatch started"
    if expected is InvoiceState.DISPATCHING:
        message = "Stale dispatch claim taken over"
    with get_session() as session:
        result = session.execute(statement)
        if result.rowcount != 1:
            return None
        row = session.get(PeppolInvoice, invoice_id)
        session.refresh(row)
        record_transition(
            session,
            invoice_id,
            expected,
            InvoiceState.DISPATCHING,
            message,
            {"attempt": row.dispatch_attempts},
        )
        return row


def transition(
    invoice_id: int,
    to_state: InvoiceState,
    message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    **changes: Any,
) -> PeppolInvoice:
    """Move an invoice to ``to_state``, applying ``changes`` in the same transaction."""

    with get_session() as session:
        row = session.get(PeppolInvoice, invoice_id)
        if row is None:
            raise NotFoundError(f"Scheduled invoice {invoice_id} not found", {"invoice_id": invoice_id})
        from_state = row.state
        if not from_state.can_transition_to(to_state):
            raise ConflictError(
                f"Invalid state transition {from_state.value} -> {to_state.value}",
                {"invoice_id": invoice_id, "from_state": from_state.value, "to_state": to_state.value},
            )
        for key, value in changes.items():
            setattr(row, key, value)
        row.state = to_state
        row.status_message = message
        row.touch()
        session.add(row)
        record_transition(session, invoice_id, from_state, to_state, message, details)
        session.flush()
        session.refresh(row)
    logger.info(
        "Invoice %s: %s -> %s",
        invoice_id,
        from_state.value,
        to_state.value,
        extra={"invoice_id": invoice_id, "from_state": from_state.value, "to_state": to_state.value},
    )
    return row


def update_invoice(invoice_id: int, **changes: Any) -> PeppolInvoice:
    """Write bookkeeping fields without a state change."""

    with get_session() as session:
        row = session.get(PeppolInvoice, invoice_id)
        if row is None:
            raise NotFoundError(f"Scheduled invoice {invoice_id} not found", {"invoice_id": invoice_id})
        for key, value in changes.items():
            setattr(row, key, value)
        row.touch()
        session.add(row)
        session.flush()
        session.refresh(row)
        return row


def due_for_dispatch(
    now: datetime,
    limit: int = 100,
    stale_before: Optional[datetime] = None,
) -> list[PeppolInvoice]:
    """Pending invoices that are due, retryable failures whose retry time
    passed and, with ``stale_before``, abandoned dispatch claims."""

    clauses = [
        (PeppolInvoice.state == InvoiceState.PENDING) & (PeppolInvoice.dispatch_at <= now),
        (PeppolInvoice.state == InvoiceState.FAILED)
        & (PeppolInvoice.retryable == True)  # noqa: E712
        & (PeppolInvoice.next_retry_at <= now),
    ]
    if stale_before is not None:
        clauses.append(
            (PeppolInvoice.state == InvoiceState.DISPATCHING) & (PeppolInvoice.updated_at <= stale_before)
        )
    with get_session() as session:
        statement = (
            select(PeppolInvoice)
            .where(or_(*clauses))
            .order_by(PeppolInvoice.dispatch_at, PeppolInvoice.id)
            .limit(limit)
        )
        return list(session.exec(statement).all())


def due_for_poll(now: datetime, limit: int = 100) -> list[PeppolInvoice]:
    with get_session() as session:
        statement = (
            select(PeppolInvoice)
            .where(
                PeppolInvoice.state == InvoiceState.SENT,
                PeppolInvoice.next_poll_at.is_not(None),
                PeppolInvoice.next_poll_at <= now,
            )
            .order_by(PeppolInvoice.next_poll_at, PeppolInvoice.id)
            .limit(limit)
        )
        return list(session.exec(statement).all())


def fetch_history(invoice_id: int) -> list[StatusLogEntry]:
    return [to_log_entry(row) for row in fetch_log_rows(invoice_id)]
