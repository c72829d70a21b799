"""Append-only log of invoice state transitions."""
from __future__ import annotations

import json
from typing import Any, Optional

from sqlmodel import Session, select

from ..db import get_session
from ..models import InvoiceState, PeppolInvoiceLog


def record_transition(
    session: Session,
    peppol_invoice_id: int,
    from_state: Optional[InvoiceState],
    to_state: InvoiceState,
    message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> PeppolInvoiceLog:
    entry = PeppolInvoiceLog(
        peppol_invoice_id=peppol_invoice_id,
        from_state=from_state.value if from_state is not None else None,
        to_state=to_state.value,
        message=message,
        details=json.dumps(details, ensure_ascii=False, default=str) if details else None,
    )
    session.add(entry)
    return entry


def fetch_history(peppol_invoice_id: int) -> list[PeppolInvoiceLog]:
    with get_session() as session:
        statement = (
            select(PeppolInvoiceLog)
            .where(PeppolInvoiceLog.peppol_invoice_id == peppol_invoice_id)
            .order_by(PeppolInvoiceLog.created_at.desc(), PeppolInvoiceLog.id.desc())
        )
        return list(session.exec(statement).all())
