"""Scheduling, dispatch and tracking of outbound PEPPOL invoices."""
from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import StreamingResponse

from ..exceptions import PeppolError
from ..schemas import InvoiceData, InvoiceStatus, ScheduledInvoice, ScheduleRequest, StatusLogEntry
from ..services.peppol import PeppolService
from ._common import get_service, map_peppol_error

router = APIRouter(prefix="/peppol/invoices", tags=["invoices"])


def _raise(exc: PeppolError) -> NoReturn:
    code, detail = map_peppol_error(exc)
    raise HTTPException(status_code=code, detail=detail) from exc


@router.post("", response_model=ScheduledInvoice, status_code=201)
def schedule_invoice(payload: ScheduleRequest, service: PeppolService = Depends(get_service)) -> ScheduledInvoice:
    try:
        return service.schedule_invoice(
            payload.reference,
            payload.recipient_vat_number,
            dispatch_at=payload.dispatch_at,
            skip_peppol_delivery=payload.skip_peppol_delivery,
        )
    except PeppolError as exc:
        _raise(exc)


@router.post("/{invoice_id}/dispatch", response_model=InvoiceStatus)
def dispatch_invoice(
    invoice_id: int,
    payload: InvoiceData,
    service: PeppolService = Depends(get_service),
) -> InvoiceStatus:
    try:
        return service.dispatch_invoice(invoice_id, payload)
    except PeppolError as exc:
        _raise(exc)


@router.get("/{invoice_id}/status", response_model=InvoiceStatus)
def get_invoice_status(invoice_id: int, service: PeppolService = Depends(get_service)) -> InvoiceStatus:
    try:
        return service.get_invoice_status(invoice_id)
    except PeppolError as exc:
        _raise(exc)


@router.post("/{invoice_id}/poll", response_model=InvoiceStatus)
def poll_invoice_status(invoice_id: int, service: PeppolService = Depends(get_service)) -> InvoiceStatus:
    try:
        return service.poll_invoice_status(invoice_id)
    except PeppolError as exc:
        _raise(exc)


@router.get("/{invoice_id}/ubl")
def get_ubl_file(invoice_id: int, service: PeppolService = Depends(get_service)) -> Response:
    try:
        xml = service.get_ubl_file(invoice_id)
    except PeppolError as exc:
        _raise(exc)
    return StreamingResponse(
        iter([xml.encode("utf-8")]),
        media_type="application/xml",
        headers={"Content-Disposition": f"attachment; filename=peppol-invoice-{invoice_id}.xml"},
    )


@router.get("/{invoice_id}/history", response_model=list[StatusLogEntry])
def get_invoice_history(invoice_id: int, service: PeppolService = Depends(get_service)) -> list[StatusLogEntry]:
    try:
        return service.get_invoice_history(invoice_id)
    except PeppolError as exc:
        _raise(exc)
