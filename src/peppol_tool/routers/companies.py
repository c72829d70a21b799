"""PEPPOL directory lookups."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..exceptions import PeppolError
from ..schemas import Company
from ..services.peppol import PeppolService
from ._common import get_service, map_peppol_error

router = APIRouter(prefix="/peppol/companies", tags=["companies"])


@router.get("/{vat_number}", response_model=Company)
def lookup_company(
    vat_number: str,
    force_refresh: bool = False,
    tax_number: Optional[str] = None,
    country: Optional[str] = None,
    service: PeppolService = Depends(get_service),
) -> Company:
    try:
        company = service.lookup_company(vat_number, force_refresh, tax_number, country)
    except PeppolError as exc:
        code, detail = map_peppol_error(exc)
        raise HTTPException(status_code=code, detail=detail) from exc
    if company is None:
        raise HTTPException(status_code=404, detail=f"{vat_number} is not registered on PEPPOL")
    return company
