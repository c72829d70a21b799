"""FastAPI application wiring for the PEPPOL tool."""
from __future__ import annotations

import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from . import __version__
from .config import get_settings
from .db import init_db
from .routers import companies, invoices
from .routers._common import get_service
from .services.peppol import PeppolService

logger = logging.getLogger(__name__)

settings = get_settings()

fastapi_kwargs: dict[str, str | None] = {}
if not settings.expose_docs:
    fastapi_kwargs.update({"docs_url": None, "redoc_url": None, "openapi_url": None})

app = FastAPI(
    title="PEPPOL Tool",
    description="Outbound PEPPOL BIS Billing 3.0 e-invoicing through an access point.",
    version=__version__,
    **fastapi_kwargs,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

if settings.allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Authorization", "Content-Type", "Origin"],
        expose_headers=["Content-Disposition"],
        allow_credentials=False,
        max_age=86400,
    )


@app.on_event("startup")
def startup() -> None:
    init_db()
    logger.info("PEPPOL tool started", extra={"access_point_url": settings.access_point_url})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/peppol/health")
def peppol_health(service: PeppolService = Depends(get_service)) -> dict:
    return service.health_check()


app.include_router(companies.router)
app.include_router(invoices.router)
