"""Shared router helpers: service dependency and error mapping."""
from __future__ import annotations

from functools import lru_cache

from fastapi import status

from ..config import get_settings
from ..exceptions import (
    CircuitBreakerOpenError,
    ConflictError,
    ConnectorError,
    DispatchError,
    NotFoundError,
    PeppolError,
    PeppolLookupError,
    SchedulingError,
)
from ..interfaces.circuit_breaker import CircuitBreakerConnector
from ..interfaces.peppol import AccessPointConnector
from ..services.peppol import PeppolService


@lru_cache
def get_service() -> PeppolService:
    """Return the process-wide service wired to the configured access point."""

    settings = get_settings()
    connector = CircuitBreakerConnector(
        AccessPointConnector(settings),
        failure_threshold=settings.circuit_failure_threshold,
        timeout_seconds=settings.circuit_timeout_seconds,
        success_threshold=settings.circuit_success_threshold,
    )
    return PeppolService(connector, settings)


def map_peppol_error(exc: PeppolError) -> tuple[int, dict]:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, SchedulingError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, DispatchError):
        code = status.HTTP_502_BAD_GATEWAY if exc.retryable else status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, CircuitBreakerOpenError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, (PeppolLookupError, ConnectorError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return code, exc.to_dict()
