"""Typed exceptions raised by the PEPPOL integration.

Every error carries a machine-readable ``code`` and a ``context`` dict with
the data a caller needs to decide between retrying and aborting::

    PeppolError
    +-- PeppolLookupError        directory unreachable or malformed answer
    +-- SchedulingError          recipient cannot be resolved
    +-- ConflictError            invoice already scheduled / dispatch in flight
    +-- DispatchError            transmission or content failure (retryable flag)
    +-- NotFoundError            unknown invoice or missing UBL document
    +-- ConnectorError           access point call failed (retryable flag)
        +-- InvalidInvoiceError  content rejected, never retryable
        +-- CircuitBreakerOpenError
"""
from __future__ import annotations

from typing import Any, Optional


class PeppolError(Exception):
    """Base exception for all PEPPOL errors."""

    code: str = "PEPPOL_ERROR"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class PeppolLookupError(PeppolError):
    """The participant directory could not answer a lookup."""

    code = "LOOKUP_FAILED"


class SchedulingError(PeppolError):
    """An invoice could not be scheduled for its recipient."""

    code = "SCHEDULING_FAILED"


class ConflictError(PeppolError):
    """The invoice is already scheduled or is being dispatched elsewhere."""

    code = "CONFLICT"


class NotFoundError(PeppolError):
    """An invoice reference or document does not exist."""

    code = "NOT_FOUND"


class DispatchError(PeppolError):
    """Dispatching an invoice failed.

    ``retryable`` is true for transient transport failures and false for
    content the caller has to correct.
    """

    code = "DISPATCH_FAILED"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retryable = retryable
        self.context["retryable"] = retryable


class ConnectorError(PeppolError):
    """A call to the access point failed."""

    code = "CONNECTOR_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: Optional[int] = None,
        response_data: Any = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retryable = retryable
        self.status_code = status_code
        self.response_data = response_data
        if status_code is not None:
            self.context["status_code"] = status_code
        if response_data is not None:
            self.context["response_data"] = response_data

    @classmethod
    def connection_failed(cls, message: str) -> "ConnectorError":
        return cls(f"Connector connection failed: {message}", retryable=True)

    @classmethod
    def api_error(cls, message: str, status_code: int, response_data: Any = None) -> "ConnectorError":
        retryable = status_code == 429 or status_code >= 500
        return cls(
            f"Connector API error ({status_code}): {message}",
            retryable=retryable,
            status_code=status_code,
            response_data=response_data,
        )


class InvalidInvoiceError(ConnectorError):
    """Invoice content is invalid; correcting it is up to the caller."""

    code = "INVALID_INVOICE"

    def __init__(self, message: str, **kwargs: Any):
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)

    @classmethod
    def missing_required(cls, field: str) -> "InvalidInvoiceError":
        return cls(f"Required invoice field missing: {field}", context={"field": field})

    @classmethod
    def invalid_format(cls, field: str, reason: str) -> "InvalidInvoiceError":
        return cls(f"Invalid invoice field '{field}': {reason}", context={"field": field})


class CircuitBreakerOpenError(ConnectorError):
    """Requests are blocked while the access point is failing."""

    code = "CIRCUIT_OPEN"

    def __init__(self, message: str = "Circuit breaker is open", retry_after: Optional[int] = None):
        super().__init__(message, retryable=True, context={"circuit_breaker": "open"})
        self.retry_after = retry_after
        if retry_after is not None:
            self.context["retry_after_seconds"] = retry_after
