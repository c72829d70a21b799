"""Circuit breaker around a PEPPOL connector."""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from ..exceptions import CircuitBreakerOpenError, ConnectorError
from ..schemas import Company
from .peppol import DeliveryStatus, OutboundDocument, PeppolConnector

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConnector(PeppolConnector):
    """Stops calling a failing access point for a while.

    Retryable connector errors count as failures; after ``failure_threshold``
    of them, or immediately on a rate limit, the circuit opens and calls fail
    fast with :class:`CircuitBreakerOpenError`. Once the timeout has passed
    the circuit half-opens and ``success_threshold`` successful calls close
    it again. Content errors (rejected invoices, unknown documents) are
    answers from a healthy access point and do not count.
    """

    def __init__(
        self,
        connector: PeppolConnector,
        failure_threshold: int = 5,
        timeout_seconds: int = 300,
        success_threshold: int = 2,
        rate_limit_timeout_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connector = connector
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.success_threshold = success_threshold
        self.rate_limit_timeout_seconds = rate_limit_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None
        self._reason: Optional[str] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _timeout(self) -> int:
        return self.rate_limit_timeout_seconds if self._reason == "rate_limit" else self.timeout_seconds

    def status(self) -> dict[str, Any]:
        with self._lock:
            retry_after = None
            if self._state is CircuitState.OPEN and self._opened_at is not None:
                retry_after = max(0, int(self._timeout() - (self._clock() - self._opened_at)))
            return {
                "state": self._state.value,
                "failure_count": self._failures,
                "success_count": self._successes,
                "retry_after_seconds": retry_after,
                "reason": self._reason,
            }

    def reset(self) -> None:
        with self._lock:
            self._close()
        logger.info("Circuit breaker reset to closed state")

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = None
        self._reason = None

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._successes = 0
        self._reason = reason

    def _before_call(self, operation: str) -> None:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            elapsed = self._clock() - (self._opened_at or 0.0)
            timeout = self._timeout()
            if elapsed < timeout:
                retry_after = int(timeout - elapsed)
                raise CircuitBreakerOpenError(
                    f"Circuit breaker is open ({self._reason}), retry after {retry_after} seconds",
                    retry_after=retry_after,
                )
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
        logger.info("Circuit breaker half-open", extra={"operation": operation})

    def _record_success(self, operation: str) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes < self.success_threshold:
                    return
                self._close()
                closed = True
            else:
                self._failures = max(0, self._failures - 1)
                closed = False
        if closed:
            logger.info("Circuit breaker closed, access point recovered", extra={"operation": operation})

    def _record_failure(self, operation: str, exc: ConnectorError) -> None:
        with self._lock:
            if exc.status_code == 429:
                self._open("rate_limit")
                event = "rate limited"
            elif self._state is CircuitState.HALF_OPEN:
                self._open(self._reason or "failures")
                event = "reopened"
            else:
                self._failures += 1
                if self._failures < self.failure_threshold:
                    event = None
                else:
                    self._open("failures")
                    event = "opened"
            failures = self._failures
        if event:
            logger.warning(
                "Circuit breaker %s after %s: %s",
                event,
                operation,
                exc.message,
                extra={"operation": operation, "failures": failures},
            )

    def _execute(self, operation: str, call: Callable[[], T]) -> T:
        self._before_call(operation)
        try:
            result = call()
        except ConnectorError as exc:
            if exc.retryable:
                self._record_failure(operation, exc)
            else:
                self._record_success(operation)
            raise
        self._record_success(operation)
        return result

    def lookup_company(
        self,
        vat_number: str,
        tax_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Company:
        return self._execute("lookup_company", lambda: self.connector.lookup_company(vat_number, tax_number, country))

    def send_invoice(self, document: OutboundDocument) -> DeliveryStatus:
        return self._execute("send_invoice", lambda: self.connector.send_invoice(document))

    def get_invoice_status(self, connector_invoice_id: str) -> DeliveryStatus:
        return self._execute("get_invoice_status", lambda: self.connector.get_invoice_status(connector_invoice_id))

    def get_ubl_file(self, connector_invoice_id: str) -> bytes:
        return self._execute("get_ubl_file", lambda: self.connector.get_ubl_file(connector_invoice_id))

    def health_check(self) -> dict[str, Any]:
        # bypasses the breaker so the real access point state is reported
        result = dict(self.connector.health_check())
        result["circuit_breaker"] = self.status()
        return result
