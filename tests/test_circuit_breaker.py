from __future__ import annotations

import pytest

from conftest import FakeConnector, REGISTERED_VAT
from peppol_tool.exceptions import CircuitBreakerOpenError, ConnectorError, InvalidInvoiceError
from peppol_tool.interfaces.circuit_breaker import CircuitBreakerConnector, CircuitState


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def breaker(connector, clock):
    return CircuitBreakerConnector(
        connector,
        failure_threshold=3,
        timeout_seconds=60,
        success_threshold=2,
        rate_limit_timeout_seconds=120,
        clock=clock,
    )


def _fail(breaker, connector, error):
    connector.lookup_error = error
    with pytest.raises(type(error)):
        breaker.lookup_company(REGISTERED_VAT)


def test_closed_circuit_passes_calls_through(breaker, connector):
    company = breaker.lookup_company(REGISTERED_VAT)

    assert company.participant_id is not None
    assert breaker.state is CircuitState.CLOSED
    assert connector.lookups == [REGISTERED_VAT]


def test_opens_after_consecutive_failures(breaker, connector):
    for _ in range(3):
        _fail(breaker, connector, ConnectorError.connection_failed("reset"))

    assert breaker.state is CircuitState.OPEN
    connector.lookup_error = None
    with pytest.raises(CircuitBreakerOpenError) as excinfo:
        breaker.lookup_company(REGISTERED_VAT)

    assert excinfo.value.retry_after == 60
    assert excinfo.value.retryable is True
    assert len(connector.lookups) == 3


def test_content_errors_do_not_open_the_circuit(breaker, connector):
    for _ in range(5):
        _fail(breaker, connector, InvalidInvoiceError("bad document", status_code=400))

    assert breaker.state is CircuitState.CLOSED
    assert breaker.status()["failure_count"] == 0


def test_success_decrements_failure_count(breaker, connector):
    _fail(breaker, connector, ConnectorError.connection_failed("reset"))
    _fail(breaker, connector, ConnectorError.connection_failed("reset"))
    connector.lookup_error = None
    breaker.lookup_company(REGISTERED_VAT)

    assert breaker.status()["failure_count"] == 1


def test_half_open_closes_after_successful_trial_calls(breaker, connector, clock):
    for _ in range(3):
        _fail(breaker, connector, ConnectorError.connection_failed("reset"))
    clock.now += 61
    connector.lookup_error = None

    breaker.lookup_company(REGISTERED_VAT)
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.lookup_company(REGISTERED_VAT)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.status() == {
        "state": "closed",
        "failure_count": 0,
        "success_count": 0,
        "retry_after_seconds": None,
        "reason": None,
    }


def test_half_open_failure_reopens(breaker, connector, clock):
    for _ in range(3):
        _fail(breaker, connector, ConnectorError.connection_failed("reset"))
    clock.now += 61

    _fail(breaker, connector, ConnectorError.api_error("unavailable", 503))

    assert breaker.state is CircuitState.OPEN
    assert breaker.status()["retry_after_seconds"] == 60


def test_rate_limit_opens_immediately(breaker, connector, clock):
    _fail(breaker, connector, ConnectorError.api_error("too many requests", 429))

    status = breaker.status()
    assert status["state"] == "open"
    assert status["reason"] == "rate_limit"
    assert status["retry_after_seconds"] == 120

    clock.now += 90
    with pytest.raises(CircuitBreakerOpenError):
        breaker.lookup_company(REGISTERED_VAT)


def test_reset_closes_the_circuit(breaker, connector):
    for _ in range(3):
        _fail(breaker, connector, ConnectorError.connection_failed("reset"))

    breaker.reset()
    connector.lookup_error = None

    assert breaker.state is CircuitState.CLOSED
    assert breaker.lookup_company(REGISTERED_VAT).participant_id is not None


def test_health_check_bypasses_open_circuit(breaker, connector):
    for _ in range(3):
        _fail(breaker, connector, ConnectorError.connection_failed("reset"))

    result = breaker.health_check()

    assert result["healthy"] is True
    assert result["circuit_breaker"]["state"] == "open"


def test_wraps_every_connector_operation():
    breaker = CircuitBreakerConnector(FakeConnector(), failure_threshold=1)
    breaker.connector.status_errors = [ConnectorError.connection_failed("reset")]

    with pytest.raises(ConnectorError):
        breaker.get_invoice_status("doc-1")
    with pytest.raises(CircuitBreakerOpenError):
        breaker.get_ubl_file("doc-1")
