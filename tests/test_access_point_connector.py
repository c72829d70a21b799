from __future__ import annotations

import json

import httpx
import pytest

from peppol_tool.exceptions import ConnectorError, InvalidInvoiceError, NotFoundError
from peppol_tool.interfaces.peppol import (
    AccessPointConnector,
    OutboundDocument,
    is_already_exists_error,
    map_send_status,
    map_simple_status,
)
from peppol_tool.models import PeppolStatus


class Recorder:
    """MockTransport handler replaying queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def make_connector(settings):
    connectors = []

    def factory(*responses, **overrides):
        recorder = Recorder(*responses)
        configured = settings.model_copy(update={"api_key": "key", "api_secret": "secret", **overrides})
        connector = AccessPointConnector(configured, transport=httpx.MockTransport(recorder))
        connectors.append(connector)
        return connector, recorder

    yield factory
    for connector in connectors:
        connector.close()


def _document(**overrides) -> OutboundDocument:
    values = dict(
        invoice_number="INV-1",
        ubl=b"<Invoice/>",
        sender_participant_id="0208:0987654321",
        recipient_participant_id="iso6523-actorid-upis::0208:0123456789",
        document_type="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2::Invoice",
        external_reference="billing.invoice:1",
    )
    values.update(overrides)
    return OutboundDocument(**values)


# lookup


def test_lookup_belgian_company_uses_enterprise_number(make_connector):
    connector, recorder = make_connector(
        httpx.Response(200, json={"registered": True, "meta": {"name": "ACME NV"}})
    )

    company = connector.lookup_company("BE0123456789")

    assert company.participant_id == "0208:0123456789"
    assert company.name == "ACME NV"
    assert company.country == "BE"
    assert company.tax_number == "0123456789"
    assert company.tax_number_scheme == "0208"

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/company/company-1/peppol/partyLookup"
    assert request.headers["X-API-KEY"] == "key"
    assert request.headers["X-PASSWORD"] == "secret"
    payload = json.loads(request.content)
    assert payload["peppolID"] == "0208:0123456789"
    assert payload["taxNumberType"] == "0208"
    assert payload["taxNumber"] == "0123456789"
    assert payload["vatNumber"] is None
    assert payload["address"]["countryCode"] == "BE"


def test_lookup_prefers_participant_id_from_response(make_connector):
    connector, _ = make_connector(
        httpx.Response(200, json={"registered": True, "meta": {"peppolId": "9944:NL123456789B01"}})
    )

    company = connector.lookup_company("NL123456789B01")

    assert company.participant_id == "9944:NL123456789B01"


def test_lookup_falls_back_to_vat_scheme(make_connector):
    connector, recorder = make_connector(
        httpx.Response(200, json={"registered": False}),
        httpx.Response(200, json={"registered": False}),
        httpx.Response(200, json={"registered": True, "meta": {}}),
    )

    company = connector.lookup_company("BE0123456789")

    assert company.participant_id == "9925:BE0123456789"
    assert company.tax_number_scheme == "9925"
    payloads = [json.loads(request.content) for request in recorder.requests]
    assert [payload["peppolID"] for payload in payloads] == [
        "0208:0123456789",
        "9925:BE0123456789",
        "9925:0123456789",
    ]
    assert payloads[1]["vatNumber"] == "BE0123456789"


def test_lookup_unregistered_company(make_connector):
    connector, recorder = make_connector(
        httpx.Response(200, json={"registered": False}),
        httpx.Response(200, json={"registered": False}),
        httpx.Response(200, json={"registered": False}),
    )

    company = connector.lookup_company("BE0999999999")

    assert company.participant_id is None
    assert not company.is_on_peppol
    assert len(recorder.requests) == 3


def test_lookup_malformed_response_is_not_retryable(make_connector):
    connector, _ = make_connector(httpx.Response(200, json={"status": "ok"}))

    with pytest.raises(ConnectorError) as excinfo:
        connector.lookup_company("NL123456789B01")

    assert excinfo.value.retryable is False


def test_lookup_server_error_is_retryable(make_connector):
    connector, _ = make_connector(httpx.Response(503, json={"message": "maintenance"}))

    with pytest.raises(ConnectorError) as excinfo:
        connector.lookup_company("NL123456789B01")

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 503
    assert "maintenance" in excinfo.value.message


def test_transport_error_becomes_connection_failure(make_connector):
    connector, _ = make_connector(httpx.ConnectError("connection refused"))

    with pytest.raises(ConnectorError) as excinfo:
        connector.lookup_company("NL123456789B01")

    assert excinfo.value.retryable is True
    assert "connection refused" in excinfo.value.message


@pytest.mark.parametrize(
    "error",
    [httpx.DecodingError("bad gzip"), httpx.TooManyRedirects("redirect loop")],
)
def test_request_errors_become_connection_failures(make_connector, error):
    connector, _ = make_connector(error)

    with pytest.raises(ConnectorError) as excinfo:
        connector.send_invoice(_document())

    assert excinfo.value.retryable is True
    assert isinstance(excinfo.value.__cause__, type(error))


def test_missing_company_id_is_a_configuration_error(make_connector):
    connector, recorder = make_connector(company_id=None)

    with pytest.raises(ConnectorError) as excinfo:
        connector.lookup_company("NL123456789B01")

    assert excinfo.value.retryable is False
    assert recorder.requests == []


# send


def test_send_invoice_posts_ubl_with_routing_headers(make_connector):
    connector, recorder = make_connector(httpx.Response(200, json="0b6f2c1e-doc"))

    result = connector.send_invoice(_document())

    assert result.connector_invoice_id == "0b6f2c1e-doc"
    assert result.status is PeppolStatus.CREATED
    request = recorder.requests[0]
    assert request.url.path == "/v1/company/company-1/peppol/outbound/document"
    assert request.content == b"<Invoice/>"
    assert request.headers["Content-Type"] == "application/xml"
    assert request.headers["x-scrada-peppol-sender-id"] == "0208:0987654321"
    assert request.headers["x-scrada-peppol-receiver-id"] == "0208:0123456789"
    assert request.headers["x-scrada-external-reference"] == "billing.invoice:1"


def test_send_invoice_maps_object_response(make_connector):
    connector, _ = make_connector(httpx.Response(200, json={"id": 42, "status": "sent"}))

    result = connector.send_invoice(_document())

    assert result.connector_invoice_id == "42"
    assert result.status is PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION


def test_send_existing_invoice_reports_delivered(make_connector):
    body = {"errorCode": 100008, "innerErrors": [{"errorCode": 110365}]}
    connector, _ = make_connector(httpx.Response(400, json=body))

    result = connector.send_invoice(_document())

    assert result.connector_invoice_id == "existing:INV-1"
    assert result.already_existed
    assert result.status is PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION


def test_send_rejected_content_raises_invalid_invoice(make_connector):
    connector, _ = make_connector(httpx.Response(422, json={"defaultFormat": "BR-CO-15 violated"}))

    with pytest.raises(InvalidInvoiceError) as excinfo:
        connector.send_invoice(_document())

    assert excinfo.value.retryable is False
    assert excinfo.value.status_code == 422
    assert "BR-CO-15" in excinfo.value.message


def test_send_rate_limited_is_retryable(make_connector):
    connector, _ = make_connector(httpx.Response(429, text="slow down"))

    with pytest.raises(ConnectorError) as excinfo:
        connector.send_invoice(_document())

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 429


# status and documents


def test_status_maps_send_state(make_connector):
    connector, recorder = make_connector(httpx.Response(200, json={"status": "Processed"}))

    result = connector.get_invoice_status("doc-1")

    assert result.status is PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION
    assert result.recipient_not_on_peppol is False
    assert recorder.requests[0].url.path == "/v1/company/company-1/peppol/outbound/document/doc-1/info"


def test_status_recipient_not_on_peppol(make_connector):
    connector, _ = make_connector(httpx.Response(200, json={"status": "Not on Peppol - send by email"}))

    result = connector.get_invoice_status("doc-1")

    assert result.status is PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION
    assert result.recipient_not_on_peppol is True


def test_status_error_carries_message(make_connector):
    connector, _ = make_connector(httpx.Response(200, json={"status": "Error", "errorMessage": "AS4 timeout"}))

    result = connector.get_invoice_status("doc-1")

    assert result.status is PeppolStatus.FAILED_DELIVERY
    assert result.message == "AS4 timeout"


def test_status_unknown_document(make_connector):
    connector, _ = make_connector(httpx.Response(404))

    with pytest.raises(NotFoundError):
        connector.get_invoice_status("doc-404")


def test_get_ubl_file_returns_bytes(make_connector):
    connector, recorder = make_connector(httpx.Response(200, content=b"<Invoice>1</Invoice>"))

    assert connector.get_ubl_file("doc-1") == b"<Invoice>1</Invoice>"
    assert recorder.requests[0].headers["Accept"] == "application/xml"


def test_health_check_reports_failures(make_connector):
    healthy, _ = make_connector(httpx.Response(200, json={"registered": False}))
    broken, _ = make_connector(httpx.Response(500, json={"message": "down"}))

    assert healthy.health_check()["healthy"] is True
    result = broken.health_check()
    assert result["healthy"] is False
    assert "down" in result["error"]


# status mapping


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, (PeppolStatus.CREATED, False)),
        ("Created", (PeppolStatus.CREATED, False)),
        ("Retry", (PeppolStatus.PENDING, False)),
        ("Processed", (PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION, False)),
        ("Blocked", (PeppolStatus.FAILED_DELIVERY, True)),
        ("None", (PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION, True)),
        ("something new", (PeppolStatus.CREATED, False)),
    ],
)
def test_map_send_status(value, expected):
    assert map_send_status(value) == expected


def test_map_simple_status():
    assert map_simple_status("Accepted") is PeppolStatus.ACCEPTED
    assert map_simple_status("rejected") is PeppolStatus.REJECTED
    assert map_simple_status(None) is PeppolStatus.CREATED


def test_is_already_exists_error_requires_inner_code():
    assert is_already_exists_error({"errorCode": 100008, "innerErrors": [{"errorCode": 110365}]})
    assert not is_already_exists_error({"errorCode": 100008, "innerErrors": []})
    assert not is_already_exists_error("error")
