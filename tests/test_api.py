from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import REGISTERED_PARTICIPANT, REGISTERED_VAT, UNREGISTERED_VAT, make_invoice_data
from peppol_tool.exceptions import ConnectorError
from peppol_tool.routers._common import get_service
from peppol_tool.schemas import InvoiceReference, ScheduleRequest


@pytest.fixture
def client(service):
    from peppol_tool.app import app

    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _schedule(client, source_id="1", vat=REGISTERED_VAT, **extra):
    payload = {"source": "billing.invoice", "source_id": source_id, "recipient_vat_number": vat, **extra}
    return client.post("/peppol/invoices", json=payload)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/peppol/health").json()["healthy"] is True


def test_company_lookup(client):
    response = client.get(f"/peppol/companies/{REGISTERED_VAT}")

    assert response.status_code == 200
    assert response.json()["participant_id"] == REGISTERED_PARTICIPANT


def test_company_lookup_unregistered_is_404(client):
    response = client.get(f"/peppol/companies/{UNREGISTERED_VAT}")

    assert response.status_code == 404


def test_company_lookup_failure_is_502(client, connector):
    connector.lookup_error = ConnectorError.connection_failed("timed out")

    response = client.get(f"/peppol/companies/{REGISTERED_VAT}")

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "LOOKUP_FAILED"


def test_schedule_dispatch_and_inspect(client, connector):
    response = _schedule(client)
    assert response.status_code == 201
    scheduled = response.json()
    assert scheduled["state"] == "pending"
    assert scheduled["reference"] == {"source": "billing.invoice", "source_id": "1"}

    invoice_id = scheduled["id"]
    payload = make_invoice_data().model_dump(mode="json")
    response = client.post(f"/peppol/invoices/{invoice_id}/dispatch", json=payload)
    assert response.status_code == 200
    assert response.json()["state"] == "delivered"

    status = client.get(f"/peppol/invoices/{invoice_id}/status").json()
    assert status["connector_invoice_id"] == "doc-1"

    response = client.get(f"/peppol/invoices/{invoice_id}/ubl")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert b"INV-2024-001" in response.content

    history = client.get(f"/peppol/invoices/{invoice_id}/history").json()
    assert [entry["to_state"] for entry in history] == ["delivered", "dispatching", "pending"]

    assert client.post(f"/peppol/invoices/{invoice_id}/poll").json()["state"] == "delivered"
    assert len(connector.sent) == 1


def test_schedule_accepts_numeric_source_id(client):
    response = _schedule(client, source_id=42)

    assert response.status_code == 201
    assert response.json()["reference"] == {"source": "billing.invoice", "source_id": "42"}
    assert ScheduleRequest(source="billing.invoice", source_id=7, recipient_vat_number=REGISTERED_VAT).reference == (
        InvoiceReference(source="billing.invoice", source_id="7")
    )


def test_schedule_twice_is_409(client):
    _schedule(client)

    response = _schedule(client)

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CONFLICT"


def test_schedule_unregistered_with_delivery_is_422(client):
    response = _schedule(client, vat=UNREGISTERED_VAT, skip_peppol_delivery=False)

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "SCHEDULING_FAILED"


def test_dispatch_invalid_content_is_422(client):
    invoice_id = _schedule(client).json()["id"]
    payload = make_invoice_data(total_amount=1.0).model_dump(mode="json")

    response = client.post(f"/peppol/invoices/{invoice_id}/dispatch", json=payload)

    assert response.status_code == 422
    assert response.json()["detail"]["context"]["retryable"] is False


def test_dispatch_transient_failure_is_502(client, connector):
    invoice_id = _schedule(client).json()["id"]
    connector.send_errors = [ConnectorError.api_error("unavailable", 503)]

    response = client.post(
        f"/peppol/invoices/{invoice_id}/dispatch", json=make_invoice_data().model_dump(mode="json")
    )

    assert response.status_code == 502
    assert client.get(f"/peppol/invoices/{invoice_id}/status").json()["state"] == "failed"


def test_unknown_invoice_is_404(client):
    assert client.get("/peppol/invoices/999/status").status_code == 404
    assert client.get("/peppol/invoices/999/ubl").status_code == 404
    assert client.get("/peppol/invoices/999/history").status_code == 404


def test_ubl_before_dispatch_is_404(client):
    invoice_id = _schedule(client).json()["id"]

    assert client.get(f"/peppol/invoices/{invoice_id}/ubl").status_code == 404
