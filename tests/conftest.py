from __future__ import annotations

import threading
import time
from datetime import date
from typing import Optional

import pytest

from peppol_tool.config import get_settings
from peppol_tool.db import init_db, reset_engine
from peppol_tool.exceptions import NotFoundError
from peppol_tool.interfaces.peppol import DeliveryStatus, OutboundDocument, PeppolConnector
from peppol_tool.models import PeppolStatus
from peppol_tool.schemas import Company, InvoiceData, InvoiceLineData, PartyData
from peppol_tool.services.peppol import PeppolService

REGISTERED_VAT = "BE0123456789"
REGISTERED_PARTICIPANT = "0208:0123456789"
UNREGISTERED_VAT = "BE0999999999"


class FakeConnector(PeppolConnector):
    """In-memory access point recording every call."""

    def __init__(self) -> None:
        self.registered: dict[str, str] = {REGISTERED_VAT: REGISTERED_PARTICIPANT}
        self.lookups: list[str] = []
        self.sent: list[OutboundDocument] = []
        self.send_status = PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION
        self.send_errors: list[Exception] = []
        self.send_result: Optional[DeliveryStatus] = None
        self.send_delay = 0.0
        self.lookup_error: Optional[Exception] = None
        self.statuses: dict[str, DeliveryStatus] = {}
        self.status_errors: list[Exception] = []
        self.ubl_files: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def lookup_company(self, vat_number, tax_number=None, country=None) -> Company:
        self.lookups.append(vat_number)
        if self.lookup_error is not None:
            raise self.lookup_error
        participant_id = self.registered.get(vat_number)
        return Company(
            vat_number=vat_number,
            country=country,
            participant_id=participant_id,
            name="ACME NV" if participant_id else None,
        )

    def send_invoice(self, document: OutboundDocument) -> DeliveryStatus:
        with self._lock:
            self.sent.append(document)
            number = len(self.sent)
        if self.send_delay:
            time.sleep(self.send_delay)
        if self.send_errors:
            raise self.send_errors.pop(0)
        if self.send_result is not None:
            return self.send_result
        return DeliveryStatus(connector_invoice_id=f"doc-{number}", status=self.send_status)

    def get_invoice_status(self, connector_invoice_id: str) -> DeliveryStatus:
        if self.status_errors:
            raise self.status_errors.pop(0)
        if connector_invoice_id not in self.statuses:
            raise NotFoundError(f"{connector_invoice_id} unknown")
        return self.statuses[connector_invoice_id]

    def get_ubl_file(self, connector_invoice_id: str) -> bytes:
        if connector_invoice_id not in self.ubl_files:
            raise NotFoundError(f"{connector_invoice_id} unknown")
        return self.ubl_files[connector_invoice_id]

    def health_check(self) -> dict:
        return {"healthy": True, "message": "fake"}


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("PEPPOL_TOOL_DATABASE_URL", f"sqlite:///{tmp_path}/test.db")
    monkeypatch.setenv("PEPPOL_TOOL_ARCHIVE_PATH", str(tmp_path / "ubl"))
    monkeypatch.setenv("PEPPOL_TOOL_SENDER_VAT_NUMBER", "BE0987654321")
    monkeypatch.setenv("PEPPOL_TOOL_COMPANY_ID", "company-1")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    reset_engine()
    init_db()
    yield get_settings()
    reset_engine()
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def service(connector, settings) -> PeppolService:
    return PeppolService(connector, settings)


def make_invoice_data(number: str = "INV-2024-001", **overrides) -> InvoiceData:
    values = dict(
        invoice_number=number,
        invoice_date=date(2024, 5, 1),
        due_date=date(2024, 5, 31),
        currency="EUR",
        total_amount=121.0,
        buyer=PartyData(
            name="ACME NV",
            vat_number=REGISTERED_VAT,
            street="Kerkstraat 1",
            city="Gent",
            postal_code="9000",
            country="BE",
        ),
        seller=PartyData(
            name="Supplier BV",
            vat_number="BE0987654321",
            street="Markt 2",
            city="Brugge",
            postal_code="8000",
            country="BE",
        ),
        lines=[InvoiceLineData(description="Consulting", quantity=2, unit_price=50.0, vat_percentage=21)],
    )
    values.update(overrides)
    return InvoiceData(**values)


@pytest.fixture
def invoice_data() -> InvoiceData:
    return make_invoice_data()
