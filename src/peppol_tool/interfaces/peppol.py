"""Access point integration for PEPPOL BIS Billing 3.0.

The service talks to the network exclusively through a :class:`PeppolConnector`.
:class:`AccessPointConnector` implements it against the REST API of a
PEPPOL access point provider; the access point performs the SMP lookups and
the AS4 transport on our behalf.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from ..config import Settings, get_settings
from ..exceptions import ConnectorError, InvalidInvoiceError, NotFoundError
from ..models import PeppolStatus, utcnow
from ..schemas import Company
from ..services.identifiers import (
    EasCode,
    format_participant_id,
    guess_country,
    lookup_identifier,
    lookup_scheme,
    parse_participant_id,
    strip_country_prefix,
    vat_scheme_for_country,
)
from ..services.ubl import PROFILE_ID

logger = logging.getLogger(__name__)

EXISTING_PREFIX = "existing:"

# errorCode / innerErrors[].errorCode returned when the invoice number was uploaded before
_ALREADY_EXISTS_ERROR = 100008
_ALREADY_EXISTS_INNER_ERROR = 110365

_HEALTH_CHECK_VAT = "BE0000000000"


@dataclass
class OutboundDocument:
    invoice_number: str
    ubl: bytes
    sender_participant_id: str
    recipient_participant_id: str
    document_type: str
    external_reference: Optional[str] = None


@dataclass
class DeliveryStatus:
    """Status of one document as reported by the access point."""

    connector_invoice_id: str
    status: PeppolStatus
    updated_at: datetime = field(default_factory=utcnow)
    message: Optional[str] = None
    recipient_not_on_peppol: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def already_existed(self) -> bool:
        return self.connector_invoice_id.startswith(EXISTING_PREFIX)


class PeppolConnector(ABC):
    """Capabilities the service needs from an access point."""

    @abstractmethod
    def lookup_company(
        self,
        vat_number: str,
        tax_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Company:
        """Resolve a counterparty; ``participant_id`` is ``None`` when it is not registered."""

    @abstractmethod
    def send_invoice(self, document: OutboundDocument) -> DeliveryStatus:
        ...

    @abstractmethod
    def get_invoice_status(self, connector_invoice_id: str) -> DeliveryStatus:
        ...

    @abstractmethod
    def get_ubl_file(self, connector_invoice_id: str) -> bytes:
        ...

    @abstractmethod
    def health_check(self) -> dict[str, Any]:
        ...


_NOT_ON_PEPPOL_STATES = {
    "error not on peppol",
    "not on peppol - send by email",
    "blocked - send by email",
    "none",
}

_SEND_STATES = {
    "created": PeppolStatus.CREATED,
    "processed": PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION,
    "retry": PeppolStatus.PENDING,
    "pending": PeppolStatus.PENDING,
    "canceled": PeppolStatus.FAILED_DELIVERY,
    "error": PeppolStatus.FAILED_DELIVERY,
    "error already sent": PeppolStatus.FAILED_DELIVERY,
    "error send by email": PeppolStatus.FAILED_DELIVERY,
    "blocked": PeppolStatus.FAILED_DELIVERY,
}

_SIMPLE_STATES = {
    "draft": PeppolStatus.CREATED,
    "pending": PeppolStatus.PENDING,
    "sent": PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION,
    "accepted": PeppolStatus.ACCEPTED,
    "rejected": PeppolStatus.REJECTED,
    "failed": PeppolStatus.FAILED_DELIVERY,
}


def map_send_status(value: Optional[str]) -> tuple[PeppolStatus, bool]:
    """Map an outbound document send state.

    Returns the status and whether the recipient turned out not to be
    reachable on PEPPOL. Such documents are stored by the access point and
    count as delivered.
    """

    if value is None:
        return PeppolStatus.CREATED, False
    key = value.strip().lower()
    if key in _NOT_ON_PEPPOL_STATES:
        return PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION, True
    return _SEND_STATES.get(key, PeppolStatus.CREATED), key == "blocked"


def map_simple_status(value: Optional[str]) -> PeppolStatus:
    return _SIMPLE_STATES.get((value or "").strip().lower(), PeppolStatus.CREATED)


def is_already_exists_error(data: Any) -> bool:
    if not isinstance(data, dict) or data.get("errorCode") != _ALREADY_EXISTS_ERROR:
        return False
    return any(
        isinstance(inner, dict) and inner.get("errorCode") == _ALREADY_EXISTS_INNER_ERROR
        for inner in data.get("innerErrors") or []
    )


def _participant_from_meta(meta: dict[str, Any], scheme: Optional[EasCode], identifier: str) -> Optional[str]:
    for key in ("peppolId", "peppol_id"):
        if meta.get(key):
            return str(meta[key])
    if scheme is not None:
        return format_participant_id(scheme, identifier)
    return None


class AccessPointConnector(PeppolConnector):
    """REST client for the access point provider."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings or get_settings()
        headers = {"Accept": "application/json"}
        if self.settings.api_key:
            headers["X-API-KEY"] = self.settings.api_key
        if self.settings.api_secret:
            headers["X-PASSWORD"] = self.settings.api_secret
        self._client = httpx.Client(
            base_url=self.settings.access_point_url,
            timeout=self.settings.timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AccessPointConnector":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _path(self, suffix: str) -> str:
        company_id = self.settings.company_id
        if not company_id:
            raise ConnectorError("Access point company id is not configured", retryable=False)
        return f"/v1/company/{company_id}/{suffix}"

    def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.error(
                "Access point %s failed: %s",
                operation,
                exc,
                extra={"operation": operation, "duration_ms": _elapsed_ms(started)},
            )
            raise ConnectorError.connection_failed(str(exc)) from exc
        logger.debug(
            "Access point %s %s -> %s",
            method,
            path,
            response.status_code,
            extra={"operation": operation, "status_code": response.status_code, "duration_ms": _elapsed_ms(started)},
        )
        return response

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text or None

    def _api_error(self, response: httpx.Response, operation: str) -> ConnectorError:
        data = self._body(response)
        message = None
        if isinstance(data, dict):
            message = data.get("defaultFormat") or data.get("message")
        logger.error(
            "Access point %s returned %s",
            operation,
            response.status_code,
            extra={"operation": operation, "status_code": response.status_code, "response_data": data},
        )
        return ConnectorError.api_error(message or response.reason_phrase, response.status_code, data)

    # lookup

    def _lookup_party(
        self,
        identifier: str,
        scheme: Optional[EasCode],
        vat_number: str,
        country: Optional[str],
    ) -> tuple[bool, dict[str, Any]]:
        uses_register = scheme is not None and not scheme.is_vat_scheme
        payload = {
            "name": "Lookup",
            "address": {
                "street": "-",
                "streetNumber": "-",
                "city": "-",
                "zipCode": "-",
                "countryCode": (scheme.country_code if scheme else None) or country or "BE",
            },
            "peppolID": format_participant_id(scheme, identifier) if scheme is not None else None,
            "taxNumberType": scheme.value if uses_register else None,
            "taxNumber": identifier if uses_register else None,
            "vatNumber": None if uses_register else vat_number,
        }
        response = self._request("POST", self._path("peppol/partyLookup"), "lookup", json=payload)
        if response.status_code >= 400:
            raise self._api_error(response, "lookup")
        data = self._body(response)
        if not isinstance(data, dict) or not isinstance(data.get("registered"), bool):
            raise ConnectorError(
                "Malformed party lookup response",
                retryable=False,
                status_code=response.status_code,
                response_data=data,
            )
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        return data["registered"], meta

    def lookup_company(
        self,
        vat_number: str,
        tax_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Company:
        country = country or guess_country(vat_number)
        identifier = lookup_identifier(vat_number, tax_number, country)
        scheme = lookup_scheme(vat_number, tax_number, country)
        derived_tax_number = tax_number or (identifier if identifier != vat_number else None)
        logger.info(
            "Looking up %s on the PEPPOL network",
            vat_number,
            extra={"vat_number": vat_number, "lookup_identifier": identifier, "lookup_scheme": scheme and scheme.value},
        )

        registered, meta = self._lookup_party(identifier, scheme, vat_number, country)
        if registered:
            return Company(
                vat_number=vat_number,
                country=country,
                participant_id=_participant_from_meta(meta, scheme, identifier),
                name=meta.get("name"),
                tax_number=derived_tax_number,
                tax_number_scheme=scheme.value if scheme else None,
                details=meta,
            )

        vat_scheme = vat_scheme_for_country(country)
        if scheme is not None and not scheme.is_vat_scheme and vat_scheme is not None:
            candidates = [vat_number]
            bare = strip_country_prefix(vat_number)
            if bare != vat_number:
                candidates.append(bare)
            for candidate in candidates:
                logger.info("Register lookup missed, retrying %s with the VAT scheme", candidate)
                registered, meta = self._lookup_party(candidate, vat_scheme, vat_number, country)
                if registered:
                    return Company(
                        vat_number=vat_number,
                        country=country,
                        participant_id=_participant_from_meta(meta, vat_scheme, vat_number),
                        name=meta.get("name"),
                        tax_number=derived_tax_number,
                        tax_number_scheme=vat_scheme.value,
                        details=meta,
                    )

        logger.info("%s is not registered on PEPPOL", vat_number, extra={"vat_number": vat_number})
        return Company(
            vat_number=vat_number,
            country=country,
            tax_number=derived_tax_number,
            tax_number_scheme=scheme.value if scheme else None,
        )

    # outbound documents

    def send_invoice(self, document: OutboundDocument) -> DeliveryStatus:
        sender_scheme, sender_id = parse_participant_id(document.sender_participant_id)
        receiver_scheme, receiver_id = parse_participant_id(document.recipient_participant_id)
        headers = {
            "Content-Type": "application/xml",
            "x-scrada-peppol-sender-scheme": "iso6523-actorid-upis",
            "x-scrada-peppol-sender-id": f"{sender_scheme}:{sender_id}",
            "x-scrada-peppol-receiver-scheme": "iso6523-actorid-upis",
            "x-scrada-peppol-receiver-id": f"{receiver_scheme}:{receiver_id}",
            "x-scrada-peppol-document-type-scheme": "busdox-docid-qns",
            "x-scrada-peppol-document-type-value": document.document_type,
            "x-scrada-peppol-process-scheme": "cenbii-procid-ubl",
            "x-scrada-peppol-process-value": PROFILE_ID,
        }
        if document.external_reference:
            headers["x-scrada-external-reference"] = document.external_reference

        logger.info(
            "Sending invoice %s to %s",
            document.invoice_number,
            document.recipient_participant_id,
            extra={"invoice_number": document.invoice_number, "ubl_bytes": len(document.ubl)},
        )
        response = self._request(
            "POST",
            self._path("peppol/outbound/document"),
            "send",
            content=document.ubl,
            headers=headers,
        )
        data = self._body(response)
        if response.status_code >= 400:
            if is_already_exists_error(data):
                logger.info(
                    "Invoice %s already exists at the access point",
                    document.invoice_number,
                    extra={"invoice_number": document.invoice_number},
                )
                return DeliveryStatus(
                    connector_invoice_id=f"{EXISTING_PREFIX}{document.invoice_number}",
                    status=PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION,
                    message="Invoice already exists at the access point, status unknown",
                    details={"already_existed": True, "response": data},
                )
            if response.status_code in (400, 422):
                error = self._api_error(response, "send")
                raise InvalidInvoiceError(
                    error.message,
                    status_code=response.status_code,
                    response_data=error.response_data,
                )
            raise self._api_error(response, "send")

        if isinstance(data, str) and data:
            return DeliveryStatus(connector_invoice_id=data, status=PeppolStatus.CREATED)
        if isinstance(data, dict) and data.get("id"):
            return DeliveryStatus(
                connector_invoice_id=str(data["id"]),
                status=map_simple_status(data.get("status")),
                details=data,
            )
        raise ConnectorError("Malformed send response", retryable=False, response_data=data)

    def get_invoice_status(self, connector_invoice_id: str) -> DeliveryStatus:
        response = self._request(
            "GET",
            self._path(f"peppol/outbound/document/{connector_invoice_id}/info"),
            "status",
        )
        if response.status_code == 404:
            raise NotFoundError(
                f"Document {connector_invoice_id} not found at the access point",
                {"connector_invoice_id": connector_invoice_id},
            )
        if response.status_code >= 400:
            raise self._api_error(response, "status")
        data = self._body(response)
        if not isinstance(data, dict):
            raise ConnectorError("Malformed status response", retryable=False, response_data=data)
        status, not_on_peppol = map_send_status(data.get("status"))
        message = data.get("errorMessage")
        if message is None and status.is_failed():
            message = data.get("status")
        return DeliveryStatus(
            connector_invoice_id=connector_invoice_id,
            status=status,
            message=message,
            recipient_not_on_peppol=not_on_peppol,
            details=data,
        )

    def get_ubl_file(self, connector_invoice_id: str) -> bytes:
        response = self._request(
            "GET",
            self._path(f"peppol/outbound/document/{connector_invoice_id}"),
            "ubl",
            headers={"Accept": "application/xml"},
        )
        if response.status_code == 404:
            raise NotFoundError(
                f"UBL for document {connector_invoice_id} not found at the access point",
                {"connector_invoice_id": connector_invoice_id},
            )
        if response.status_code >= 400:
            raise self._api_error(response, "ubl")
        return response.content

    def health_check(self) -> dict[str, Any]:
        try:
            self._lookup_party(_HEALTH_CHECK_VAT, EasCode.VAT_BE, _HEALTH_CHECK_VAT, "BE")
        except ConnectorError as exc:
            logger.error("Access point health check failed: %s", exc.message)
            return {"healthy": False, "error": exc.message}
        return {"healthy": True, "message": "Access point reachable"}


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
