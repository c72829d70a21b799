"""PEPPOL e-invoicing service: lookup, scheduling, dispatch and status tracking."""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Union

import pendulum

from ..config import Settings, get_settings
from ..exceptions import (
    ConflictError,
    ConnectorError,
    DispatchError,
    InvalidInvoiceError,
    NotFoundError,
    PeppolError,
    PeppolLookupError,
    SchedulingError,
)
from ..interfaces.circuit_breaker import CircuitBreakerConnector
from ..interfaces.peppol import EXISTING_PREFIX, DeliveryStatus, OutboundDocument, PeppolConnector
from ..models import InvoiceState, PeppolCompany, PeppolInvoice, PeppolStatus, utcnow
from ..schemas import (
    Company,
    InvoiceData,
    InvoiceReference,
    InvoiceStatus,
    ScheduledInvoice,
    StatusLogEntry,
)
from . import archive, store
from .events import InvoiceEvent, InvoiceEventType, InvoiceListener
from .identifiers import guess_country, participant_id_for_vat
from .locks import KeyedLocks
from .ubl import document_type_for, generate_ubl
from .validators import normalize_vat_number, validate_invoice_data

logger = logging.getLogger(__name__)

InvoiceHandle = Union[ScheduledInvoice, InvoiceStatus, int]

_BASE64 = re.compile(r"^[A-Za-z0-9+/=]+$")
_MAX_PLAIN_LENGTH = 500


class InvoiceTransformer(Protocol):
    """Materialises caller-owned invoices for the dispatch worker."""

    def transform(self, reference: InvoiceReference) -> InvoiceData:
        ...


def sanitize_payload(value: Any) -> Any:
    """Replace large base64 blobs (embedded PDFs) with a size marker."""

    if isinstance(value, dict):
        return {key: sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item) for item in value]
    if (
        isinstance(value, str)
        and len(value) > _MAX_PLAIN_LENGTH
        and len(value) % 4 == 0
        and _BASE64.match(value)
    ):
        return f"[BASE64_CONTENT_REMOVED:{len(value)}_bytes]"
    return value


def _to_utc(value: datetime) -> datetime:
    return pendulum.instance(value, tz="UTC").in_timezone("UTC")


_CONNECTOR_STATES = {
    PeppolStatus.CREATED: InvoiceState.SENT,
    PeppolStatus.PENDING: InvoiceState.SENT,
    PeppolStatus.DELIVERED_WITHOUT_CONFIRMATION: InvoiceState.DELIVERED,
    PeppolStatus.ACCEPTED: InvoiceState.ACCEPTED,
    PeppolStatus.REJECTED: InvoiceState.REJECTED,
    PeppolStatus.FAILED_DELIVERY: InvoiceState.FAILED,
}


class PeppolService:
    """Sends caller-owned invoices over the PEPPOL network.

    The caller keeps ownership of its invoices and only hands over an
    :class:`InvoiceReference` when scheduling and the materialised
    :class:`InvoiceData` when dispatching.
    """

    def __init__(
        self,
        connector: PeppolConnector,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLocks] = None,
        listeners: Optional[list[InvoiceListener]] = None,
    ):
        self.connector = connector
        self.settings = settings or get_settings()
        self._locks = locks or _DISPATCH_LOCKS
        self._listeners: list[InvoiceListener] = list(listeners or [])

    def add_listener(self, listener: InvoiceListener) -> None:
        """Call ``listener`` with every dispatch and status outcome."""

        self._listeners.append(listener)

    def _notify(self, invoice_id: int, from_state: InvoiceState, error: Optional[PeppolError] = None) -> None:
        if not self._listeners:
            return
        row = store.require_invoice(invoice_id)
        failed = error is not None or row.state is InvoiceState.FAILED
        if from_state is InvoiceState.DISPATCHING:
            types = [InvoiceEventType.FAILED if failed else InvoiceEventType.DISPATCHED]
        else:
            types = [InvoiceEventType.STATUS_CHANGED]
            if failed:
                types.append(InvoiceEventType.FAILED)
        reference = store.to_reference(row)
        status = store.to_status(row)
        for event_type in types:
            event = InvoiceEvent(event_type, invoice_id, reference, status, from_state=from_state, error=error)
            for listener in self._listeners:
                listener(event)

    # lookup

    def lookup_company(
        self,
        vat_number: str,
        force_refresh: bool = False,
        tax_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Optional[Company]:
        """Return the registered participant for ``vat_number`` or ``None``."""

        row = self._resolve_company(vat_number, force_refresh, tax_number, country)
        if not row.participant_id:
            return None
        return store.to_company(row)

    def _resolve_company(
        self,
        vat_number: str,
        force_refresh: bool = False,
        tax_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> PeppolCompany:
        vat = normalize_vat_number(vat_number)
        if not vat:
            raise PeppolLookupError("A VAT number is required for a PEPPOL lookup", {"vat_number": vat_number})
        cache_country = (country or guess_country(vat) or "").upper()

        if not force_refresh:
            cached = store.get_cached_company(vat, cache_country)
            if cached is not None and self._is_fresh(cached):
                logger.debug("Lookup cache hit for %s", vat, extra={"vat_number": vat, "country": cache_country})
                return cached
            logger.debug("Lookup cache miss for %s", vat, extra={"vat_number": vat, "country": cache_country})

        try:
            company = self.connector.lookup_company(vat, tax_number=tax_number, country=cache_country or None)
        except ConnectorError as exc:
            logger.error(
                "PEPPOL lookup for %s failed: %s",
                vat,
                exc.message,
                extra={"vat_number": vat, "retryable": exc.retryable},
            )
            raise PeppolLookupError(
                f"PEPPOL directory lookup for {vat} failed: {exc.message}",
                {"vat_number": vat, "country": cache_country or None, "cause": exc.to_dict()},
            ) from exc

        company = company.model_copy(update={"vat_number": vat, "last_lookup_at": utcnow()})
        row = store.save_company(company, cache_country)
        logger.info(
            "PEPPOL lookup for %s: %s",
            vat,
            row.participant_id or "not registered",
            extra={"vat_number": vat, "participant_id": row.participant_id, "forced": force_refresh},
        )
        return row

    def _is_fresh(self, row: PeppolCompany) -> bool:
        if row.last_lookup_at is None:
            return False
        return row.last_lookup_at > utcnow() - timedelta(hours=self.settings.lookup_cache_hours)

    # scheduling

    def schedule_invoice(
        self,
        invoice_ref: InvoiceReference,
        recipient_vat_number: str,
        dispatch_at: Optional[datetime] = None,
        skip_peppol_delivery: Optional[bool] = None,
    ) -> ScheduledInvoice:
        """Register ``invoice_ref`` for delivery to ``recipient_vat_number``.

        ``skip_peppol_delivery`` set to ``True`` records the invoice without
        transmitting it, ``False`` requires a registered recipient and
        ``None`` decides from the directory lookup.
        """

        if store.find_invoice(invoice_ref) is not None:
            raise ConflictError(
                f"Invoice {invoice_ref} is already scheduled",
                {"source": invoice_ref.source, "source_id": invoice_ref.source_id},
            )

        vat = normalize_vat_number(recipient_vat_number)
        company: Optional[PeppolCompany] = None
        if skip_peppol_delivery is not True:
            try:
                company = self._resolve_company(vat)
            except PeppolLookupError as exc:
                raise SchedulingError(
                    f"Cannot resolve recipient {vat}: {exc.message}",
                    {"vat_number": vat, "cause": exc.to_dict()},
                ) from exc

        registered = company is not None and bool(company.participant_id)
        if skip_peppol_delivery is False and not registered:
            raise SchedulingError(
                f"Recipient {vat} is not registered on PEPPOL",
                {"vat_number": vat, "reference": str(invoice_ref)},
            )
        skip = skip_peppol_delivery if skip_peppol_delivery is not None else not registered

        if dispatch_at is None:
            dispatch_at = utcnow() + timedelta(days=self.settings.dispatch_delay_days)
        else:
            dispatch_at = _to_utc(dispatch_at)

        row = store.create_invoice(
            invoice_ref,
            recipient_company_id=company.id if company is not None else None,
            recipient_vat_number=vat,
            recipient_participant_id=company.participant_id if company is not None else None,
            skip_delivery=skip,
            dispatch_at=dispatch_at,
        )
        logger.info(
            "Scheduled invoice %s for %s",
            invoice_ref,
            vat,
            extra={"invoice_id": row.id, "skip_delivery": skip, "dispatch_at": dispatch_at.isoformat()},
        )
        return store.to_scheduled(row)

    # dispatch

    def dispatch_invoice(self, scheduled_invoice: InvoiceHandle, invoice_data: InvoiceData) -> InvoiceStatus:
        """Generate, archive and transmit the UBL for a scheduled invoice.

        Invoices that already reached a recorded outcome are returned as they
        are; only pending invoices and retryable failures are transmitted. A
        ``dispatching`` claim left behind by a crashed worker is taken over
        once it is older than ``dispatch_claim_timeout_minutes``.
        """

        invoice_id = _invoice_id(scheduled_invoice)
        with self._locks.hold(invoice_id):
            row = store.require_invoice(invoice_id)
            stale_before = None
            if row.state is InvoiceState.DISPATCHING:
                stale_before = self._stale_claim_cutoff()
                if row.updated_at > stale_before:
                    raise ConflictError(
                        f"Invoice {invoice_id} is already being dispatched",
                        {"invoice_id": invoice_id},
                    )
                logger.warning(
                    "Invoice %s has been dispatching since %s, taking the claim over",
                    invoice_id,
                    row.updated_at.isoformat(),
                    extra={"invoice_id": invoice_id, "attempt": row.dispatch_attempts},
                )
            elif row.state not in {InvoiceState.PENDING, InvoiceState.FAILED} or (
                row.state is InvoiceState.FAILED and not row.retryable
            ):
                logger.info(
                    "Invoice %s already %s, not transmitting again",
                    invoice_id,
                    row.state.value,
                    extra={"invoice_id": invoice_id, "state": row.state.value},
                )
                return store.to_status(row)

            try:
                validate_invoice_data(invoice_data, self.settings.currency)
            except InvalidInvoiceError as exc:
                logger.warning(
                    "Invoice %s failed local validation: %s",
                    invoice_id,
                    exc.message,
                    extra={"invoice_id": invoice_id},
                )
                raise DispatchError(
                    f"Invoice {invoice_data.invoice_number} is invalid: {exc.message}",
                    retryable=False,
                    context={"invoice_id": invoice_id, "cause": exc.to_dict()},
                ) from exc

            claimed = store.claim_for_dispatch(invoice_id, row.state, stale_before=stale_before)
            if claimed is None:
                raise ConflictError(
                    f"Invoice {invoice_id} was claimed by another dispatcher",
                    {"invoice_id": invoice_id},
                )
            logger.info(
                "Dispatching invoice %s (attempt %s)",
                invoice_id,
                claimed.dispatch_attempts,
                extra={"invoice_id": invoice_id, "attempt": claimed.dispatch_attempts},
            )
            try:
                status = self._dispatch_claimed(claimed, invoice_data)
            except DispatchError as exc:
                self._notify(invoice_id, InvoiceState.DISPATCHING, error=exc)
                raise
            except Exception as exc:
                error = self._abandon_claim(claimed, exc)
                self._notify(invoice_id, InvoiceState.DISPATCHING, error=error)
                raise error from exc

        self._notify(invoice_id, InvoiceState.DISPATCHING)
        return status

    def _stale_claim_cutoff(self) -> datetime:
        return utcnow() - timedelta(minutes=self.settings.dispatch_claim_timeout_minutes)

    def _abandon_claim(self, row: PeppolInvoice, exc: Exception) -> DispatchError:
        """Release a claim after an unexpected error so the invoice can be retried."""

        invoice_id = row.id
        attempts = row.dispatch_attempts
        retryable = attempts < self.settings.max_dispatch_attempts
        logger.exception(
            "Dispatch of invoice %s aborted (attempt %s)",
            invoice_id,
            attempts,
            extra={"invoice_id": invoice_id, "attempt": attempts, "retryable": retryable},
        )
        next_retry_at = None
        if store.require_invoice(invoice_id).state is InvoiceState.DISPATCHING:
            next_retry_at = self._fail_attempt(
                invoice_id,
                attempts,
                retryable,
                f"Dispatch aborted: {exc}",
                {"error": repr(exc), "attempt": attempts},
            )
        return DispatchError(
            f"Dispatch of invoice {invoice_id} aborted: {exc}",
            retryable=retryable,
            context={
                "invoice_id": invoice_id,
                "attempt": attempts,
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                "cause": repr(exc),
            },
        )

    def _fail_attempt(
        self,
        invoice_id: int,
        attempts: int,
        retryable: bool,
        message: str,
        details: dict[str, Any],
    ) -> Optional[datetime]:
        next_retry_at = None
        if retryable:
            next_retry_at = utcnow() + timedelta(minutes=self.settings.retry_delay_minutes * attempts)
        store.transition(
            invoice_id,
            InvoiceState.FAILED,
            message,
            details,
            retryable=retryable,
            next_retry_at=next_retry_at,
        )
        return next_retry_at

    def _dispatch_claimed(self, row: PeppolInvoice, invoice_data: InvoiceData) -> InvoiceStatus:
        invoice_id = row.id
        sender_id = self._sender_participant_id(invoice_data)
        if not row.skip_delivery and (not row.recipient_participant_id or sender_id is None):
            missing = "recipient" if not row.recipient_participant_id else "sender"
            store.transition(
                invoice_id,
                InvoiceState.FAILED,
                f"No PEPPOL participant id for the {missing}",
                retryable=False,
            )
            raise DispatchError(
                f"Invoice {invoice_id} has no PEPPOL participant id for the {missing}",
                retryable=False,
                context={"invoice_id": invoice_id},
            )

        try:
            ubl = self._stored_or_generated_ubl(row, invoice_data, sender_id)
        except Exception as exc:
            store.transition(
                invoice_id,
                InvoiceState.FAILED,
                f"UBL generation failed: {exc}",
                retryable=False,
            )
            raise DispatchError(
                f"UBL generation for invoice {invoice_id} failed: {exc}",
                retryable=False,
                context={"invoice_id": invoice_id},
            ) from exc

        if row.skip_delivery:
            updated = store.transition(
                invoice_id,
                InvoiceState.STORED,
                "UBL stored, PEPPOL delivery skipped",
                retryable=False,
                completed_at=utcnow(),
            )
            return store.to_status(updated)

        document = OutboundDocument(
            invoice_number=invoice_data.invoice_number,
            ubl=ubl,
            sender_participant_id=sender_id,
            recipient_participant_id=row.recipient_participant_id,
            document_type=document_type_for(invoice_data),
            external_reference=f"{row.invoice_source}:{row.invoice_source_id}",
        )
        payload = sanitize_payload(
            {
                "sender": sender_id,
                "recipient": row.recipient_participant_id,
                "document_type": document.document_type,
                "invoice": invoice_data.model_dump(mode="json"),
            }
        )
        store.update_invoice(invoice_id, request_payload=json.dumps(payload, ensure_ascii=False))

        try:
            result = self.connector.send_invoice(document)
        except ConnectorError as exc:
            return self._record_transmission_failure(row, exc)

        return self._record_transmission(invoice_id, result)

    def _record_transmission_failure(self, row: PeppolInvoice, exc: ConnectorError) -> InvoiceStatus:
        invoice_id = row.id
        attempts = row.dispatch_attempts
        retryable = exc.retryable and attempts < self.settings.max_dispatch_attempts
        next_retry_at = self._fail_attempt(
            invoice_id,
            attempts,
            retryable,
            exc.message,
            {"error": exc.to_dict(), "attempt": attempts},
        )
        logger.error(
            "Dispatch of invoice %s failed (attempt %s, retryable=%s): %s",
            invoice_id,
            attempts,
            retryable,
            exc.message,
            extra={"invoice_id": invoice_id, "attempt": attempts, "retryable": retryable},
        )
        raise DispatchError(
            f"Dispatch of invoice {invoice_id} failed: {exc.message}",
            retryable=retryable,
            context={
                "invoice_id": invoice_id,
                "attempt": attempts,
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                "cause": exc.to_dict(),
            },
        ) from exc

    def _record_transmission(self, invoice_id: int, result: DeliveryStatus) -> InvoiceStatus:
        state = _CONNECTOR_STATES[result.status]
        now = utcnow()
        changes: dict[str, Any] = {
            "connector_invoice_id": result.connector_invoice_id,
            "connector_status": result.status,
            "dispatched_at": now,
            "retryable": False,
        }
        if state is InvoiceState.SENT:
            changes["poll_attempts"] = 0
            changes["next_poll_at"] = now + timedelta(hours=self._poll_delay_hours(0))
        else:
            changes["completed_at"] = now
        message = result.message or f"Transmitted, access point status {result.status.label()}"
        if result.recipient_not_on_peppol:
            message = result.message or "Recipient not on PEPPOL, stored by the access point"
        updated = store.transition(
            invoice_id,
            state,
            message,
            {"connector_invoice_id": result.connector_invoice_id, "details": result.details},
            **changes,
        )
        logger.info(
            "Invoice %s transmitted as %s",
            invoice_id,
            result.connector_invoice_id,
            extra={"invoice_id": invoice_id, "connector_status": result.status.value, "state": state.value},
        )
        return store.to_status(updated)

    def _sender_participant_id(self, invoice_data: InvoiceData) -> Optional[str]:
        seller_vat = invoice_data.seller.vat_number if invoice_data.seller else None
        vat = seller_vat or self.settings.sender_vat_number
        if not vat:
            return None
        country = invoice_data.seller.country if invoice_data.seller else None
        return participant_id_for_vat(normalize_vat_number(vat), country)

    def _stored_or_generated_ubl(self, row: PeppolInvoice, invoice_data: InvoiceData, sender_id: Optional[str]) -> bytes:
        existing = archive.get_document(row.id)
        if existing is not None:
            return archive.read_document(existing)
        content = generate_ubl(invoice_data, sender_id or "", row.recipient_participant_id)
        archive.store_ubl(row.id, f"{invoice_data.invoice_number}.xml", content)
        return content

    # status

    def get_invoice_status(self, scheduled_invoice: InvoiceHandle) -> InvoiceStatus:
        return store.to_status(store.require_invoice(_invoice_id(scheduled_invoice)))

    def get_invoice_history(self, scheduled_invoice: InvoiceHandle) -> list[StatusLogEntry]:
        invoice_id = _invoice_id(scheduled_invoice)
        store.require_invoice(invoice_id)
        return store.fetch_history(invoice_id)

    def _poll_delay_hours(self, attempt: int) -> int:
        hours = self.settings.poll_retry_hours or [1]
        return hours[min(attempt, len(hours) - 1)]

    def poll_invoice_status(self, scheduled_invoice: InvoiceHandle) -> InvoiceStatus:
        """Refresh a sent invoice from the access point.

        Invoices in any other state, and documents the access point only
        reported as already existing, are returned unchanged.
        """

        invoice_id = _invoice_id(scheduled_invoice)
        row = store.require_invoice(invoice_id)
        connector_id = row.connector_invoice_id
        if not row.state.should_poll() or not connector_id or connector_id.startswith(EXISTING_PREFIX):
            return store.to_status(row)

        attempt = row.poll_attempts + 1
        try:
            result = self.connector.get_invoice_status(connector_id)
        except PeppolError as exc:
            store.update_invoice(invoice_id, **self._poll_schedule(attempt))
            logger.warning(
                "Status poll for invoice %s failed: %s",
                invoice_id,
                exc.message,
                extra={"invoice_id": invoice_id, "poll_attempt": attempt},
            )
            raise

        poll_response = json.dumps(
            {"status": result.status.value, "message": result.message, "details": result.details},
            ensure_ascii=False,
            default=str,
        )
        state = _CONNECTOR_STATES[result.status]
        if state is InvoiceState.SENT:
            updated = store.update_invoice(
                invoice_id,
                connector_status=result.status,
                poll_response=poll_response,
                **self._poll_schedule(attempt),
            )
            return store.to_status(updated)

        message = result.message
        if result.recipient_not_on_peppol:
            message = message or "Recipient not on PEPPOL, stored by the access point"
        updated = store.transition(
            invoice_id,
            state,
            message or f"Access point status {result.status.label()}",
            {"poll_attempt": attempt, "details": result.details},
            connector_status=result.status,
            poll_response=poll_response,
            poll_attempts=attempt,
            next_poll_at=None,
            retryable=False,
            completed_at=utcnow(),
        )
        self._notify(invoice_id, row.state)
        return store.to_status(updated)

    def _poll_schedule(self, attempt: int) -> dict[str, Any]:
        if attempt >= self.settings.poll_max_attempts:
            return {"poll_attempts": attempt, "next_poll_at": None}
        return {
            "poll_attempts": attempt,
            "next_poll_at": utcnow() + timedelta(hours=self._poll_delay_hours(attempt)),
        }

    def poll_pending(self, limit: int = 100) -> dict[str, int]:
        """Poll every sent invoice whose next poll is due."""

        counts = {"polled": 0, "updated": 0, "failed": 0}
        for row in store.due_for_poll(utcnow(), limit):
            counts["polled"] += 1
            try:
                status = self.poll_invoice_status(row.id)
            except PeppolError:
                counts["failed"] += 1
                continue
            if status.state is not InvoiceState.SENT:
                counts["updated"] += 1
        logger.info("Polled %(polled)s invoices, %(updated)s updated, %(failed)s failed", counts, extra=counts)
        return counts

    def dispatch_due(self, transformer: InvoiceTransformer, limit: int = 100) -> dict[str, int]:
        """Dispatch pending invoices and retryable failures that are due."""

        counts = {"dispatched": 0, "failed": 0, "skipped": 0}
        for row in store.due_for_dispatch(utcnow(), limit, stale_before=self._stale_claim_cutoff()):
            reference = store.to_reference(row)
            try:
                invoice_data = transformer.transform(reference)
                self.dispatch_invoice(row.id, invoice_data)
            except ConflictError:
                counts["skipped"] += 1
            except PeppolError as exc:
                counts["failed"] += 1
                logger.warning(
                    "Dispatch of %s failed: %s",
                    reference,
                    exc.message,
                    extra={"invoice_id": row.id, "code": exc.code},
                )
            else:
                counts["dispatched"] += 1
        logger.info(
            "Dispatched %(dispatched)s invoices, %(failed)s failed, %(skipped)s skipped", counts, extra=counts
        )
        return counts

    # documents

    def get_ubl_file(self, scheduled_invoice: InvoiceHandle) -> str:
        invoice_id = _invoice_id(scheduled_invoice)
        row = store.require_invoice(invoice_id)
        entry = archive.get_document(invoice_id)
        if entry is not None:
            return archive.read_document(entry).decode("utf-8")

        connector_id = row.connector_invoice_id
        if not connector_id or connector_id.startswith(EXISTING_PREFIX):
            raise NotFoundError(f"No UBL document for invoice {invoice_id}", {"invoice_id": invoice_id})
        content = self.connector.get_ubl_file(connector_id)
        archive.store_ubl(invoice_id, f"{connector_id}.xml", content, source="connector")
        return content.decode("utf-8")

    # health

    def health_check(self) -> dict[str, Any]:
        result = dict(self.connector.health_check())
        if isinstance(self.connector, CircuitBreakerConnector):
            result.setdefault("circuit_breaker", self.connector.status())
        return result


_DISPATCH_LOCKS = KeyedLocks()


def _invoice_id(handle: InvoiceHandle) -> int:
    if isinstance(handle, ScheduledInvoice):
        return handle.id
    if isinstance(handle, InvoiceStatus):
        return handle.invoice_id
    return int(handle)
