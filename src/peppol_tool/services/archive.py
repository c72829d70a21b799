"""Immutable, content-addressed storage of UBL documents."""
from __future__ import annotations

import hashlib
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..config import get_settings
from ..db import get_session
from ..models import PeppolDocument


def store_ubl(
    peppol_invoice_id: int,
    filename: str,
    content: bytes,
    source: str = "generated",
) -> PeppolDocument:
    """Write ``content`` once and index it for the invoice.

    An invoice keeps the first document stored for it; later calls return
    the existing entry unchanged.
    """

    existing = get_document(peppol_invoice_id)
    if existing is not None:
        return existing

    settings = get_settings()
    digest = hashlib.sha256(content).hexdigest()
    storage_path = settings.archive_path / digest[:2] / digest
    storage_path.parent.mkdir(parents=True, exist_ok=True)
    if not storage_path.exists():
        storage_path.write_bytes(content)
    try:
        with get_session() as session:
            entry = PeppolDocument(
                peppol_invoice_id=peppol_invoice_id,
                filename=filename,
                storage_path=str(storage_path.relative_to(settings.archive_path)),
                sha256=digest,
                mime_type="application/xml",
                source=source,
            )
            session.add(entry)
            session.flush()
            session.refresh(entry)
            return entry
    except IntegrityError:
        # stored concurrently; the first document wins
        winner = get_document(peppol_invoice_id)
        if winner is None:
            raise
        return winner


def get_document(peppol_invoice_id: int) -> Optional[PeppolDocument]:
    with get_session() as session:
        statement = select(PeppolDocument).where(PeppolDocument.peppol_invoice_id == peppol_invoice_id)
        return session.exec(statement).one_or_none()


def read_document(entry: PeppolDocument) -> bytes:
    path = get_settings().archive_path / entry.storage_path
    content = path.read_bytes()
    if hashlib.sha256(content).hexdigest() != entry.sha256:
        raise ValueError(f"Archived document {entry.storage_path} does not match its checksum")
    return content
