"""Outcome notifications for callers that react to dispatch results."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..exceptions import PeppolError
from ..models import InvoiceState
from ..schemas import InvoiceReference, InvoiceStatus


class InvoiceEventType(str, Enum):
    DISPATCHED = "dispatched"
    FAILED = "failed"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class InvoiceEvent:
    """One outcome of a dispatch or status poll.

    ``dispatched`` follows a transmission the access point accepted (or a
    stored invoice when delivery is skipped), ``failed`` a dispatch or
    delivery failure and ``status_changed`` every state change found by
    polling.
    """

    type: InvoiceEventType
    invoice_id: int
    reference: InvoiceReference
    status: InvoiceStatus
    from_state: Optional[InvoiceState] = None
    error: Optional[PeppolError] = None


InvoiceListener = Callable[[InvoiceEvent], None]
