"""PEPPOL e-invoicing client: participant lookup, scheduling, dispatch and status tracking."""

__version__ = "0.1.0"
