"""Append-only audit ledger."""

from .ledger import AuditLedger
from .models import AuditRecord, DOWNLOAD_TYPES

__all__ = ["AuditLedger", "AuditRecord", "DOWNLOAD_TYPES"]
