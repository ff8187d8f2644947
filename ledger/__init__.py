"""
Credit Ledger

This module provides:
- Per-account balances that never go negative
- Immutable, append-only ledger entries written with every balance change
- A serializable store transaction for read-check-write cycles
- The atomic check-and-deduct primitive used by the metering gateway
- Audit records for privileged grants
"""

from .models import (
    EntryType,
    Account,
    LedgerEntry,
    AuditRecord,
    AccountBalance,
    AppConfig,
    CreditPack,
)
from .service import LedgerService
from .store import InMemoryStorage

__all__ = [
    "EntryType",
    "Account",
    "LedgerEntry",
    "AuditRecord",
    "AccountBalance",
    "AppConfig",
    "CreditPack",
    "LedgerService",
    "InMemoryStorage",
]
