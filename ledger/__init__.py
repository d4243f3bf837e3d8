"""
Cashback Ledger

This module provides:
- Append-only ledger entries (purchase, cashback credit, refund, adjustment)
- A cached per-user cashback balance kept in step with the entries
- Debits that refuse to overdraw and clamped debits for mixed payments
- Explicit balance reconciliation for staff corrections
"""

from .models import (
    EntryType,
    UserRole,
    UserProfile,
    LedgerEntry,
    UserBalance,
    LedgerHistoryResponse,
)
from .service import (
    LedgerService,
    LedgerServiceError,
    UserNotFoundError,
    InsufficientFundsError,
)

__all__ = [
    "EntryType",
    "UserRole",
    "UserProfile",
    "LedgerEntry",
    "UserBalance",
    "LedgerHistoryResponse",
    "LedgerService",
    "LedgerServiceError",
    "UserNotFoundError",
    "InsufficientFundsError",
]
