"""
Site Ledger: carryforward reconciliation for multi-site construction budgets

This module provides:
- Daily inward/outward aggregation per site
- Idempotent end-of-day reconciliation into carryforward records
- Application of a pending surplus or deficit to the next day's budget
- Carryforward history and summaries
"""

from .models import (
    CARRYFORWARD_CATEGORY,
    TransactionType,
    Transaction,
    CarryforwardRecord,
    DailyTotals,
    ApplyResult,
)
from .store import LedgerStore, InMemoryLedgerStore, StoreUnavailable
from .service import CarryforwardService, DuplicateBudgetError, SiteNotFoundError

__all__ = [
    "CARRYFORWARD_CATEGORY",
    "TransactionType",
    "Transaction",
    "CarryforwardRecord",
    "DailyTotals",
    "ApplyResult",
    "LedgerStore",
    "InMemoryLedgerStore",
    "StoreUnavailable",
    "CarryforwardService",
    "DuplicateBudgetError",
    "SiteNotFoundError",
]
