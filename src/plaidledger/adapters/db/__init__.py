"""Local ledger store."""

from plaidledger.adapters.db.facade import LedgerStore
from plaidledger.adapters.db.models import Base, Expense

__all__ = ["Base", "Expense", "LedgerStore"]
