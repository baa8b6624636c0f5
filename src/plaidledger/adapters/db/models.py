from __future__ import annotations

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from plaidledger.core.models import EntryType, LedgerEntry


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class Expense(Base):
    """Ledger row. Mirrors LedgerEntry; no relationships."""

    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    date: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> Expense:
        return cls(
            title=entry.title,
            amount=entry.amount,
            date=entry.date,
            type=entry.type.value,
        )

    def to_entry(self) -> LedgerEntry:
        return LedgerEntry(
            id=self.id,
            title=self.title,
            amount=self.amount,
            date=self.date,
            type=EntryType(self.type),
        )
