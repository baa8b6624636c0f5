from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, field_validator


class EntryType(str, Enum):
    INCOME = "Income"
    EXPENSE = "Expense"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """One row of the local expense ledger.

    ``amount`` is always a non-negative magnitude; direction lives in ``type``.
    ``id`` is None until the store assigns it.
    """

    title: str
    amount: float
    date: str
    type: EntryType
    id: int | None = None

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"LedgerEntry.amount must be >= 0, got {self.amount}")

    def with_id(self, entry_id: int) -> LedgerEntry:
        return LedgerEntry(
            title=self.title,
            amount=self.amount,
            date=self.date,
            type=self.type,
            id=entry_id,
        )


class RemoteTransactionRecord(BaseModel):
    """Transaction as it arrives from Plaid (via the proxy).

    Parsing never fails on a dict: unknown fields are ignored and malformed
    values fall back to defaults, so one bad field cannot drop a record.
    Plaid's sign convention is positive = money out.
    """

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    amount: float = 0.0
    date: str = ""
    transaction_id: str | None = None

    @field_validator("name", "transaction_id", mode="before")
    @classmethod
    def _coerce_optional_str(cls, value: Any) -> str | None:
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> float:
        if isinstance(value, bool):
            return 0.0
        try:
            amount = float(value)
        except (TypeError, ValueError):
            return 0.0
        return amount if math.isfinite(amount) else 0.0

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @classmethod
    def parse(cls, data: Any) -> Self:
        if not isinstance(data, dict):
            return cls()
        return cls.model_validate(data)


def parse_transactions(body: Any) -> list[RemoteTransactionRecord]:
    """Extract the ``transactions`` array from a proxy/Plaid response body."""
    if not isinstance(body, dict):
        return []
    raw = body.get("transactions")
    if not isinstance(raw, list):
        return []
    return [RemoteTransactionRecord.parse(item) for item in raw]
