from __future__ import annotations

from datetime import date as date_type
import re

from plaidledger.core.models import EntryType, LedgerEntry, RemoteTransactionRecord

MAX_TITLE_LENGTH = 20
ELLIPSIS = "…"
UNKNOWN_TITLE = "Unknown Transaction"

_ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}", re.ASCII)


def truncate_title(value: str | None, max_len: int = MAX_TITLE_LENGTH) -> str:
    """Shorten ``value`` to at most ``max_len`` characters.

    Blank input yields "". Long input keeps ``max_len - 1`` characters, drops
    trailing whitespace and ends with a single ellipsis.
    """
    if value is None or not value.strip():
        return ""
    if len(value) <= max_len:
        return value
    return value[: max_len - 1].rstrip() + ELLIPSIS


def normalize_date(value: str) -> str:
    """Reformat an ISO ``yyyy-mm-dd`` date as ``dd/mm/yyyy``.

    Anything that is not a parseable ISO date is returned unchanged.
    """
    if not _ISO_DATE_PREFIX.match(value):
        return value
    try:
        parsed = date_type.fromisoformat(value[:10])
    except ValueError:
        return value
    return parsed.strftime("%d/%m/%Y")


def normalize(record: RemoteTransactionRecord) -> LedgerEntry:
    """Map a Plaid transaction onto a ledger entry.

    Plaid reports outflows as positive amounts, so a non-negative amount is an
    Expense and a negative one is Income.
    """
    amount = record.amount
    return LedgerEntry(
        title=truncate_title(record.name or UNKNOWN_TITLE),
        amount=abs(amount),
        date=normalize_date(record.date),
        type=EntryType.EXPENSE if amount >= 0 else EntryType.INCOME,
    )
