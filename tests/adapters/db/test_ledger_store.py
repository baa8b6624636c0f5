from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from plaidledger.adapters.db.facade import LedgerStore
from plaidledger.adapters.db.models import Expense
from plaidledger.core.errors import PersistenceError
from plaidledger.core.models import EntryType, LedgerEntry


def create_store() -> LedgerStore:
    """Create in-memory ledger store."""
    return LedgerStore("sqlite:///:memory:")


def coffee() -> LedgerEntry:
    return LedgerEntry(
        title="Coffee", amount=4.5, date="10/01/2025", type=EntryType.EXPENSE
    )


def test_insert_assigns_id_and_round_trips() -> None:
    store = create_store()

    stored = store.insert(coffee())

    assert stored.id is not None
    assert store.get(stored.id) == stored
    assert store.count() == 1


def test_list_all_is_ordered_by_insertion() -> None:
    store = create_store()
    salary = LedgerEntry(
        title="Salary", amount=1500.0, date="01/01/2025", type=EntryType.INCOME
    )

    first = store.insert(coffee())
    second = store.insert(salary)

    assert store.list_all() == [first, second]


def test_delete_removes_entry() -> None:
    store = create_store()
    stored = store.insert(coffee())

    store.delete(stored)

    assert store.count() == 0
    assert store.get(stored.id) is None  # type: ignore[arg-type]


def test_delete_without_id_raises() -> None:
    with pytest.raises(PersistenceError):
        create_store().delete(coffee())


def test_insert_failure_becomes_persistence_error() -> None:
    store = create_store()

    with patch.object(
        Expense, "from_entry", side_effect=OperationalError("INSERT", {}, Exception("locked"))
    ):
        with pytest.raises(PersistenceError):
            store.insert(coffee())

    assert store.count() == 0


def test_file_database_persists_between_stores(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    LedgerStore(url).insert(coffee())

    assert LedgerStore(url).count() == 1


def test_session_rolls_back_on_error() -> None:
    store = create_store()

    with pytest.raises(RuntimeError):
        with store.session() as session:
            session.add(Expense.from_entry(coffee()))
            session.flush()
            raise RuntimeError("boom")

    assert store.count() == 0
