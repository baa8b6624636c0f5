from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from plaidledger.adapters.db.models import Base, Expense
from plaidledger.core.errors import PersistenceError
from plaidledger.core.models import LedgerEntry


class LedgerStore:
    """Local ledger of expense entries backed by SQLAlchemy."""

    def __init__(self, url: str) -> None:
        """Initialize database connection and create the table if missing.

        Args:
            url: Database URL (e.g., "sqlite:///ledger.db")
        """
        self._url = url
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, or every session would see a fresh DB.
            self._engine = create_engine(
                url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)
        Base.metadata.create_all(self._engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert(self, entry: LedgerEntry) -> LedgerEntry:
        """Insert ``entry`` and return it with the assigned id.

        Raises:
            PersistenceError: The row could not be written.
        """
        try:
            with self.session() as session:
                row = Expense.from_entry(entry)
                session.add(row)
                session.flush()
                return entry.with_id(row.id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to insert {entry.title!r}: {e}") from e

    def count(self) -> int:
        with self.session() as session:
            return int(session.scalar(select(func.count()).select_from(Expense)) or 0)

    def list_all(self) -> list[LedgerEntry]:
        """All entries ordered by id."""
        with self.session() as session:
            rows = session.scalars(select(Expense).order_by(Expense.id)).all()
            return [row.to_entry() for row in rows]

    def get(self, entry_id: int) -> LedgerEntry | None:
        with self.session() as session:
            row = session.get(Expense, entry_id)
            return row.to_entry() if row is not None else None

    def delete(self, entry: LedgerEntry) -> None:
        """Delete ``entry`` by id. Entries without an id were never stored."""
        if entry.id is None:
            raise PersistenceError("Cannot delete an entry that has no id")
        with self.session() as session:
            row = session.get(Expense, entry.id)
            if row is not None:
                session.delete(row)
