from __future__ import annotations

import asyncio
from pathlib import Path
import random
from typing import Any

from plaidledger.adapters.db.facade import LedgerStore
from plaidledger.adapters.prefs import PreferencesStore
from plaidledger.core.errors import (
    NetworkError,
    PersistenceError,
    UpstreamHardFailure,
    UpstreamNotReady,
)
from plaidledger.core.models import EntryType, LedgerEntry, RemoteTransactionRecord
from plaidledger.link.result import LinkExit, LinkSuccess, LinkUnknown
from plaidledger.orchestrators.ingestion import (
    IngestionOrchestrator,
    IngestionOutcome,
    IngestionState,
)

# Helper classes


class MockGateway:
    """Mock GatewayClient for testing."""

    def __init__(
        self,
        *,
        access_token: str | None = "atok-1",
        fetch_results: list[Any] | None = None,
        exchange_error: Exception | None = None,
        sandbox_token: str | None = "public-sandbox-1",
    ) -> None:
        self._access_token = access_token
        self._fetch_results = list(fetch_results or [[]])
        self._exchange_error = exchange_error
        self._sandbox_token = sandbox_token
        self.exchanged: list[str] = []
        self.fetched: list[str] = []
        self.sandbox_calls = 0

    def exchange_public_token(self, public_token: str) -> str | None:
        self.exchanged.append(public_token)
        if self._exchange_error is not None:
            raise self._exchange_error
        return self._access_token

    def create_sandbox_public_token(
        self, initial_products: list[str] | None = None
    ) -> str | None:
        self.sandbox_calls += 1
        return self._sandbox_token

    def fetch_transactions_once(
        self,
        access_token: str,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> list[RemoteTransactionRecord]:
        self.fetched.append(access_token)
        if len(self._fetch_results) > 1:
            step = self._fetch_results.pop(0)
        else:
            step = self._fetch_results[0]
        if isinstance(step, Exception):
            raise step
        return step


class MockStore:
    """In-memory ledger whose Nth insert (1-based) can be made to fail."""

    def __init__(self, *, fail_on: set[int] | None = None) -> None:
        self.entries: list[LedgerEntry] = []
        self._fail_on = fail_on or set()
        self._calls = 0

    def insert(self, entry: LedgerEntry) -> LedgerEntry:
        self._calls += 1
        if self._calls in self._fail_on:
            raise PersistenceError(f"insert #{self._calls} failed")
        stored = entry.with_id(len(self.entries) + 1)
        self.entries.append(stored)
        return stored

    def count(self) -> int:
        return len(self.entries)


def records(*names: str) -> list[RemoteTransactionRecord]:
    return [
        RemoteTransactionRecord(name=name, amount=float(i + 1), date="2025-01-10")
        for i, name in enumerate(names)
    ]


def not_ready() -> UpstreamNotReady:
    return UpstreamNotReady(
        "not ready", status=400, body='{"error_code": "PRODUCT_NOT_READY"}'
    )


def make_orchestrator(
    gateway: MockGateway,
    store: Any,
    sleeps: Any,
    prefs: PreferencesStore | None = None,
    *,
    max_attempts: int = 10,
) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        gateway,
        store,
        prefs,
        max_attempts=max_attempts,
        sleep=sleeps,
        rng=random.Random(11),
    )


def run(coro: Any) -> IngestionOutcome:
    return asyncio.run(coro)


# Tests


def test_not_ready_then_coffee_persists_one_entry(sleeps) -> None:
    # input
    coffee = RemoteTransactionRecord(name="Coffee", amount=4.5, date="2025-01-10")
    gateway = MockGateway(access_token="atok-1", fetch_results=[not_ready(), [coffee]])
    store = LedgerStore("sqlite:///:memory:")
    orchestrator = make_orchestrator(gateway, store, sleeps)

    # act
    outcome = run(orchestrator.ingest_public_token("ptok-demo"))

    # assert
    assert outcome.state is IngestionState.DONE
    assert outcome.inserted == 1
    assert len(sleeps.delays) == 1
    assert gateway.exchanged == ["ptok-demo"]
    assert gateway.fetched == ["atok-1", "atok-1"]
    [entry] = store.list_all()
    assert (entry.title, entry.amount, entry.date, entry.type) == (
        "Coffee",
        4.5,
        "10/01/2025",
        EntryType.EXPENSE,
    )
    assert orchestrator.status.value == "Fetched 1 txns, inserted 1"


def test_transitions_are_published_in_order(sleeps) -> None:
    gateway = MockGateway(fetch_results=[records("A")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    run(orchestrator.ingest_public_token("ptok"))

    assert orchestrator.status.history == [
        "Exchanging public token...",
        "Got access_token",
        "Fetching transactions...",
        "Persisting 1 transactions...",
        "Fetched 1 txns, inserted 1",
    ]
    assert orchestrator.state is IngestionState.DONE


def test_partial_persistence_skips_failed_insert(sleeps) -> None:
    gateway = MockGateway(fetch_results=[records("First", "Second", "Third")])
    store = MockStore(fail_on={2})
    orchestrator = make_orchestrator(gateway, store, sleeps)

    outcome = run(orchestrator.ingest_access_token("atok-1"))

    assert outcome.state is IngestionState.DONE
    assert outcome.inserted == 2
    assert outcome.fetched == 3
    assert [e.title for e in store.entries] == ["First", "Third"]


def test_exhaustion_fails_after_max_attempts(sleeps) -> None:
    gateway = MockGateway(fetch_results=[not_ready()])
    store = MockStore()
    orchestrator = make_orchestrator(gateway, store, sleeps, max_attempts=4)

    outcome = run(orchestrator.ingest_access_token("atok-1"))

    assert outcome.state is IngestionState.FAILED
    assert len(gateway.fetched) == 4
    assert len(sleeps.delays) == 3
    assert "No transactions after 4 attempts" in (outcome.reason or "")
    assert "PRODUCT_NOT_READY" in (outcome.reason or "")
    assert store.entries == []


def test_network_errors_are_retried(sleeps) -> None:
    gateway = MockGateway(fetch_results=[NetworkError("timeout"), records("A")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.ingest_access_token("atok-1"))

    assert outcome.inserted == 1
    assert len(sleeps.delays) == 1


def test_hard_fetch_failure_fails_without_retry(sleeps) -> None:
    error = UpstreamHardFailure("x", status=400, body='{"error_code": "INVALID_ACCESS_TOKEN"}')
    gateway = MockGateway(fetch_results=[error])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.ingest_access_token("atok-1"))

    assert outcome.state is IngestionState.FAILED
    assert len(gateway.fetched) == 1
    assert "HTTP 400" in (outcome.reason or "")
    assert sleeps.delays == []


def test_hard_fetch_failure_after_retries_reports_attempts(sleeps) -> None:
    not_ready = UpstreamNotReady(
        "not ready", status=400, body='{"error_code": "PRODUCT_NOT_READY"}'
    )
    error = UpstreamHardFailure("x", status=400, body='{"error_code": "ITEM_LOGIN_REQUIRED"}')
    gateway = MockGateway(fetch_results=[not_ready, error])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.ingest_access_token("atok-1"))

    assert outcome.state is IngestionState.FAILED
    assert outcome.reason == (
        "Fetching transactions failed after 2 attempts: "
        'HTTP 400 - {"error_code": "ITEM_LOGIN_REQUIRED"}'
    )


def test_exchange_error_fails_with_status(sleeps) -> None:
    error = UpstreamHardFailure(
        "exchange failed", status=400, body='{"error":"missing public_token in body"}'
    )
    gateway = MockGateway(exchange_error=error)
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.ingest_public_token("ptok"))

    assert outcome.state is IngestionState.FAILED
    assert outcome.reason == (
        'exchange_public_token failed: HTTP 400 - {"error":"missing public_token in body"}'
    )
    assert gateway.fetched == []


def test_missing_access_token_fails(sleeps) -> None:
    gateway = MockGateway(access_token=None)
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.ingest_public_token("ptok"))

    assert outcome.state is IngestionState.FAILED
    assert gateway.fetched == []


def test_unexpected_exception_does_not_escape(sleeps) -> None:
    gateway = MockGateway(fetch_results=[RuntimeError("bug")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.ingest_access_token("atok-1"))

    assert outcome.state is IngestionState.FAILED
    assert "bug" in (outcome.reason or "")


def test_link_success_remembers_sign_in(sleeps, tmp_path: Path) -> None:
    prefs = PreferencesStore(base_dir=str(tmp_path))
    gateway = MockGateway(fetch_results=[records("A")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps, prefs)

    outcome = run(orchestrator.handle_link_result(LinkSuccess(public_token="ptok")))

    assert outcome.succeeded
    assert outcome.close_shell is True
    assert prefs.signed_in is True
    assert prefs.access_token == "atok-1"


def test_link_exit_makes_no_remote_calls(sleeps) -> None:
    gateway = MockGateway()
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(
        orchestrator.handle_link_result(
            LinkExit(error={"error_code": "USER_CANCELLED"})
        )
    )

    assert outcome.state is IngestionState.FAILED
    assert "USER_CANCELLED" in (outcome.reason or "")
    assert gateway.exchanged == []
    assert gateway.fetched == []


def test_link_unknown_fails(sleeps) -> None:
    gateway = MockGateway()
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.handle_link_result(LinkUnknown(raw="?")))

    assert outcome.state is IngestionState.FAILED
    assert gateway.exchanged == []


def test_plain_ingest_does_not_touch_prefs(sleeps, tmp_path: Path) -> None:
    prefs = PreferencesStore(base_dir=str(tmp_path))
    orchestrator = make_orchestrator(
        MockGateway(fetch_results=[records("A")]), MockStore(), sleeps, prefs
    )

    outcome = run(orchestrator.ingest_public_token("ptok"))

    assert outcome.succeeded
    assert outcome.close_shell is False
    assert prefs.signed_in is False


def test_refresh_on_launch_without_token_is_noop(sleeps, tmp_path: Path) -> None:
    gateway = MockGateway()
    orchestrator = make_orchestrator(
        gateway, MockStore(), sleeps, PreferencesStore(base_dir=str(tmp_path))
    )

    assert run(orchestrator.refresh_on_launch()) is None
    assert gateway.fetched == []
    assert orchestrator.status.history == []


def test_refresh_on_launch_uses_stored_token(sleeps, tmp_path: Path) -> None:
    prefs = PreferencesStore(base_dir=str(tmp_path))
    prefs.remember_sign_in("atok-stored")
    gateway = MockGateway(fetch_results=[records("A", "B")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps, prefs)

    outcome = run(orchestrator.refresh_on_launch())

    assert outcome is not None
    assert outcome.inserted == 2
    assert outcome.close_shell is True
    assert gateway.fetched == ["atok-stored"]
    assert gateway.exchanged == []
    assert orchestrator.status.value == "Refreshed 2 Plaid transactions on launch"


def test_refresh_failure_still_closes_shell(sleeps, tmp_path: Path) -> None:
    prefs = PreferencesStore(base_dir=str(tmp_path))
    prefs.remember_sign_in("atok-stored")
    gateway = MockGateway(fetch_results=[UpstreamHardFailure("x", status=401, body="")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps, prefs)

    outcome = run(orchestrator.refresh_on_launch())

    assert outcome is not None
    assert outcome.state is IngestionState.FAILED
    assert outcome.close_shell is True
    assert (orchestrator.status.value or "").startswith("Refresh failed:")


def test_simulate_sandbox_runs_full_path(sleeps, tmp_path: Path) -> None:
    prefs = PreferencesStore(base_dir=str(tmp_path))
    gateway = MockGateway(fetch_results=[records("A")])
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps, prefs)

    outcome = run(orchestrator.simulate_sandbox())

    assert outcome.succeeded
    assert gateway.sandbox_calls == 1
    assert gateway.exchanged == ["public-sandbox-1"]
    assert prefs.signed_in is False


def test_simulate_sandbox_without_token_fails(sleeps) -> None:
    gateway = MockGateway(sandbox_token=None)
    orchestrator = make_orchestrator(gateway, MockStore(), sleeps)

    outcome = run(orchestrator.simulate_sandbox())

    assert outcome.state is IngestionState.FAILED
    assert gateway.exchanged == []
