"""Public token → access token → transactions → local ledger.

The orchestrator is a small state machine::

    IDLE → EXCHANGING_TOKEN → FETCHING_TRANSACTIONS → PERSISTING → DONE
                        └──────────────┴──────────────────┴──→ FAILED

Every transition publishes a status line to a ``StatusSlot``. No exception
escapes a run: remote and persistence errors become a FAILED outcome with a
diagnostic reason, and a single failed insert is logged and skipped.

Runs are not deduplicated against the ledger. Ingesting the same Item twice
(e.g. a launch refresh overlapping a manual run) inserts the same
transactions twice.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
import random
from typing import Any, Protocol

import loguru
from loguru import logger

from plaidledger.adapters.prefs import PreferencesStore
from plaidledger.core.backoff import DEFAULT_POLICY, BackoffPolicy, SleepFn
from plaidledger.core.errors import (
    ExhaustedError,
    PlaidLedgerError,
    UpstreamError,
)
from plaidledger.core.logs import redact_token
from plaidledger.core.models import LedgerEntry, RemoteTransactionRecord
from plaidledger.core.normalizer import normalize
from plaidledger.link.result import LinkExit, LinkResult, LinkSuccess
from plaidledger.orchestrators.fetch import TransactionSource, fetch_with_retry
from plaidledger.orchestrators.status import StatusSlot


class IngestionState(str, Enum):
    IDLE = "idle"
    EXCHANGING_TOKEN = "exchanging_token"
    FETCHING_TRANSACTIONS = "fetching_transactions"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class Gateway(TransactionSource, Protocol):
    def exchange_public_token(self, public_token: str) -> str | None: ...

    def create_sandbox_public_token(
        self, initial_products: list[str] | None = None
    ) -> str | None: ...


class LedgerSink(Protocol):
    def insert(self, entry: LedgerEntry) -> Any: ...

    def count(self) -> int: ...


@dataclass
class IngestionOutcome:
    state: IngestionState
    inserted: int = 0
    fetched: int = 0
    reason: str | None = None
    close_shell: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is IngestionState.DONE


def describe_upstream_error(step: str, error: UpstreamError) -> str:
    body = error.body if error.body not in (None, "") else "<no body>"
    failed = f"{step} failed"
    if error.attempts is not None:
        noun = "attempt" if error.attempts == 1 else "attempts"
        failed += f" after {error.attempts} {noun}"
    if error.status is None:
        return f"{failed}: {error}"
    return f"{failed}: HTTP {error.status} - {body}"


class IngestionLogger:
    """Handles all logging for IngestionOrchestrator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def transition(self, state: IngestionState, message: str) -> None:
        self._logger.bind(state=state.value).info("[{}] {}", state.value, message)

    def failed(self, state: IngestionState, reason: str) -> None:
        self._logger.bind(state=state.value).warning(
            "Ingestion failed during {}: {}", state.value, reason
        )

    def unexpected(self, step: str, error: Exception) -> None:
        self._logger.bind(step=step).exception("Unexpected error during {}", step)

    def fetching(self, access_token: str) -> None:
        self._logger.info("Fetching transactions for {}", redact_token(access_token))

    def ledger_count(self, label: str, count: int | None) -> None:
        self._logger.bind(count=count).debug("Ledger count {} inserts = {}", label, count)

    def inserted(self, entry: LedgerEntry) -> None:
        self._logger.bind(title=entry.title, amount=entry.amount).debug(
            "Inserted {} {} on {} ({})",
            entry.type.value,
            entry.amount,
            entry.date,
            entry.title,
        )

    def insert_failed(self, index: int, error: Exception) -> None:
        self._logger.bind(index=index).opt(exception=error).error(
            "Failed to insert transaction #{}; skipping", index
        )

    def prefs_failed(self, error: Exception) -> None:
        self._logger.opt(exception=error).warning("Failed to save Plaid preferences")

    def no_stored_token(self) -> None:
        self._logger.info("No stored Plaid access token; skipping launch refresh")


class IngestionOrchestrator:
    """Drives one ingestion run at a time and reports its outcome."""

    def __init__(
        self,
        gateway: Gateway,
        store: LedgerSink,
        prefs: PreferencesStore | None = None,
        *,
        status: StatusSlot | None = None,
        max_attempts: int = 10,
        policy: BackoffPolicy = DEFAULT_POLICY,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._prefs = prefs
        self.status = status or StatusSlot()
        self._max_attempts = max_attempts
        self._policy = policy
        self._sleep = sleep
        self._rng = rng
        self._logger_instance = logger_instance
        self._log = IngestionLogger(logger_instance)
        self._state = IngestionState.IDLE

    @property
    def state(self) -> IngestionState:
        return self._state

    # -------- Triggers --------

    async def ingest_public_token(
        self, public_token: str, *, remember: bool = False
    ) -> IngestionOutcome:
        """Exchange ``public_token`` and ingest the Item's transactions.

        With ``remember`` the access token is saved for refresh-on-launch and
        the outcome asks the shell to close.
        """
        self._state = IngestionState.IDLE
        return await self._exchange_and_ingest(public_token, remember=remember)

    async def ingest_access_token(
        self, access_token: str, *, remember: bool = False
    ) -> IngestionOutcome:
        self._state = IngestionState.IDLE
        return await self._fetch_and_persist(access_token, remember=remember)

    async def handle_link_result(self, result: LinkResult) -> IngestionOutcome:
        """Act on what Plaid Link returned. Only a success touches the network."""
        if isinstance(result, LinkSuccess):
            return await self.ingest_public_token(result.public_token, remember=True)
        self._state = IngestionState.IDLE
        if isinstance(result, LinkExit):
            self.status.publish("Plaid Link exited")
            return self._fail(f"Plaid Link exited: {result.describe()}")
        self.status.publish("Unhandled Plaid Link result")
        return self._fail("Unhandled Plaid Link result")

    async def refresh_on_launch(self) -> IngestionOutcome | None:
        """One refresh pass using the stored access token, if there is one."""
        access_token = self._prefs.access_token if self._prefs is not None else None
        if not access_token:
            self._log.no_stored_token()
            return None

        self.status.publish("Refreshing Plaid transactions on launch...")
        outcome = await self.ingest_access_token(access_token, remember=True)
        if outcome.succeeded:
            self.status.publish(
                f"Refreshed {outcome.inserted} Plaid transactions on launch"
            )
        else:
            self.status.publish(f"Refresh failed: {outcome.reason}")
        # The refresh screen closes whether or not the refresh worked.
        outcome.close_shell = True
        return outcome

    async def simulate_sandbox(self) -> IngestionOutcome:
        """Full server → exchange → transactions path without the Link UI."""
        self._state = IngestionState.IDLE
        self._enter(IngestionState.EXCHANGING_TOKEN, "Simulating sandbox flow...")
        try:
            public_token = await asyncio.to_thread(
                self._gateway.create_sandbox_public_token
            )
        except UpstreamError as e:
            return self._fail(describe_upstream_error("create_sandbox_public_token", e))
        except Exception as e:
            self._log.unexpected("create_sandbox_public_token", e)
            return self._fail(f"Sandbox simulation error: {e}")

        if not public_token:
            return self._fail("Failed to create sandbox public_token")
        self.status.publish("Got sandbox public_token")
        return await self._exchange_and_ingest(public_token, remember=False)

    # -------- Steps --------

    async def _exchange_and_ingest(
        self, public_token: str, *, remember: bool
    ) -> IngestionOutcome:
        self._enter(IngestionState.EXCHANGING_TOKEN, "Exchanging public token...")
        try:
            access_token = await asyncio.to_thread(
                self._gateway.exchange_public_token, public_token
            )
        except UpstreamError as e:
            return self._fail(describe_upstream_error("exchange_public_token", e))
        except PlaidLedgerError as e:
            return self._fail(f"exchange_public_token failed: {e}")
        except Exception as e:
            self._log.unexpected("exchange_public_token", e)
            return self._fail(f"Error during exchange_public_token: {e}")

        if not access_token or not access_token.strip():
            return self._fail("Failed to exchange public_token: no access_token")
        self.status.publish("Got access_token")
        return await self._fetch_and_persist(access_token, remember=remember)

    async def _fetch_and_persist(
        self, access_token: str, *, remember: bool
    ) -> IngestionOutcome:
        self._enter(IngestionState.FETCHING_TRANSACTIONS, "Fetching transactions...")
        if not access_token or not access_token.strip():
            return self._fail("Missing access token")

        self._log.fetching(access_token)
        try:
            records = await fetch_with_retry(
                self._gateway,
                access_token,
                max_attempts=self._max_attempts,
                policy=self._policy,
                sleep=self._sleep,
                rng=self._rng,
                logger_instance=self._logger_instance,
            )
        except ExhaustedError as e:
            body = e.last_body if e.last_body not in (None, "") else "<no body>"
            return self._fail(
                f"No transactions after {e.attempts} attempts: "
                f"last HTTP {e.last_status} - {body}"
            )
        except UpstreamError as e:
            return self._fail(describe_upstream_error("Fetching transactions", e))
        except Exception as e:
            self._log.unexpected("fetch_transactions", e)
            return self._fail(f"Error fetching transactions: {e}")

        self._enter(
            IngestionState.PERSISTING, f"Persisting {len(records)} transactions..."
        )
        inserted = await self._persist(records)

        close_shell = False
        if remember:
            self._remember(access_token)
            close_shell = True

        self._enter(
            IngestionState.DONE,
            f"Fetched {len(records)} txns, inserted {inserted}",
        )
        return IngestionOutcome(
            state=IngestionState.DONE,
            inserted=inserted,
            fetched=len(records),
            close_shell=close_shell,
        )

    async def _persist(self, records: Sequence[RemoteTransactionRecord]) -> int:
        self._log.ledger_count("before", await self._safe_count())
        inserted = 0
        for index, record in enumerate(records):
            try:
                entry = normalize(record)
                await asyncio.to_thread(self._store.insert, entry)
            except Exception as e:
                self._log.insert_failed(index, e)
                continue
            self._log.inserted(entry)
            inserted += 1
        self._log.ledger_count("after", await self._safe_count())
        return inserted

    async def _safe_count(self) -> int | None:
        try:
            return await asyncio.to_thread(self._store.count)
        except Exception:
            return None

    def _remember(self, access_token: str) -> None:
        if self._prefs is None:
            return
        try:
            self._prefs.remember_sign_in(access_token)
        except OSError as e:
            self._log.prefs_failed(e)

    # -------- State helpers --------

    def _enter(self, state: IngestionState, message: str) -> None:
        self._state = state
        self._log.transition(state, message)
        self.status.publish(message)

    def _fail(self, reason: str) -> IngestionOutcome:
        self._log.failed(self._state, reason)
        self._state = IngestionState.FAILED
        self.status.publish(reason)
        return IngestionOutcome(state=IngestionState.FAILED, reason=reason)
