"""Handler logic for the Plaid proxy.

The FastAPI layer in ``plaidledger.proxy.app`` only routes, checks the demo
key and renders errors; everything that talks to Plaid lives here. Upstream
calls are blocking ``urllib`` requests and run in worker threads.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import date, timedelta
import random
import time
from typing import Any, Protocol, TypeVar, cast

import loguru
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from plaidledger.adapters.clients.plaid import (
    DEFAULT_SANDBOX_INSTITUTION,
    PlaidClientError,
    TransactionsSyncResponse,
)
from plaidledger.core.backoff import (
    DEFAULT_POLICY,
    BackoffPolicy,
    SleepFn,
    retry_until,
)
from plaidledger.core.config import ProxySettings
from plaidledger.core.errors import ProxyError, RetryExhaustedError, ValidationError
from plaidledger.core.logs import redact_token
from plaidledger.proxy import fake
from plaidledger.proxy.cache import ProxyCache

T = TypeVar("T")

TRANSACTIONS_WINDOW_DAYS = 30
SYNC_NOT_READY = "NOT_READY"
READY_WEBHOOK_CODES = frozenset(
    {"INITIAL_UPDATE", "HISTORICAL_UPDATE", "DEFAULT_UPDATE", "SYNC_UPDATES_AVAILABLE"}
)


class UpstreamPlaid(Protocol):
    def create_link_token(self, *, user_id: str) -> dict[str, Any]: ...

    def exchange_public_token(self, public_token: str) -> dict[str, Any]: ...

    def get_transactions_raw(
        self, access_token: str, *, start_date: date, end_date: date
    ) -> dict[str, Any]: ...

    def sync_transactions_raw(
        self, access_token: str, *, cursor: str | None = None
    ) -> dict[str, Any]: ...

    def create_sandbox_public_token(
        self, *, institution_id: str = ..., initial_products: list[str] | None = None
    ) -> dict[str, Any]: ...

    def fire_sandbox_webhook(
        self, access_token: str, *, webhook_code: str = ...
    ) -> dict[str, Any]: ...


def sync_shows_readiness(body: Any) -> bool:
    """True once a /transactions/sync page has data or a settled update status."""
    try:
        page = TransactionsSyncResponse.parse(body)
    except PydanticValidationError:
        return False
    if page.added:
        return True
    status = page.transactions_update_status
    return isinstance(status, str) and status != SYNC_NOT_READY


class ProxyLogger:
    """Handles all logging for ProxyService with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def upstream_failed(self, operation: str, error: PlaidClientError) -> None:
        self._logger.bind(operation=operation, status=error.status).error(
            "{} error: {}", operation, error.details()
        )

    def stored_access_token(self, item_id: str) -> None:
        self._logger.bind(item_id=item_id).info(
            "Stored access_token for item_id={}", item_id
        )

    def cache_hit(self, access_token: str) -> None:
        self._logger.info(
            "Returning cached transactions for {}", redact_token(access_token)
        )

    def polling(self, attempt: int, max_attempts: int, access_token: str) -> None:
        self._logger.bind(attempt=attempt).info(
            "Polling transactions/sync attempt={}/{} for {}",
            attempt,
            max_attempts,
            redact_token(access_token),
        )

    def waiting(self, attempt: int, max_attempts: int, delay: float) -> None:
        self._logger.bind(attempt=attempt, delay=delay).info(
            "transactions_for_access_token: waiting {:.0f}ms before next sync "
            "attempt (attempt {}/{})",
            delay * 1000,
            attempt,
            max_attempts,
        )

    def get_after_ready_failed(self, error: PlaidClientError) -> None:
        self._logger.warning(
            "transactions.get failed after sync indicated readiness: {}",
            error.details(),
        )

    def sync_failed(self, error: Exception) -> None:
        self._logger.warning("transactions.sync call failed: {}", error)

    def fetched_and_cached(self, total: Any) -> None:
        self._logger.info(
            "Fetched and cached transactions after sync, total={}", total or 0
        )

    def exhausted(self) -> None:
        self._logger.warning(
            "No transactions after polling sync; returning last known sync response"
        )

    def background_step_failed(self, step: str, error: Exception) -> None:
        self._logger.bind(step=step).warning("{} failed: {}", step, error)

    def auto_cached(self, total: Any) -> None:
        self._logger.info(
            "Auto-cached transactions after exchange (sandbox) total={}", total or 0
        )

    def webhook_received(
        self, webhook_type: Any, webhook_code: Any, item_id: Any
    ) -> None:
        self._logger.bind(item_id=item_id).info(
            "Webhook received: type={} code={} item_id={}",
            webhook_type,
            webhook_code,
            item_id,
        )

    def webhook_unknown_item(self, item_id: Any) -> None:
        self._logger.bind(item_id=item_id).info(
            "No access_token cached for item_id={}; nothing to refresh", item_id
        )

    def fake_mode(self, action: str) -> None:
        self._logger.info("FAKE_PLAID: {}", action)


class ProxyService:
    """Stateless-per-request handlers sharing a ``ProxyCache``."""

    def __init__(
        self,
        settings: ProxySettings,
        plaid_client: UpstreamPlaid,
        cache: ProxyCache,
        *,
        policy: BackoffPolicy = DEFAULT_POLICY,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
        today: Callable[[], date] = date.today,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._settings = settings
        self._plaid = plaid_client
        self._cache = cache
        self._policy = policy
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._today = today
        self._log = ProxyLogger(logger_instance)
        self._background: set[asyncio.Task[None]] = set()

    @property
    def cache(self) -> ProxyCache:
        return self._cache

    # -------- Background tasks --------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Start an unsupervised task. Its failures are only visible in logs."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for outstanding background tasks (used at shutdown and in tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    # -------- Helpers --------

    @staticmethod
    def _require(body: dict[str, Any], field: str) -> str:
        value = body.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"missing {field} in body")
        return value

    def _require_sandbox(self, operation: str) -> None:
        if not self._settings.is_sandbox:
            raise ProxyError(400, f"{operation} is only available in sandbox mode")

    def _window(self, start: Any, end: Any) -> tuple[date, date]:
        today = self._today()
        try:
            end_date = date.fromisoformat(end) if end else today
            start_date = (
                date.fromisoformat(start)
                if start
                else today - timedelta(days=TRANSACTIONS_WINDOW_DAYS)
            )
        except (TypeError, ValueError) as e:
            raise ValidationError("start_date and end_date must be YYYY-MM-DD") from e
        return start_date, end_date

    async def _fetch_window(
        self, access_token: str, start_date: date, end_date: date
    ) -> dict[str, Any]:
        return await self._call(
            self._plaid.get_transactions_raw,
            access_token,
            start_date=start_date,
            end_date=end_date,
        )

    # -------- Handlers --------

    async def create_link_token(self, client_user_id: str | None) -> dict[str, Any]:
        user_id = client_user_id or f"student-{int(time.time() * 1000)}"
        try:
            return await self._call(self._plaid.create_link_token, user_id=user_id)
        except PlaidClientError as e:
            self._log.upstream_failed("link token create", e)
            raise ProxyError(502, "link token creation failed", e.details()) from e

    async def create_sandbox_public_token(self, body: dict[str, Any]) -> dict[str, Any]:
        initial_products = body.get("initial_products") or ["transactions"]
        institution_id = body.get("institution_id") or DEFAULT_SANDBOX_INSTITUTION

        if self._settings.fake_plaid:
            created = fake.fake_public_token(self._rng)
            self._log.fake_mode(f"created fake public_token for {initial_products}")
            return created

        self._require_sandbox("create_sandbox_public_token")
        try:
            return await self._call(
                self._plaid.create_sandbox_public_token,
                institution_id=institution_id,
                initial_products=initial_products,
            )
        except PlaidClientError as e:
            self._log.upstream_failed("create_sandbox_public_token", e)
            raise ProxyError(
                e.status or 502, "create_sandbox_public_token failed", e.details()
            ) from e

    async def exchange_public_token(self, body: dict[str, Any]) -> dict[str, Any]:
        public_token = self._require(body, "public_token")

        if self._settings.fake_plaid:
            return self._fake_exchange()

        try:
            resp = await self._call(self._plaid.exchange_public_token, public_token)
        except PlaidClientError as e:
            self._log.upstream_failed("public_token exchange", e)
            raise ProxyError(502, "public_token exchange failed", e.details()) from e

        access_token = resp.get("access_token")
        item_id = resp.get("item_id")
        if item_id and access_token:
            self._cache.set_access_token(item_id, access_token)
            self._log.stored_access_token(item_id)

        if self._settings.is_sandbox and access_token:
            self._spawn(self._warm_cache_after_exchange(access_token))

        out = dict(resp)
        cached = self._cache.get_transactions(access_token) if access_token else None
        if cached is not None:
            out["cached_transactions"] = cached
            out["cached_transactions_present"] = True
        else:
            out["cached_transactions_present"] = False
        return out

    async def transactions_for_access_token(
        self, body: dict[str, Any]
    ) -> dict[str, Any]:
        access_token = self._require(body, "access_token")

        if self._settings.fake_plaid:
            cached = self._cache.get_transactions(access_token)
            if cached is None:
                cached = fake.fake_transactions(
                    access_token, today=self._today(), rng=self._rng
                )
                self._cache.set_transactions(access_token, cached)
                self._log.fake_mode("generated fake transactions")
            return cached

        cached = self._cache.get_transactions(access_token)
        if cached is not None:
            self._log.cache_hit(access_token)
            return cached

        start_date, end_date = self._window(body.get("start_date"), body.get("end_date"))
        last_sync: dict[str, Any] | None = None
        max_attempts = self._policy.max_attempts

        async def attempt(n: int) -> dict[str, Any] | None:
            nonlocal last_sync
            self._log.polling(n, max_attempts, access_token)
            last_sync = await self._call(self._plaid.sync_transactions_raw, access_token)
            if not sync_shows_readiness(last_sync):
                return None
            try:
                return await self._fetch_window(access_token, start_date, end_date)
            except PlaidClientError as e:
                self._log.get_after_ready_failed(e)
                return None

        def on_retry(
            n: int, delay: float, _result: Any, error: Exception | None
        ) -> None:
            if error is not None:
                self._log.sync_failed(error)
            self._log.waiting(n, max_attempts, delay)

        try:
            found = await retry_until(
                attempt,
                is_sufficient=lambda r: r is not None,
                is_retryable=lambda e: isinstance(e, PlaidClientError),
                policy=self._policy,
                sleep=self._sleep,
                rng=self._rng,
                on_retry=on_retry,
            )
        except RetryExhaustedError as e:
            self._log.exhausted()
            raise ProxyError(
                502, "transactions fetch failed - not ready", last_sync or {}
            ) from e

        resp = cast(dict[str, Any], found)
        self._cache.set_transactions(access_token, resp)
        self._log.fetched_and_cached(resp.get("total_transactions"))
        return resp

    async def transactions_sync_for_access_token(
        self, body: dict[str, Any]
    ) -> dict[str, Any]:
        access_token = self._require(body, "access_token")
        cursor = body.get("cursor")
        try:
            return await self._call(
                self._plaid.sync_transactions_raw,
                access_token,
                cursor=cursor if isinstance(cursor, str) and cursor else None,
            )
        except PlaidClientError as e:
            self._log.upstream_failed("transactions_sync_for_access_token", e)
            raise ProxyError(502, "transactions sync failed", e.details()) from e

    async def webhook(self, body: dict[str, Any]) -> dict[str, Any]:
        """Acknowledge a Plaid webhook; refresh the cache when data is ready.

        The refresh runs in the background so a slow or failing refresh never
        delays or changes the acknowledgement.
        """
        webhook_type = body.get("webhook_type")
        webhook_code = body.get("webhook_code")
        item_id = body.get("item_id")
        self._log.webhook_received(webhook_type, webhook_code, item_id)

        if webhook_type == "TRANSACTIONS" and webhook_code in READY_WEBHOOK_CODES:
            access_token = (
                self._cache.get_access_token(item_id)
                if isinstance(item_id, str)
                else None
            )
            if access_token:
                self._spawn(self._refresh_cache(access_token, step="webhook refresh"))
            else:
                self._log.webhook_unknown_item(item_id)
        return {"ok": True}

    async def fire_webhook(self, body: dict[str, Any]) -> dict[str, Any]:
        access_token = self._require(body, "access_token")
        webhook_code = body.get("webhook_code") or "INITIAL_UPDATE"

        if self._settings.fake_plaid:
            self._log.fake_mode(f"pretending to fire {webhook_code}")
            return {"ok": True, "resp": {"webhook_fired": True}}

        self._require_sandbox("fire_webhook")
        try:
            resp = await self._call(
                self._plaid.fire_sandbox_webhook,
                access_token,
                webhook_code=webhook_code,
            )
        except PlaidClientError as e:
            self._log.upstream_failed("sandbox fire_webhook", e)
            raise ProxyError(e.status or 502, "fire_webhook failed", e.details()) from e
        return {"ok": True, "resp": resp}

    # -------- Background work --------

    async def _warm_cache_after_exchange(self, access_token: str) -> None:
        try:
            await self._call(
                self._plaid.fire_sandbox_webhook,
                access_token,
                webhook_code="INITIAL_UPDATE",
            )
        except Exception as e:
            self._log.background_step_failed("Auto-fire sandbox webhook", e)
            return
        await self._refresh_cache(access_token, step="Auto-fetch transactions")

    async def _refresh_cache(self, access_token: str, *, step: str) -> None:
        today = self._today()
        try:
            resp = await self._fetch_window(
                access_token, today - timedelta(days=TRANSACTIONS_WINDOW_DAYS), today
            )
        except Exception as e:
            self._log.background_step_failed(step, e)
            return
        self._cache.set_transactions(access_token, resp)
        self._log.auto_cached(resp.get("total_transactions"))

    def _fake_exchange(self) -> dict[str, Any]:
        out: dict[str, Any] = fake.fake_exchange(self._rng)
        access_token = out["access_token"]
        self._cache.set_access_token(out["item_id"], access_token)
        cached = fake.fake_transactions(access_token, today=self._today(), rng=self._rng)
        self._cache.set_transactions(access_token, cached)
        self._log.fake_mode(f"created fake access_token for item_id={out['item_id']}")
        out["cached_transactions"] = cached
        out["cached_transactions_present"] = True
        return out
