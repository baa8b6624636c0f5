from __future__ import annotations

import asyncio
from dataclasses import replace
import random
from typing import Protocol

import loguru
from loguru import logger

from plaidledger.core.backoff import (
    DEFAULT_POLICY,
    BackoffPolicy,
    SleepFn,
    retry_until,
)
from plaidledger.core.errors import (
    ExhaustedError,
    NetworkError,
    RetryExhaustedError,
    UpstreamError,
    UpstreamNotReady,
)
from plaidledger.core.models import RemoteTransactionRecord


class TransactionSource(Protocol):
    def fetch_transactions_once(
        self,
        access_token: str,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> list[RemoteTransactionRecord]: ...


def is_retryable_fetch_error(error: Exception) -> bool:
    """Not-ready and network/transient failures are worth another attempt."""
    return isinstance(error, (UpstreamNotReady, NetworkError))


class FetchRetryLogger:
    """Handles all logging for fetch_with_retry."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def attempt(self, attempt: int, max_attempts: int) -> None:
        self._logger.bind(attempt=attempt).debug(
            "Fetching transactions (attempt {}/{})", attempt, max_attempts
        )

    def retrying(
        self, attempt: int, max_attempts: int, delay: float, error: Exception | None
    ) -> None:
        reason = type(error).__name__ if error is not None else "insufficient result"
        self._logger.bind(attempt=attempt, delay=delay).info(
            "{}; retrying in {:.0f}ms (attempt {}/{})",
            reason,
            delay * 1000,
            attempt,
            max_attempts,
        )

    def exhausted(self, attempts: int, status: int | None) -> None:
        self._logger.bind(attempts=attempts, status=status).warning(
            "No transactions after {} attempts, last HTTP {}", attempts, status
        )


async def fetch_with_retry(
    source: TransactionSource,
    access_token: str,
    *,
    max_attempts: int = 10,
    policy: BackoffPolicy = DEFAULT_POLICY,
    sleep: SleepFn = asyncio.sleep,
    rng: random.Random | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    logger_instance: loguru.Logger = logger,
) -> list[RemoteTransactionRecord]:
    """Fetch transactions, backing off while Plaid is still indexing.

    Any returned list ends the loop, including an empty one: zero transactions
    is a valid answer. Only not-ready and network errors are retried.

    Raises:
        ExhaustedError: ``max_attempts`` attempts without a result, carrying
            the last status and body observed.
        UpstreamHardFailure, ParseError: Raised on the first occurrence, with
            ``attempts`` set to the attempt that hit it.
    """
    effective = replace(policy, max_attempts=max_attempts)
    log = FetchRetryLogger(logger_instance)
    current_attempt = 0

    async def attempt_once(attempt: int) -> list[RemoteTransactionRecord]:
        nonlocal current_attempt
        current_attempt = attempt
        log.attempt(attempt, effective.max_attempts)
        return await asyncio.to_thread(
            source.fetch_transactions_once,
            access_token,
            start_date=start_date,
            end_date=end_date,
        )

    def on_retry(
        attempt: int,
        delay: float,
        _result: list[RemoteTransactionRecord] | None,
        error: Exception | None,
    ) -> None:
        log.retrying(attempt, effective.max_attempts, delay, error)

    try:
        return await retry_until(
            attempt_once,
            is_sufficient=lambda _records: True,
            is_retryable=is_retryable_fetch_error,
            policy=effective,
            sleep=sleep,
            rng=rng,
            on_retry=on_retry,
        )
    except RetryExhaustedError as e:
        last = e.last_error
        status = getattr(last, "status", None)
        body = getattr(last, "body", None) if last is not None else None
        if body is None and last is not None:
            body = str(last)
        log.exhausted(e.attempts, status)
        raise ExhaustedError(e.attempts, last_status=status, last_body=body) from e
    except UpstreamError as e:
        e.attempts = current_attempt
        raise
