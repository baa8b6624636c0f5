"""Bounded exponential backoff with jitter.

One algorithm serves both retry loops in the system: the client polling the
proxy for transactions, and the proxy polling Plaid's ``/transactions/sync``.
They differ only in what counts as a sufficient result and which errors are
worth another attempt, so both are passed in as predicates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import random
from typing import TypeVar

from plaidledger.core.errors import RetryExhaustedError

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Delay schedule in seconds: ``min(base * 2**(n-1), max) + U(0, jitter)``."""

    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0

    def base_delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # Cap the exponent so large attempt numbers cannot overflow the float.
        exponent = min(attempt - 1, 62)
        return min(self.base_delay * (2**exponent), self.max_delay)

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        source = rng or random
        return self.base_delay_for(attempt) + source.uniform(0, self.jitter)


DEFAULT_POLICY = BackoffPolicy()


async def retry_until(
    operation: Callable[[int], Awaitable[T]],
    *,
    is_sufficient: Callable[[T], bool],
    is_retryable: Callable[[Exception], bool],
    policy: BackoffPolicy = DEFAULT_POLICY,
    sleep: SleepFn = asyncio.sleep,
    rng: random.Random | None = None,
    on_retry: Callable[[int, float, T | None, Exception | None], None] | None = None,
) -> T:
    """Call ``operation(attempt)`` until it yields a sufficient result.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number.
        is_sufficient: Whether a returned value ends the loop.
        is_retryable: Whether a raised exception earns another attempt.
            Non-retryable exceptions propagate immediately.
        policy: Attempt budget and delay schedule.
        sleep: Awaitable sleep, swapped out in tests.
        rng: Jitter source.
        on_retry: Called with (attempt, delay, result, error) before sleeping.

    Returns:
        The first sufficient result.

    Raises:
        RetryExhaustedError: After ``policy.max_attempts`` attempts, carrying
            the last result and the last error observed.
    """
    last_result: T | None = None
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        result: T | None = None
        error: Exception | None = None
        try:
            result = await operation(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            error = e
        else:
            if is_sufficient(result):
                return result

        last_result, last_error = result, error
        if attempt == policy.max_attempts:
            break

        delay = policy.delay_for(attempt, rng)
        if on_retry is not None:
            on_retry(attempt, delay, result, error)
        await sleep(delay)

    raise RetryExhaustedError(
        policy.max_attempts, last_result=last_result, last_error=last_error
    )
