from __future__ import annotations

from typing import Any


class PlaidLedgerError(Exception):
    """Base error for the ingestion pipeline and proxy."""


class AuthError(PlaidLedgerError):
    """Missing or invalid demo key."""


class ValidationError(PlaidLedgerError):
    """A required input field is missing or empty."""


class UpstreamError(PlaidLedgerError):
    """An upstream call failed with an HTTP status and response body.

    ``attempts`` is set by retry loops to the attempt that raised it.
    """

    def __init__(
        self, message: str, *, status: int | None = None, body: Any = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.attempts: int | None = None


class UpstreamNotReady(UpstreamError):
    """Transactions for the Item have not finished indexing yet."""


class UpstreamHardFailure(UpstreamError):
    """Non-retryable upstream failure."""


class NetworkError(UpstreamError):
    """Connection error, timeout or transient status. Retried like not-ready."""


class ParseError(UpstreamError):
    """Upstream returned a body that is not valid JSON."""


class PersistenceError(PlaidLedgerError):
    """A single ledger insert failed."""


class RetryExhaustedError(PlaidLedgerError):
    """Raised by retry_until once the attempt budget is spent."""

    def __init__(
        self,
        attempts: int,
        *,
        last_result: Any = None,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(f"Gave up after {attempts} attempts")
        self.attempts = attempts
        self.last_result = last_result
        self.last_error = last_error


class ExhaustedError(PlaidLedgerError):
    """Client-side transaction fetch ran out of attempts."""

    def __init__(
        self, attempts: int, *, last_status: int | None, last_body: Any
    ) -> None:
        super().__init__(
            f"No transactions after {attempts} attempts "
            f"(last HTTP {last_status}: {last_body!r})"
        )
        self.attempts = attempts
        self.last_status = last_status
        self.last_body = last_body


class ProxyError(PlaidLedgerError):
    """A proxy handler failure rendered as ``{error, details}``."""

    def __init__(self, status_code: int, error: str, details: Any = None) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details

    def envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body
