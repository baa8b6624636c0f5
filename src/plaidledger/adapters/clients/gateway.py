"""HTTP client for the proxy service, used by the ingestion orchestrator.

Each method is a single blocking request; retry policy lives in
``plaidledger.orchestrators.fetch``. Callers run these methods in a worker
thread (``asyncio.to_thread``) so the event loop is never blocked.
"""

from __future__ import annotations

from dataclasses import dataclass
import http.client
import json
import re
import time
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

import loguru
from loguru import logger

from plaidledger.core.errors import (
    NetworkError,
    ParseError,
    UpstreamHardFailure,
    UpstreamNotReady,
    ValidationError,
)
from plaidledger.core.logs import redact_token
from plaidledger.core.models import RemoteTransactionRecord, parse_transactions

TOKEN_TIMEOUT_SECONDS = 10.0
TRANSACTIONS_TIMEOUT_SECONDS = 20.0

DEMO_KEY_HEADER = "x-demo-key"
NOT_READY_CODE = "PRODUCT_NOT_READY"
TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

_LINK_TOKEN_RE = re.compile(r'"link_token"\s*:\s*"([^"]+)"')


@dataclass(frozen=True, slots=True)
class GatewayResponse:
    status: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any | None:
        """Parsed body, or None when it is empty or not JSON."""
        if not self.body.strip():
            return None
        try:
            return json.loads(self.body)
        except json.JSONDecodeError:
            return None


def error_code_of(body: Any) -> str | None:
    """Plaid error code from a raw Plaid error or a proxy error envelope."""
    if not isinstance(body, dict):
        return None
    code = body.get("error_code")
    if isinstance(code, str):
        return code
    details = body.get("details")
    if isinstance(details, dict):
        nested = details.get("error_code")
        if isinstance(nested, str):
            return nested
    return None


def is_not_ready_body(body: Any) -> bool:
    if error_code_of(body) == NOT_READY_CODE:
        return True
    if isinstance(body, dict):
        error = body.get("error")
        return isinstance(error, str) and "not ready" in error.lower()
    return False


class GatewayLogger:
    """Handles all logging for GatewayClient with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def request(self, method: str, path: str) -> None:
        self._logger.bind(method=method, path=path).debug("{} {}", method, path)

    def response(self, path: str, status: int, body: str) -> None:
        self._logger.bind(path=path, status=status).debug(
            "{} -> HTTP {} ({} bytes)", path, status, len(body)
        )

    def failure(self, path: str, status: int, body: str) -> None:
        self._logger.bind(path=path, status=status).warning(
            "{} failed: HTTP {} - {}", path, status, body[:500] or "<no body>"
        )

    def unparseable(self, path: str) -> None:
        self._logger.bind(path=path).warning("{} returned invalid JSON", path)

    def exchanged(self, access_token: str) -> None:
        self._logger.info("Obtained access token {}", redact_token(access_token))


class GatewayClient:
    """Client for the proxy's link, exchange and transaction endpoints."""

    def __init__(
        self,
        base_url: str,
        demo_key: str,
        *,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._demo_key = demo_key
        self._logger = GatewayLogger(logger_instance)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        timeout: float,
    ) -> GatewayResponse:
        headers = {DEMO_KEY_HEADER: self._demo_key}
        data: bytes | None = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(  # noqa: S310
            self._url(path), data=data, headers=headers, method=method
        )
        self._logger.request(method, path.split("?", 1)[0])

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
                response = GatewayResponse(
                    status=resp.status, body=resp.read().decode("utf-8", "replace")
                )
        except urllib.error.HTTPError as e:
            response = GatewayResponse(
                status=e.code, body=e.read().decode("utf-8", "replace")
            )
        except (OSError, http.client.HTTPException) as e:
            raise NetworkError(f"Network error calling {path}: {e}") from e

        self._logger.response(path.split("?", 1)[0], response.status, response.body)
        return response

    def _fail_unless_ok(self, path: str, response: GatewayResponse) -> None:
        if response.ok:
            return
        self._logger.failure(path, response.status, response.body)
        raise UpstreamHardFailure(
            f"{path} failed: HTTP {response.status} - {response.body or '<no body>'}",
            status=response.status,
            body=response.body,
        )

    def create_link_session(self, user_id: str | None = None) -> str | None:
        """Fetch a Plaid Link token for ``user_id`` (time-based when omitted).

        Returns None when the proxy answers 2xx but no token can be read.

        Raises:
            UpstreamHardFailure: Non-2xx response, carrying status and body.
            NetworkError: The proxy could not be reached.
        """
        client_user_id = user_id or f"cli-demo-user-{int(time.time() * 1000)}"
        query = urllib.parse.urlencode({"client_user_id": client_user_id})
        response = self._request(
            "GET", f"create_link_token?{query}", timeout=TOKEN_TIMEOUT_SECONDS
        )
        self._fail_unless_ok("create_link_token", response)

        body = response.json()
        if isinstance(body, dict) and isinstance(body.get("link_token"), str):
            return body["link_token"] or None
        match = _LINK_TOKEN_RE.search(response.body)
        return match.group(1) if match else None

    def exchange_public_token(self, public_token: str) -> str | None:
        """Exchange a public token for an access token via the proxy.

        Returns None for an empty body, invalid JSON or a missing token.

        Raises:
            ValidationError: ``public_token`` is empty.
            UpstreamHardFailure: Non-2xx response.
            NetworkError: The proxy could not be reached.
        """
        if not public_token or not public_token.strip():
            raise ValidationError("public_token is required")
        response = self._request(
            "POST",
            "exchange_public_token",
            payload={"public_token": public_token},
            timeout=TOKEN_TIMEOUT_SECONDS,
        )
        self._fail_unless_ok("exchange_public_token", response)
        access_token = self._string_field(
            "exchange_public_token", response, "access_token"
        )
        if access_token:
            self._logger.exchanged(access_token)
        return access_token

    def create_sandbox_public_token(
        self, initial_products: list[str] | None = None
    ) -> str | None:
        """Ask the proxy for a sandbox public token, bypassing the Link UI."""
        response = self._request(
            "POST",
            "create_sandbox_public_token",
            payload={"initial_products": initial_products or ["transactions"]},
            timeout=TOKEN_TIMEOUT_SECONDS,
        )
        self._fail_unless_ok("create_sandbox_public_token", response)
        return self._string_field("create_sandbox_public_token", response, "public_token")

    def fetch_transactions_once(
        self,
        access_token: str,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> list[RemoteTransactionRecord]:
        """Single attempt at fetching transactions for ``access_token``.

        Returns:
            Zero or more records.

        Raises:
            UpstreamNotReady: Plaid has not finished indexing the Item.
            NetworkError: Unreachable proxy, empty 2xx body or transient status.
            ParseError: 2xx body that is not JSON.
            UpstreamHardFailure: Any other non-2xx response.
        """
        payload: dict[str, Any] = {"access_token": access_token}
        if start_date:
            payload["start_date"] = start_date
        if end_date:
            payload["end_date"] = end_date

        path = "transactions_for_access_token"
        response = self._request(
            "POST", path, payload=payload, timeout=TRANSACTIONS_TIMEOUT_SECONDS
        )
        body = response.json()

        if response.ok:
            if not response.body.strip():
                raise NetworkError(
                    f"{path} returned an empty body",
                    status=response.status,
                    body=response.body,
                )
            if body is None:
                self._logger.unparseable(path)
                raise ParseError(
                    f"Invalid JSON from {path}",
                    status=response.status,
                    body=response.body,
                )
            return parse_transactions(body)

        self._logger.failure(path, response.status, response.body)
        message = f"{path} failed: HTTP {response.status} - {response.body or '<no body>'}"
        if is_not_ready_body(body):
            raise UpstreamNotReady(message, status=response.status, body=response.body)
        if response.status in TRANSIENT_STATUSES and error_code_of(body) is None:
            raise NetworkError(message, status=response.status, body=response.body)
        raise UpstreamHardFailure(message, status=response.status, body=response.body)

    def _string_field(
        self, path: str, response: GatewayResponse, field: str
    ) -> str | None:
        body = response.json()
        if body is None:
            self._logger.unparseable(path)
            return None
        if not isinstance(body, dict):
            return None
        value = body.get(field)
        if not isinstance(value, str) or not value.strip():
            return None
        return value
