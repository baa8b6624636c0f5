from __future__ import annotations

from datetime import date
import http.client
import json
from typing import Any, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from plaidledger.core.config import PlaidEnv, ProxySettings

TOKEN_TIMEOUT_SECONDS = 10.0
TRANSACTIONS_TIMEOUT_SECONDS = 20.0

DEFAULT_PRODUCTS = ["transactions", "auth"]
DEFAULT_SANDBOX_INSTITUTION = "ins_109508"


class PlaidClientError(Exception):
    """Base error for Plaid client failures.

    ``status`` is the HTTP status when Plaid answered, None for network and
    parse errors. ``body`` is the parsed error body when it was JSON, else the
    raw text.
    """

    def __init__(
        self, message: str, *, status: int | None = None, body: Any = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def error_code(self) -> str | None:
        if isinstance(self.body, dict):
            code = self.body.get("error_code")
            return code if isinstance(code, str) else None
        return None

    def details(self) -> Any:
        """Payload suitable for an error envelope's ``details`` field."""
        return self.body if self.body is not None else str(self)


PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    model_config = ConfigDict(extra="allow")

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class LinkTokenCreateResponse(PlaidBaseModel):
    link_token: str


class PublicTokenExchangeResponse(PlaidBaseModel):
    access_token: str
    item_id: str
    request_id: str | None = None


class TransactionsSyncResponse(PlaidBaseModel):
    added: list[dict[str, Any]] = Field(default_factory=list)
    modified: list[dict[str, Any]] = Field(default_factory=list)
    removed: list[dict[str, Any]] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False
    transactions_update_status: str | None = None


class PlaidClient:
    """Minimal Plaid REST client covering the calls the proxy forwards.

    Every high-level method returns Plaid's JSON body unmodified so the proxy
    can relay it verbatim.
    """

    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        client_name: str = "Expense Tracker Demo",
        products: list[str] | None = None,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._client_name = client_name
        self._products = products or list(DEFAULT_PRODUCTS)

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> PlaidClient:
        return cls(
            client_id=settings.plaid_client_id,
            secret=settings.plaid_secret,
            env=settings.plaid_env,
            client_name=settings.client_name,
        )

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise PlaidClientError(
                f"Unsupported Plaid environment: {self._env!r}"
            ) from e

    def _credentials(self) -> dict[str, Any]:
        return {"client_id": self._client_id, "secret": self._secret}

    def _parse_json_response(self, body: str, *, status: int | None = None) -> Any:
        """Parse JSON response from Plaid API.

        Raises:
            PlaidClientError: If JSON parsing fails
        """
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body}",
                status=status,
                body=body,
            ) from e

    def _post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        timeout: float = TOKEN_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        data = json.dumps({**self._credentials(), **payload}).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            try:
                parsed: Any = json.loads(err_body)
            except json.JSONDecodeError:
                parsed = err_body
            raise PlaidClientError(
                f"Plaid API error ({e.code}): {err_body}", status=e.code, body=parsed
            ) from e
        except UnicodeDecodeError as e:
            raise PlaidClientError(f"Plaid response is not valid UTF-8: {e}") from e
        except (OSError, http.client.HTTPException) as e:
            # URLError, timeouts and connections dropped mid-read all land here.
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e

        parsed_body = self._parse_json_response(body)
        if not isinstance(parsed_body, dict):
            raise PlaidClientError(
                f"Unexpected Plaid response shape: {body}", body=parsed_body
            )
        return cast(dict[str, Any], parsed_body)

    @staticmethod
    def _validated(model: type[PlaidBaseModel], body: dict[str, Any]) -> dict[str, Any]:
        try:
            model.parse(body)
        except PydanticValidationError as e:
            raise PlaidClientError(
                f"Unexpected Plaid response for {model.__name__}: {e}", body=body
            ) from e
        return body

    # High-level APIs -----------------------------------------------------

    def create_link_token(
        self,
        *,
        user_id: str,
        products: list[str] | None = None,
        country_codes: list[str] | None = None,
        language: str = "en",
        client_name: str | None = None,
    ) -> dict[str, Any]:
        """Call /link/token/create and return the raw Plaid response."""
        payload: dict[str, Any] = {
            "client_name": client_name or self._client_name,
            "language": language,
            "country_codes": country_codes or ["US"],
            "user": {"client_user_id": user_id},
            "products": products or self._products,
        }
        body = self._post("/link/token/create", payload)
        return self._validated(LinkTokenCreateResponse, body)

    def exchange_public_token(self, public_token: str) -> dict[str, Any]:
        """Exchange a Link public_token for an access_token."""
        body = self._post(
            "/item/public_token/exchange", {"public_token": public_token}
        )
        return self._validated(PublicTokenExchangeResponse, body)

    def get_transactions_raw(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Call /transactions/get and return the raw Plaid response."""
        payload: dict[str, Any] = {
            "access_token": access_token,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        }
        return self._post(
            "/transactions/get", payload, timeout=TRANSACTIONS_TIMEOUT_SECONDS
        )

    def sync_transactions_raw(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        """Thin wrapper around Plaid's /transactions/sync endpoint.

        /transactions/sync never answers PRODUCT_NOT_READY; before the first
        update it returns an empty page with transactions_update_status
        NOT_READY instead.
        """
        payload: dict[str, Any] = {"access_token": access_token}
        if cursor:
            payload["cursor"] = cursor
        return self._post(
            "/transactions/sync", payload, timeout=TRANSACTIONS_TIMEOUT_SECONDS
        )

    def create_sandbox_public_token(
        self,
        *,
        institution_id: str = DEFAULT_SANDBOX_INSTITUTION,
        initial_products: list[str] | None = None,
    ) -> dict[str, Any]:
        """Call /sandbox/public_token/create (sandbox only)."""
        payload: dict[str, Any] = {
            "institution_id": institution_id,
            "initial_products": initial_products or ["transactions"],
        }
        return self._post("/sandbox/public_token/create", payload)

    def fire_sandbox_webhook(
        self,
        access_token: str,
        *,
        webhook_code: str = "INITIAL_UPDATE",
    ) -> dict[str, Any]:
        """Ask the sandbox to fire a webhook for the Item."""
        payload: dict[str, Any] = {
            "access_token": access_token,
            "webhook_code": webhook_code,
        }
        return self._post("/sandbox/item/fire_webhook", payload)
