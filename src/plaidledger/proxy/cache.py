from __future__ import annotations

from typing import Any


class ProxyCache:
    """Process-scoped state shared by all proxy requests.

    Two plain maps, item id → access token and access token → last
    ``/transactions/get`` body. No eviction and no locking: concurrent writers
    store re-fetches of the same upstream data, so the last write wins.
    """

    def __init__(self) -> None:
        self._access_tokens: dict[str, str] = {}
        self._transactions: dict[str, dict[str, Any]] = {}

    def get_access_token(self, item_id: str) -> str | None:
        return self._access_tokens.get(item_id)

    def set_access_token(self, item_id: str, access_token: str) -> None:
        self._access_tokens[item_id] = access_token

    def get_transactions(self, access_token: str) -> dict[str, Any] | None:
        return self._transactions.get(access_token)

    def set_transactions(self, access_token: str, body: dict[str, Any]) -> None:
        self._transactions[access_token] = body
