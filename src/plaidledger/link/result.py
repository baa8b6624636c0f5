"""Decode the payload Plaid Link hands back when the user finishes or quits.

Link delivers either ``onSuccess(public_token, metadata)`` or
``onExit(error, metadata)``. Shells forward that as a JSON object; this module
turns it into one of three explicit variants.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

PUBLIC_TOKEN_KEYS = ("public_token", "publicToken", "link_public_token")
ERROR_KEYS = ("error", "link_error", "linkError", "err")


@dataclass(frozen=True, slots=True)
class LinkSuccess:
    public_token: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LinkExit:
    error: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        if not self.error:
            return "user exited Plaid Link"
        code = self.error.get("error_code") or self.error.get("errorCode")
        message = (
            self.error.get("display_message")
            or self.error.get("error_message")
            or self.error.get("errorMessage")
        )
        parts = [str(p) for p in (code, message) if p]
        return ": ".join(parts) if parts else "Plaid Link exited with an error"


@dataclass(frozen=True, slots=True)
class LinkUnknown:
    raw: Any = None


LinkResult = LinkSuccess | LinkExit | LinkUnknown


def _token_in(mapping: dict[str, Any]) -> str | None:
    for key in PUBLIC_TOKEN_KEYS:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _metadata(payload: dict[str, Any]) -> dict[str, Any]:
    metadata = payload.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def decode_link_result(payload: Any) -> LinkResult:
    """Classify a Link callback payload.

    A public token at the top level or one level down (e.g. under
    ``"result"``) is a success. An explicit exit marker or error object is an
    exit. Anything else is unknown.
    """
    if not isinstance(payload, dict):
        return LinkUnknown(raw=payload)

    token = _token_in(payload)
    if token is None:
        for value in payload.values():
            if isinstance(value, dict):
                token = _token_in(value)
                if token is not None:
                    break
    if token is not None:
        return LinkSuccess(public_token=token, metadata=_metadata(payload))

    event = str(payload.get("event") or payload.get("status") or "").lower()
    error: dict[str, Any] | None = None
    for key in ERROR_KEYS:
        value = payload.get(key)
        if isinstance(value, dict):
            error = value
            break
        if isinstance(value, str) and value:
            error = {"error_message": value}
            break

    if event in ("exit", "onexit", "cancelled", "canceled") or error is not None:
        return LinkExit(error=error, metadata=_metadata(payload))
    return LinkUnknown(raw=payload)
