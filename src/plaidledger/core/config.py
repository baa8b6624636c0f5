from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Literal

PlaidEnv = Literal["sandbox", "development", "production"]

PLAID_ENVS: tuple[PlaidEnv, ...] = ("sandbox", "development", "production")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class ProxySettings:
    """Configuration for the proxy service, loaded at process startup."""

    plaid_client_id: str
    plaid_secret: str
    demo_api_key: str
    plaid_env: PlaidEnv = "sandbox"
    fake_plaid: bool = False
    client_name: str = "Expense Tracker Demo"
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000

    @property
    def is_sandbox(self) -> bool:
        return self.plaid_env == "sandbox"

    def missing_settings(self) -> list[str]:
        """Names of unset values the proxy needs to talk to Plaid."""
        missing: list[str] = []
        if not self.plaid_client_id:
            missing.append("PLAID_CLIENT_ID")
        if not self.plaid_secret:
            missing.append("PLAID_SECRET")
        if not self.demo_api_key:
            missing.append("DEMO_API_KEY")
        return missing


@dataclass(frozen=True, slots=True)
class ClientSettings:
    """Configuration for the ingestion client and CLI shell."""

    backend_base: str = "http://localhost:3000"
    demo_api_key: str = ""
    database_url: str = "sqlite:///ledger.db"
    prefs_dir: str = ".plaidledger"
    fetch_max_attempts: int = 10


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


def _plaid_env_from_env() -> PlaidEnv:
    env_str = os.environ.get("PLAID_ENV", "sandbox").strip().lower()
    if env_str not in PLAID_ENVS:
        raise ValueError(
            f"Invalid PLAID_ENV={env_str!r}. "
            "Expected one of: sandbox, development, production."
        )
    return env_str  # type: ignore[return-value]


def _plaid_secret_from_env(env: PlaidEnv) -> str:
    # PLAID_SECRET wins; PLAID_<ENV>_SECRET is accepted for per-env setups.
    secret = os.environ.get("PLAID_SECRET", "").strip()
    if secret:
        return secret
    return os.environ.get(f"PLAID_{env.upper()}_SECRET", "").strip()


def load_proxy_settings_from_env() -> ProxySettings:
    """Load proxy settings from the environment.

    Missing credentials are not fatal here; the caller warns about them so a
    FAKE_PLAID deployment can start without real Plaid keys.
    """
    plaid_env = _plaid_env_from_env()
    return ProxySettings(
        plaid_client_id=os.environ.get("PLAID_CLIENT_ID", "").strip(),
        plaid_secret=_plaid_secret_from_env(plaid_env),
        demo_api_key=os.environ.get("DEMO_API_KEY", "").strip(),
        plaid_env=plaid_env,
        fake_plaid=_env_bool("FAKE_PLAID"),
        client_name=os.environ.get("PLAID_CLIENT_NAME", "Expense Tracker Demo"),
        host=os.environ.get("HOST", "0.0.0.0"),  # noqa: S104
        port=_env_int("PORT", 3000),
    )


def load_client_settings_from_env() -> ClientSettings:
    """Load client settings from the environment."""
    max_attempts = _env_int("FETCH_MAX_ATTEMPTS", 10)
    if max_attempts < 1:
        raise ValueError("FETCH_MAX_ATTEMPTS must be at least 1")
    return ClientSettings(
        backend_base=os.environ.get("BACKEND_BASE", "http://localhost:3000").strip(),
        demo_api_key=os.environ.get("DEMO_API_KEY", "").strip(),
        database_url=os.environ.get("LEDGER_DATABASE_URL", "sqlite:///ledger.db"),
        prefs_dir=os.environ.get("PLAIDLEDGER_PREFS_DIR", ".plaidledger"),
        fetch_max_attempts=max_attempts,
    )
