from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import hmac
import json
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from loguru import logger

from plaidledger.adapters.clients.gateway import DEMO_KEY_HEADER
from plaidledger.adapters.clients.plaid import PlaidClient
from plaidledger.core.config import ProxySettings
from plaidledger.core.errors import AuthError, ProxyError, ValidationError
from plaidledger.proxy.cache import ProxyCache
from plaidledger.proxy.service import ProxyService, UpstreamPlaid

UNAUTHORIZED = "unauthorized - missing or invalid demo key"


async def _json_body(request: Request) -> dict[str, Any]:
    """Request body as a dict; a missing or malformed body reads as empty."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def create_app(
    settings: ProxySettings,
    plaid_client: UpstreamPlaid | None = None,
    cache: ProxyCache | None = None,
    *,
    service: ProxyService | None = None,
) -> FastAPI:
    """Build the proxy app.

    Every route except the webhook receivers requires the ``x-demo-key``
    header to match ``settings.demo_api_key``.
    """
    if service is None:
        service = ProxyService(
            settings,
            plaid_client or PlaidClient.from_settings(settings),
            cache or ProxyCache(),
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        missing = settings.missing_settings()
        if missing and not settings.fake_plaid:
            logger.warning("Missing proxy settings: {}", ", ".join(missing))
        logger.info(
            "Plaid proxy starting (env={}, fake_plaid={})",
            settings.plaid_env,
            settings.fake_plaid,
        )
        yield
        await service.drain()

    app = FastAPI(title="plaidledger proxy", lifespan=lifespan)
    app.state.service = service

    def require_demo_key(
        demo_key: str | None = Header(default=None, alias=DEMO_KEY_HEADER),
    ) -> None:
        expected = settings.demo_api_key
        if not expected or not demo_key:
            raise AuthError(UNAUTHORIZED)
        if not hmac.compare_digest(demo_key.encode(), expected.encode()):
            raise AuthError(UNAUTHORIZED)

    @app.exception_handler(ProxyError)
    async def _proxy_error(_request: Request, exc: ProxyError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.envelope())

    @app.exception_handler(ValidationError)
    async def _validation_error(
        _request: Request, exc: ValidationError
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(AuthError)
    async def _auth_error(_request: Request, exc: AuthError) -> JSONResponse:
        logger.warning("Rejected request without a valid demo key")
        return JSONResponse(status_code=401, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on {}: {}", request.url.path, exc)
        return JSONResponse(
            status_code=502, content={"error": "upstream call failed"}
        )

    guarded = [Depends(require_demo_key)]

    @app.get("/")
    async def index() -> dict[str, Any]:
        return {"service": "plaidledger proxy", "env": settings.plaid_env}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/create_link_token", dependencies=guarded)
    async def create_link_token(
        client_user_id: str | None = None,
    ) -> dict[str, Any]:
        return await service.create_link_token(client_user_id)

    @app.post("/create_sandbox_public_token", dependencies=guarded)
    async def create_sandbox_public_token(request: Request) -> dict[str, Any]:
        return await service.create_sandbox_public_token(await _json_body(request))

    @app.post("/exchange_public_token", dependencies=guarded)
    async def exchange_public_token(request: Request) -> dict[str, Any]:
        return await service.exchange_public_token(await _json_body(request))

    @app.post("/transactions_for_access_token", dependencies=guarded)
    async def transactions_for_access_token(request: Request) -> dict[str, Any]:
        return await service.transactions_for_access_token(await _json_body(request))

    @app.post("/transactions_sync_for_access_token", dependencies=guarded)
    async def transactions_sync_for_access_token(request: Request) -> dict[str, Any]:
        return await service.transactions_sync_for_access_token(
            await _json_body(request)
        )

    @app.post("/sandbox/fire_webhook", dependencies=guarded)
    async def fire_webhook(request: Request) -> dict[str, Any]:
        return await service.fire_webhook(await _json_body(request))

    @app.post("/webhook")
    @app.post("/plaid_webhook")
    async def webhook(request: Request) -> dict[str, Any]:
        return await service.webhook(await _json_body(request))

    return app
