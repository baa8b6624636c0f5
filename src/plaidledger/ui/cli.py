from __future__ import annotations

import asyncio
from datetime import date, timedelta
import json
import os
from pathlib import Path

from dotenv import load_dotenv
import typer

from plaidledger.adapters.clients.gateway import GatewayClient
from plaidledger.adapters.db.facade import LedgerStore
from plaidledger.adapters.prefs import PreferencesStore
from plaidledger.core.config import (
    ClientSettings,
    load_client_settings_from_env,
    load_proxy_settings_from_env,
)
from plaidledger.core.errors import PlaidLedgerError
from plaidledger.core.logs import configure_logging
from plaidledger.core.models import EntryType, LedgerEntry
from plaidledger.link.result import decode_link_result
from plaidledger.orchestrators.ingestion import (
    IngestionOrchestrator,
    IngestionOutcome,
)

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="plaidledger: Plaid transaction ingestion into a local ledger.",
    no_args_is_help=True,
)


@app.callback()
def main_callback() -> None:
    """Configure logging before any command runs."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))


def _settings() -> ClientSettings:
    try:
        return load_client_settings_from_env()
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2) from e


def _store(settings: ClientSettings) -> LedgerStore:
    return LedgerStore(settings.database_url)


def _orchestrator(settings: ClientSettings) -> IngestionOrchestrator:
    orchestrator = IngestionOrchestrator(
        GatewayClient(settings.backend_base, settings.demo_api_key),
        _store(settings),
        PreferencesStore(settings.prefs_dir),
        max_attempts=settings.fetch_max_attempts,
    )
    orchestrator.status.subscribe(lambda message: typer.echo(message, err=True))
    return orchestrator


def _report(outcome: IngestionOutcome) -> None:
    if outcome.succeeded:
        typer.echo(
            f"Done: fetched {outcome.fetched}, inserted {outcome.inserted}"
        )
        return
    typer.echo(f"Failed: {outcome.reason}", err=True)
    raise typer.Exit(code=1)


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, help="Bind address (default: HOST)"),
    port: int | None = typer.Option(None, help="Port (default: PORT or 3000)"),
) -> None:
    """Run the Plaid proxy service."""
    import uvicorn

    from plaidledger.proxy.app import create_app

    settings = load_proxy_settings_from_env()
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
    )


@app.command("link-token")
def link_token(
    user_id: str | None = typer.Option(None, help="Client user id for Link"),
) -> None:
    """Fetch a Plaid Link token from the proxy and print it."""
    settings = _settings()
    client = GatewayClient(settings.backend_base, settings.demo_api_key)
    try:
        token = client.create_link_session(user_id)
    except PlaidLedgerError as e:
        typer.echo(f"Failed to get link_token: {e}", err=True)
        raise typer.Exit(code=1) from e
    if not token:
        typer.echo("Failed to get link_token", err=True)
        raise typer.Exit(code=1)
    typer.echo(token)


@app.command("ingest")
def ingest(public_token: str) -> None:
    """Exchange a Link public token and ingest its transactions."""
    orchestrator = _orchestrator(_settings())
    _report(asyncio.run(orchestrator.ingest_public_token(public_token, remember=True)))


@app.command("link-result")
def link_result(
    path: Path = typer.Argument(..., help="JSON file with the Link result"),
) -> None:
    """Act on a Plaid Link result payload saved by a Link shell."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        typer.echo(f"Could not read Link result: {e}", err=True)
        raise typer.Exit(code=1) from e
    orchestrator = _orchestrator(_settings())
    _report(asyncio.run(orchestrator.handle_link_result(decode_link_result(payload))))


@app.command("simulate")
def simulate() -> None:
    """Run the sandbox flow end to end without the Link UI."""
    orchestrator = _orchestrator(_settings())
    _report(asyncio.run(orchestrator.simulate_sandbox()))


@app.command("refresh")
def refresh() -> None:
    """Refresh transactions using the stored access token, if any."""
    orchestrator = _orchestrator(_settings())
    outcome = asyncio.run(orchestrator.refresh_on_launch())
    if outcome is None:
        typer.echo("Not signed in to Plaid; nothing to refresh")
        return
    _report(outcome)


@app.command("list")
def list_entries() -> None:
    """Print every ledger entry."""
    for entry in _store(_settings()).list_all():
        typer.echo(
            f"{entry.id}\t{entry.date}\t{entry.type.value}\t"
            f"{entry.amount:.2f}\t{entry.title}"
        )


@app.command("count")
def count() -> None:
    """Print the number of ledger entries."""
    typer.echo(str(_store(_settings()).count()))


@app.command("delete")
def delete(entry_id: int) -> None:
    """Delete a ledger entry by id."""
    store = _store(_settings())
    entry = store.get(entry_id)
    if entry is None:
        typer.echo(f"No entry with id {entry_id}", err=True)
        raise typer.Exit(code=1)
    store.delete(entry)
    typer.echo(f"Deleted {entry_id}")


@app.command("seed-demo")
def seed_demo() -> None:
    """Insert a few local demo entries."""
    store = _store(_settings())
    today = date.today()

    def days_ago(n: int) -> str:
        return (today - timedelta(days=n)).strftime("%d/%m/%Y")

    demo = [
        LedgerEntry("Demo Coffee", 4.5, days_ago(2), EntryType.EXPENSE),
        LedgerEntry("Demo Groceries", 32.75, days_ago(5), EntryType.EXPENSE),
        LedgerEntry("Demo Salary", 1500.0, days_ago(20), EntryType.INCOME),
    ]
    for entry in demo:
        store.insert(entry)
    typer.echo(f"Inserted {len(demo)} demo entries")


@app.command("sign-out")
def sign_out() -> None:
    """Forget the stored Plaid access token."""
    PreferencesStore(_settings().prefs_dir).sign_out()
    typer.echo("Signed out of Plaid")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
