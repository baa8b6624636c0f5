from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from plaidledger.adapters.db.facade import LedgerStore
from plaidledger.adapters.prefs import PreferencesStore
from plaidledger.core.errors import NetworkError
from plaidledger.orchestrators.ingestion import IngestionOutcome, IngestionState
from plaidledger.ui.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def client_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("LEDGER_DATABASE_URL", f"sqlite:///{tmp_path / 'ledger.db'}")
    monkeypatch.setenv("PLAIDLEDGER_PREFS_DIR", str(tmp_path / "prefs"))
    monkeypatch.setenv("BACKEND_BASE", "http://proxy.test")
    monkeypatch.setenv("DEMO_API_KEY", "k")
    monkeypatch.delenv("FETCH_MAX_ATTEMPTS", raising=False)
    # Keep loguru off the runner's temporary stderr.
    monkeypatch.setattr("plaidledger.ui.cli.configure_logging", lambda _level: None)
    return tmp_path


def test_seed_list_count_delete(client_env: Path) -> None:
    seeded = runner.invoke(app, ["seed-demo"])
    listed = runner.invoke(app, ["list"])
    counted = runner.invoke(app, ["count"])

    assert seeded.exit_code == 0
    assert "Demo Coffee" in listed.output
    assert "Income" in listed.output
    assert counted.output.strip() == "3"

    first_id = LedgerStore(f"sqlite:///{client_env / 'ledger.db'}").list_all()[0].id
    deleted = runner.invoke(app, ["delete", str(first_id)])

    assert deleted.exit_code == 0
    assert runner.invoke(app, ["count"]).output.strip() == "2"


def test_delete_unknown_entry_fails() -> None:
    result = runner.invoke(app, ["delete", "999"])

    assert result.exit_code == 1


def test_sign_out_clears_prefs(client_env: Path) -> None:
    prefs = PreferencesStore(str(client_env / "prefs"))
    prefs.remember_sign_in("access-1")

    result = runner.invoke(app, ["sign-out"])

    assert result.exit_code == 0
    assert prefs.access_token is None


def test_refresh_without_sign_in_is_noop() -> None:
    result = runner.invoke(app, ["refresh"])

    assert result.exit_code == 0
    assert "Not signed in" in result.output


def test_ingest_success_prints_summary() -> None:
    outcome = IngestionOutcome(state=IngestionState.DONE, inserted=2, fetched=3)

    with patch(
        "plaidledger.ui.cli.IngestionOrchestrator.ingest_public_token",
        return_value=outcome,
    ) as mock_ingest:
        result = runner.invoke(app, ["ingest", "public-1"])

    assert result.exit_code == 0
    assert "fetched 3, inserted 2" in result.output
    assert mock_ingest.call_args.kwargs == {"remember": True}


def test_failed_outcome_exits_1() -> None:
    outcome = IngestionOutcome(state=IngestionState.FAILED, reason="nope")

    with patch(
        "plaidledger.ui.cli.IngestionOrchestrator.simulate_sandbox",
        return_value=outcome,
    ):
        result = runner.invoke(app, ["simulate"])

    assert result.exit_code == 1


def test_link_result_exit_payload_fails_without_network(client_env: Path) -> None:
    payload = client_env / "result.json"
    payload.write_text(json.dumps({"event": "exit"}), encoding="utf-8")

    with patch("urllib.request.urlopen") as mock_open:
        result = runner.invoke(app, ["link-result", str(payload)])

    assert result.exit_code == 1
    mock_open.assert_not_called()


def test_link_token_network_error_exits_1() -> None:
    with patch(
        "plaidledger.ui.cli.GatewayClient.create_link_session",
        side_effect=NetworkError("refused"),
    ):
        result = runner.invoke(app, ["link-token"])

    assert result.exit_code == 1


def test_link_token_prints_token() -> None:
    with patch(
        "plaidledger.ui.cli.GatewayClient.create_link_session",
        return_value="link-sandbox-1",
    ):
        result = runner.invoke(app, ["link-token", "--user-id", "u-1"])

    assert result.exit_code == 0
    assert result.output.strip() == "link-sandbox-1"


def test_invalid_config_exits_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FETCH_MAX_ATTEMPTS", "0")

    result = runner.invoke(app, ["count"])

    assert result.exit_code == 2


def test_help_describes_the_tool() -> None:
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "plaidledger: Plaid transaction ingestion" in result.output
