"""Tests for the paygate command line interface."""

import dataclasses
import json

import pytest

from paygate.cli import GatewayCli
from paygate.config import Settings
from paygate.credentials.cipher import SecretCipher
from tests.conftest import TEST_ENCRYPTION_KEY, stk_callback


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}",
        encryption_key=TEST_ENCRYPTION_KEY,
        credential_backend="database",
        vault_addr="http://127.0.0.1:8200",
        vault_token=None,
        vault_mount="secret",
        processor_timeout_seconds=5.0,
        notification_timeout_seconds=5.0,
        stripe_api_version=None,
        mpesa_timezone="Africa/Nairobi",
        stale_pending_minutes=30,
        log_level="WARNING",
    )


@pytest.fixture
def cli(settings) -> GatewayCli:
    cli = GatewayCli(settings)
    assert cli.run(["init-db"]) == 0
    return cli


class TestGatewayCli:
    def test_no_command_prints_help(self, settings, capsys):
        assert GatewayCli(settings).run([]) == 1
        assert "usage: paygate" in capsys.readouterr().out

    def test_generate_key_needs_no_config(self, capsys):
        cli = GatewayCli(settings=None)

        assert cli.run(["generate-key"]) == 0

        key = capsys.readouterr().out.strip()
        SecretCipher(key).decrypt(SecretCipher(key).encrypt({"ok": "yes"}))

    def test_init_db(self, settings, capsys):
        assert GatewayCli(settings).run(["init-db"]) == 0
        assert "Schema created." in capsys.readouterr().out

    def test_missing_encryption_key(self, settings, capsys):
        cli = GatewayCli(dataclasses.replace(settings, encryption_key=None))

        assert cli.run(["stale-pending"]) == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_stale_pending_empty(self, cli, capsys):
        capsys.readouterr()

        assert cli.run(["stale-pending", "--older-than-minutes", "5"]) == 0
        assert "Stale pending payments (older than 5 min): 0" in capsys.readouterr().out

    def test_stale_pending_json_empty(self, cli, capsys):
        capsys.readouterr()

        assert cli.run(["stale-pending", "--json"]) == 0
        assert capsys.readouterr().out == ""

    def test_replay_unknown_mobile_callback(self, cli, tmp_path, capsys):
        callback = tmp_path / "callback.json"
        callback.write_text(json.dumps(stk_callback("ws_never_sent")))
        capsys.readouterr()

        assert cli.run(["replay-callback", "--method", "mobile_money", "--file", str(callback)]) == 0

        out = capsys.readouterr().out
        assert "Callback unknown" in out
        assert "ws_never_sent" in out

    def test_replay_card_needs_business(self, cli, tmp_path, capsys):
        event = tmp_path / "event.json"
        event.write_text("{}")

        assert cli.run(["replay-callback", "--method", "card", "--file", str(event)]) == 1
        assert "--business-id is required" in capsys.readouterr().err

    def test_verify_missing_credentials(self, cli, capsys):
        result = cli.run(
            ["verify-credentials", "--business-id", "biz_missing", "--method", "card"]
        )

        assert result == 1
        assert "Error [credentials_missing]" in capsys.readouterr().err

    def test_mark_overdue_nothing_due(self, cli, capsys):
        capsys.readouterr()

        assert cli.run(["mark-overdue", "--as-of", "2026-01-31"]) == 0
        assert "Marked 0 invoice(s) overdue." in capsys.readouterr().out

    def test_invalid_method_rejected_by_parser(self, settings):
        with pytest.raises(SystemExit):
            GatewayCli(settings).run(
                ["verify-credentials", "--business-id", "biz_1", "--method", "cheque"]
            )
