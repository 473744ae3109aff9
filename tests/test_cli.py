"""Tests for the command line entry point."""

from __future__ import annotations

import pytest

from position_sentinel.__main__ import build_parser, main
from position_sentinel.chain.client import ChainClientRegistry
from position_sentinel.config import clear_settings_cache

ENV = {
    "CHAIN_RPC_URLS": "FLR=https://flare.example/rpc",
    "LIQ_BUFFER_LOW_FRAC": "0.5",
    "LIQ_BUFFER_MEDIUM_FRAC": "0.3",
    "LIQ_BUFFER_HIGH_FRAC": "0.15",
    "REDEMP_DEBT_AHEAD_LOW_FRAC": "0.3",
    "REDEMP_DEBT_AHEAD_MEDIUM_FRAC": "0.15",
    "REDEMP_DEBT_AHEAD_HIGH_FRAC": "0.05",
    "LP_EDGE_WARN_FRAC": "0.2",
    "LP_EDGE_HIGH_FRAC": "0.1",
    "LP_OUT_WARN_FRAC": "0.1",
    "LP_OUT_HIGH_FRAC": "0.3",
    "ALERT_DEBOUNCE_SECONDS": "600",
    "SNAPSHOT_STALE_MINUTES": "15",
}


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Environment pointing at a throwaway SQLite database."""
    monkeypatch.chdir(tmp_path)
    for key, value in ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/cli.db")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


class TestParser:
    def test_add_contract_arguments(self) -> None:
        args = build_parser().parse_args(
            ["add-contract", "FLR", "0x" + "5" * 40, "enosys-v3", "LP_NFT", "--start-block", "100"]
        )
        assert args.kind == "LP_NFT"
        assert args.start_block == 100
        assert args.config is None

    def test_reset_cursor_requires_start_block(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["reset-cursor", "3"])

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["add-contract", "FLR", "0x" + "5" * 40, "p", "ERC20"])

    def test_contract_toggles(self) -> None:
        assert build_parser().parse_args(["disable-contract", "3"]).enabled is False
        args = build_parser().parse_args(["enable-contract", "3"])
        assert args.enabled is True
        assert args.contract_id == 3


class TestMain:
    def test_invalid_configuration_exits_nonzero(self, cli_env) -> None:
        cli_env.delenv("LIQ_BUFFER_LOW_FRAC")
        assert main(["init-db"]) == 1

    def test_register_and_show_status(self, cli_env, capsys) -> None:
        address = "0x" + "5" * 40
        assert main(["add-contract", "flr", address, "enosys-v3", "LP_NFT", "--start-block", "100"]) == 0
        assert main(["add-contract", "FLR", address, "enosys-v3", "LP_NFT"]) == 0
        assert main(["add-wallet", "FLR", "0x" + "1" * 40, "--discord-id", "42"]) == 0
        assert main(["status"]) == 0

        out = capsys.readouterr().out
        assert "Contract registered" in out
        assert "Contract already registered" in out
        assert "Wallet 1 registered for user 1" in out
        assert "Monitored contracts (1):" in out
        assert "last_scanned=-" in out

    def test_bad_contract_config_json(self, cli_env, capsys) -> None:
        assert main(["add-contract", "FLR", "0x" + "5" * 40, "p", "LP_NFT", "--config", "{bad"]) == 1
        assert "not valid JSON" in capsys.readouterr().out

    def test_reset_unknown_contract(self, cli_env, capsys) -> None:
        assert main(["reset-cursor", "99", "--start-block", "5"]) == 1
        assert "contract 99 not found" in capsys.readouterr().out

    def test_disable_and_enable_contract(self, cli_env, capsys) -> None:
        assert main(["add-contract", "FLR", "0x" + "5" * 40, "enosys-v3", "LP_NFT"]) == 0
        assert main(["disable-contract", "1"]) == 0
        assert main(["status"]) == 0
        disabled = capsys.readouterr().out
        assert main(["enable-contract", "1"]) == 0
        assert main(["status"]) == 0
        enabled = capsys.readouterr().out

        assert "Contract 1 disabled" in disabled
        assert "Monitored contracts (0):" in disabled
        assert "Contract 1 enabled" in enabled
        assert "Monitored contracts (1):" in enabled

    def test_toggle_unknown_contract(self, cli_env, capsys) -> None:
        assert main(["disable-contract", "99"]) == 1
        assert "contract 99 not found" in capsys.readouterr().out

    def test_status_reports_unreachable_rpc(self, cli_env, capsys) -> None:
        async def unreachable(self) -> dict[str, bool]:
            return {"FLR": False}

        cli_env.setattr(ChainClientRegistry, "health_check", unreachable)

        assert main(["status", "--check-rpc"]) == 1
        assert "FLR UNREACHABLE" in capsys.readouterr().out

    def test_heartbeat_dry_run(self, cli_env, capsys) -> None:
        assert main(["add-wallet", "FLR", "0x" + "1" * 40, "--discord-id", "42"]) == 0
        assert main(["heartbeat", "--dry-run"]) == 0

        out = capsys.readouterr().out
        assert "recipients=1 sent=1 blocked=0 failed=0" in out
