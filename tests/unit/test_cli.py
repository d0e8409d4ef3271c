"""Unit tests for CLI argument parsing and the health command."""
from __future__ import annotations

import json
import textwrap
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest

from lending_engine import cli
from lending_engine.cli import build_parser, health_summary, load_ledger
from lending_engine.exceptions import UnknownAsset
from lending_engine.health import DEFAULT_THRESHOLDS
from lending_engine.registry import MarketRegistry

LEDGER_YAML = textwrap.dedent("""\
    account: "0xBORROWER"
    positions:
      - {asset: dot, supplied: "100", is_collateral: true}
      - {asset: usdt, borrowed: "300"}
""")


@pytest.fixture()
def ledger_path(tmp_path: Path) -> Path:
    path = tmp_path / "ledger.yaml"
    path.write_text(LEDGER_YAML)
    return path


class TestBuildParser:
    def test_check_command(self) -> None:
        args = build_parser().parse_args(["check"])
        assert args.command == "check"

    def test_report_command(self) -> None:
        args = build_parser().parse_args(["report"])
        assert args.command == "report"

    def test_monitor_command_default_interval(self) -> None:
        args = build_parser().parse_args(["monitor"])
        assert args.command == "monitor"
        assert args.interval is None

    def test_monitor_command_custom_interval(self) -> None:
        args = build_parser().parse_args(["monitor", "30"])
        assert args.interval == 30

    def test_health_command(self) -> None:
        args = build_parser().parse_args(["health", "ledger.yaml", "--json"])
        assert args.command == "health"
        assert args.ledger == Path("ledger.yaml")
        assert args.json is True
        assert args.live_prices is False

    def test_liquidate_command(self) -> None:
        args = build_parser().parse_args(["liquidate", "liq-0xabc-dot"])
        assert args.opportunity_id == "liq-0xabc-dot"

    def test_config_flag(self) -> None:
        args = build_parser().parse_args(["--config", "/tmp/c.yaml", "check"])
        assert args.config == "/tmp/c.yaml"

    def test_log_level_flag(self) -> None:
        args = build_parser().parse_args(["--log-level", "DEBUG", "check"])
        assert args.log_level == "DEBUG"

    def test_no_command(self) -> None:
        args = build_parser().parse_args([])
        assert args.command is None


class TestLoadLedger:
    def test_reads_positions(self, ledger_path: Path) -> None:
        led = load_ledger(ledger_path)
        assert led.account_id == "0xBORROWER"
        assert led.position("dot").supplied == Decimal("100")
        assert led.position("dot").is_collateral is True
        assert led.position("usdt").borrowed == Decimal("300")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_ledger(tmp_path / "missing.yaml")


class TestHealthSummary:
    def test_summary(self, ledger_path: Path, registry: MarketRegistry) -> None:
        summary = health_summary(load_ledger(ledger_path), registry, DEFAULT_THRESHOLDS)
        assert summary["health"]["status"] == "warning"
        assert summary["health"]["kind"] == "finite"
        assert Decimal(summary["borrowing_power"]) == Decimal("390.75")
        assert Decimal(summary["max_borrowable"]) == Decimal("90.75")
        assert Decimal(summary["limits"]["usdt"]["max_repay"]) == Decimal("300")
        json.dumps(summary)

    def test_unknown_asset(self, tmp_path: Path, registry: MarketRegistry) -> None:
        path = tmp_path / "ledger.yaml"
        path.write_text("positions:\n  - {asset: eth, supplied: '1', is_collateral: true}\n")
        with pytest.raises(UnknownAsset):
            health_summary(load_ledger(path), registry, DEFAULT_THRESHOLDS)


class TestHealthCommand:
    def test_prints_text(
        self, sample_yaml_path: Path, ledger_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        argv = ["lending-engine", "--config", str(sample_yaml_path), "health", str(ledger_path)]
        with patch("sys.argv", argv):
            cli.main()
        out = capsys.readouterr().out
        assert "Health ratio: 1.3893 (WARNING)" in out
        assert "Borrowing power: $390.75" in out

    def test_prints_json(
        self, sample_yaml_path: Path, ledger_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        argv = ["lending-engine", "--config", str(sample_yaml_path), "health", str(ledger_path), "--json"]
        with patch("sys.argv", argv):
            cli.main()
        data = json.loads(capsys.readouterr().out)
        assert data["account"] == "0xBORROWER"
        assert data["health"]["status"] == "warning"

    def test_engine_error_exits_with_code_2(
        self, sample_yaml_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = tmp_path / "ledger.yaml"
        path.write_text("positions:\n  - {asset: eth, supplied: '1'}\n")
        argv = ["lending-engine", "--config", str(sample_yaml_path), "health", str(path)]
        with patch("sys.argv", argv), pytest.raises(SystemExit) as exc:
            cli.main()
        assert exc.value.code == 2
        assert "UnknownAsset" in capsys.readouterr().err

    def test_no_command_exits(self) -> None:
        with patch("sys.argv", ["lending-engine"]), pytest.raises(SystemExit) as exc:
            cli.main()
        assert exc.value.code == 1
