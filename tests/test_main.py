import json
from decimal import Decimal

import pytest

from cycletrader.binance_client import BinanceClient
from cycletrader.config import TradingConfig
from cycletrader.models import OrderResult
from cycletrader.orchestrator import CycleOrchestrator
from main import EXIT_ERROR, build_parser, main, trade_overrides


def test_trade_flags_override_file_values():
    args = build_parser().parse_args([
        "trade", "--symbol", "ethusdt", "--profit-percent", "1.2", "--stop-loss", "30",
        "--cycles", "4", "--delay", "1", "--dry-run",
    ])
    saved = TradingConfig.from_dict({"symbol": "BTCUSDT", "profit": "1", "allowSimulation": True})

    config = saved.merged(trade_overrides(args))

    assert config.symbol == "ETHUSDT"
    assert config.profit.is_percent and config.profit.value == Decimal("0.012")
    assert config.stop_loss.value == Decimal("30")
    assert config.cycles == 4
    assert config.delay_seconds == 1.0
    assert config.dry_run
    # flags left off keep the saved value
    assert config.allow_simulation_fallback


def test_profit_flags_are_mutually_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["trade", "--profit", "1", "--profit-percent", "1"])


def test_live_trading_requires_credentials(monkeypatch, tmp_path):
    monkeypatch.delenv("BINANCE_API_KEY", raising=False)
    monkeypatch.delenv("BINANCE_API_SECRET", raising=False)

    with pytest.raises(SystemExit):
        main(["trade", "--history-dir", str(tmp_path)])


def test_stats_command_prints_report(tmp_path, capsys):
    assert main(["stats", "btcusdt", "--history-dir", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "Trading statistics for BTCUSDT" in out
    assert "Total trades:      0" in out


def test_unexpected_run_failure_is_recorded(monkeypatch, tmp_path, capsys):
    def crash(self, token=None):
        raise RuntimeError("Binance fetch failed")

    monkeypatch.setattr(CycleOrchestrator, "run", crash)

    code = main(["trade", "--dry-run", "--cycles", "1", "--history-dir", str(tmp_path)])

    assert code == EXIT_ERROR
    errors = list(tmp_path.glob("error_*.json"))
    assert len(errors) == 1
    record = json.loads(errors[0].read_text(encoding="utf-8"))
    assert record["type"] == "RuntimeError"
    assert record["context"]["symbol"] == "BTCUSDT"
    assert "Binance fetch failed" in capsys.readouterr().err


def test_orders_command_lists_open_orders(monkeypatch, capsys):
    seen = []

    def open_orders(self, symbol=None):
        seen.append(symbol)
        return [OrderResult.from_response({
            "orderId": 5, "symbol": "BTCUSDT", "status": "NEW", "side": "SELL", "type": "LIMIT",
            "price": "84065.10", "origQty": "0.00073", "executedQty": "0",
        })]

    monkeypatch.setattr(BinanceClient, "get_open_orders", open_orders)

    assert main(["orders", "BTCUSDT"]) == 0

    out = capsys.readouterr().out
    assert seen == ["BTCUSDT"]
    assert "price=84065.1 qty=0.00073 filled=0 NEW" in out
    assert "SELL LIMIT" in out
