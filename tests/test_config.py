import json
from decimal import Decimal

import pytest
import yaml

from cycletrader.config import TradingConfig, api_settings, load_config, save_config

D = Decimal


def test_defaults():
    config = TradingConfig()

    assert config.symbol == "BTCUSDT"
    assert config.buy_amount == D("10")
    assert config.profit.value == D("0.001")
    assert not config.profit.is_percent
    assert not config.stop_loss.enabled
    assert config.cycles is None
    assert config.delay_seconds == 5.0
    assert config.resolved_monitor() == "events"


def test_camel_case_parameter_file_keys():
    config = TradingConfig.from_dict({
        "symbol": "ethusdt",
        "buyAmount": "15",
        "profitPercent": "1.5",
        "stopLossPercent": "2",
        "trailingStop": True,
        "trailingPercent": "0.8",
        "dropPercent": "1",
        "pollSeconds": 3,
        "cycles": 0,
        "delay": 2,
        "dryRun": "true",
        "allowSimulation": True,
        "logLevel": "VERBOSE",
    })

    assert config.symbol == "ETHUSDT"
    assert config.buy_amount == D("15")
    assert config.profit.is_percent and config.profit.value == D("0.015")
    assert config.stop_loss.is_percent and config.stop_loss.value == D("0.02")
    assert config.trailing_stop.enabled and config.trailing_stop.distance_percent == D("0.8")
    assert config.price_drop.percent_threshold == D("1")
    assert config.price_drop.poll_seconds == 3.0
    assert config.cycles is None
    assert config.delay_seconds == 2.0
    assert config.dry_run and config.allow_simulation_fallback
    assert config.log_level == "verbose"
    assert config.resolved_monitor() == "guard"


def test_trading_section_is_flattened():
    config = TradingConfig.from_dict({"api": {"key": "k"}, "trading": {"symbol": "BNBUSDT", "profit": "0.5"}})

    assert config.symbol == "BNBUSDT"
    assert config.profit.value == D("0.5")


@pytest.mark.parametrize("raw", [
    {"buyAmount": "0"},
    {"buyAmount": "abc"},
    {"monitor": "sometimes"},
    {"logLevel": "chatty"},
    {"trailingStop": True, "trailingPercent": "150"},
    {"profit": "-1"},
])
def test_invalid_values_are_rejected(raw):
    with pytest.raises(ValueError):
        TradingConfig.from_dict(raw)


def test_overrides_replace_saved_values():
    saved = TradingConfig.from_dict({"symbol": "BTCUSDT", "profitPercent": "2", "stopLoss": "50", "cycles": 3})

    merged = saved.merged({"profit": "0.25", "cycles": None, "dry_run": True, "stop_loss_percent": "1"})

    assert not merged.profit.is_percent
    assert merged.profit.value == D("0.25")
    assert merged.stop_loss.is_percent and merged.stop_loss.value == D("0.01")
    assert merged.cycles == 3
    assert merged.dry_run


def test_load_yaml_with_env_placeholders(tmp_path, monkeypatch):
    monkeypatch.setenv("CYCLE_SYMBOL", "SOLUSDT")
    path = tmp_path / "params.yaml"
    path.write_text("trading:\n  symbol: ${CYCLE_SYMBOL}\n  buyAmount: 12\n", encoding="utf-8")

    config = TradingConfig.from_dict(load_config(path))

    assert config.symbol == "SOLUSDT"
    assert config.buy_amount == D("12")


def test_load_rejects_non_mapping(tmp_path):
    path = tmp_path / "params.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(path)


def test_save_round_trip_without_secrets(tmp_path):
    config = TradingConfig.from_dict({"symbol": "ETHUSDT", "profitPercent": "1.5", "dropThreshold": "20"})

    json_path = save_config(config, tmp_path / "trading-config.json")
    yaml_path = save_config(config, tmp_path / "trading-config.yaml")

    saved = json.loads(json_path.read_text(encoding="utf-8"))
    assert saved["profitPercent"] == "1.5"
    assert "apiKey" not in saved and "api" not in saved
    assert TradingConfig.from_dict(saved) == config
    assert TradingConfig.from_dict(yaml.safe_load(yaml_path.read_text(encoding="utf-8"))) == config
    assert not list(tmp_path.glob("*.tmp"))


def test_api_settings_prefer_environment(monkeypatch):
    monkeypatch.setenv("BINANCE_API_KEY", "env-key")
    monkeypatch.delenv("BINANCE_API_SECRET", raising=False)
    monkeypatch.delenv("BINANCE_BASE_URL", raising=False)
    monkeypatch.delenv("BINANCE_WS_URL", raising=False)

    api = api_settings({"api": {"key": "file-key", "secret": "file-secret", "base_url": "https://testnet.example"}})

    assert api.api_key == "env-key"
    assert api.api_secret == "file-secret"
    assert api.base_url == "https://testnet.example"
    assert "file-secret" not in repr(api)
