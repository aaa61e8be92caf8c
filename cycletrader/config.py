"""Trading run configuration: parameter files, CLI overrides and logging setup."""
from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import FeeSchedule, PriceDropGuardSpec, ProfitSpec, StopLossSpec, TrailingStopSpec
from .order_sizing import MIN_VIABLE_BASE_QUANTITY
from .utils import decimal_to_json, to_decimal

DEFAULT_CONFIG_PATH = Path("trading-config.json")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_LEVELS = {"minimal": logging.INFO, "normal": logging.INFO, "verbose": logging.DEBUG}
MONITOR_CHOICES = ("auto", "guard", "events")

# camelCase keys of the JSON parameter files -> TradingConfig field names
_ALIASES = {
    "buyAmount": "buy_amount",
    "profitPercent": "profit_percent",
    "stopLoss": "stop_loss",
    "stopLossPercent": "stop_loss_percent",
    "trailingStop": "trailing_stop",
    "trailingPercent": "trailing_percent",
    "dropThreshold": "drop_threshold",
    "dropPercent": "drop_percent",
    "pollSeconds": "poll_seconds",
    "skipBalanceCheck": "skip_balance_check",
    "dryRun": "dry_run",
    "allowSimulation": "allow_simulation_fallback",
    "allow_simulation": "allow_simulation_fallback",
    "logLevel": "log_level",
    "buyFee": "buy_fee",
    "sellFee": "sell_fee",
    "minViableQuantity": "min_viable_quantity",
    "historyDir": "history_dir",
    "ordersDir": "orders_dir",
    "delay": "delay_seconds",
}

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_config(path) -> Dict[str, Any]:
    """Read a JSON or YAML parameter file, expanding ``${ENV}`` placeholders."""
    with open(path, "r", encoding="utf-8") as f:
        txt = f.read()

    def repl(m):
        return os.getenv(m.group(1), "")

    txt = _ENV_PATTERN.sub(repl, txt)
    data = yaml.safe_load(txt) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def _flatten(raw: Mapping[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    source = dict(raw)
    trading = source.pop("trading", None)
    if isinstance(trading, Mapping):
        source.update(trading)
    for key, value in source.items():
        if key == "api":
            continue
        values[_ALIASES.get(key, key)] = value
    return values


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _percent_fraction(value: Any, name: str) -> Decimal:
    pct = to_decimal(value)
    if pct is None:
        raise ValueError(f"Invalid {name}: {value!r}")
    return pct / 100


@dataclass(frozen=True)
class TradingConfig:
    symbol: str = "BTCUSDT"
    buy_amount: Decimal = Decimal("10")
    profit: ProfitSpec = field(default_factory=lambda: ProfitSpec.fixed("0.001"))
    stop_loss: StopLossSpec = field(default_factory=StopLossSpec)
    trailing_stop: TrailingStopSpec = field(default_factory=TrailingStopSpec)
    price_drop: PriceDropGuardSpec = field(default_factory=PriceDropGuardSpec)
    fees: FeeSchedule = field(default_factory=FeeSchedule)
    monitor: str = "auto"
    cycles: Optional[int] = None
    delay_seconds: float = 5.0
    skip_balance_check: bool = False
    dry_run: bool = False
    allow_simulation_fallback: bool = False
    log_level: str = "normal"
    min_viable_quantity: Decimal = MIN_VIABLE_BASE_QUANTITY
    history_dir: str = "history"
    orders_dir: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "symbol", self.symbol.upper())
        if self.buy_amount <= 0:
            raise ValueError("buy_amount must be positive")
        if self.monitor not in MONITOR_CHOICES:
            raise ValueError(f"monitor must be one of {', '.join(MONITOR_CHOICES)}")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        if self.cycles is not None and self.cycles < 1:
            raise ValueError("cycles must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay must not be negative")

    @property
    def has_protection(self) -> bool:
        return self.stop_loss.enabled or self.trailing_stop.enabled or self.price_drop.enabled

    @property
    def narrate(self) -> bool:
        return self.log_level != "minimal"

    def resolved_monitor(self) -> str:
        if self.monitor != "auto":
            return self.monitor
        return "guard" if self.has_protection else "events"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TradingConfig":
        """Build from snake_case or camelCase keys; unset keys keep their defaults."""
        v = {k: val for k, val in _flatten(raw).items() if val is not None and val != ""}
        kwargs: Dict[str, Any] = {}

        if "symbol" in v:
            kwargs["symbol"] = str(v["symbol"])
        if "buy_amount" in v:
            amount = to_decimal(v["buy_amount"])
            if amount is None:
                raise ValueError(f"Invalid buy amount: {v['buy_amount']!r}")
            kwargs["buy_amount"] = amount

        if "profit_percent" in v:
            kwargs["profit"] = ProfitSpec.percent(_percent_fraction(v["profit_percent"], "profit percent"))
        elif "profit" in v:
            kwargs["profit"] = ProfitSpec.fixed(v["profit"])

        if "stop_loss_percent" in v:
            kwargs["stop_loss"] = StopLossSpec.percent(_percent_fraction(v["stop_loss_percent"], "stop-loss percent"))
        elif "stop_loss" in v:
            kwargs["stop_loss"] = StopLossSpec.fixed(v["stop_loss"])

        trailing_on = _as_bool(v.get("trailing_stop", False))
        if trailing_on or "trailing_percent" in v:
            kwargs["trailing_stop"] = TrailingStopSpec(trailing_on, v.get("trailing_percent", "0.5"))

        if any(k in v for k in ("drop_threshold", "drop_percent", "poll_seconds")):
            kwargs["price_drop"] = PriceDropGuardSpec(
                absolute_threshold=v.get("drop_threshold"),
                percent_threshold=v.get("drop_percent"),
                poll_seconds=float(v.get("poll_seconds", 10.0)),
            )
        if "buy_fee" in v or "sell_fee" in v:
            kwargs["fees"] = FeeSchedule(v.get("buy_fee", "0.001"), v.get("sell_fee", "0.001"))

        if "monitor" in v:
            kwargs["monitor"] = str(v["monitor"]).lower()
        if "cycles" in v:
            cycles = int(v["cycles"])
            kwargs["cycles"] = cycles if cycles > 0 else None
        if "delay_seconds" in v:
            kwargs["delay_seconds"] = float(v["delay_seconds"])
        for flag in ("skip_balance_check", "dry_run", "allow_simulation_fallback"):
            if flag in v:
                kwargs[flag] = _as_bool(v[flag])
        if "log_level" in v:
            kwargs["log_level"] = str(v["log_level"]).lower()
        if "min_viable_quantity" in v:
            kwargs["min_viable_quantity"] = to_decimal(v["min_viable_quantity"], MIN_VIABLE_BASE_QUANTITY)
        if "history_dir" in v:
            kwargs["history_dir"] = str(v["history_dir"])
        if "orders_dir" in v:
            kwargs["orders_dir"] = str(v["orders_dir"])
        return cls(**kwargs)

    def merged(self, overrides: Mapping[str, Any]) -> "TradingConfig":
        """Apply ``overrides`` (same keys as ``from_dict``) on top of this config."""
        base = self.to_dict()
        present = {k: val for k, val in overrides.items() if val is not None}
        # an explicit profit or stop-loss kind on the command line replaces the saved one
        if {"profit", "profit_percent", "profitPercent"} & present.keys():
            base.pop("profit", None)
            base.pop("profitPercent", None)
        if {"stop_loss", "stop_loss_percent", "stopLoss", "stopLossPercent"} & present.keys():
            base.pop("stopLoss", None)
            base.pop("stopLossPercent", None)
        merged = _flatten(base)
        merged.update(_flatten(present))
        return TradingConfig.from_dict(merged)

    def to_dict(self) -> Dict[str, Any]:
        """Parameter-file form with camelCase keys. Never contains credentials."""
        out: Dict[str, Any] = {"symbol": self.symbol, "buyAmount": decimal_to_json(self.buy_amount)}
        if self.profit.is_percent:
            out["profitPercent"] = decimal_to_json(self.profit.value * 100)
        else:
            out["profit"] = decimal_to_json(self.profit.value)
        if self.stop_loss.enabled:
            if self.stop_loss.is_percent:
                out["stopLossPercent"] = decimal_to_json(self.stop_loss.value * 100)
            else:
                out["stopLoss"] = decimal_to_json(self.stop_loss.value)
        out["trailingStop"] = self.trailing_stop.enabled
        out["trailingPercent"] = decimal_to_json(self.trailing_stop.distance_percent)
        if self.price_drop.absolute_threshold is not None:
            out["dropThreshold"] = decimal_to_json(self.price_drop.absolute_threshold)
        if self.price_drop.percent_threshold is not None:
            out["dropPercent"] = decimal_to_json(self.price_drop.percent_threshold)
        out["pollSeconds"] = self.price_drop.poll_seconds
        out["buyFee"] = decimal_to_json(self.fees.buy_fee_rate)
        out["sellFee"] = decimal_to_json(self.fees.sell_fee_rate)
        out["monitor"] = self.monitor
        out["cycles"] = self.cycles
        out["delay"] = self.delay_seconds
        out["skipBalanceCheck"] = self.skip_balance_check
        out["dryRun"] = self.dry_run
        out["allowSimulation"] = self.allow_simulation_fallback
        out["logLevel"] = self.log_level
        out["minViableQuantity"] = decimal_to_json(self.min_viable_quantity)
        out["historyDir"] = self.history_dir
        out["ordersDir"] = self.orders_dir
        return out

    def replace(self, **changes) -> "TradingConfig":
        return dataclasses.replace(self, **changes)


def save_config(config: TradingConfig, path=DEFAULT_CONFIG_PATH) -> Path:
    """Write ``config`` as a JSON parameter file (YAML when the suffix says so)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.to_dict()
    tmp_file = path.with_suffix(path.suffix + ".tmp")
    with tmp_file.open("w", encoding="utf-8") as fh:
        if path.suffix.lower() in (".yaml", ".yml"):
            yaml.safe_dump(payload, fh, sort_keys=False)
        else:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
    tmp_file.replace(path)
    logging.info("Configuration saved to %s", path)
    return path


@dataclass(frozen=True)
class ApiSettings:
    api_key: str = ""
    api_secret: str = ""
    base_url: str = "https://api.binance.com"
    ws_url: str = "wss://stream.binance.com:9443/ws"

    def __repr__(self) -> str:
        return f"ApiSettings(base_url={self.base_url!r}, ws_url={self.ws_url!r}, key_set={bool(self.api_key)})"


def api_settings(raw: Optional[Mapping[str, Any]] = None) -> ApiSettings:
    """Credentials and endpoints: environment first, then the file's ``api`` section."""
    api = dict((raw or {}).get("api") or {})
    defaults = ApiSettings()
    return ApiSettings(
        api_key=os.getenv("BINANCE_API_KEY") or str(api.get("key") or ""),
        api_secret=os.getenv("BINANCE_API_SECRET") or str(api.get("secret") or ""),
        base_url=os.getenv("BINANCE_BASE_URL") or str(api.get("base_url") or defaults.base_url),
        ws_url=os.getenv("BINANCE_WS_URL") or str(api.get("ws_url") or defaults.ws_url),
    )


def configure_logging(log_level: str = "normal") -> None:
    logging.basicConfig(level=LOG_LEVELS.get(log_level, logging.INFO), format=LOG_FORMAT)
