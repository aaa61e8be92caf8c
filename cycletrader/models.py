"""Typed records shared by the trading cycle components.

All prices, quantities and amounts are ``Decimal``. Exchange payloads are
converted once, at the boundary, by the ``from_*`` constructors below.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import IllegalTransition
from .utils import decimal_to_json, step_precision, to_decimal, to_iso, utc_now

ZERO = Decimal("0")

KNOWN_QUOTE_ASSETS = (
    "FDUSD", "USDT", "USDC", "BUSD", "TUSD", "DAI", "EUR", "TRY", "BRL", "BTC", "ETH", "BNB",
)

FIXED = "fixed"
PERCENT = "percent"

# Binance order statuses
ORDER_NEW = "NEW"
ORDER_PARTIALLY_FILLED = "PARTIALLY_FILLED"
ORDER_FILLED = "FILLED"
ORDER_CANCELED = "CANCELED"
ORDER_PENDING_CANCEL = "PENDING_CANCEL"
ORDER_REJECTED = "REJECTED"
ORDER_EXPIRED = "EXPIRED"
ORDER_EXPIRED_IN_MATCH = "EXPIRED_IN_MATCH"
CLOSED_UNFILLED_STATUSES = frozenset({ORDER_CANCELED, ORDER_REJECTED, ORDER_EXPIRED, ORDER_EXPIRED_IN_MATCH})


def split_symbol(symbol: str, quote_assets=KNOWN_QUOTE_ASSETS) -> Tuple[str, str]:
    """Split ``BTCUSDT`` into ``("BTC", "USDT")`` by its quote-asset suffix."""
    sym = symbol.upper()
    for quote in sorted(quote_assets, key=len, reverse=True):
        if sym.endswith(quote) and len(sym) > len(quote):
            return sym[: -len(quote)], quote
    raise ValueError(f"Cannot determine quote asset for symbol {symbol}")


@dataclass(frozen=True)
class TradingPair:
    symbol: str
    base_asset: str
    quote_asset: str
    min_notional: Decimal = ZERO
    lot_step_size: Decimal = ZERO
    min_qty: Decimal = ZERO
    tick_size: Optional[Decimal] = None
    price_precision: int = 8

    @classmethod
    def from_symbol_info(cls, info: Mapping[str, Any]) -> "TradingPair":
        symbol = str(info.get("symbol", "")).upper()
        base = str(info.get("baseAsset") or "").upper()
        quote = str(info.get("quoteAsset") or "").upper()
        if not base or not quote:
            base, quote = split_symbol(symbol)
        min_notional = ZERO
        step = ZERO
        min_qty = ZERO
        tick = None
        for f in info.get("filters", []):
            kind = f.get("filterType")
            if kind == "LOT_SIZE":
                step = to_decimal(f.get("stepSize"), ZERO)
                min_qty = to_decimal(f.get("minQty"), ZERO)
            elif kind == "PRICE_FILTER":
                tick = to_decimal(f.get("tickSize"))
                if tick is not None and tick <= 0:
                    tick = None
            elif kind in {"MIN_NOTIONAL", "NOTIONAL"}:
                min_notional = to_decimal(f.get("minNotional") or f.get("notional"), ZERO)
        precision = info.get("quotePrecision")
        if tick is not None:
            precision = step_precision(tick)
        return cls(
            symbol=symbol,
            base_asset=base,
            quote_asset=quote,
            min_notional=min_notional,
            lot_step_size=step,
            min_qty=min_qty,
            tick_size=tick,
            price_precision=int(precision) if precision is not None else 8,
        )

    @classmethod
    def from_symbol(cls, symbol: str, **kwargs) -> "TradingPair":
        base, quote = split_symbol(symbol)
        return cls(symbol=symbol.upper(), base_asset=base, quote_asset=quote, **kwargs)


@dataclass(frozen=True)
class ProfitSpec:
    """Profit target: a quote-currency amount or a fractional rate."""

    kind: str
    value: Decimal

    def __post_init__(self) -> None:
        if self.kind not in (FIXED, PERCENT):
            raise ValueError(f"Unknown profit kind {self.kind!r}")
        value = to_decimal(self.value)
        if value is None or value <= 0:
            raise ValueError("Profit target must be positive")
        object.__setattr__(self, "value", value)

    @classmethod
    def fixed(cls, amount) -> "ProfitSpec":
        return cls(FIXED, amount)

    @classmethod
    def percent(cls, rate) -> "ProfitSpec":
        return cls(PERCENT, rate)

    @property
    def is_percent(self) -> bool:
        return self.kind == PERCENT

    def label(self) -> str:
        if self.is_percent:
            return f"{decimal_to_json(self.value * 100)}%"
        return decimal_to_json(self.value) or "0"


@dataclass(frozen=True)
class StopLossSpec:
    enabled: bool = False
    kind: str = FIXED
    value: Decimal = ZERO

    def __post_init__(self) -> None:
        if self.kind not in (FIXED, PERCENT):
            raise ValueError(f"Unknown stop-loss kind {self.kind!r}")
        value = to_decimal(self.value, ZERO)
        if self.enabled and value <= 0:
            raise ValueError("Stop-loss must be positive when enabled")
        object.__setattr__(self, "value", value)

    @classmethod
    def fixed(cls, amount) -> "StopLossSpec":
        return cls(True, FIXED, amount)

    @classmethod
    def percent(cls, rate) -> "StopLossSpec":
        return cls(True, PERCENT, rate)

    @property
    def is_percent(self) -> bool:
        return self.kind == PERCENT


@dataclass(frozen=True)
class TrailingStopSpec:
    enabled: bool = False
    distance_percent: Decimal = Decimal("0.5")

    def __post_init__(self) -> None:
        distance = to_decimal(self.distance_percent)
        if distance is None or distance <= 0 or distance >= 100:
            raise ValueError("Trailing distance must be within (0, 100) percent")
        object.__setattr__(self, "distance_percent", distance)


@dataclass(frozen=True)
class PriceDropGuardSpec:
    """Cancel a resting sell when price falls from its peak by a threshold.

    ``percent_threshold`` is in percent units (``1.0`` means 1 %).
    """

    absolute_threshold: Optional[Decimal] = None
    percent_threshold: Optional[Decimal] = None
    poll_seconds: float = 10.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "absolute_threshold", to_decimal(self.absolute_threshold))
        object.__setattr__(self, "percent_threshold", to_decimal(self.percent_threshold))
        if self.poll_seconds <= 0:
            raise ValueError("poll_seconds must be positive")

    @property
    def enabled(self) -> bool:
        return bool(self.absolute_threshold) or bool(self.percent_threshold)

    @staticmethod
    def drop_percent(peak: Decimal, price: Decimal) -> Decimal:
        if peak <= 0:
            return ZERO
        return (peak - price) / peak * 100

    def should_trigger(self, peak: Decimal, price: Decimal) -> bool:
        drop = peak - price
        if drop <= 0:
            return False
        if self.absolute_threshold and drop >= self.absolute_threshold:
            return True
        if self.percent_threshold and self.drop_percent(peak, price) >= self.percent_threshold:
            return True
        return False


@dataclass(frozen=True)
class FeeSchedule:
    buy_fee_rate: Decimal = Decimal("0.001")
    sell_fee_rate: Decimal = Decimal("0.001")

    def __post_init__(self) -> None:
        for name in ("buy_fee_rate", "sell_fee_rate"):
            rate = to_decimal(getattr(self, name))
            if rate is None or rate < 0 or rate >= 1:
                raise ValueError(f"{name} must be within [0, 1)")
            object.__setattr__(self, name, rate)


class CycleStatus(str, Enum):
    PENDING_BUY = "PENDING_BUY"
    PENDING_SELL = "PENDING_SELL"
    MONITORING = "MONITORING"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (CycleStatus.FILLED, CycleStatus.CANCELED, CycleStatus.FAILED)

    @property
    def rank(self) -> int:
        return min(_CYCLE_ORDER.index(self), 3)


_CYCLE_ORDER = list(CycleStatus)


class OrderState(str, Enum):
    NEW = "NEW"
    RESTING = "RESTING"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderState.FILLED, OrderState.CANCELED, OrderState.FAILED)


@dataclass
class Cycle:
    index: int
    symbol: str
    status: CycleStatus = CycleStatus.PENDING_BUY
    buy_quantity: Optional[Decimal] = None
    buy_price: Optional[Decimal] = None
    sell_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    order_id: Optional[str] = None
    executed_qty: Decimal = ZERO
    exit_price: Optional[Decimal] = None
    exit_reason: Optional[str] = None
    profit_target: str = ""
    simulated: bool = False
    skipped_buy: bool = False
    error: Optional[str] = None
    timestamps: Dict[str, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.timestamps.setdefault(self.status.value, utc_now())

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def started_at(self) -> datetime:
        return self.timestamps.get(CycleStatus.PENDING_BUY.value) or min(self.timestamps.values())

    def transition(self, status: CycleStatus, ts: Optional[datetime] = None) -> None:
        if self.status.is_terminal:
            raise IllegalTransition(f"Cycle {self.index} already {self.status.value}; cannot move to {status.value}")
        if status.rank <= self.status.rank:
            raise IllegalTransition(f"Cycle {self.index} cannot move from {self.status.value} to {status.value}")
        self.status = status
        self.timestamps[status.value] = ts or utc_now()

    def fail(self, reason: str, ts: Optional[datetime] = None) -> None:
        self.error = reason
        self.transition(CycleStatus.FAILED, ts)

    def realized_quantity(self) -> Optional[Decimal]:
        if self.executed_qty > 0:
            return self.executed_qty
        return self.buy_quantity

    def realized_price(self) -> Optional[Decimal]:
        if self.exit_price is not None:
            return self.exit_price
        if self.status is CycleStatus.FILLED:
            return self.sell_price
        return None

    def realized_profit(self) -> Optional[Decimal]:
        price = self.realized_price()
        qty = self.realized_quantity()
        if price is None or qty is None or self.buy_price is None:
            return None
        return (price - self.buy_price) * qty

    def to_record(self) -> Dict[str, Any]:
        return {
            "cycle": self.index,
            "symbol": self.symbol,
            "timestamp": to_iso(self.started_at),
            "buyPrice": decimal_to_json(self.buy_price),
            "sellPrice": decimal_to_json(self.sell_price),
            "quantity": decimal_to_json(self.buy_quantity),
            "orderId": self.order_id,
            "status": self.status.value,
            "profit": decimal_to_json(self.realized_profit()),
            "profitTarget": self.profit_target,
            "stopPrice": decimal_to_json(self.stop_price),
            "exitPrice": decimal_to_json(self.exit_price),
            "exitReason": self.exit_reason,
            "executedQty": decimal_to_json(self.executed_qty),
            "simulated": self.simulated,
            "skippedBuy": self.skipped_buy,
            "error": self.error,
            "timestamps": {k: to_iso(v) for k, v in self.timestamps.items()},
        }


@dataclass(frozen=True)
class AssetBalance:
    free: Decimal = ZERO
    locked: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass
class OrderResult:
    order_id: str
    symbol: str
    status: str
    side: str = ""
    type: str = ""
    price: Optional[Decimal] = None
    orig_qty: Decimal = ZERO
    executed_qty: Decimal = ZERO
    cumulative_quote: Optional[Decimal] = None
    fills: List[Dict[str, Any]] = field(default_factory=list)
    simulated: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Mapping[str, Any], *, simulated: bool = False) -> "OrderResult":
        price = to_decimal(data.get("price"))
        return cls(
            order_id=str(data.get("orderId", "")),
            symbol=str(data.get("symbol", "")).upper(),
            status=str(data.get("status", "")).upper(),
            side=str(data.get("side", "")).upper(),
            type=str(data.get("type", "")).upper(),
            price=price if price and price > 0 else None,
            orig_qty=to_decimal(data.get("origQty"), ZERO),
            executed_qty=to_decimal(data.get("executedQty"), ZERO),
            cumulative_quote=to_decimal(data.get("cummulativeQuoteQty")),
            fills=list(data.get("fills") or []),
            simulated=simulated,
            raw=dict(data),
        )

    @property
    def avg_price(self) -> Optional[Decimal]:
        total_qty = ZERO
        total_quote = ZERO
        for f in self.fills:
            qty = to_decimal(f.get("qty") or f.get("quantity"), ZERO)
            price = to_decimal(f.get("price"), ZERO)
            total_qty += qty
            total_quote += qty * price
        if total_qty > 0 and total_quote > 0:
            return total_quote / total_qty
        if self.cumulative_quote and self.executed_qty > 0:
            return self.cumulative_quote / self.executed_qty
        return self.price

    def commission_in(self, asset: str) -> Decimal:
        target = asset.upper()
        total = ZERO
        for f in self.fills:
            if str(f.get("commissionAsset", "")).upper() == target:
                total += to_decimal(f.get("commission"), ZERO)
        return total

    @property
    def is_filled(self) -> bool:
        return self.status == ORDER_FILLED

    @property
    def is_closed_unfilled(self) -> bool:
        return self.status in CLOSED_UNFILLED_STATUSES


@dataclass(frozen=True)
class OrderBook:
    bids: List[Tuple[Decimal, Decimal]]
    asks: List[Tuple[Decimal, Decimal]]

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "OrderBook":
        def _levels(raw) -> List[Tuple[Decimal, Decimal]]:
            levels = []
            for level in raw or []:
                price = to_decimal(level[0])
                qty = to_decimal(level[1])
                if price is None or qty is None:
                    continue
                levels.append((price, qty))
            return levels

        return cls(bids=_levels(data.get("bids")), asks=_levels(data.get("asks")))

    @property
    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0][0] if self.asks else None


@dataclass(frozen=True)
class OrderEvent:
    order_id: str
    symbol: str
    status: str
    executed_qty: Decimal
    orig_qty: Decimal = ZERO
    last_fill_qty: Decimal = ZERO
    fill_price: Optional[Decimal] = None
    event_time: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_execution_report(cls, payload: Mapping[str, Any]) -> Optional["OrderEvent"]:
        if payload.get("e") != "executionReport":
            return None
        event_ms = payload.get("T") or payload.get("E")
        event_time = None
        if event_ms:
            try:
                event_time = datetime.fromtimestamp(int(event_ms) / 1000.0, tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                event_time = None
        fill_price = to_decimal(payload.get("L"))
        return cls(
            order_id=str(payload.get("i", "")),
            symbol=str(payload.get("s", "")).upper(),
            status=str(payload.get("X", "")).upper(),
            executed_qty=to_decimal(payload.get("z"), ZERO),
            orig_qty=to_decimal(payload.get("q"), ZERO),
            last_fill_qty=to_decimal(payload.get("l"), ZERO),
            fill_price=fill_price if fill_price and fill_price > 0 else None,
            event_time=event_time,
            raw=dict(payload),
        )


@dataclass(frozen=True)
class BuyDecision:
    skip_buy: bool
    effective_buy_amount: Decimal
    reason: str = "OK"


@dataclass(frozen=True)
class QuantityPlan:
    final_quantity: Decimal
    shortfall: Decimal = ZERO
    top_up_quote: Decimal = ZERO
    reason: str = "OK"

    @property
    def needs_top_up(self) -> bool:
        return self.shortfall > 0


@dataclass
class SupervisionResult:
    state: OrderState
    order_status: str
    executed_qty: Decimal = ZERO
    fill_price: Optional[Decimal] = None
    reason: str = ""
    peak_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None


RECENT_TRADES_CAP = 100


@dataclass
class RunningStats:
    symbol: str
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    total_profit: Decimal = ZERO
    total_loss: Decimal = ZERO
    net_profit: Decimal = ZERO
    win_rate: Decimal = ZERO
    start_date: Optional[str] = None
    last_trade_date: Optional[str] = None
    recent_trades: List[Dict[str, Any]] = field(default_factory=list)

    def apply_trade(self, when: datetime, profit: Optional[Decimal], entry: Dict[str, Any]) -> None:
        stamp = to_iso(when)
        self.total_trades += 1
        self.last_trade_date = stamp
        if not self.start_date:
            self.start_date = stamp
        if profit is not None:
            if profit > 0:
                self.successful_trades += 1
                self.total_profit += profit
            else:
                self.failed_trades += 1
                self.total_loss += abs(profit)
        self.net_profit = self.total_profit - self.total_loss
        self.win_rate = (Decimal(self.successful_trades) * 100 / Decimal(self.total_trades)).quantize(Decimal("0.0001"))
        self.recent_trades.insert(0, dict(entry, date=stamp, profit=decimal_to_json(profit)))
        del self.recent_trades[RECENT_TRADES_CAP:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "totalTrades": self.total_trades,
            "successfulTrades": self.successful_trades,
            "failedTrades": self.failed_trades,
            "totalProfit": decimal_to_json(self.total_profit),
            "totalLoss": decimal_to_json(self.total_loss),
            "netProfit": decimal_to_json(self.net_profit),
            "winRate": decimal_to_json(self.win_rate),
            "startDate": self.start_date,
            "lastTradeDate": self.last_trade_date,
            "recentTrades": list(self.recent_trades),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], symbol: str) -> "RunningStats":
        trades = raw.get("recentTrades")
        if trades is None:
            trades = raw.get("trades") or []
        return cls(
            symbol=str(raw.get("symbol") or symbol).upper(),
            total_trades=int(raw.get("totalTrades") or 0),
            successful_trades=int(raw.get("successfulTrades") or 0),
            failed_trades=int(raw.get("failedTrades") or 0),
            total_profit=to_decimal(raw.get("totalProfit"), ZERO),
            total_loss=to_decimal(raw.get("totalLoss"), ZERO),
            net_profit=to_decimal(raw.get("netProfit"), ZERO),
            win_rate=to_decimal(raw.get("winRate"), ZERO),
            start_date=raw.get("startDate"),
            last_trade_date=raw.get("lastTradeDate"),
            recent_trades=list(trades)[:RECENT_TRADES_CAP],
        )


@dataclass(frozen=True)
class CycleContext:
    """State handed from one cycle stage to the next.

    Stages never mutate a context; they return a new one via the ``with_*``
    helpers.
    """

    config: Any
    pair: TradingPair
    cycle_index: int = 0
    base_balance: Optional[Decimal] = None
    quote_balance: Optional[Decimal] = None
    last_price: Optional[Decimal] = None

    @property
    def balances_known(self) -> bool:
        return self.base_balance is not None and self.quote_balance is not None

    def with_balances(self, base: Optional[Decimal], quote: Optional[Decimal]) -> "CycleContext":
        return dataclasses.replace(self, base_balance=base, quote_balance=quote)

    def with_price(self, price: Optional[Decimal]) -> "CycleContext":
        if price is None:
            return self
        return dataclasses.replace(self, last_price=price)

    def next_cycle(self) -> "CycleContext":
        return dataclasses.replace(self, cycle_index=self.cycle_index + 1)

    def adjust_balances(self, base_delta: Decimal = ZERO, quote_delta: Decimal = ZERO) -> "CycleContext":
        if not self.balances_known:
            return self
        return self.with_balances(
            max(self.base_balance + base_delta, ZERO),
            max(self.quote_balance + quote_delta, ZERO),
        )
