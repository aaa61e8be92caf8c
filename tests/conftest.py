import json
import sys
from collections import deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cycletrader.models import AssetBalance, OrderResult, TradingPair


class FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.sleeps = []
        self.interrupt_on_sleep = False

    def now(self):
        return self.current

    def monotonic(self):
        return self.current.timestamp()

    def sleep(self, seconds, token=None):
        if self.interrupt_on_sleep:
            raise KeyboardInterrupt
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        return bool(token is not None and token.cancelled)


class FakeMarket:
    """Price feed that replays ``prices`` and then repeats the last one."""

    def __init__(self, prices):
        self.prices = deque(Decimal(str(p)) if p is not None else None for p in prices)
        self.last = None

    def current_price(self, symbol):
        if len(self.prices) > 1:
            price = self.prices.popleft()
        else:
            price = self.prices[0]
        if price is not None:
            self.last = price
        return price if price is not None else self.last

    def cached_price(self, symbol):
        return self.last

    def klines(self, symbol, interval="1h", limit=24):
        raise ValueError("no klines in tests")


def order(order_id="1", status="NEW", symbol="BTCUSDT", executed="0", orig="0.001", price="100",
          side="SELL", fills=None, cumulative=None):
    payload = {
        "orderId": order_id,
        "symbol": symbol,
        "status": status,
        "side": side,
        "type": "LIMIT",
        "price": price,
        "origQty": orig,
        "executedQty": executed,
        "fills": fills or [],
    }
    if cumulative is not None:
        payload["cummulativeQuoteQty"] = cumulative
    return OrderResult.from_response(payload)


class FakeExchange:
    """In-memory stand-in for ``BinanceClient``.

    ``order_statuses`` is replayed by ``get_order``; the last entry repeats.
    """

    def __init__(self, *, pair=None, balances=None, price="100", order_statuses=("FILLED",),
                 base_commission_rate="0"):
        self.pair = pair or TradingPair(
            symbol="BTCUSDT", base_asset="BTC", quote_asset="USDT", min_notional=Decimal("10"),
            lot_step_size=Decimal("0.00001"), min_qty=Decimal("0.00001"), tick_size=Decimal("0.01"),
            price_precision=2,
        )
        self.balances = {k: AssetBalance(Decimal(str(v))) for k, v in (balances or {}).items()}
        self.price = Decimal(str(price))
        self.order_statuses = deque(order_statuses)
        self.base_commission_rate = Decimal(base_commission_rate)
        self.market_buys = []
        self.market_sells = []
        self.limit_sells = []
        self.cancels = []
        self.get_order_calls = 0
        self.fail_limit_sell = None
        self.fail_get_order = 0
        self.fail_cancel = None
        self.cancel_status = "CANCELED"
        self.listen_keys = []
        self.closed_keys = []
        self.keepalives = []
        self._next_id = 100

    # market data / account
    def get_trading_pair(self, symbol):
        return self.pair

    def get_current_price(self, symbol):
        return self.price

    def get_balances(self):
        return dict(self.balances)

    def get_klines(self, symbol, interval="1h", limit=24):
        raise ValueError("no klines in tests")

    # orders
    def _id(self):
        self._next_id += 1
        return str(self._next_id)

    def market_buy_quote(self, symbol, quote_amount):
        self.market_buys.append(quote_amount)
        qty = quote_amount / self.price
        commission = qty * self.base_commission_rate
        return order(self._id(), "FILLED", executed=str(qty), orig=str(qty), price="0", side="BUY",
                     cumulative=str(quote_amount),
                     fills=[{"price": str(self.price), "qty": str(qty), "commission": str(commission),
                             "commissionAsset": "BTC"}])

    def market_sell(self, symbol, quantity):
        self.market_sells.append(quantity)
        return order(self._id(), "FILLED", executed=str(quantity), orig=str(quantity), price="0",
                     fills=[{"price": str(self.price), "qty": str(quantity)}])

    def limit_sell(self, symbol, quantity, price):
        if self.fail_limit_sell is not None:
            raise self.fail_limit_sell
        self.limit_sells.append((quantity, price))
        self.last_order = order(self._id(), "NEW", orig=str(quantity), price=str(price))
        return self.last_order

    def get_order(self, symbol, order_id):
        self.get_order_calls += 1
        if self.fail_get_order:
            self.fail_get_order -= 1
            raise requests.ConnectionError("poll failed")
        status = self.order_statuses.popleft() if len(self.order_statuses) > 1 else self.order_statuses[0]
        qty = self.limit_sells[-1][0] if self.limit_sells else Decimal("0.001")
        price = self.limit_sells[-1][1] if self.limit_sells else Decimal("100")
        executed = str(qty) if status == "FILLED" else "0"
        return order(str(order_id), status, executed=executed, orig=str(qty), price=str(price))

    def cancel_order(self, symbol, order_id):
        self.cancels.append(order_id)
        if self.fail_cancel is not None:
            raise self.fail_cancel
        return order(str(order_id), self.cancel_status)

    # user data stream
    def create_listen_key(self):
        key = f"key-{len(self.listen_keys) + 1}"
        self.listen_keys.append(key)
        return key

    def keepalive_listen_key(self, key):
        self.keepalives.append(key)

    def close_listen_key(self, key):
        self.closed_keys.append(key)


class FakeWebSocket:
    """Replays scripted messages; ``None`` is a recv timeout, exceptions are raised.

    Once the script runs out the socket behaves as if the peer went away.
    """

    def __init__(self, script):
        self.script = deque(script)
        self.closed = False

    def recv(self, timeout=None):
        if not self.script:
            raise OSError("script exhausted")
        item = self.script.popleft()
        if item is None:
            raise TimeoutError
        if isinstance(item, BaseException):
            raise item
        return json.dumps(item)

    def close(self):
        self.closed = True


class FakeConnector:
    """``connect`` replacement handing out one scripted socket per call."""

    def __init__(self, *scripts):
        self.scripts = deque(scripts)
        self.urls = []
        self.sockets = []

    def __call__(self, url):
        self.urls.append(url)
        script = self.scripts.popleft() if self.scripts else [OSError("connection refused")]
        if isinstance(script, BaseException):
            raise script
        ws = FakeWebSocket(script)
        self.sockets.append(ws)
        return ws


def execution_report(order_id="101", status="FILLED", executed="0.001", symbol="BTCUSDT", price="101.5",
                     last_qty=None):
    return {
        "e": "executionReport",
        "E": 1709294400000,
        "s": symbol,
        "i": int(order_id),
        "X": status,
        "z": executed,
        "q": "0.001",
        "l": last_qty or executed,
        "L": price,
        "T": 1709294400000,
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def btc_pair():
    return TradingPair(
        symbol="BTCUSDT", base_asset="BTC", quote_asset="USDT", min_notional=Decimal("10"),
        lot_step_size=Decimal("0.00001"), min_qty=Decimal("0.00001"), tick_size=Decimal("0.01"),
        price_precision=2,
    )
