import hashlib
import hmac
from decimal import Decimal
from urllib.parse import urlencode

import pytest

from cycletrader.binance_client import BinanceClient
from cycletrader.models import AssetBalance

D = Decimal

FOO_INFO = {
    "symbol": "FOOUSDT",
    "baseAsset": "FOO",
    "quoteAsset": "USDT",
    "filters": [
        {"filterType": "LOT_SIZE", "stepSize": "0.00100000", "minQty": "0.00500000"},
        {"filterType": "MIN_NOTIONAL", "minNotional": "10"},
    ],
}

BTC_INFO = {
    "symbol": "BTCUSDT",
    "baseAsset": "BTC",
    "quoteAsset": "USDT",
    "quotePrecision": 8,
    "filters": [
        {"filterType": "PRICE_FILTER", "minPrice": "0.01", "maxPrice": "1000000", "tickSize": "0.01000000"},
        {"filterType": "LOT_SIZE", "stepSize": "0.00001000", "minQty": "0.00001000"},
        {"filterType": "MARKET_LOT_SIZE", "stepSize": "0.00000000", "minQty": "0.00000000"},
        {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
    ],
}


def test_sign_uses_request_encoding_order():
    client = BinanceClient("key", "secret")
    params = {
        "symbol": "BTCUSDT",
        "side": "SELL",
        "type": "LIMIT",
        "quantity": "0.00073",
        "price": "84065.1",
        "timestamp": 1700000000000,
    }

    signed = client._sign(params.copy())

    payload = urlencode(params, doseq=True)
    assert signed["signature"] == hmac.new(b"secret", payload.encode(), hashlib.sha256).hexdigest()


def test_get_balances_fetches_signed_account(monkeypatch):
    client = BinanceClient("key", "secret")
    calls = []

    def fake_request(method, path, *, params=None, signed=False, api_key_only=False):
        calls.append((method, path, signed))
        return {
            "balances": [
                {"asset": "BTC", "free": "0.00073", "locked": "0.0001"},
                {"asset": "USDT", "free": "0.69", "locked": "0.0"},
            ]
        }

    monkeypatch.setattr(client, "_request", fake_request)

    balances = client.get_balances()
    assert balances["BTC"] == AssetBalance(D("0.00073"), D("0.0001"))
    assert balances["USDT"].free == D("0.69")
    assert "ETH" not in balances
    assert calls[0] == ("GET", "/api/v3/account", True)


def test_signed_endpoints_need_credentials():
    client = BinanceClient()

    assert not client.has_credentials
    with pytest.raises(ValueError):
        client.get_balances()
    with pytest.raises(ValueError):
        client.create_listen_key()


def test_trading_pair_is_parsed_from_exchange_info(monkeypatch):
    client = BinanceClient("key", "secret")
    calls = []

    def fake_request(method, path, *, params=None, signed=False, api_key_only=False):
        calls.append(path)
        return {"symbols": [BTC_INFO]}

    monkeypatch.setattr(client, "_request", fake_request)

    pair = client.get_trading_pair("btcusdt")
    assert pair.base_asset == "BTC"
    assert pair.quote_asset == "USDT"
    assert pair.min_notional == D("5")
    assert pair.lot_step_size == D("0.00001")
    assert pair.tick_size == D("0.01")
    assert pair.price_precision == 2

    client.get_trading_pair("BTCUSDT")
    assert calls == ["/api/v3/exchangeInfo"]


def test_limit_sell_below_min_qty_is_not_sent(monkeypatch):
    client = BinanceClient("key", "secret")
    monkeypatch.setattr(client, "get_symbol_info", lambda symbol: FOO_INFO)
    sent = []
    monkeypatch.setattr(client, "_request", lambda *a, **kw: sent.append(kw))

    with pytest.raises(ValueError):
        client.limit_sell("FOOUSDT", D("0.0049"), D("100"))
    with pytest.raises(ValueError):
        client.limit_sell("FOOUSDT", D("0"), D("100"))
    assert sent == []


def test_open_orders_by_symbol(monkeypatch):
    client = BinanceClient("key", "secret")
    calls = []

    def fake_request(method, path, *, params=None, signed=False, api_key_only=False):
        calls.append((method, path, params, signed))
        return [{"orderId": 5, "symbol": "BTCUSDT", "status": "NEW", "side": "SELL", "type": "LIMIT",
                 "price": "84065.10", "origQty": "0.00073", "executedQty": "0"}]

    monkeypatch.setattr(client, "_request", fake_request)

    orders = client.get_open_orders("btcusdt")

    assert calls == [("GET", "/api/v3/openOrders", {"symbol": "BTCUSDT"}, True)]
    assert [(o.order_id, o.price, o.orig_qty) for o in orders] == [("5", D("84065.10"), D("0.00073"))]
    client.get_open_orders()
    assert calls[-1][2] is None


def test_limit_sell_formats_price_to_tick(monkeypatch):
    client = BinanceClient("key", "secret")
    monkeypatch.setattr(client, "get_symbol_info", lambda symbol: BTC_INFO)
    sent = []

    def fake_request(method, path, *, params=None, signed=False, api_key_only=False):
        sent.append((method, path, params, signed))
        return {"orderId": 42, "symbol": "BTCUSDT", "status": "NEW", "side": "SELL", "type": "LIMIT",
                "price": params["price"], "origQty": params["quantity"], "executedQty": "0"}

    monkeypatch.setattr(client, "_request", fake_request)

    result = client.limit_sell("BTCUSDT", D("0.000123"), D("84065.10"))

    method, path, params, signed = sent[0]
    assert (method, path, signed) == ("POST", "/api/v3/order", True)
    assert params["price"] == "84065.1"
    assert params["quantity"] == "0.00012"
    assert params["timeInForce"] == "GTC"
    assert params["type"] == "LIMIT"
    assert result.order_id == "42"
    assert result.status == "NEW"
    assert result.orig_qty == D("0.00012")


def test_market_sell_falls_back_to_lot_size_step(monkeypatch):
    client = BinanceClient("key", "secret")
    monkeypatch.setattr(client, "get_symbol_info", lambda symbol: BTC_INFO)
    sent = []

    def fake_request(method, path, *, params=None, signed=False, api_key_only=False):
        sent.append(params)
        return {"orderId": 7, "symbol": "BTCUSDT", "status": "FILLED", "executedQty": params["quantity"]}

    monkeypatch.setattr(client, "_request", fake_request)

    client.market_sell("BTCUSDT", D("0.0007345"))

    assert sent[0]["quantity"] == "0.00073"
    assert "timeInForce" not in sent[0]
    with pytest.raises(ValueError):
        client.market_sell("BTCUSDT", D("0.000001"))


def test_listen_key_endpoints(monkeypatch):
    client = BinanceClient("key", "secret")
    calls = []

    def fake_request(method, path, *, params=None, signed=False, api_key_only=False):
        calls.append((method, path, params, signed, api_key_only))
        return {"listenKey": "abc"} if method == "POST" else {}

    monkeypatch.setattr(client, "_request", fake_request)

    assert client.create_listen_key() == "abc"
    client.keepalive_listen_key("abc")
    client.close_listen_key("abc")

    assert calls == [
        ("POST", "/api/v3/userDataStream", None, False, True),
        ("PUT", "/api/v3/userDataStream", {"listenKey": "abc"}, False, True),
        ("DELETE", "/api/v3/userDataStream", {"listenKey": "abc"}, False, True),
    ]


def test_invalid_ticker_price_raises(monkeypatch):
    client = BinanceClient()
    monkeypatch.setattr(client, "_request", lambda *a, **kw: {"symbol": "BTCUSDT", "price": "0"})

    with pytest.raises(ValueError):
        client.get_current_price("BTCUSDT")
