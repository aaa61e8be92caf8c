import time
import hmac
import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import pandas as pd
import requests

from .fetchers.binance import fetch_recent_klines
from .models import AssetBalance, OrderBook, OrderResult, TradingPair
from .order_sizing import normalize_quantity
from .utils import format_decimal, step_precision, to_decimal

DEFAULT_BASE_URL = "https://api.binance.com"
ZERO = Decimal("0")


class BinanceClient:
    """Minimal REST client for Binance spot trading.

    Public market-data endpoints work without credentials; signed endpoints
    raise ``ValueError`` when the key or secret is missing.
    """

    def __init__(self, api_key: str = "", api_secret: str = "", base_url: str = DEFAULT_BASE_URL,
                 *, timeout: float = 30.0):
        self.api_key = api_key or ""
        self.api_secret = (api_secret or "").encode()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        if api_key:
            self._session.headers.update({"X-MBX-APIKEY": api_key})
        self._symbol_cache: Dict[str, Dict[str, Any]] = {}
        self._pair_cache: Dict[str, TradingPair] = {}

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = urlencode(params, doseq=True)
        signature = hmac.new(self.api_secret, payload.encode(), hashlib.sha256).hexdigest()
        params["signature"] = signature
        return params

    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, signed: bool = False,
                 api_key_only: bool = False) -> Any:
        if (signed and not self.has_credentials) or (api_key_only and not self.api_key):
            raise ValueError("API key and secret must be provided for account endpoints")
        params = params.copy() if params else {}
        if signed:
            params.setdefault("timestamp", int(time.time() * 1000))
            params = self._sign(params)
        url = f"{self.base_url}{path}"
        resp = self._session.request(method, url, params=params if method == "GET" else None,
                                     data=params if method != "GET" else None, timeout=self.timeout)
        if resp.status_code >= 400:
            logging.error("Binance error %s: %s", resp.status_code, resp.text)
        resp.raise_for_status()
        return resp.json()

    def get_exchange_info(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        params = {"symbol": symbol.upper()} if symbol else None
        return self._request("GET", "/api/v3/exchangeInfo", params=params)

    def get_symbol_info(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        if symbol not in self._symbol_cache:
            info = self.get_exchange_info(symbol)
            symbols = {s["symbol"]: s for s in info.get("symbols", [])}
            if symbol not in symbols:
                raise ValueError(f"Symbol {symbol} not found in exchange info")
            self._symbol_cache[symbol] = symbols[symbol]
        return self._symbol_cache[symbol]

    def get_trading_pair(self, symbol: str) -> TradingPair:
        symbol = symbol.upper()
        if symbol not in self._pair_cache:
            self._pair_cache[symbol] = TradingPair.from_symbol_info(self.get_symbol_info(symbol))
        return self._pair_cache[symbol]

    def get_current_price(self, symbol: str) -> Decimal:
        data = self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol.upper()})
        price = to_decimal(data.get("price"))
        if price is None or price <= 0:
            raise ValueError(f"Invalid ticker price for {symbol}: {data.get('price')!r}")
        return price

    def get_order_book(self, symbol: str, depth: int = 10) -> OrderBook:
        data = self._request("GET", "/api/v3/depth", params={"symbol": symbol.upper(), "limit": depth})
        return OrderBook.from_response(data)

    def get_klines(self, symbol: str, interval: str = "1h", limit: int = 24) -> pd.DataFrame:
        return fetch_recent_klines(symbol, interval, limit, base_url=self.base_url, session=self._session)

    def _lot_filters(self, symbol: str, filter_type: str = "LOT_SIZE") -> Tuple[Optional[Decimal], Optional[Decimal]]:
        """Get lot size filters (minQty, stepSize) for a symbol.

        Args:
            symbol: Trading pair symbol
            filter_type: Filter type to check - "LOT_SIZE" for limit orders, "MARKET_LOT_SIZE" for market orders
        """
        info = self.get_symbol_info(symbol)
        filters = info.get("filters", [])
        for wanted in (filter_type, "LOT_SIZE"):
            for f in filters:
                if f.get("filterType") == wanted:
                    step = to_decimal(f.get("stepSize"))
                    min_qty = to_decimal(f.get("minQty"))
                    # MARKET_LOT_SIZE often reports a zero step; fall back to LOT_SIZE
                    if step is None or step <= 0:
                        break
                    return min_qty, step
        return None, None

    def _apply_lot_step(self, symbol: str, quantity: Decimal, filter_type: str = "LOT_SIZE") -> Decimal:
        min_qty, step = self._lot_filters(symbol, filter_type)
        adjusted, reason = normalize_quantity(quantity, min_qty=min_qty or ZERO, step_size=step)
        if reason != "OK":
            logging.debug("Quantity %s for %s rejected by %s: %s", quantity, symbol, filter_type, reason)
        return adjusted

    def get_balances(self) -> Dict[str, AssetBalance]:
        account = self._request("GET", "/api/v3/account", signed=True)
        balances: Dict[str, AssetBalance] = {}
        for bal in account.get("balances") or []:
            asset = str(bal.get("asset", "")).upper()
            if not asset:
                continue
            balances[asset] = AssetBalance(
                free=to_decimal(bal.get("free"), ZERO),
                locked=to_decimal(bal.get("locked"), ZERO),
            )
        return balances

    def _price_text(self, symbol: str, price: Decimal) -> str:
        pair = self.get_trading_pair(symbol)
        return format_decimal(price, step_precision(pair.tick_size) if pair.tick_size else pair.price_precision)

    def place_order(self, symbol: str, side: str, order_type: str, *, quantity: Optional[Decimal] = None,
                    quote_amount: Optional[Decimal] = None, price: Optional[Decimal] = None,
                    stop_price: Optional[Decimal] = None, time_in_force: str = "GTC") -> OrderResult:
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": order_type.upper(),
            "newOrderRespType": "FULL",
        }
        if "LIMIT" in params["type"] and params["type"] != "LIMIT_MAKER":
            params["timeInForce"] = time_in_force
        if price is not None:
            params["price"] = self._price_text(symbol, price)
        if stop_price is not None:
            params["stopPrice"] = self._price_text(symbol, stop_price)
        if quote_amount is not None and params["type"] == "MARKET":
            params["quoteOrderQty"] = format_decimal(quote_amount, 8)
        elif quantity is not None:
            params["quantity"] = format_decimal(quantity, 8)
        else:
            raise ValueError("Either quantity or quote_amount is required")
        logging.info("Submitting %s %s for %s: %s", params["type"], params["side"], params["symbol"],
                     {k: v for k, v in params.items() if k in ("quantity", "quoteOrderQty", "price", "stopPrice")})
        data = self._request("POST", "/api/v3/order", params=params, signed=True)
        return OrderResult.from_response(data)

    def market_buy_quote(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        return self.place_order(symbol, "BUY", "MARKET", quote_amount=quote_amount)

    def market_sell(self, symbol: str, quantity: Decimal) -> OrderResult:
        adj_qty = self._apply_lot_step(symbol, quantity, filter_type="MARKET_LOT_SIZE")
        if adj_qty <= 0:
            raise ValueError("Quantity below minimum lot size")
        return self.place_order(symbol, "SELL", "MARKET", quantity=adj_qty)

    def limit_sell(self, symbol: str, quantity: Decimal, price: Decimal, time_in_force: str = "GTC") -> OrderResult:
        adj_qty = self._apply_lot_step(symbol, quantity)
        if adj_qty <= 0:
            raise ValueError("Quantity below minimum lot size")
        return self.place_order(symbol, "SELL", "LIMIT", quantity=adj_qty, price=price, time_in_force=time_in_force)

    def get_order(self, symbol: str, order_id: str) -> OrderResult:
        data = self._request("GET", "/api/v3/order", params={"symbol": symbol.upper(), "orderId": order_id},
                             signed=True)
        return OrderResult.from_response(data)

    def cancel_order(self, symbol: str, order_id: str) -> OrderResult:
        params = {"symbol": symbol.upper(), "orderId": order_id}
        logging.info("Cancelling order %s for %s", order_id, symbol)
        data = self._request("DELETE", "/api/v3/order", params=params, signed=True)
        return OrderResult.from_response(data)

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderResult]:
        params = {"symbol": symbol.upper()} if symbol else None
        data = self._request("GET", "/api/v3/openOrders", params=params, signed=True)
        return [OrderResult.from_response(o) for o in data or []]

    def create_listen_key(self) -> str:
        data = self._request("POST", "/api/v3/userDataStream", api_key_only=True)
        return str(data["listenKey"])

    def keepalive_listen_key(self, listen_key: str) -> None:
        self._request("PUT", "/api/v3/userDataStream", params={"listenKey": listen_key}, api_key_only=True)

    def close_listen_key(self, listen_key: str) -> None:
        self._request("DELETE", "/api/v3/userDataStream", params={"listenKey": listen_key}, api_key_only=True)
