"""Dry-run order gateway: orders fill immediately at the requested or market price."""
from __future__ import annotations

import itertools
import logging
from decimal import Decimal
from typing import Callable, Dict, Optional

from .models import ORDER_CANCELED, ORDER_FILLED, OrderResult
from .utils import decimal_to_json

ZERO = Decimal("0")


class SimulatedGateway:
    """Stand-in for the order endpoints of ``BinanceClient``.

    ``price_source(symbol)`` supplies the fill price of market orders. Order
    ids are ``SIM-<n>``; every order is ``FILLED`` on placement.
    """

    def __init__(self, price_source: Callable[[str], Optional[Decimal]]):
        self.price_source = price_source
        self._ids = itertools.count(1)
        self.orders: Dict[str, OrderResult] = {}

    def _fill(self, symbol: str, side: str, order_type: str, quantity: Decimal, price: Decimal) -> OrderResult:
        order_id = f"SIM-{next(self._ids)}"
        payload = {
            "orderId": order_id,
            "symbol": symbol.upper(),
            "status": ORDER_FILLED,
            "side": side,
            "type": order_type,
            "price": decimal_to_json(price) if order_type == "LIMIT" else "0",
            "origQty": decimal_to_json(quantity),
            "executedQty": decimal_to_json(quantity),
            "cummulativeQuoteQty": decimal_to_json(quantity * price),
            "fills": [{"price": decimal_to_json(price), "qty": decimal_to_json(quantity),
                       "commission": "0", "commissionAsset": "BNB"}],
        }
        result = OrderResult.from_response(payload, simulated=True)
        self.orders[order_id] = result
        logging.info("[DRY RUN] %s %s %s qty=%s @ %s -> %s", order_type, side, symbol, payload["origQty"],
                     decimal_to_json(price), order_id)
        return result

    def _market_price(self, symbol: str) -> Decimal:
        price = self.price_source(symbol)
        if price is None or price <= 0:
            raise ValueError(f"No price available to simulate an order on {symbol}")
        return price

    def market_buy_quote(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        price = self._market_price(symbol)
        return self._fill(symbol, "BUY", "MARKET", quote_amount / price, price)

    def market_sell(self, symbol: str, quantity: Decimal) -> OrderResult:
        return self._fill(symbol, "SELL", "MARKET", quantity, self._market_price(symbol))

    def limit_sell(self, symbol: str, quantity: Decimal, price: Decimal) -> OrderResult:
        return self._fill(symbol, "SELL", "LIMIT", quantity, price)

    def get_order(self, symbol: str, order_id: str) -> OrderResult:
        try:
            return self.orders[str(order_id)]
        except KeyError:
            raise ValueError(f"Unknown simulated order {order_id}") from None

    def cancel_order(self, symbol: str, order_id: str) -> OrderResult:
        order = self.get_order(symbol, order_id)
        if order.is_filled:
            return order
        payload = dict(order.raw, status=ORDER_CANCELED)
        self.orders[order.order_id] = OrderResult.from_response(payload, simulated=True)
        return self.orders[order.order_id]
