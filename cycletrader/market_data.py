"""Market data access with a last-known-price fallback."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Optional

import pandas as pd
import requests

from .models import OrderBook


class MarketData:
    """Thin wrapper over the exchange client's public endpoints.

    ``current_price`` never raises on transient failures; it falls back to
    the last price it saw for the symbol, or ``None`` if it has none.
    """

    def __init__(self, client):
        self.client = client
        self._last_price: Dict[str, Decimal] = {}

    def remember_price(self, symbol: str, price: Decimal) -> None:
        self._last_price[symbol.upper()] = price

    def cached_price(self, symbol: str) -> Optional[Decimal]:
        return self._last_price.get(symbol.upper())

    def current_price(self, symbol: str) -> Optional[Decimal]:
        try:
            price = self.client.get_current_price(symbol)
        except (requests.RequestException, ValueError, KeyError) as exc:
            cached = self.cached_price(symbol)
            logging.warning("Unable to fetch ticker for %s: %s; using cached price %s", symbol, exc, cached)
            return cached
        self.remember_price(symbol, price)
        return price

    def order_book(self, symbol: str, depth: int = 10) -> OrderBook:
        return self.client.get_order_book(symbol, depth)

    def klines(self, symbol: str, interval: str = "1h", limit: int = 24) -> pd.DataFrame:
        return self.client.get_klines(symbol, interval, limit)
