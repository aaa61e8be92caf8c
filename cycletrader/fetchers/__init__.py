"""Market data fetchers."""

from .binance import INTERVAL_MS, fetch_recent_klines, klines_to_frame

__all__ = ["INTERVAL_MS", "fetch_recent_klines", "klines_to_frame"]
