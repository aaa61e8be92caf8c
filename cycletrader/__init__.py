"""Core modules for the Binance trading-cycle runner."""

__all__ = [
    "binance_client",
    "clock",
    "config",
    "errors",
    "fetchers",
    "fill_prediction",
    "history",
    "market_data",
    "models",
    "orchestrator",
    "order_sizing",
    "pricing",
    "simulation",
    "supervisor",
    "user_stream",
    "utils",
]
