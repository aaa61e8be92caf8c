import time

import pandas as pd
import requests

INTERVAL_MS = {
    "1m": 60000, "3m": 180000, "5m": 300000, "15m": 900000, "30m": 1800000,
    "1h": 3600000, "2h": 7200000, "4h": 14400000, "6h": 21600000, "8h": 28800000, "12h": 43200000,
    "1d": 86400000, "3d": 259200000, "1w": 604800000, "1M": 2592000000
}

KLINE_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


def klines_to_frame(data):
    """Convert raw ``/api/v3/klines`` rows into a typed DataFrame sorted by open time."""
    rows = []
    for k in data or []:
        rows.append((int(k[0]), float(k[1]), float(k[2]), float(k[3]), float(k[4]), float(k[5])))
    if not rows:
        return pd.DataFrame(columns=KLINE_COLUMNS)
    df = pd.DataFrame(rows, columns=["ts", "open", "high", "low", "close", "volume"])
    df["timestamp"] = pd.to_datetime(df["ts"], unit="ms", utc=True)
    df = df.drop(columns=["ts"])[KLINE_COLUMNS]
    return df.sort_values("timestamp").reset_index(drop=True)


def fetch_recent_klines(symbol, interval="1h", limit=24, base_url="https://api.binance.com",
                        retry_attempts=4, backoff_sec=0.5, session=None):
    # public endpoint, no key needed
    if interval not in INTERVAL_MS:
        raise ValueError("Unsupported interval")
    http = session or requests
    url = f"{base_url.rstrip('/')}/api/v3/klines"
    params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
    for a in range(retry_attempts):
        r = http.get(url, params=params, timeout=30)
        if r.status_code == 429:
            time.sleep(backoff_sec * (a + 1)); continue
        r.raise_for_status(); data = r.json(); break
    else:
        raise RuntimeError("Binance fetch failed")
    return klines_to_frame(data)
