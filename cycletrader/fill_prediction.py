"""Rough fill-time estimates for resting orders, based on recent candle ranges.

These are heuristics for the operator, not inputs to any trading decision.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pandas as pd

from .models import OrderBook


@dataclass(frozen=True)
class Volatility:
    average: float        # mean (high - low) / open, percent per candle
    maximum: float
    minimum: float
    avg_price: float
    std_percent: float    # std-dev of closes as percent of the mean close
    range_percent: float  # mean (high - low) as percent of the mean close
    periods: int


@dataclass(frozen=True)
class FillPrediction:
    status: str
    time_estimate: str
    probability: float
    distance_percent: float
    periods_avg: Optional[float] = None
    periods_max: Optional[float] = None


@dataclass(frozen=True)
class OrderSimulation:
    side: str
    price: float
    quantity: float
    best_market_price: float
    distance_percent: float
    immediate: bool
    time_estimate: str
    probability: int


def calculate_volatility(klines: pd.DataFrame) -> Volatility:
    if klines is None or klines.empty:
        raise ValueError("No klines to measure volatility from")
    df = klines.astype({"open": float, "high": float, "low": float, "close": float})
    spread = df["high"] - df["low"]
    range_pct = spread / df["open"] * 100
    avg_price = float(df["close"].mean())
    # population std-dev, as a percentage of the mean close
    std = float(df["close"].std(ddof=0))
    return Volatility(
        average=float(range_pct.mean()),
        maximum=float(range_pct.max()),
        minimum=float(range_pct.min()),
        avg_price=avg_price,
        std_percent=std / avg_price * 100 if avg_price else 0.0,
        range_percent=float(spread.mean()) / avg_price * 100 if avg_price else 0.0,
        periods=len(df),
    )


def predict_fill(side: str, order_price, current_price, volatility: Volatility) -> FillPrediction:
    order_price = float(order_price)
    current_price = float(current_price)
    if current_price <= 0:
        raise ValueError("current_price must be positive")
    if side.upper() == "SELL":
        distance = (order_price - current_price) / current_price * 100
    else:
        distance = (current_price - order_price) / current_price * 100

    if distance < 0:
        return FillPrediction("ready", "already in the money", 0.95, distance)

    if volatility.average <= 0:
        return FillPrediction("distant", "may take a week or more", 0.0, distance)
    periods_avg = distance / volatility.average
    periods_max = distance / volatility.maximum if volatility.maximum > 0 else None

    if distance <= volatility.minimum:
        probability = 0.9
    elif distance <= volatility.average:
        probability = 0.7
    elif distance <= volatility.maximum:
        probability = 0.5
    else:
        probability = min(0.9, 1 / periods_avg)

    if periods_avg <= 0.25:
        status, estimate = "imminent", "within a few minutes"
    elif periods_avg <= 0.5:
        status, estimate = "very_soon", "within an hour"
    elif periods_avg <= 1:
        status, estimate = "soon", "within a few hours"
    elif periods_avg <= 3:
        status, estimate = "medium", "within a day"
    elif periods_avg <= 7:
        status, estimate = "longer", "within a few days"
    else:
        status, estimate = "distant", "may take a week or more"
    return FillPrediction(status, estimate, round(probability, 2), distance, periods_avg, periods_max)


def simulate_order(side: str, price, quantity, order_book: OrderBook, volatility: Volatility) -> OrderSimulation:
    side = side.upper()
    best = order_book.best_ask if side == "BUY" else order_book.best_bid
    if best is None:
        raise ValueError("Order book has no liquidity on the opposite side")
    target = float(price)
    best_price = float(best)
    immediate = target >= best_price if side == "BUY" else target <= best_price
    distance_pct = abs(target - best_price) / best_price * 100

    if immediate:
        estimate, probability = "Immediate", 100.0
    else:
        hourly = volatility.range_percent / 24
        hours = distance_pct / hourly if hourly > 0 else float("inf")
        if hours < 24:
            estimate = f"~{round(hours, 1)} hours"
            probability = min(95.0, 100 - hours * 4)
        elif hours < 168:
            estimate = f"~{round(hours / 24)} days"
            probability = max(5.0, 100 - hours * 0.5)
        else:
            estimate = "Unlikely within a week"
            probability = max(1.0, 100 - hours * 0.3)
    return OrderSimulation(
        side=side,
        price=target,
        quantity=float(quantity),
        best_market_price=best_price,
        distance_percent=distance_pct,
        immediate=immediate,
        time_estimate=estimate,
        probability=int(round(probability)),
    )
