"""Fee-aware sell/stop price derivation."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Optional

from .models import FeeSchedule, ProfitSpec, StopLossSpec

ZERO = Decimal("0")
ONE = Decimal("1")
SELL_PRICE_FLOOR = Decimal("1.015")
SELL_PRICE_CEILING = Decimal("1.05")


def snap_price(price: Decimal, tick_size: Optional[Decimal], *, round_up: bool = False) -> Decimal:
    if not tick_size or tick_size <= 0:
        return price
    steps = (price / tick_size).to_integral_value(rounding=ROUND_CEILING if round_up else ROUND_FLOOR)
    return steps * tick_size


def raw_sell_price(buy_price: Decimal, quantity: Decimal, spec: ProfitSpec, fees: FeeSchedule) -> Decimal:
    """Unclamped price at which the round trip nets exactly the target."""
    if spec.is_percent:
        return buy_price * (ONE + spec.value + fees.buy_fee_rate) / (ONE - fees.sell_fee_rate)
    cost = buy_price * quantity * (ONE + fees.buy_fee_rate)
    return (cost + spec.value) / (quantity * (ONE - fees.sell_fee_rate))


def compute_sell_price(
    buy_price: Decimal,
    quantity: Decimal,
    spec: ProfitSpec,
    fees: Optional[FeeSchedule] = None,
    *,
    tick_size: Optional[Decimal] = None,
) -> Decimal:
    """Return the target sell price, clamped into ``[1.015, 1.05] x buy_price``.

    The clamp trades exactness of the profit target for fill probability, so
    the result is a best-effort target. With ``tick_size`` the price is
    snapped to the exchange tick, up at the floor and down at the ceiling.
    """
    fees = fees or FeeSchedule()
    if buy_price is None or buy_price <= 0:
        raise ValueError("buy_price must be positive")
    if not spec.is_percent and (quantity is None or quantity <= 0):
        raise ValueError("quantity must be positive for a fixed profit target")

    floor = buy_price * SELL_PRICE_FLOOR
    ceiling = buy_price * SELL_PRICE_CEILING
    price = min(max(raw_sell_price(buy_price, quantity, spec, fees), floor), ceiling)
    if not tick_size:
        return price

    snapped = snap_price(price, tick_size)
    if snapped < floor:
        snapped = snap_price(floor, tick_size, round_up=True)
    if snapped > ceiling:
        snapped = snap_price(ceiling, tick_size)
    return snapped


def compute_stop_loss_price(
    buy_price: Decimal,
    spec: Optional[StopLossSpec],
    *,
    tick_size: Optional[Decimal] = None,
) -> Optional[Decimal]:
    if spec is None or not spec.enabled:
        return None
    if spec.is_percent:
        price = buy_price * (ONE - spec.value)
    else:
        price = buy_price - spec.value
    if price <= 0:
        return None
    return snap_price(price, tick_size)


def trail_stop_price(
    current_stop: Optional[Decimal],
    peak_price: Decimal,
    distance_percent: Decimal,
) -> Decimal:
    """Stop price trailing ``distance_percent`` below the peak, never lowered."""
    candidate = peak_price * (ONE - distance_percent / 100)
    if current_stop is None:
        return candidate
    return max(current_stop, candidate)


@dataclass(frozen=True)
class ProfitBreakdown:
    buy_amount: Decimal
    sell_amount: Decimal
    buy_fee_amount: Decimal
    sell_fee_amount: Decimal
    gross_profit: Decimal
    net_profit: Decimal
    profit_percentage: Decimal

    @property
    def total_fees(self) -> Decimal:
        return self.buy_fee_amount + self.sell_fee_amount


def calculate_profit(
    buy_price: Decimal,
    sell_price: Decimal,
    quantity: Decimal,
    fees: Optional[FeeSchedule] = None,
) -> ProfitBreakdown:
    fees = fees or FeeSchedule()
    buy_amount = buy_price * quantity
    sell_amount = sell_price * quantity
    buy_fee = buy_amount * fees.buy_fee_rate
    sell_fee = sell_amount * fees.sell_fee_rate
    gross = sell_amount - buy_amount
    net = gross - buy_fee - sell_fee
    pct = (net / buy_amount * 100) if buy_amount > 0 else ZERO
    return ProfitBreakdown(buy_amount, sell_amount, buy_fee, sell_fee, gross, net, pct)
