"""Exchange-aware order sizing and buy/skip decisions."""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Optional, Tuple

from .models import BuyDecision, QuantityPlan, TradingPair

ZERO = Decimal("0")
MIN_VIABLE_BASE_QUANTITY = Decimal("0.00009")
MIN_NOTIONAL_BUFFER = Decimal("1.01")


def floor_to_step(quantity: Decimal, step: Optional[Decimal]) -> Decimal:
    if quantity <= 0:
        return ZERO
    if not step or step <= 0:
        return quantity
    return (quantity / step).to_integral_value(rounding=ROUND_FLOOR) * step


def ceil_to_step(quantity: Decimal, step: Optional[Decimal]) -> Decimal:
    if quantity <= 0:
        return ZERO
    if not step or step <= 0:
        return quantity
    return (quantity / step).to_integral_value(rounding=ROUND_CEILING) * step


def normalize_quantity(
    quantity: Decimal,
    *,
    min_qty: Decimal = ZERO,
    step_size: Optional[Decimal] = None,
    price: Optional[Decimal] = None,
    min_notional: Optional[Decimal] = None,
    allow_round_up: bool = False,
) -> Tuple[Decimal, str]:
    """Normalize a raw quantity against exchange filters.

    Returns the adjusted quantity (floored to the step size) and a reason string.
    If the quantity cannot satisfy ``min_qty``/``min_notional`` constraints even
    after rounding, zero is returned so the caller can skip the order.
    """

    qty = max(quantity, ZERO)
    if qty <= 0:
        return ZERO, "NON_POSITIVE"

    step = step_size if step_size and step_size > 0 else None
    qty = floor_to_step(qty, step)
    reason = "OK"

    if min_qty > 0 and qty < min_qty:
        if allow_round_up and step:
            qty = ceil_to_step(min_qty, step)
            reason = "ROUNDED_UP_MIN_QTY"
        else:
            return ZERO, "BELOW_MIN_QTY"

    if price and min_notional:
        if qty * price < min_notional:
            if allow_round_up and step:
                qty = max(qty, ceil_to_step(min_notional / price, step))
                if qty * price < min_notional:
                    return ZERO, "BELOW_MIN_NOTIONAL"
                reason = "ROUNDED_UP_MIN_NOTIONAL"
            else:
                return ZERO, "BELOW_MIN_NOTIONAL"

    return qty, reason


def resolve_buy_step(
    base_balance: Optional[Decimal],
    quote_balance: Optional[Decimal],
    requested_amount: Decimal,
    pair: TradingPair,
    *,
    min_viable_quantity: Decimal = MIN_VIABLE_BASE_QUANTITY,
) -> BuyDecision:
    """Decide whether to buy fresh base asset and how much quote to spend.

    Held base above ``min_viable_quantity`` is reused (``skip_buy``). The
    spend is shrunk to the available quote balance, never raised above it,
    and bumped to the exchange minimum notional when the request is below it
    and the balance allows. Unknown balances leave the request untouched.
    """
    skip_buy = base_balance is not None and base_balance > min_viable_quantity
    amount = requested_amount
    reason = "SKIP_EXISTING_BASE" if skip_buy else "OK"

    if quote_balance is not None:
        if amount > quote_balance:
            amount = max(quote_balance, ZERO)
            if not skip_buy:
                reason = "SHRUNK_TO_BALANCE"
        elif pair.min_notional and amount < pair.min_notional <= quote_balance:
            amount = pair.min_notional
            if not skip_buy:
                reason = "RAISED_TO_MIN_NOTIONAL"
    elif pair.min_notional and amount < pair.min_notional and not skip_buy:
        reason = "BELOW_MIN_NOTIONAL_UNVERIFIED"

    return BuyDecision(skip_buy=skip_buy, effective_buy_amount=amount, reason=reason)


def min_notional_quantity(sell_price: Decimal, pair: TradingPair) -> Decimal:
    """Smallest lot-aligned quantity clearing min notional with a 1 % buffer."""
    if not pair.min_notional or sell_price <= 0:
        return ZERO
    return ceil_to_step(pair.min_notional * MIN_NOTIONAL_BUFFER / sell_price, pair.lot_step_size)


def resolve_final_quantity(
    available_quantity: Decimal,
    sell_price: Decimal,
    pair: TradingPair,
    *,
    reference_price: Optional[Decimal] = None,
) -> QuantityPlan:
    """Snap the sell quantity to the lot step and lift it to min notional.

    When the floored quantity would place an order below the minimum
    notional at ``sell_price`` the plan raises it to
    ``ceil(min_notional * 1.01 / sell_price, step)`` and reports the base
    shortfall plus the quote a supplementary market buy has to spend.
    """
    if sell_price <= 0:
        raise ValueError("sell_price must be positive")
    floored = floor_to_step(available_quantity, pair.lot_step_size)
    if floored >= pair.min_qty and (not pair.min_notional or floored * sell_price >= pair.min_notional) and floored > 0:
        return QuantityPlan(final_quantity=floored)

    required = max(min_notional_quantity(sell_price, pair), ceil_to_step(pair.min_qty, pair.lot_step_size))
    if required <= 0:
        return QuantityPlan(final_quantity=floored, reason="NON_POSITIVE")
    if required <= available_quantity:
        return QuantityPlan(final_quantity=required, reason="RAISED_TO_MIN_NOTIONAL")

    shortfall = required - available_quantity
    price = reference_price if reference_price and reference_price > 0 else sell_price
    top_up = shortfall * price * MIN_NOTIONAL_BUFFER
    if pair.min_notional and top_up < pair.min_notional:
        top_up = pair.min_notional
    return QuantityPlan(
        final_quantity=required,
        shortfall=shortfall,
        top_up_quote=top_up,
        reason="NEEDS_TOP_UP",
    )
