"""Buy, list, supervise and record: the repeated trading cycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

import requests

from .clock import CancellationToken, Clock, SystemClock
from .config import TradingConfig
from .errors import InsufficientBalanceError, OrderPlacementError, SupervisionError
from .fill_prediction import calculate_volatility, predict_fill
from .history import HistoryRecorder
from .market_data import MarketData
from .models import (
    AssetBalance,
    Cycle,
    CycleContext,
    CycleStatus,
    OrderResult,
    OrderState,
    SupervisionResult,
    TradingPair,
)
from .order_sizing import resolve_buy_step, resolve_final_quantity
from .pricing import compute_sell_price, compute_stop_loss_price
from .simulation import SimulatedGateway
from .supervisor import OrderSupervisor
from .utils import decimal_to_json

ZERO = Decimal("0")
EXIT_TAKE_PROFIT = "TAKE_PROFIT"


@dataclass
class RunSummary:
    cycles: List[Cycle] = field(default_factory=list)
    stopped_early: bool = False

    def count(self, status: CycleStatus) -> int:
        return sum(1 for c in self.cycles if c.status is status)

    @property
    def net_profit(self) -> Decimal:
        total = ZERO
        for c in self.cycles:
            profit = c.realized_profit()
            if profit is not None:
                total += profit
        return total


class CycleOrchestrator:
    """Drive trading cycles one after another until the configured count is reached.

    ``client`` provides balances, symbol metadata and (in live mode) order
    placement. In dry-run mode, or after a permitted simulation fallback,
    orders go to a ``SimulatedGateway`` instead.
    """

    def __init__(
        self,
        config: TradingConfig,
        client,
        *,
        market: Optional[MarketData] = None,
        supervisor: Optional[OrderSupervisor] = None,
        recorder: Optional[HistoryRecorder] = None,
        clock: Optional[Clock] = None,
        simulator: Optional[SimulatedGateway] = None,
    ):
        self.config = config
        self.client = client
        self.clock = clock or SystemClock()
        self.market = market or MarketData(client)
        self.recorder = recorder or HistoryRecorder(config.history_dir, orders_dir=config.orders_dir, clock=self.clock)
        self.simulator = simulator or SimulatedGateway(self.market.cached_price)
        self.supervisor = supervisor or OrderSupervisor(
            client, self.market, clock=self.clock, order_sink=self.recorder.write_order_detail
        )

    def _say(self, msg: str, *args) -> None:
        if self.config.narrate:
            logging.info(msg, *args)

    def load_pair(self) -> TradingPair:
        try:
            return self.client.get_trading_pair(self.config.symbol)
        except (requests.RequestException, ValueError) as exc:
            if not self.config.dry_run:
                raise
            logging.warning("Unable to load exchange filters for %s (%s); dry run continues without them",
                            self.config.symbol, exc)
            return TradingPair.from_symbol(self.config.symbol)

    def run(self, token: Optional[CancellationToken] = None) -> RunSummary:
        cfg = self.config
        pair = self.load_pair()
        context = CycleContext(config=cfg, pair=pair)
        summary = RunSummary()
        logging.info("Starting %s cycles on %s (buy %s %s, target %s, dry run %s)",
                     cfg.cycles or "unlimited", pair.symbol, decimal_to_json(cfg.buy_amount), pair.quote_asset,
                     cfg.profit.label(), "ON" if cfg.dry_run else "OFF")
        while cfg.cycles is None or context.cycle_index < cfg.cycles:
            if token is not None and token.cancelled:
                summary.stopped_early = True
                break
            context = context.next_cycle()
            cycle, context = self.run_cycle(context, token)
            summary.cycles.append(cycle)
            if cfg.cycles is not None and context.cycle_index >= cfg.cycles:
                break
            self._say("Waiting %s seconds before next cycle...", cfg.delay_seconds)
            try:
                if self.clock.sleep(cfg.delay_seconds, token):
                    summary.stopped_early = True
                    break
            except KeyboardInterrupt:
                logging.info("Interrupted between cycles; stopping after cycle %s", context.cycle_index)
                summary.stopped_early = True
                break
        logging.info("Completed %s trading cycles: %s filled, %s canceled, %s failed, net %s %s",
                     len(summary.cycles), summary.count(CycleStatus.FILLED), summary.count(CycleStatus.CANCELED),
                     summary.count(CycleStatus.FAILED), decimal_to_json(summary.net_profit), pair.quote_asset)
        return summary

    def run_cycle(self, context: CycleContext,
                  token: Optional[CancellationToken] = None) -> Tuple[Cycle, CycleContext]:
        cfg = self.config
        pair = context.pair
        cycle = Cycle(index=context.cycle_index, symbol=pair.symbol, profit_target=cfg.profit.label(),
                      simulated=cfg.dry_run)
        gateway = self.simulator if cfg.dry_run else self.client
        self._say("=== Cycle %s on %s ===", cycle.index, pair.symbol)
        try:
            context = self._refresh_balances(context)
            price = self.market.current_price(pair.symbol)
            if price is None:
                cycle.fail("no market price available")
                return self._finish(cycle), context
            context = context.with_price(price)

            quantity, buy_price, gateway, context = self._acquire(cycle, context, gateway)
            cycle.buy_price = buy_price
            cycle.transition(CycleStatus.PENDING_SELL)

            sell_price = compute_sell_price(buy_price, quantity, cfg.profit, cfg.fees, tick_size=pair.tick_size)
            stop_price = compute_stop_loss_price(buy_price, cfg.stop_loss, tick_size=pair.tick_size)
            plan = resolve_final_quantity(quantity, sell_price, pair, reference_price=price)
            if plan.needs_top_up:
                quantity, gateway, context = self._cover_shortfall(cycle, context, gateway, plan, quantity,
                                                                   sell_price, price)
            else:
                quantity = plan.final_quantity
            cycle.buy_quantity = quantity
            cycle.sell_price = sell_price
            cycle.stop_price = stop_price
            self._say("Listing %s %s at %s (buy %s, stop %s)", decimal_to_json(quantity), pair.base_asset,
                      decimal_to_json(sell_price), decimal_to_json(buy_price), decimal_to_json(stop_price))
            self._log_prediction(pair.symbol, sell_price, price)

            tracker = self.supervisor.place_sell(pair.symbol, quantity, sell_price, gateway=gateway)
            cycle.order_id = tracker.order_id
            cycle.transition(CycleStatus.MONITORING)
            result = self.supervisor.supervise(
                tracker,
                strategy=cfg.resolved_monitor(),
                drop_guard=cfg.price_drop,
                stop_price=stop_price,
                trailing=cfg.trailing_stop,
                token=token,
                gateway=gateway,
            )
            self._apply_result(cycle, result)
            context = self._settle_balances(context, cycle)
        except InsufficientBalanceError as exc:
            logging.error("Cycle %s: %s", cycle.index, exc)
            cycle.fail(str(exc))
            self._finish(cycle)
            self.recorder.record_error(exc, {"cycle": cycle.index, "symbol": pair.symbol,
                                             "required": decimal_to_json(exc.required),
                                             "available": decimal_to_json(exc.available)})
            raise
        except (OrderPlacementError, SupervisionError) as exc:
            logging.error("Cycle %s failed: %s", cycle.index, exc)
            if not cycle.is_terminal:
                cycle.fail(str(exc))
        except (ValueError, ArithmeticError) as exc:
            logging.exception("Cycle %s aborted: %s", cycle.index, exc)
            if not cycle.is_terminal:
                cycle.fail(str(exc))
        return self._finish(cycle), context

    def _finish(self, cycle: Cycle) -> Cycle:
        logging.info(
            "Cycle %s %s: buy=%s sell=%s qty=%s order=%s profit=%s%s",
            cycle.index, cycle.status.value, decimal_to_json(cycle.buy_price),
            decimal_to_json(cycle.realized_price() or cycle.sell_price), decimal_to_json(cycle.buy_quantity),
            cycle.order_id or "-", decimal_to_json(cycle.realized_profit()) or "-",
            " [SIMULATED]" if cycle.simulated else "",
        )
        self.recorder.record_cycle(cycle)
        return cycle

    def _refresh_balances(self, context: CycleContext) -> CycleContext:
        cfg = self.config
        if cfg.skip_balance_check:
            return context.with_balances(None, None)
        try:
            balances = self.client.get_balances()
        except (requests.RequestException, ValueError) as exc:
            if not cfg.dry_run:
                raise
            logging.warning("Balance check unavailable in dry run: %s", exc)
            return context.with_balances(None, None)
        base = balances.get(context.pair.base_asset, AssetBalance()).free
        quote = balances.get(context.pair.quote_asset, AssetBalance()).free
        self._say("Balances: %s %s, %s %s", decimal_to_json(base), context.pair.base_asset,
                  decimal_to_json(quote), context.pair.quote_asset)
        return context.with_balances(base, quote)

    def _market_buy(self, gateway, symbol: str, amount: Decimal) -> OrderResult:
        try:
            result = gateway.market_buy_quote(symbol, amount)
        except (requests.RequestException, ValueError) as exc:
            raise OrderPlacementError(f"Market buy of {decimal_to_json(amount)} on {symbol} failed: {exc}") from exc
        if result.executed_qty <= 0:
            raise OrderPlacementError(f"Market buy on {symbol} executed nothing (status {result.status})")
        return result

    def _net_quantity(self, result: OrderResult, pair: TradingPair) -> Decimal:
        return max(result.executed_qty - result.commission_in(pair.base_asset), ZERO)

    def _acquire(self, cycle: Cycle, context: CycleContext, gateway):
        """Buy fresh base asset, or reuse the held balance; returns (qty, buy price, gateway, context)."""
        cfg = self.config
        pair = context.pair
        # simulated buys are not limited by the real quote balance
        quote_balance = None if cfg.dry_run else context.quote_balance
        decision = resolve_buy_step(context.base_balance, quote_balance, cfg.buy_amount, pair,
                                    min_viable_quantity=cfg.min_viable_quantity)
        if decision.skip_buy:
            cycle.skipped_buy = True
            self._say("Holding %s %s already; skipping the buy", decimal_to_json(context.base_balance),
                      pair.base_asset)
            return context.base_balance, context.last_price, gateway, context

        amount = decision.effective_buy_amount
        if decision.reason != "OK":
            self._say("Buy amount adjusted to %s %s (%s)", decimal_to_json(amount), pair.quote_asset,
                      decision.reason)
        if context.quote_balance is not None and not cfg.dry_run and (
            amount <= 0 or (pair.min_notional and amount < pair.min_notional)
        ):
            gateway = self._fallback_or_raise(
                cycle, pair.quote_asset, max(cfg.buy_amount, pair.min_notional), context.quote_balance
            )
            amount = cfg.buy_amount

        result = self._market_buy(gateway, pair.symbol, amount)
        quantity = self._net_quantity(result, pair)
        buy_price = result.avg_price or context.last_price
        spent = result.cumulative_quote or quantity * buy_price
        self._say("Bought %s %s at %s (order %s)", decimal_to_json(quantity), pair.base_asset,
                  decimal_to_json(buy_price), result.order_id)
        return quantity, buy_price, gateway, context.adjust_balances(quantity, -spent)

    def _fallback_or_raise(self, cycle: Cycle, asset: str, required: Decimal, available: Optional[Decimal]):
        if self.config.allow_simulation_fallback:
            logging.warning("Insufficient %s (need %s, have %s); continuing this cycle in simulation",
                            asset, decimal_to_json(required), decimal_to_json(available))
            cycle.simulated = True
            return self.simulator
        raise InsufficientBalanceError(
            f"Insufficient {asset}: need {decimal_to_json(required)}, have {decimal_to_json(available)}",
            asset=asset, required=required, available=available,
        )

    def _cover_shortfall(self, cycle, context, gateway, plan, quantity, sell_price, price):
        """Reach the minimum notional from held base asset, else with a supplementary buy."""
        pair = context.pair
        held = context.base_balance
        if held is not None and held >= plan.final_quantity:
            self._say("Using held %s to reach the minimum notional (%s)", pair.base_asset,
                      decimal_to_json(plan.final_quantity))
            return plan.final_quantity, gateway, context

        top_up = plan.top_up_quote
        if gateway is not self.simulator and context.quote_balance is not None and context.quote_balance < top_up:
            gateway = self._fallback_or_raise(cycle, pair.quote_asset, top_up, context.quote_balance)
            return plan.final_quantity, gateway, context

        logging.info("Quantity %s below minimum notional at %s; buying %s %s more", decimal_to_json(quantity),
                     decimal_to_json(sell_price), decimal_to_json(top_up), pair.quote_asset)
        try:
            extra = self._market_buy(gateway, pair.symbol, top_up)
        except OrderPlacementError as exc:
            logging.error("Supplementary buy failed: %s", exc)
            gateway = self._fallback_or_raise(cycle, pair.quote_asset, top_up, context.quote_balance)
            return plan.final_quantity, gateway, context
        received = self._net_quantity(extra, pair)
        context = context.adjust_balances(received, -(extra.cumulative_quote or received * price))
        replan = resolve_final_quantity(quantity + received, sell_price, pair, reference_price=price)
        if replan.needs_top_up:
            gateway = self._fallback_or_raise(cycle, pair.base_asset, replan.final_quantity, quantity + received)
        return replan.final_quantity, gateway, context

    def _log_prediction(self, symbol: str, sell_price: Decimal, price: Decimal) -> None:
        if not self.config.narrate:
            return
        try:
            volatility = calculate_volatility(self.market.klines(symbol, "1h", 24))
            prediction = predict_fill("SELL", sell_price, price, volatility)
        except (requests.RequestException, RuntimeError, ValueError, KeyError) as exc:
            logging.debug("Fill prediction unavailable: %s", exc)
            return
        logging.info("Fill prediction: %s (probability %.2f, %.2f%% away, avg range %.2f%%/h)",
                     prediction.time_estimate, prediction.probability, prediction.distance_percent,
                     volatility.average)

    def _apply_result(self, cycle: Cycle, result: SupervisionResult) -> None:
        cycle.executed_qty = result.executed_qty
        if result.stop_price is not None:
            cycle.stop_price = result.stop_price
        if result.state is OrderState.FILLED:
            cycle.exit_price = result.fill_price or cycle.sell_price
            cycle.exit_reason = EXIT_TAKE_PROFIT
            cycle.transition(CycleStatus.FILLED)
        elif result.state is OrderState.CANCELED:
            cycle.exit_reason = result.reason or result.order_status
            if result.exit_price is not None:
                # the remainder went at market; blend with whatever the limit order filled
                total = cycle.buy_quantity or ZERO
                partial = min(result.executed_qty, total)
                limit_price = result.fill_price or cycle.sell_price or result.exit_price
                if total > 0:
                    cycle.exit_price = (partial * limit_price + (total - partial) * result.exit_price) / total
                    cycle.executed_qty = total
            elif result.executed_qty > 0:
                cycle.exit_price = result.fill_price or cycle.sell_price
            cycle.transition(CycleStatus.CANCELED)
        else:
            cycle.exit_reason = result.reason or None
            cycle.fail(result.reason or "supervision failed")

    def _settle_balances(self, context: CycleContext, cycle: Cycle) -> CycleContext:
        sold = cycle.executed_qty if cycle.realized_price() is not None else ZERO
        if sold <= 0:
            return context
        return context.adjust_balances(-sold, sold * cycle.realized_price())

