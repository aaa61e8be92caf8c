"""Limit-sell supervision: order state tracking, price guard and event monitor."""
from __future__ import annotations

import logging
import threading
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import requests
from websockets.exceptions import WebSocketException

from .clock import CancellationToken, Clock, PeriodicTask, SystemClock
from .errors import IllegalTransition, OrderPlacementError, SupervisionError
from .models import (
    ORDER_FILLED,
    ORDER_REJECTED,
    CLOSED_UNFILLED_STATUSES,
    OrderEvent,
    OrderResult,
    OrderState,
    PriceDropGuardSpec,
    SupervisionResult,
    TrailingStopSpec,
)
from .pricing import trail_stop_price
from .user_stream import KEEPALIVE_SECONDS, RetryPolicy, UserDataStream
from .utils import decimal_to_json, to_iso

ZERO = Decimal("0")

STRATEGY_GUARD = "guard"
STRATEGY_EVENTS = "events"
STRATEGY_AUTO = "auto"

EXIT_STOP_LOSS = "STOP_LOSS"
EXIT_TRAILING_STOP = "TRAILING_STOP"
REASON_PRICE_DROP = "PRICE_DROP"

_ALLOWED = {
    OrderState.NEW: {OrderState.RESTING, OrderState.FAILED},
    OrderState.RESTING: {OrderState.FILLED, OrderState.CANCELED, OrderState.FAILED},
}

# Transient failures of the REST side while polling
POLL_ERRORS = (requests.RequestException, OSError, ValueError)
STREAM_ERRORS = (WebSocketException, OSError, requests.RequestException, SupervisionError)


class OrderTracker:
    """State machine for one sell order.

    ``NEW -> RESTING -> FILLED | CANCELED | FAILED`` plus ``NEW -> FAILED``
    for rejected placements. Each transition is logged and, when a ``sink``
    is given, persisted as ``sink(symbol, order_id, snapshot)``.
    """

    def __init__(self, symbol: str, *, orig_qty: Decimal = ZERO, price: Optional[Decimal] = None,
                 clock: Optional[Clock] = None, sink: Optional[Callable[[str, str, Dict[str, Any]], Any]] = None):
        self.symbol = symbol.upper()
        self.order_id: Optional[str] = None
        self.orig_qty = orig_qty
        self.price = price
        self.state = OrderState.NEW
        self.exchange_status: str = ""
        self.executed_qty = ZERO
        self.fill_price: Optional[Decimal] = None
        self.reason = ""
        self.simulated = False
        self.clock = clock or SystemClock()
        self.sink = sink
        self.transitions: List[Dict[str, Any]] = [{"state": self.state.value, "at": to_iso(self.clock.now())}]

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def _move(self, state: OrderState, reason: str = "") -> None:
        if self.state.is_terminal:
            raise IllegalTransition(f"Order {self.order_id} already {self.state.value}; cannot move to {state.value}")
        if state not in _ALLOWED[self.state]:
            raise IllegalTransition(f"Order {self.order_id} cannot move from {self.state.value} to {state.value}")
        logging.info("Order %s %s: %s -> %s%s", self.symbol, self.order_id or "-", self.state.value, state.value,
                     f" ({reason})" if reason else "")
        self.state = state
        if reason:
            self.reason = reason
        self.transitions.append({"state": state.value, "at": to_iso(self.clock.now()), "reason": reason})
        self.persist()

    def placed(self, result: OrderResult) -> None:
        self.order_id = result.order_id
        self.simulated = result.simulated
        if result.orig_qty > 0:
            self.orig_qty = result.orig_qty
        if result.price is not None:
            self.price = result.price
        if result.status == ORDER_REJECTED:
            self.exchange_status = result.status
            self._move(OrderState.FAILED, "rejected")
            return
        self._move(OrderState.RESTING, result.status or "placed")
        self.observe(result.status, result.executed_qty, result.avg_price)

    def reject(self, reason: str) -> None:
        self._move(OrderState.FAILED, reason)

    def observe(self, status: str, executed_qty: Optional[Decimal] = None,
                fill_price: Optional[Decimal] = None) -> OrderState:
        """Fold an exchange status report into the tracker.

        Reports arriving after a terminal state are ignored; partial fills
        only raise the executed-quantity watermark.
        """
        if self.is_terminal:
            return self.state
        if status:
            self.exchange_status = status
        if executed_qty is not None and executed_qty > self.executed_qty:
            if status != ORDER_FILLED:
                logging.info("Order %s partially filled: %s/%s", self.order_id, decimal_to_json(executed_qty),
                             decimal_to_json(self.orig_qty))
            self.executed_qty = executed_qty
        if fill_price is not None and fill_price > 0 and (self.executed_qty > 0 or status == ORDER_FILLED):
            self.fill_price = fill_price
        if status == ORDER_FILLED:
            if self.executed_qty <= 0:
                self.executed_qty = self.orig_qty
            if self.fill_price is None:
                self.fill_price = self.price
            self._move(OrderState.FILLED, status)
        elif status == ORDER_REJECTED:
            self._move(OrderState.FAILED, status)
        elif status in CLOSED_UNFILLED_STATUSES:
            self._move(OrderState.CANCELED, status)
        return self.state

    def apply_event(self, event: OrderEvent) -> OrderState:
        return self.observe(event.status, event.executed_qty, event.fill_price)

    def cancel(self, reason: str) -> None:
        self._move(OrderState.CANCELED, reason)

    def fail(self, reason: str) -> None:
        self._move(OrderState.FAILED, reason)

    def result(self, **overrides) -> SupervisionResult:
        fields: Dict[str, Any] = {
            "state": self.state,
            "order_status": self.exchange_status,
            "executed_qty": self.executed_qty,
            "fill_price": self.fill_price,
            "reason": self.reason,
        }
        fields.update(overrides)
        return SupervisionResult(**fields)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "orderId": self.order_id,
            "state": self.state.value,
            "exchangeStatus": self.exchange_status,
            "price": decimal_to_json(self.price),
            "origQty": decimal_to_json(self.orig_qty),
            "executedQty": decimal_to_json(self.executed_qty),
            "fillPrice": decimal_to_json(self.fill_price),
            "simulated": self.simulated,
            "reason": self.reason,
            "transitions": list(self.transitions),
        }

    def persist(self) -> None:
        if self.sink is None or not self.order_id:
            return
        self.sink(self.symbol, self.order_id, self.snapshot())


class PriceDropGuard:
    """Poll-and-compare supervision of a resting sell.

    Every ``poll_seconds`` the order status and current price are fetched.
    The loop keeps the running peak since placement, ratchets the trailing
    stop, exits at market when price reaches the stop and cancels when
    price falls from the peak by the configured threshold.
    """

    def __init__(
        self,
        gateway,
        market,
        spec: Optional[PriceDropGuardSpec] = None,
        *,
        stop_price: Optional[Decimal] = None,
        trailing: Optional[TrailingStopSpec] = None,
        clock: Optional[Clock] = None,
        max_poll_errors: int = 5,
    ):
        self.gateway = gateway
        self.market = market
        self.spec = spec or PriceDropGuardSpec()
        self.stop_price = stop_price
        self.trailing = trailing or TrailingStopSpec()
        self.clock = clock or SystemClock()
        self.max_poll_errors = max_poll_errors

    def run(self, tracker: OrderTracker, token: Optional[CancellationToken] = None) -> SupervisionResult:
        peak: Optional[Decimal] = None
        stop = self.stop_price
        stop_reason = EXIT_STOP_LOSS
        errors = 0
        while not tracker.is_terminal:
            if token is not None and token.cancelled:
                tracker.fail("supervision interrupted")
                break
            try:
                order = self.gateway.get_order(tracker.symbol, tracker.order_id)
                price = self.market.current_price(tracker.symbol)
            except POLL_ERRORS as exc:
                errors += 1
                logging.warning("Guard poll for order %s failed (%d/%d): %s", tracker.order_id, errors,
                                self.max_poll_errors, exc)
                if errors >= self.max_poll_errors:
                    tracker.fail(f"guard poll failed {errors} times: {exc}")
                    break
                self.clock.sleep(self.spec.poll_seconds, token)
                continue
            errors = 0

            tracker.observe(order.status, order.executed_qty, order.avg_price)
            if tracker.is_terminal:
                break

            if price is not None:
                peak = price if peak is None else max(peak, price)
                if self.trailing.enabled:
                    trailed = trail_stop_price(stop, peak, self.trailing.distance_percent)
                    if stop is None or trailed > stop:
                        stop, stop_reason = trailed, EXIT_TRAILING_STOP
                logging.debug("Guard %s: price=%s peak=%s stop=%s", tracker.symbol, price, peak, stop)
                if stop is not None and price <= stop:
                    return self._exit_at_market(tracker, order, price, peak, stop, stop_reason)
                if self.spec.enabled and self.spec.should_trigger(peak, price):
                    return self._cancel_on_drop(tracker, order, price, peak, stop)

            self.clock.sleep(self.spec.poll_seconds, token)
        return tracker.result(peak_price=peak, stop_price=stop)

    def _cancel(self, tracker: OrderTracker, reason: str) -> bool:
        """Cancel the resting order; False when it turned out to be filled meanwhile."""
        try:
            response = self.gateway.cancel_order(tracker.symbol, tracker.order_id)
        except POLL_ERRORS as exc:
            logging.warning("Cancel of order %s failed: %s; re-checking status", tracker.order_id, exc)
            try:
                order = self.gateway.get_order(tracker.symbol, tracker.order_id)
            except POLL_ERRORS as exc2:
                tracker.fail(f"cancel failed: {exc2}")
                return False
            tracker.observe(order.status, order.executed_qty, order.avg_price)
            if not tracker.is_terminal:
                tracker.fail(f"cancel failed: {exc}")
            return False
        if response.executed_qty > tracker.executed_qty:
            tracker.executed_qty = response.executed_qty
        if response.is_filled:
            tracker.observe(response.status, response.executed_qty, response.avg_price)
            return False
        tracker.cancel(reason)
        return True

    def _cancel_on_drop(self, tracker, order, price, peak, stop) -> SupervisionResult:
        drop_pct = PriceDropGuardSpec.drop_percent(peak, price)
        logging.warning("Price drop on %s: peak %s -> %s (%.3f%%); cancelling order %s", tracker.symbol,
                        peak, price, float(drop_pct), tracker.order_id)
        original_status = order.status
        if not self._cancel(tracker, REASON_PRICE_DROP):
            return tracker.result(peak_price=peak, stop_price=stop)
        return tracker.result(order_status=original_status, reason=REASON_PRICE_DROP, peak_price=peak,
                              stop_price=stop)

    def _exit_at_market(self, tracker, order, price, peak, stop, reason) -> SupervisionResult:
        logging.warning("%s hit on %s: price %s <= stop %s", reason, tracker.symbol, price, stop)
        if not self._cancel(tracker, reason):
            return tracker.result(peak_price=peak, stop_price=stop)
        remaining = tracker.orig_qty - tracker.executed_qty
        exit_price = price
        if remaining > 0:
            try:
                sold = self.gateway.market_sell(tracker.symbol, remaining)
            except POLL_ERRORS as exc:
                logging.error("Market exit for %s failed: %s", tracker.symbol, exc)
                return tracker.result(reason=f"{reason}: market exit failed: {exc}", peak_price=peak,
                                      stop_price=stop)
            exit_price = sold.avg_price or price
        return tracker.result(order_status=order.status, reason=reason, peak_price=peak, exit_price=exit_price,
                              stop_price=stop)


class EventDrivenMonitor:
    """Follow an order through ``executionReport`` events on the user-data stream.

    A heartbeat renews the listen key while the stream is open. A dropped
    connection or failed heartbeat reopens the stream with a new listen key
    and catches up over REST. Consecutive failures of streams that delivered
    nothing count against ``retry_policy``; once it is exhausted the order is
    left resting and the result is ``FAILED``.
    """

    def __init__(
        self,
        gateway,
        stream_factory: Callable[[], UserDataStream],
        *,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        keepalive_seconds: float = KEEPALIVE_SECONDS,
        recv_timeout: float = 1.0,
    ):
        self.gateway = gateway
        self.stream_factory = stream_factory
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.keepalive_seconds = keepalive_seconds
        self.recv_timeout = recv_timeout

    def _catch_up(self, tracker: OrderTracker) -> None:
        order = self.gateway.get_order(tracker.symbol, tracker.order_id)
        tracker.observe(order.status, order.executed_qty, order.avg_price)

    def _listen(self, tracker: OrderTracker, stream: UserDataStream, heartbeat_failed: threading.Event,
                delivered: threading.Event, token: Optional[CancellationToken]) -> None:
        while not tracker.is_terminal:
            if heartbeat_failed.is_set():
                raise SupervisionError("listen key keepalive failed")
            if token is not None and token.cancelled:
                tracker.fail("supervision interrupted")
                return
            message = stream.recv(self.recv_timeout)
            if message is None:
                continue
            delivered.set()
            event = OrderEvent.from_execution_report(message)
            if event is None or event.order_id != tracker.order_id or event.symbol != tracker.symbol:
                continue
            tracker.apply_event(event)

    def run(self, tracker: OrderTracker, token: Optional[CancellationToken] = None) -> SupervisionResult:
        failures = 0
        while not tracker.is_terminal:
            stream = self.stream_factory()
            heartbeat_failed = threading.Event()
            delivered = threading.Event()
            heartbeat: Optional[PeriodicTask] = None
            try:
                stream.open()
                heartbeat = PeriodicTask(self.keepalive_seconds, stream.renew, name="listen-key-keepalive",
                                         on_error=lambda exc: heartbeat_failed.set()).start()
                self._catch_up(tracker)
                self._listen(tracker, stream, heartbeat_failed, delivered, token)
            except STREAM_ERRORS as exc:
                # a stream that delivered messages starts a fresh retry budget
                if delivered.is_set():
                    failures = 0
                failures += 1
                logging.warning("User data stream failure %d/%d for order %s: %s", failures,
                                self.retry_policy.max_attempts, tracker.order_id, exc)
                if self.retry_policy.exhausted(failures):
                    tracker.fail(f"event stream gave up after {failures} attempts: {exc}")
                    break
                if self.clock.sleep(self.retry_policy.delay(failures), token):
                    tracker.fail("supervision interrupted")
                    break
            finally:
                if heartbeat is not None:
                    heartbeat.stop()
                stream.close()
        return tracker.result()


class OrderSupervisor:
    """Place the limit sell and drive it to a terminal state."""

    def __init__(
        self,
        gateway,
        market,
        *,
        clock: Optional[Clock] = None,
        order_sink: Optional[Callable[[str, str, Dict[str, Any]], Any]] = None,
        stream_factory: Optional[Callable[[], UserDataStream]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_poll_errors: int = 5,
    ):
        self.gateway = gateway
        self.market = market
        self.clock = clock or SystemClock()
        self.order_sink = order_sink
        self.stream_factory = stream_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_poll_errors = max_poll_errors

    def place_sell(self, symbol: str, quantity: Decimal, price: Decimal, gateway=None) -> OrderTracker:
        tracker = OrderTracker(symbol, orig_qty=quantity, price=price, clock=self.clock, sink=self.order_sink)
        try:
            result = (gateway or self.gateway).limit_sell(symbol, quantity, price)
        except (requests.RequestException, ValueError) as exc:
            tracker.reject(str(exc))
            raise OrderPlacementError(f"Limit sell for {symbol} failed: {exc}") from exc
        if not result.order_id:
            tracker.reject("no order id in response")
            raise OrderPlacementError(f"Limit sell for {symbol} returned no order id")
        tracker.placed(result)
        return tracker

    def supervise(
        self,
        tracker: OrderTracker,
        *,
        strategy: str = STRATEGY_GUARD,
        drop_guard: Optional[PriceDropGuardSpec] = None,
        stop_price: Optional[Decimal] = None,
        trailing: Optional[TrailingStopSpec] = None,
        token: Optional[CancellationToken] = None,
        gateway=None,
    ) -> SupervisionResult:
        if tracker.is_terminal:
            return tracker.result(stop_price=stop_price)
        gateway = gateway or self.gateway
        if strategy == STRATEGY_EVENTS and self.stream_factory is not None:
            monitor = EventDrivenMonitor(gateway, self.stream_factory, clock=self.clock,
                                         retry_policy=self.retry_policy)
            result = monitor.run(tracker, token)
            result.stop_price = stop_price
            return result
        guard = PriceDropGuard(gateway, self.market, drop_guard, stop_price=stop_price, trailing=trailing,
                               clock=self.clock, max_poll_errors=self.max_poll_errors)
        return guard.run(tracker, token)
