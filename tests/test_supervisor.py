from decimal import Decimal

import pytest
import requests

from conftest import FakeExchange, FakeMarket, order
from cycletrader.errors import IllegalTransition, OrderPlacementError
from cycletrader.models import OrderState, PriceDropGuardSpec, TrailingStopSpec
from cycletrader.supervisor import OrderSupervisor, OrderTracker

D = Decimal


def _supervisor(exchange, prices, clock, **kwargs):
    return OrderSupervisor(exchange, FakeMarket(prices), clock=clock, **kwargs)


class TestOrderTracker:
    def test_transitions_are_persisted_and_terminal(self, clock):
        saved = []
        tracker = OrderTracker("btcusdt", orig_qty=D("0.002"), clock=clock,
                               sink=lambda symbol, oid, snap: saved.append((symbol, oid, snap["state"])))

        tracker.placed(order("7", "NEW", orig="0.002", price="100"))
        assert tracker.state == OrderState.RESTING
        assert tracker.fill_price is None

        tracker.observe("FILLED", D("0.002"), D("100.5"))
        assert tracker.state == OrderState.FILLED
        assert tracker.fill_price == D("100.5")
        assert saved == [("BTCUSDT", "7", "RESTING"), ("BTCUSDT", "7", "FILLED")]

        assert tracker.observe("CANCELED") == OrderState.FILLED
        with pytest.raises(IllegalTransition):
            tracker.cancel("late")
        assert [t["state"] for t in tracker.snapshot()["transitions"]] == ["NEW", "RESTING", "FILLED"]

    def test_partial_fill_watermark_is_monotone(self, clock):
        tracker = OrderTracker("BTCUSDT", orig_qty=D("0.002"), clock=clock)
        tracker.placed(order("7", "NEW", orig="0.002"))

        tracker.observe("PARTIALLY_FILLED", D("0.001"), D("100"))
        tracker.observe("PARTIALLY_FILLED", D("0.0005"))

        assert tracker.executed_qty == D("0.001")
        assert tracker.state == OrderState.RESTING

        tracker.observe("FILLED")
        assert tracker.executed_qty == D("0.001")
        assert tracker.state == OrderState.FILLED

    def test_rejected_placement_fails_without_persisting(self, clock):
        saved = []
        tracker = OrderTracker("BTCUSDT", clock=clock, sink=lambda *a: saved.append(a))

        tracker.reject("insufficient funds")

        assert tracker.state == OrderState.FAILED
        assert tracker.reason == "insufficient funds"
        assert saved == []

    def test_rejected_status_on_placement(self, clock):
        tracker = OrderTracker("BTCUSDT", clock=clock)
        tracker.placed(order("9", "REJECTED"))
        assert tracker.state == OrderState.FAILED

    def test_new_order_cannot_be_canceled(self, clock):
        tracker = OrderTracker("BTCUSDT", clock=clock)
        with pytest.raises(IllegalTransition):
            tracker.cancel("too early")

    def test_expired_order_counts_as_canceled(self, clock):
        tracker = OrderTracker("BTCUSDT", clock=clock)
        tracker.placed(order("7", "NEW"))
        tracker.observe("EXPIRED")
        assert tracker.state == OrderState.CANCELED


def test_place_sell_failure_raises(clock):
    exchange = FakeExchange()
    exchange.fail_limit_sell = requests.ConnectionError("down")

    with pytest.raises(OrderPlacementError):
        _supervisor(exchange, [100], clock).place_sell("BTCUSDT", D("0.001"), D("101.5"))


def test_price_drop_cancels_resting_order(clock):
    exchange = FakeExchange(order_statuses=("NEW",))
    supervisor = _supervisor(exchange, [83000, 82000], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.00012"), D("84065.10"))

    result = supervisor.supervise(tracker, drop_guard=PriceDropGuardSpec(percent_threshold=D("1.0")))

    assert result.state == OrderState.CANCELED
    assert result.reason == "PRICE_DROP"
    assert result.order_status == "NEW"
    assert result.peak_price == D("83000")
    assert exchange.cancels == ["101"]
    assert clock.sleeps == [10.0]


def test_absolute_drop_threshold(clock):
    exchange = FakeExchange(order_statuses=("NEW",))
    supervisor = _supervisor(exchange, [100, 103, 100.5], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.1"), D("105"))

    result = supervisor.supervise(tracker, drop_guard=PriceDropGuardSpec(absolute_threshold=D("2.5")))

    assert result.state == OrderState.CANCELED
    assert result.peak_price == D("103")
    assert len(clock.sleeps) == 2


def test_guard_stops_once_filled(clock):
    exchange = FakeExchange(order_statuses=("NEW", "NEW", "FILLED"))
    supervisor = _supervisor(exchange, [100], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.001"), D("101.5"))

    result = supervisor.supervise(tracker, drop_guard=PriceDropGuardSpec(percent_threshold=D("5")))

    assert result.state == OrderState.FILLED
    assert result.executed_qty == D("0.001")
    assert result.fill_price == D("101.5")
    assert exchange.get_order_calls == 3
    assert exchange.cancels == []


def test_stop_loss_exits_at_market(clock):
    exchange = FakeExchange(order_statuses=("NEW",), price="94")
    supervisor = _supervisor(exchange, [100, 94], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.001"), D("101.5"))

    result = supervisor.supervise(tracker, stop_price=D("95"))

    assert result.state == OrderState.CANCELED
    assert result.reason == "STOP_LOSS"
    assert result.exit_price == D("94")
    assert result.stop_price == D("95")
    assert exchange.cancels == ["101"]
    assert exchange.market_sells == [D("0.001")]


def test_trailing_stop_ratchets_with_peak(clock):
    exchange = FakeExchange(order_statuses=("NEW",), price="108.8")
    supervisor = _supervisor(exchange, [100, 110, 108.8], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.001"), D("115"))

    result = supervisor.supervise(tracker, trailing=TrailingStopSpec(True, D("1")))

    assert result.state == OrderState.CANCELED
    assert result.reason == "TRAILING_STOP"
    assert result.peak_price == D("110")
    assert result.stop_price == D("108.9")
    assert result.exit_price == D("108.8")


def test_repeated_poll_failures_fail_without_cancel(clock):
    exchange = FakeExchange(order_statuses=("NEW",))
    exchange.fail_get_order = 5
    supervisor = _supervisor(exchange, [100], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.001"), D("101.5"))

    result = supervisor.supervise(tracker)

    assert result.state == OrderState.FAILED
    assert "poll failed" in result.reason
    assert exchange.cancels == []
    assert len(clock.sleeps) == 4


def test_transient_poll_failure_recovers(clock):
    exchange = FakeExchange(order_statuses=("FILLED",))
    exchange.fail_get_order = 2
    supervisor = _supervisor(exchange, [100], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.001"), D("101.5"))

    assert supervisor.supervise(tracker).state == OrderState.FILLED


def test_fill_wins_over_failed_cancel(clock):
    exchange = FakeExchange(order_statuses=("NEW", "NEW", "FILLED"))
    exchange.fail_cancel = requests.ConnectionError("cancel lost")
    supervisor = _supervisor(exchange, [83000, 82000], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.00012"), D("84065.10"))

    result = supervisor.supervise(tracker, drop_guard=PriceDropGuardSpec(percent_threshold=D("1.0")))

    assert result.state == OrderState.FILLED
    assert exchange.cancels == ["101"]


def test_cancel_response_reporting_fill_is_kept(clock):
    exchange = FakeExchange(order_statuses=("NEW",))
    exchange.cancel_status = "FILLED"
    supervisor = _supervisor(exchange, [83000, 82000], clock)
    tracker = supervisor.place_sell("BTCUSDT", D("0.00012"), D("84065.10"))

    result = supervisor.supervise(tracker, drop_guard=PriceDropGuardSpec(percent_threshold=D("1.0")))

    assert result.state == OrderState.FILLED
    assert result.executed_qty == D("0.00012")


def test_supervise_returns_immediately_for_terminal_order(clock):
    exchange = FakeExchange()
    supervisor = _supervisor(exchange, [100], clock)
    tracker = OrderTracker("BTCUSDT", clock=clock)
    tracker.reject("rejected")

    result = supervisor.supervise(tracker, stop_price=D("90"))

    assert result.state == OrderState.FAILED
    assert result.stop_price == D("90")
    assert exchange.get_order_calls == 0
