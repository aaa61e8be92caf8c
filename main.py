import argparse
import json
import logging
import sys

import requests

from cycletrader.binance_client import BinanceClient
from cycletrader.config import (
    DEFAULT_CONFIG_PATH,
    LOG_LEVELS,
    MONITOR_CHOICES,
    TradingConfig,
    api_settings,
    configure_logging,
    load_config,
    save_config,
)
from cycletrader.errors import InsufficientBalanceError, TradingError
from cycletrader.fill_prediction import calculate_volatility, predict_fill, simulate_order
from cycletrader.history import DEFAULT_HISTORY_DIR, HistoryRecorder
from cycletrader.market_data import MarketData
from cycletrader.orchestrator import CycleOrchestrator
from cycletrader.pricing import calculate_profit
from cycletrader.supervisor import OrderSupervisor
from cycletrader.user_stream import UserDataStream
from cycletrader.utils import decimal_to_json, to_decimal

EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="JSON or YAML parameter file (${ENV} placeholders expanded)")
    common.add_argument("--log-level", choices=list(LOG_LEVELS), default=None)

    ap = argparse.ArgumentParser(description="Binance spot trading cycles and account queries")
    sub = ap.add_subparsers(dest="command", required=True)

    trade = sub.add_parser("trade", parents=[common], help="Run buy -> limit sell cycles")
    trade.add_argument("--symbol", default=None)
    trade.add_argument("--buy-amount", default=None, help="Quote amount to spend per cycle")
    profit = trade.add_mutually_exclusive_group()
    profit.add_argument("--profit", default=None, help="Net profit target in quote currency")
    profit.add_argument("--profit-percent", default=None, help="Net profit target in percent (1.5 = 1.5%%)")
    stop = trade.add_mutually_exclusive_group()
    stop.add_argument("--stop-loss", default=None, help="Stop distance below the buy price, quote currency")
    stop.add_argument("--stop-loss-percent", default=None, help="Stop distance below the buy price, percent")
    trade.add_argument("--trailing-stop", action="store_true", default=None)
    trade.add_argument("--trailing-percent", default=None, help="Trailing distance in percent (default 0.5)")
    trade.add_argument("--drop-threshold", default=None, help="Cancel when price falls this much from its peak")
    trade.add_argument("--drop-percent", default=None, help="Cancel when price falls this many percent from its peak")
    trade.add_argument("--monitor", choices=MONITOR_CHOICES, default=None)
    trade.add_argument("--poll-seconds", type=float, default=None, help="Guard polling interval")
    trade.add_argument("--cycles", type=int, default=None, help="Number of cycles (default: unlimited)")
    trade.add_argument("--delay", type=float, default=None, help="Seconds between cycles (default 5)")
    trade.add_argument("--dry-run", action="store_true", default=None, help="Simulate orders instead of sending them")
    trade.add_argument("--allow-simulation", action="store_true", default=None,
                       help="Continue a cycle in simulation when the balance cannot cover it")
    trade.add_argument("--skip-balance-check", action="store_true", default=None)
    trade.add_argument("--save-config", action="store_true", help="Write the resolved parameters to --config-path")
    trade.add_argument("--config-path", default=str(DEFAULT_CONFIG_PATH))
    trade.add_argument("--history-dir", default=None)
    trade.add_argument("--orders-dir", default=None, help="Dump every order state change to <dir>/<symbol>-<id>.json")

    balance = sub.add_parser("balance", parents=[common], help="Show non-zero balances")
    balance.add_argument("--asset", default=None)

    price = sub.add_parser("price", parents=[common], help="Show the current price")
    price.add_argument("symbol")

    order = sub.add_parser("order", parents=[common], help="Query or cancel an order")
    order.add_argument("action", choices=["status", "cancel"])
    order.add_argument("symbol")
    order.add_argument("order_id")

    orders = sub.add_parser("orders", parents=[common], help="List open orders")
    orders.add_argument("symbol", nargs="?", default=None)

    predict = sub.add_parser("predict", parents=[common], help="Estimate when an order may fill")
    predict.add_argument("symbol")
    predict.add_argument("order_id", nargs="?", default=None)
    predict.add_argument("--side", choices=["BUY", "SELL"], default="SELL")
    predict.add_argument("--price", default=None, help="Hypothetical order price when no order id is given")
    predict.add_argument("--quantity", default="0")
    predict.add_argument("--buy-price", default=None, help="Show the profit breakdown against this buy price")
    predict.add_argument("--interval", default="1h")
    predict.add_argument("--limit", type=int, default=24)

    stats = sub.add_parser("stats", parents=[common], help="Show running statistics for a symbol")
    stats.add_argument("symbol")
    stats.add_argument("--history-dir", default=str(DEFAULT_HISTORY_DIR))
    return ap


def trade_overrides(args):
    return {
        "symbol": args.symbol,
        "buy_amount": args.buy_amount,
        "profit": args.profit,
        "profit_percent": args.profit_percent,
        "stop_loss": args.stop_loss,
        "stop_loss_percent": args.stop_loss_percent,
        "trailing_stop": args.trailing_stop,
        "trailing_percent": args.trailing_percent,
        "drop_threshold": args.drop_threshold,
        "drop_percent": args.drop_percent,
        "poll_seconds": args.poll_seconds,
        "monitor": args.monitor,
        "cycles": args.cycles,
        "delay_seconds": args.delay,
        "dry_run": args.dry_run,
        "allow_simulation_fallback": args.allow_simulation,
        "skip_balance_check": args.skip_balance_check,
        "log_level": args.log_level,
        "history_dir": args.history_dir,
        "orders_dir": args.orders_dir,
    }


def run_trade(args, file_cfg):
    config = TradingConfig.from_dict(file_cfg).merged(trade_overrides(args))
    configure_logging(config.log_level)
    if args.save_config:
        save_config(config, args.config_path)

    api = api_settings(file_cfg)
    if not config.dry_run and not (api.api_key and api.api_secret):
        raise SystemExit("BINANCE_API_KEY and BINANCE_API_SECRET must be set for live trading (or use --dry-run)")
    client = BinanceClient(api.api_key, api.api_secret, api.base_url)
    market = MarketData(client)
    recorder = HistoryRecorder(config.history_dir, orders_dir=config.orders_dir)
    stream_factory = None
    if not config.dry_run:
        def stream_factory():
            return UserDataStream(client, api.ws_url)
    supervisor = OrderSupervisor(client, market, order_sink=recorder.write_order_detail,
                                 stream_factory=stream_factory)
    orchestrator = CycleOrchestrator(config, client, market=market, supervisor=supervisor, recorder=recorder)

    try:
        summary = orchestrator.run()
    except InsufficientBalanceError as exc:
        print(f"Stopped: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt as exc:
        logging.warning("Interrupted during a cycle; open orders may still be resting on the exchange")
        recorder.record_error(exc, {"symbol": config.symbol, "stage": "cycle"})
        return EXIT_INTERRUPTED
    except (TradingError, requests.RequestException, ValueError) as exc:
        logging.exception("Trading run aborted: %s", exc)
        recorder.record_error(exc, {"symbol": config.symbol})
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except Exception as exc:  # pylint: disable=broad-except
        logging.exception("Trading run crashed: %s", exc)
        recorder.record_error(exc, {"symbol": config.symbol, "stage": "cycle"})
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    print(json.dumps({
        "symbol": config.symbol,
        "cycles": len(summary.cycles),
        "statuses": [c.status.value for c in summary.cycles],
        "netProfit": decimal_to_json(summary.net_profit),
        "stoppedEarly": summary.stopped_early,
    }, ensure_ascii=False))
    return 0


def _client(file_cfg):
    api = api_settings(file_cfg)
    return BinanceClient(api.api_key, api.api_secret, api.base_url)


def run_balance(args, file_cfg):
    balances = _client(file_cfg).get_balances()
    wanted = args.asset.upper() if args.asset else None
    for asset, bal in sorted(balances.items()):
        if wanted and asset != wanted:
            continue
        if bal.total <= 0 and not wanted:
            continue
        print(f"{asset:<8} free={decimal_to_json(bal.free)} locked={decimal_to_json(bal.locked)}")
    return 0


def run_price(args, file_cfg):
    price = _client(file_cfg).get_current_price(args.symbol)
    print(f"{args.symbol.upper()}: {decimal_to_json(price)}")
    return 0


def run_order(args, file_cfg):
    client = _client(file_cfg)
    if args.action == "cancel":
        result = client.cancel_order(args.symbol, args.order_id)
    else:
        result = client.get_order(args.symbol, args.order_id)
    print(json.dumps(result.raw, ensure_ascii=False, indent=2))
    return 0


def run_open_orders(args, file_cfg):
    orders = _client(file_cfg).get_open_orders(args.symbol)
    if not orders:
        print("No open orders")
        return 0
    for o in orders:
        print(f"{o.symbol:<10} {o.order_id:<12} {o.side:<4} {o.type:<6} price={decimal_to_json(o.price)} "
              f"qty={decimal_to_json(o.orig_qty)} filled={decimal_to_json(o.executed_qty)} {o.status}")
    return 0


def run_predict(args, file_cfg):
    client = _client(file_cfg)
    if args.order_id:
        order = client.get_order(args.symbol, args.order_id)
        side, order_price, quantity = order.side or args.side, order.price, order.orig_qty
    else:
        order_price = to_decimal(args.price)
        if order_price is None:
            raise SystemExit("predict needs an order id or --price")
        side, quantity = args.side, to_decimal(args.quantity) or 0
    current = client.get_current_price(args.symbol)
    volatility = calculate_volatility(client.get_klines(args.symbol, args.interval, args.limit))
    prediction = predict_fill(side, order_price, current, volatility)
    simulation = simulate_order(side, order_price, quantity, client.get_order_book(args.symbol, 20), volatility)

    print(f"Symbol:        {args.symbol.upper()}")
    print(f"Side / price:  {side} {decimal_to_json(order_price)} (current {decimal_to_json(current)})")
    print(f"Distance:      {prediction.distance_percent:.2f}%")
    print(f"Volatility:    avg {volatility.average:.2f}% max {volatility.maximum:.2f}% "
          f"min {volatility.minimum:.2f}% per {args.interval}")
    print(f"Prediction:    {prediction.status}, {prediction.time_estimate} (p={prediction.probability:.2f})")
    print(f"Order book:    best {simulation.best_market_price} -> {simulation.time_estimate} "
          f"({simulation.probability}% chance)")
    buy_price = to_decimal(args.buy_price)
    if buy_price and quantity:
        breakdown = calculate_profit(buy_price, order_price, quantity)
        print(f"Net profit:    {decimal_to_json(breakdown.net_profit)} "
              f"({breakdown.profit_percentage:.4f}%, fees {decimal_to_json(breakdown.total_fees)})")
    return 0


def run_stats(args, file_cfg):
    recorder = HistoryRecorder(args.history_dir)
    print(recorder.render_stats_report(args.symbol))
    return 0


COMMANDS = {
    "trade": run_trade,
    "balance": run_balance,
    "price": run_price,
    "order": run_order,
    "orders": run_open_orders,
    "predict": run_predict,
    "stats": run_stats,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    file_cfg = load_config(args.config) if args.config else {}
    if args.command != "trade":
        configure_logging(args.log_level or "normal")
    try:
        return COMMANDS[args.command](args, file_cfg)
    except (requests.RequestException, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
