"""Per-cycle trade records, running statistics and order dumps on disk.

Every write goes through a temporary file that is then renamed into place.
Write failures are logged and swallowed; losing an audit record must never
stop a trading run.
"""
from __future__ import annotations

import json
import logging
import traceback
from pathlib import Path
from typing import Any, Dict, Optional

from .clock import Clock, SystemClock
from .models import Cycle, RunningStats
from .utils import decimal_to_json, file_stamp, to_iso

DEFAULT_HISTORY_DIR = Path("history")
TRADE_PREFIX = "trade_"
STATS_PREFIX = "trading_stats_"
ERROR_PREFIX = "error_"


def _ensure_dir(directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: Path, payload: Dict[str, Any]) -> Path:
    _ensure_dir(path.parent)
    tmp_file = path.with_suffix(".tmp")
    with tmp_file.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2, sort_keys=True, default=str)
    tmp_file.replace(path)
    return path


class HistoryRecorder:
    def __init__(
        self,
        history_dir: Path = DEFAULT_HISTORY_DIR,
        *,
        stats_dir: Optional[Path] = None,
        orders_dir: Optional[Path] = None,
        clock: Optional[Clock] = None,
    ):
        self.history_dir = Path(history_dir)
        self.stats_dir = Path(stats_dir) if stats_dir is not None else self.history_dir
        self.orders_dir = Path(orders_dir) if orders_dir is not None else None
        self.clock = clock or SystemClock()

    def _new_path(self, directory: Path, prefix: str) -> Path:
        """Fresh ``<prefix><stamp>.json``; a numeric suffix breaks same-instant ties."""
        stamp = file_stamp(self.clock.now())
        path = directory / f"{prefix}{stamp}.json"
        n = 0
        while path.exists():
            n += 1
            path = directory / f"{prefix}{stamp}_{n:04d}.json"
        return path

    def _safe_write(self, path: Path, payload: Dict[str, Any]) -> Optional[Path]:
        try:
            return write_json_atomic(path, payload)
        except (OSError, TypeError, ValueError) as exc:
            logging.error("Unable to write %s: %s", path, exc)
            return None

    def record_cycle(self, cycle: Cycle) -> Optional[Path]:
        try:
            record = cycle.to_record()
            path = self._safe_write(self._new_path(self.history_dir, TRADE_PREFIX), record)
        except OSError as exc:
            logging.error("Unable to record cycle %s: %s", cycle.index, exc)
            path = None
        if path is not None:
            logging.debug("Cycle %s recorded to %s", cycle.index, path)
        self.update_stats(cycle)
        return path

    def find_latest_stats(self, symbol: str) -> Optional[Path]:
        """Most recently modified stats file for ``symbol`` (or one without a symbol)."""
        if not self.stats_dir.is_dir():
            return None
        wanted = symbol.upper()
        candidates = []
        for path in self.stats_dir.glob(f"{STATS_PREFIX}*.json"):
            try:
                with path.open("r", encoding="utf-8") as fh:
                    raw = json.load(fh)
                mtime = path.stat().st_mtime_ns
            except (OSError, ValueError) as exc:
                logging.warning("Skipping unreadable stats file %s: %s", path, exc)
                continue
            if not isinstance(raw, dict):
                continue
            file_symbol = str(raw.get("symbol") or "").upper()
            if file_symbol and file_symbol != wanted:
                continue
            candidates.append((mtime, path.name, path))
        if not candidates:
            return None
        return max(candidates)[2]

    def load_latest_stats(self, symbol: str) -> RunningStats:
        path = self.find_latest_stats(symbol)
        if path is None:
            return RunningStats(symbol=symbol.upper())
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
            return RunningStats.from_dict(raw, symbol)
        except (OSError, ValueError, TypeError) as exc:
            logging.error("Stats file %s is corrupted (%s); starting from zero", path, exc)
            return RunningStats(symbol=symbol.upper())

    def update_stats(self, cycle: Cycle) -> Optional[RunningStats]:
        try:
            stats = self.load_latest_stats(cycle.symbol)
            profit = cycle.realized_profit()
            entry = {
                "cycle": cycle.index,
                "orderId": cycle.order_id,
                "status": cycle.status.value,
                "buyPrice": decimal_to_json(cycle.buy_price),
                "sellPrice": decimal_to_json(cycle.realized_price() or cycle.sell_price),
                "quantity": decimal_to_json(cycle.realized_quantity()),
                "exitReason": cycle.exit_reason,
                "simulated": cycle.simulated,
            }
            stats.apply_trade(self.clock.now(), profit, entry)
        except (OSError, ValueError, TypeError, ArithmeticError) as exc:
            logging.error("Unable to update stats for %s: %s", cycle.symbol, exc)
            return None
        path = self._safe_write(self._new_path(self.stats_dir, STATS_PREFIX), stats.to_dict())
        if path is not None:
            logging.info("Stats %s: trades=%s net=%s win_rate=%s%%", stats.symbol, stats.total_trades,
                         decimal_to_json(stats.net_profit), decimal_to_json(stats.win_rate))
        return stats

    def record_error(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> Optional[Path]:
        payload = {
            "timestamp": to_iso(self.clock.now()),
            "type": type(exc).__name__,
            "error": str(exc),
            "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            "context": context or {},
        }
        try:
            path = self._new_path(self.history_dir, ERROR_PREFIX)
        except OSError as err:
            logging.error("Unable to record error: %s", err)
            return None
        return self._safe_write(path, payload)

    def write_order_detail(self, symbol: str, order_id: str, payload: Dict[str, Any]) -> Optional[Path]:
        if self.orders_dir is None:
            return None
        return self._safe_write(self.orders_dir / f"{symbol.upper()}-{order_id}.json", payload)

    def render_stats_report(self, symbol: str) -> str:
        stats = self.load_latest_stats(symbol)
        lines = [
            f"Trading statistics for {stats.symbol}",
            f"  Total trades:      {stats.total_trades}",
            f"  Successful:        {stats.successful_trades}",
            f"  Failed:            {stats.failed_trades}",
            f"  Total profit:      {decimal_to_json(stats.total_profit)}",
            f"  Total loss:        {decimal_to_json(stats.total_loss)}",
            f"  Net profit:        {decimal_to_json(stats.net_profit)}",
            f"  Win rate:          {decimal_to_json(stats.win_rate)}%",
            f"  First trade:       {stats.start_date or '-'}",
            f"  Last trade:        {stats.last_trade_date or '-'}",
        ]
        if stats.recent_trades:
            lines.append("  Recent trades:")
            for trade in stats.recent_trades[:10]:
                lines.append(
                    f"    #{trade.get('cycle')} {trade.get('date')} {trade.get('status')} "
                    f"profit={trade.get('profit')}"
                )
        return "\n".join(lines)
