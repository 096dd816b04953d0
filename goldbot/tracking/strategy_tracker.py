"""
Strategy comparison tracker.

One strategy trades live; the others run in shadow mode on the same
snapshots.  Shadow signals open hypothetical trades that are closed
when the monitored price crosses their stop or final target.  Closed
live trades are journalled here too, so the comparison report and the
performance report work from a single trade journal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import pandas as pd

from ..reporting.metrics import compute_metrics
from ..strategy.base import EntryLevels, Side
from ..utils.persistence import load_state, save_state
from ..utils.timeutils import format_duration, from_iso, to_iso, utc_now


logger = logging.getLogger(__name__)

PERIODS = {
    "daily": pd.Timedelta(days=1),
    "weekly": pd.Timedelta(days=7),
    "monthly": pd.Timedelta(days=30),
}


@dataclass
class JournalTrade:
    """A live or hypothetical trade; exit fields are None while open."""
    trade_id: str
    strategy_name: str
    side: Side
    entry_price: float
    stop_loss: float
    take_profit1: float
    take_profit2: float
    units: int
    entry_time: pd.Timestamp
    live: bool = False
    reason: str = ""
    confidence: float = 0.0
    exit_price: Optional[float] = None
    exit_time: Optional[pd.Timestamp] = None
    exit_reason: Optional[str] = None
    pnl: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = Side(self.side).value
        data["entry_time"] = to_iso(self.entry_time)
        data["exit_time"] = to_iso(self.exit_time) if self.exit_time is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JournalTrade":
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        values["side"] = Side(values["side"])
        values["entry_time"] = from_iso(values["entry_time"])
        if values.get("exit_time"):
            values["exit_time"] = from_iso(values["exit_time"])
        return cls(**values)


class StrategyTracker:
    def __init__(self, path: Optional[str] = None, clock: Callable[[], pd.Timestamp] = utc_now) -> None:
        self.path = path
        self.clock = clock
        self.strategies: Dict[str, bool] = {}
        self.open_trades: List[JournalTrade] = []
        self.closed_trades: List[JournalTrade] = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def persist(self) -> None:
        if not self.path:
            return
        save_state(self.path, {
            "strategies": self.strategies,
            "open": [t.to_dict() for t in self.open_trades],
            "closed": [t.to_dict() for t in self.closed_trades],
        })

    def restore(self) -> None:
        if not self.path or not Path(self.path).exists():
            logger.info("No existing tracker data found, starting fresh")
            return
        data = load_state(self.path) or {}
        self.strategies.update(data.get("strategies") or {})
        self.open_trades = [JournalTrade.from_dict(raw) for raw in data.get("open") or []]
        self.closed_trades = [JournalTrade.from_dict(raw) for raw in data.get("closed") or []]
        logger.info("Loaded tracker data: %d strategies, %d closed trades, %d hypothetical open",
                    len(self.strategies), len(self.closed_trades), len(self.open_trades))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def register(self, name: str, live: bool = False) -> None:
        self.strategies[name] = live
        logger.info("Registered strategy: %s (%s)", name, "LIVE" if live else "HYPOTHETICAL")
        self.persist()

    def has_open(self, strategy_name: str) -> bool:
        return any(t.strategy_name == strategy_name for t in self.open_trades)

    def record_signal(self, strategy_name: str, side: Side, levels: EntryLevels, units: int,
                      reason: str = "", confidence: float = 0.0) -> Optional[JournalTrade]:
        """Open a hypothetical trade for a shadow strategy.

        Like the live strategy, a shadow strategy holds at most one
        position at a time; further signals are ignored until it closes.
        """
        if strategy_name not in self.strategies:
            logger.error("Strategy %s not registered", strategy_name)
            return None
        if self.has_open(strategy_name):
            logger.debug("%s already holds a hypothetical position", strategy_name)
            return None

        now = self.clock()
        trade = JournalTrade(
            trade_id=f"{strategy_name}_{int(now.timestamp() * 1000)}",
            strategy_name=strategy_name,
            side=side,
            entry_price=levels.entry_price,
            stop_loss=levels.stop_loss,
            take_profit1=levels.take_profit1,
            take_profit2=levels.take_profit2,
            units=units,
            entry_time=now,
            live=False,
            reason=reason,
            confidence=confidence,
        )
        self.open_trades.append(trade)
        self.persist()
        logger.info("HYPOTHETICAL %s: %s %d @ %.2f (confidence %.0f%%)",
                    strategy_name, side.value, units, levels.entry_price, confidence)
        return trade

    def update_hypothetical(self, price: float) -> List[JournalTrade]:
        """Close hypothetical trades whose stop or final target `price` has crossed."""
        closed: List[JournalTrade] = []
        for trade in list(self.open_trades):
            if trade.side is Side.LONG:
                if price <= trade.stop_loss:
                    closed.append(self._close(trade, trade.stop_loss, "STOP_LOSS"))
                elif price >= trade.take_profit2:
                    closed.append(self._close(trade, trade.take_profit2, "TAKE_PROFIT"))
            else:
                if price >= trade.stop_loss:
                    closed.append(self._close(trade, trade.stop_loss, "STOP_LOSS"))
                elif price <= trade.take_profit2:
                    closed.append(self._close(trade, trade.take_profit2, "TAKE_PROFIT"))
        if closed:
            self.persist()
        return closed

    def _close(self, trade: JournalTrade, exit_price: float, reason: str) -> JournalTrade:
        trade.exit_price = exit_price
        trade.exit_time = self.clock()
        trade.exit_reason = reason
        trade.pnl = (exit_price - trade.entry_price) * trade.side.sign * trade.units
        self.open_trades.remove(trade)
        self.closed_trades.append(trade)
        logger.info("HYPOTHETICAL %s: closed %s (%s) P&L %+.2f after %s",
                    trade.strategy_name, trade.side.value, reason, trade.pnl,
                    format_duration((trade.exit_time - trade.entry_time).total_seconds()))
        return trade

    def record_live_close(self, position, detail) -> JournalTrade:
        """Journal a closed live trade from its tracked position and broker detail."""
        if position.strategy_name not in self.strategies:
            self.strategies[position.strategy_name] = True
        trade = JournalTrade(
            trade_id=position.trade_id,
            strategy_name=position.strategy_name,
            side=position.side,
            entry_price=position.entry_price,
            stop_loss=position.stop_loss,
            take_profit1=position.take_profit1,
            take_profit2=position.take_profit2,
            units=abs(position.initial_units),
            entry_time=position.open_time,
            live=True,
            reason=position.reason,
            confidence=position.confidence,
            exit_price=detail.exit_price,
            exit_time=detail.close_time if detail.close_time is not None else self.clock(),
            exit_reason=detail.close_reason,
            pnl=detail.realized_pl,
        )
        self.closed_trades.append(trade)
        self.persist()
        return trade

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def trades(self, strategy_name: Optional[str] = None, period: str = "all") -> List[JournalTrade]:
        result = self.closed_trades
        if strategy_name is not None:
            result = [t for t in result if t.strategy_name == strategy_name]
        if period in PERIODS:
            since = self.clock() - PERIODS[period]
            result = [t for t in result if t.exit_time >= since]
        return list(result)

    def comparison(self, period: str = "all") -> List[Dict[str, Any]]:
        """Per-strategy statistics, best total P&L first."""
        rows = []
        for name, live in self.strategies.items():
            stats = compute_metrics(self.trades(name, period))
            stats.update({
                "name": name,
                "live": live,
                "open_positions": sum(1 for t in self.open_trades if t.strategy_name == name),
            })
            rows.append(stats)
        rows.sort(key=lambda row: row["total_pnl"], reverse=True)
        return rows

    def format_comparison(self, period: str = "all") -> str:
        rows = self.comparison(period)
        lines = [f"STRATEGY COMPARISON ({period.upper()})", ""]
        for row in rows:
            lines.append(f"{'LIVE' if row['live'] else 'HYPOTHETICAL'}: {row['name']}")
            lines.append(
                f"  Trades: {row['num_trades']} (W {row['wins']} / L {row['losses']}) "
                f"Win rate: {row['win_rate'] * 100:.1f}%"
            )
            lines.append(
                f"  P&L: {row['total_pnl']:+.2f} | Avg win {row['avg_win']:.2f} | "
                f"Avg loss {row['avg_loss']:.2f}"
            )
            lines.append(
                f"  Profit factor: {row['profit_factor']:.2f} | Max drawdown: {row['max_drawdown']:.2f} | "
                f"Open: {row['open_positions']}"
            )
            lines.append("")
        if len(rows) >= 2 and rows[0]["num_trades"] and rows[1]["num_trades"]:
            lines.append(f"Leader: {rows[0]['name']} by {rows[0]['total_pnl'] - rows[1]['total_pnl']:+.2f}")
        return "\n".join(lines).rstrip()
