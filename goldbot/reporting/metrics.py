"""
Trade statistics and equity curves.

The same numbers feed the strategy comparison shown over Telegram and
the offline performance report.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence
import math
import pandas as pd


@dataclass
class EquityPoint:
    timestamp: pd.Timestamp
    equity: float


def equity_curve(trades: Sequence, starting_balance: float) -> List[EquityPoint]:
    """Account equity after each closed trade, in exit order."""
    ordered = sorted((t for t in trades if t.exit_time is not None), key=lambda t: t.exit_time)
    points: List[EquityPoint] = []
    equity = starting_balance
    for trade in ordered:
        equity += trade.pnl or 0.0
        points.append(EquityPoint(trade.exit_time, equity))
    return points


_METRIC_KEYS = (
    "num_trades", "wins", "losses", "win_rate", "total_pnl", "avg_trade", "avg_win",
    "avg_loss", "largest_win", "largest_loss", "profit_factor", "max_drawdown", "sharpe",
)


def compute_metrics(trades: Sequence) -> dict:
    """Summary statistics for closed trades.

    Parameters
    ----------
    trades : sequence of JournalTrade
        Closed trades carrying `pnl`, `entry_price`, `units` and
        `exit_time`.  Entries without a P&L are skipped.

    Returns
    -------
    dict
        Plain floats and ints.  ``max_drawdown`` is the largest fall of
        cumulative P&L from its running peak (starting at zero), in
        account currency.  ``sharpe`` uses per-trade returns on notional
        and is scaled by the square root of the trade count.
    """
    closed = sorted((t for t in trades if t.pnl is not None), key=lambda t: t.exit_time)
    if not closed:
        stats = dict.fromkeys(_METRIC_KEYS, 0.0)
        stats.update(num_trades=0, wins=0, losses=0)
        return stats

    pnl = pd.Series([float(t.pnl) for t in closed])
    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]

    cumulative = pnl.cumsum()
    peak = cumulative.cummax().clip(lower=0.0)
    max_drawdown = float((peak - cumulative).max())

    notional = pd.Series([t.entry_price * abs(t.units) for t in closed])
    returns = (pnl / notional)[notional != 0]
    std_dev = float(returns.std(ddof=0)) if len(returns) else 0.0
    sharpe = float(returns.mean() / std_dev * math.sqrt(len(returns))) if std_dev > 0 else 0.0

    gross_loss = float(-losses.sum())
    return {
        "num_trades": len(pnl),
        "wins": len(wins),
        "losses": len(losses),
        "win_rate": len(wins) / len(pnl),
        "total_pnl": float(pnl.sum()),
        "avg_trade": float(pnl.mean()),
        "avg_win": float(wins.mean()) if len(wins) else 0.0,
        "avg_loss": float(losses.mean()) if len(losses) else 0.0,
        "largest_win": float(wins.max()) if len(wins) else 0.0,
        "largest_loss": float(losses.min()) if len(losses) else 0.0,
        "profit_factor": float(wins.sum()) / gross_loss if gross_loss > 0 else 0.0,
        "max_drawdown": max_drawdown,
        "sharpe": sharpe,
    }
