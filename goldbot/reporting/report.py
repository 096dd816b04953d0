"""
Performance report files for the trade journal.

`generate_performance_report` writes four artefacts into `out_dir`:
``trades.csv``, ``equity_curve.csv``, ``summary.json`` (overall metrics
plus a per-strategy breakdown) and ``equity_curve.png``.
"""

from __future__ import annotations

import json
import os
from typing import Dict, List, Sequence

import pandas as pd
import matplotlib

# Headless hosts have no display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from .metrics import EquityPoint, compute_metrics, equity_curve


def _journal_frame(closed: Sequence) -> pd.DataFrame:
    columns = ["trade_id", "strategy", "live", "side", "units", "entry_time", "entry_price",
               "exit_time", "exit_price", "exit_reason", "pnl"]
    rows = [
        [t.trade_id, t.strategy_name, t.live, t.side.value, t.units, t.entry_time.isoformat(),
         t.entry_price, t.exit_time.isoformat(), t.exit_price, t.exit_reason, t.pnl]
        for t in closed
    ]
    return pd.DataFrame(rows, columns=columns)


def _curve_frame(curve: List[EquityPoint]) -> pd.DataFrame:
    frame = pd.DataFrame({
        "timestamp": [pt.timestamp for pt in curve],
        "equity": pd.Series([pt.equity for pt in curve], dtype=float),
    })
    frame["drawdown"] = frame["equity"].cummax() - frame["equity"]
    return frame


def _by_strategy(closed: Sequence) -> Dict[str, dict]:
    groups: Dict[str, list] = {}
    for t in closed:
        groups.setdefault(t.strategy_name, []).append(t)
    return {name: compute_metrics(group) for name, group in sorted(groups.items())}


def _plot(curve: pd.DataFrame, path: str) -> None:
    fig, (ax_eq, ax_dd) = plt.subplots(
        2, 1, figsize=(10, 5), sharex=True, gridspec_kw={"height_ratios": [3, 1]}
    )
    if not curve.empty:
        ax_eq.step(curve["timestamp"], curve["equity"], where="post", linewidth=1.5)
        ax_dd.fill_between(curve["timestamp"], 0, -curve["drawdown"], step="post", alpha=0.4, color="tab:red")
        fig.autofmt_xdate()
    ax_eq.set_title("Equity after each closed trade")
    ax_eq.set_ylabel("Balance")
    ax_dd.set_ylabel("Drawdown")
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def generate_performance_report(
    trades: Sequence,
    starting_balance: float,
    out_dir: str = "results",
) -> dict:
    """Write the report files and return the overall metrics.

    Open journal entries (no exit time yet) are left out.
    """
    os.makedirs(out_dir, exist_ok=True)
    closed = sorted((t for t in trades if t.exit_time is not None), key=lambda t: t.exit_time)

    _journal_frame(closed).to_csv(os.path.join(out_dir, "trades.csv"), index=False)

    points = equity_curve(closed, starting_balance)
    curve = _curve_frame(points)
    curve.assign(timestamp=[pt.timestamp.isoformat() for pt in points]).to_csv(
        os.path.join(out_dir, "equity_curve.csv"), index=False
    )

    metrics = compute_metrics(closed)
    metrics["starting_balance"] = starting_balance
    metrics["ending_balance"] = points[-1].equity if points else starting_balance
    summary = dict(metrics, by_strategy=_by_strategy(closed))
    with open(os.path.join(out_dir, "summary.json"), "w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2, ensure_ascii=False)

    _plot(curve, os.path.join(out_dir, "equity_curve.png"))
    return metrics
