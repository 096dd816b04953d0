import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import json
import tempfile
import unittest

import pandas as pd

from goldbot.broker.models import ClosedTradeDetail
from goldbot.positions.models import TrackedPosition
from goldbot.reporting.metrics import compute_metrics, equity_curve
from goldbot.reporting.report import generate_performance_report
from goldbot.strategy.base import Side, build_entry_levels
from goldbot.tracking.strategy_tracker import JournalTrade, StrategyTracker


class Clock:
    def __init__(self, start: str) -> None:
        self.now = pd.Timestamp(start, tz="UTC")

    def __call__(self) -> pd.Timestamp:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + pd.Timedelta(**kwargs)


def long_levels():
    return build_entry_levels(2050.0, 2030.0, Side.LONG, 1.5, 2.5, 0.01)


def journal_trade(pnl: float, exit_time: str, name: str = "A", units: int = 10) -> JournalTrade:
    return JournalTrade(
        trade_id=f"{name}-{exit_time}", strategy_name=name, side=Side.LONG, entry_price=2000.0,
        stop_loss=1990.0, take_profit1=2015.0, take_profit2=2025.0, units=units,
        entry_time=pd.Timestamp("2024-03-01", tz="UTC"), exit_price=2000.0 + pnl / units,
        exit_time=pd.Timestamp(exit_time, tz="UTC"), exit_reason="TAKE_PROFIT", pnl=pnl,
    )


class TestHypotheticalTrades(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "tracker.json")
        self.clock = Clock("2024-03-01 08:00")
        self.tracker = StrategyTracker(self.path, clock=self.clock)
        self.tracker.register("Live", live=True)
        self.tracker.register("Shadow")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_long_closes_at_final_target(self) -> None:
        self.tracker.record_signal("Shadow", Side.LONG, long_levels(), 7, "crossover", 65.0)
        self.assertEqual(self.tracker.update_hypothetical(2080.0), [])
        self.clock.advance(hours=8)
        closed = self.tracker.update_hypothetical(2101.0)
        self.assertEqual(len(closed), 1)
        self.assertEqual(closed[0].exit_price, 2100.0)
        self.assertEqual(closed[0].exit_reason, "TAKE_PROFIT")
        self.assertEqual(closed[0].pnl, 350.0)
        self.assertEqual(self.tracker.open_trades, [])

    def test_short_stop_out(self) -> None:
        levels = build_entry_levels(2050.0, 2070.0, Side.SHORT, 1.5, 2.5, 0.01)
        self.tracker.record_signal("Shadow", Side.SHORT, levels, 7)
        closed = self.tracker.update_hypothetical(2070.0)
        self.assertEqual(closed[0].exit_reason, "STOP_LOSS")
        self.assertEqual(closed[0].pnl, -140.0)

    def test_one_hypothetical_position_per_strategy(self) -> None:
        self.assertIsNotNone(self.tracker.record_signal("Shadow", Side.LONG, long_levels(), 7))
        self.clock.advance(hours=4)
        self.assertIsNone(self.tracker.record_signal("Shadow", Side.LONG, long_levels(), 7))
        self.assertEqual(len(self.tracker.open_trades), 1)

    def test_unregistered_strategy_is_ignored(self) -> None:
        with self.assertLogs("goldbot.tracking.strategy_tracker", level="ERROR"):
            self.assertIsNone(self.tracker.record_signal("Ghost", Side.LONG, long_levels(), 7))

    def test_state_survives_restart(self) -> None:
        self.tracker.record_signal("Shadow", Side.LONG, long_levels(), 7, "crossover", 65.0)
        restored = StrategyTracker(self.path, clock=self.clock)
        restored.restore()
        self.assertEqual(restored.strategies, {"Live": True, "Shadow": False})
        self.assertEqual(restored.open_trades, self.tracker.open_trades)
        with open(self.path, encoding="utf-8") as fh:
            self.assertEqual(json.load(fh)["open"][0]["side"], "LONG")

    def test_live_close_is_journalled(self) -> None:
        position = TrackedPosition(
            trade_id="6357", instrument="XAU_USD", side=Side.LONG, strategy_name="Live",
            entry_price=2050.0, units=3, initial_units=7, stop_loss=2030.0,
            take_profit1=2080.0, take_profit2=2100.0,
        )
        detail = ClosedTradeDetail(trade_id="6357", state="CLOSED", entry_price=2050.0, exit_price=2050.0,
                                   realized_pl=120.0, initial_units=7, close_reason="STOP_LOSS",
                                   close_time=pd.Timestamp("2024-03-01 12:00", tz="UTC"))
        trade = self.tracker.record_live_close(position, detail)
        self.assertTrue(trade.live)
        self.assertEqual(trade.units, 7)
        self.assertEqual(self.tracker.trades("Live"), [trade])

    def test_period_filter_and_comparison(self) -> None:
        self.tracker.closed_trades = [
            journal_trade(120.0, "2024-02-01", name="Live"),
            journal_trade(-40.0, "2024-03-01 06:00", name="Live"),
            journal_trade(60.0, "2024-03-01 07:00", name="Shadow"),
        ]
        self.assertEqual(len(self.tracker.trades(period="daily")), 2)
        self.assertEqual(len(self.tracker.trades(period="all")), 3)

        daily = self.tracker.comparison("daily")
        self.assertEqual([row["name"] for row in daily], ["Shadow", "Live"])
        overall = self.tracker.comparison()
        self.assertEqual(overall[0]["name"], "Live")
        self.assertEqual(overall[0]["total_pnl"], 80.0)

        text = self.tracker.format_comparison("daily")
        self.assertTrue(text.startswith("STRATEGY COMPARISON (DAILY)"))
        self.assertIn("HYPOTHETICAL: Shadow", text)
        self.assertIn("Leader: Shadow by +100.00", text)


class TestMetricsAndReport(unittest.TestCase):
    def setUp(self) -> None:
        self.trades = [
            journal_trade(100.0, "2024-03-01 10:00"),
            journal_trade(-50.0, "2024-03-02 10:00"),
            journal_trade(30.0, "2024-03-03 10:00"),
        ]

    def test_metrics(self) -> None:
        m = compute_metrics(self.trades)
        self.assertEqual(m["num_trades"], 3)
        self.assertAlmostEqual(m["win_rate"], 2 / 3)
        self.assertEqual(m["total_pnl"], 80.0)
        self.assertAlmostEqual(m["profit_factor"], 2.6)
        self.assertEqual(m["max_drawdown"], 50.0)
        self.assertEqual(m["largest_loss"], -50.0)

    def test_no_trades(self) -> None:
        self.assertEqual(compute_metrics([])["num_trades"], 0)

    def test_equity_curve(self) -> None:
        curve = equity_curve(list(reversed(self.trades)), 10000.0)
        self.assertEqual([p.equity for p in curve], [10100.0, 10050.0, 10080.0])

    def test_report_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            out_dir = os.path.join(tmp, "results")
            metrics = generate_performance_report(self.trades, 10000.0, out_dir)
            self.assertEqual(sorted(os.listdir(out_dir)),
                             ["equity_curve.csv", "equity_curve.png", "summary.json", "trades.csv"])
            with open(os.path.join(out_dir, "summary.json"), encoding="utf-8") as fh:
                summary = json.load(fh)
            self.assertEqual(summary["ending_balance"], 10080.0)
            self.assertEqual(summary["by_strategy"]["A"]["num_trades"], 3)
            self.assertEqual(summary["max_drawdown"], 50.0)
            self.assertEqual(metrics["num_trades"], 3)
            self.assertEqual(len(pd.read_csv(os.path.join(out_dir, "trades.csv"))), 3)


if __name__ == '__main__':
    unittest.main()
