"""
Trading engine.

Ties the components together: the scan tick turns a market snapshot
into at most one risk-gated market order, and the monitor tick hands
open positions to the lifecycle controller.  Both ticks run as
scheduled tasks on a single thread, so they never overlap and no
locking is needed around the ledger or the risk state.

The engine owns the position ledger, the risk controller and the
strategy tracker; state is restored from disk in `startup()` before
any task is registered.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
import pandas as pd

from ..analysis.technical import TechnicalAnalyzer
from ..broker.oanda_client import BrokerError
from ..config.schema import Config
from ..data.market_data import MarketDataFeed
from ..notify.telegram import NotificationEvent
from ..positions.ledger import PositionLedger
from ..positions.lifecycle import LifecycleController, TickReport
from ..risk.controller import RiskController
from ..strategy.base import EntryLevels, Signal, Strategy
from ..strategy.registry import build_shadow_strategies, build_strategy
from ..tracking.strategy_tracker import StrategyTracker
from ..utils.scheduler import Scheduler
from ..utils.timeutils import format_duration, utc_now


logger = logging.getLogger(__name__)

PAUSED = "PAUSED"
NO_DATA = "NO_DATA"
NO_SIGNAL = "NO_SIGNAL"
POSITION_OPEN = "POSITION_OPEN"
SIZING_FAILED = "SIZING_FAILED"
RISK_DENIED = "RISK_DENIED"
ORDER_FAILED = "ORDER_FAILED"
OPENED = "OPENED"
ERROR = "ERROR"


@dataclass
class ScanOutcome:
    action: str
    reason: str = ""
    signal: Optional[Signal] = None
    levels: Optional[EntryLevels] = None
    units: int = 0
    trade_id: Optional[str] = None


class TradingEngine:
    """Scan/monitor orchestration for one instrument."""

    def __init__(
        self,
        config: Config,
        client,
        notifier,
        strategy: Optional[Strategy] = None,
        shadow_strategies: Optional[List[Strategy]] = None,
        ledger: Optional[PositionLedger] = None,
        risk: Optional[RiskController] = None,
        tracker: Optional[StrategyTracker] = None,
        clock: Callable[[], pd.Timestamp] = utc_now,
    ) -> None:
        self.config = config
        self.client = client
        self.notifier = notifier
        self.clock = clock
        data_dir = config.storage.data_dir
        self.symbol = config.instrument.symbol

        self.strategy = strategy or build_strategy(config.strategy.live, config)
        self.shadow_strategies = (shadow_strategies if shadow_strategies is not None
                                  else build_shadow_strategies(config))
        self.ledger = ledger or PositionLedger(os.path.join(data_dir, "positions.json"))
        self.risk = risk or RiskController(client, config.risk, os.path.join(data_dir, "risk_state.json"),
                                           clock=clock)
        self.tracker = tracker or StrategyTracker(os.path.join(data_dir, "tracker.json"), clock=clock)
        self.feed = MarketDataFeed(client, config.instrument)
        self.analyzer = TechnicalAnalyzer(config.strategy)
        self.lifecycle = LifecycleController(client, self.ledger, self.risk, config, notifier, self.tracker)

        self.paused = False
        self.started_at: Optional[pd.Timestamp] = None
        self.scan_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def startup(self) -> None:
        """Check connectivity and restore persisted state.

        Raises `BrokerError` when the broker cannot be reached; there is
        no point scheduling ticks in that case.
        """
        logger.info("Starting gold bot on %s %s (%s)", self.symbol, self.config.instrument.timeframe,
                    self.config.oanda.mode)
        if not self.client.test_connection(self.symbol):
            raise BrokerError("OANDA connection test failed")

        restored = self.ledger.restore()
        self.risk.restore()
        self.tracker.restore()
        self.tracker.register(self.strategy.name, live=True)
        for shadow in self.shadow_strategies:
            self.tracker.register(shadow.name, live=False)

        balance = self.risk.sync_balance()
        self.started_at = self.clock()
        logger.info("Strategy:\n%s", self.strategy.describe())
        for shadow in self.shadow_strategies:
            logger.info("Shadow strategy:\n%s", shadow.describe())
        self.notifier.notify(NotificationEvent.BOT_STARTED, {
            "mode": self.config.oanda.mode,
            "instrument": self.symbol,
            "timeframe": self.config.instrument.timeframe,
            "strategy": self.strategy.name,
            "balance": balance,
            "positions": restored,
        })

    def register_tasks(self, scheduler: Scheduler, commands=None) -> None:
        sched = self.config.schedule
        scheduler.add("scan", sched.scan_interval_minutes * 60, self.scan_market,
                      run_immediately=True, align=True)
        scheduler.add("monitor", sched.monitor_interval_seconds, self.monitor_positions,
                      run_immediately=True)
        scheduler.add("daily_reset", sched.daily_reset_check_seconds, self.check_daily_reset)
        if commands is not None:
            scheduler.add("commands", sched.command_poll_seconds, commands.poll)

    def shutdown(self) -> None:
        uptime = (self.clock() - self.started_at).total_seconds() if self.started_at is not None else 0
        self.ledger.persist()
        self.risk.persist()
        self.tracker.persist()
        state = self.risk.state
        logger.info("Shutting down after %s: %d scans, %d trades, total P&L %.2f",
                    format_duration(uptime), self.scan_count, state.total_trade_count, state.total_pnl)
        self.notifier.notify(NotificationEvent.BOT_STOPPED, {
            "uptime": format_duration(uptime),
            "total_pnl": state.total_pnl,
        })

    def pause(self) -> bool:
        """Stop opening new trades; returns False when already paused."""
        if self.paused:
            return False
        self.paused = True
        logger.warning("Trading paused - open positions are still managed")
        return True

    def resume(self) -> bool:
        if not self.paused:
            return False
        self.paused = False
        logger.info("Trading resumed")
        return True

    def _report_transient(self, context: str, exc: Exception) -> None:
        logger.error("Broker failure during %s: %s", context, exc)
        self.notifier.notify(NotificationEvent.TRANSIENT_ERROR, {"context": context, "error": str(exc)})

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------
    def check_daily_reset(self) -> bool:
        return self.risk.reset_daily_stats()

    def monitor_positions(self) -> Optional[TickReport]:
        try:
            report = self.lifecycle.run_tick()
            if self.tracker.open_trades:
                price = self.client.get_price(self.symbol).mid
                self.tracker.update_hypothetical(price)
        except BrokerError as exc:
            self._report_transient("position monitoring", exc)
            return None
        return report

    def scan_market(self) -> ScanOutcome:
        if self.paused:
            logger.info("Trading paused - skipping market scan")
            return ScanOutcome(PAUSED, "trading paused")
        self.scan_count += 1
        try:
            return self._scan()
        except BrokerError as exc:
            self._report_transient("market scan", exc)
            return ScanOutcome(ERROR, str(exc))

    def _scan(self) -> ScanOutcome:
        logger.info("Scanning %s (scan #%d)", self.symbol, self.scan_count)
        bars = self.feed.get_completed_bars()
        if bars is None:
            return ScanOutcome(NO_DATA, "not enough completed candles")

        snapshot = self.analyzer.analyze(bars)
        self.analyzer.log_snapshot(snapshot)
        self._evaluate_shadows(snapshot, bars)

        signal = self.strategy.evaluate(snapshot, bars)
        if not signal.is_trade:
            logger.info("No signal: %s", signal.reason)
            return ScanOutcome(NO_SIGNAL, signal.reason, signal=signal)

        open_trades = self.client.get_open_trades()
        if any(trade.instrument == self.symbol for trade in open_trades):
            logger.info("Signal %s ignored - a %s position is already open", signal.side.value, self.symbol)
            return ScanOutcome(POSITION_OPEN, "position already open", signal=signal)

        levels = self.strategy.levels(snapshot, signal.side)
        units = self.risk.calculate_position_size(levels.entry_price, levels.stop_loss)
        if units == 0:
            return ScanOutcome(SIZING_FAILED, "cannot size position", signal=signal, levels=levels)

        decision = self.risk.can_open_trade(levels.entry_price, levels.stop_loss, units)
        if not decision.allowed:
            logger.warning("Trade blocked by risk management: %s %s", decision.reason, decision.details)
            self.notifier.notify(NotificationEvent.RISK_BLOCK, {
                "reason": decision.reason,
                "details": decision.details,
            })
            return ScanOutcome(RISK_DENIED, decision.reason, signal=signal, levels=levels, units=units)

        return self._open_position(signal, levels, units)

    def _open_position(self, signal: Signal, levels: EntryLevels, units: int) -> ScanOutcome:
        precision = self.config.instrument.price_precision
        side = signal.side
        stop_loss = round(levels.stop_loss, precision)
        logger.info("[TRADE] Opening %s %d %s, stop %.2f (%s)", side.value, units, self.symbol,
                    stop_loss, signal.reason)
        result = self.client.place_market_order(self.symbol, side.sign * units, stop_loss)
        if not result.success:
            logger.error("[TRADE] Order not filled: %s", result.reason or result.reject_reason)
            return ScanOutcome(ORDER_FAILED, result.reason or "order not filled", signal=signal,
                               levels=levels, units=units)
        if not result.trade_id:
            logger.error("[TRADE] Order %s filled without opening a trade, nothing to track", result.order_id)
            return ScanOutcome(ORDER_FAILED, "fill did not open a trade", signal=signal,
                               levels=levels, units=units)

        filled_units = abs(result.units) if result.units else units
        entry_price = result.price if result.price is not None else levels.entry_price
        position = self.ledger.create(
            result.trade_id,
            instrument=self.symbol,
            side=side,
            strategy_name=self.strategy.name,
            entry_price=entry_price,
            units=side.sign * filled_units,
            initial_units=side.sign * filled_units,
            stop_loss=stop_loss,
            take_profit1=round(levels.take_profit1, precision),
            take_profit2=round(levels.take_profit2, precision),
            open_time=self.clock(),
            reason=signal.reason,
            confidence=signal.confidence,
        )
        self.notifier.notify(NotificationEvent.TRADE_OPENED, {
            "trade_id": position.trade_id,
            "strategy": self.strategy.name,
            "side": side.value,
            "units": filled_units,
            "instrument": self.symbol,
            "entry_price": entry_price,
            "stop_loss": stop_loss,
            "take_profit1": position.take_profit1,
            "take_profit2": position.take_profit2,
            "confidence": signal.confidence,
            "reason": signal.reason,
        })
        return ScanOutcome(OPENED, signal.reason, signal=signal, levels=levels, units=filled_units,
                           trade_id=position.trade_id)

    def _evaluate_shadows(self, snapshot, bars) -> None:
        for shadow in self.shadow_strategies:
            signal = shadow.evaluate(snapshot, bars)
            if not signal.is_trade:
                logger.debug("Shadow %s: %s", shadow.name, signal.reason)
                continue
            levels = shadow.levels(snapshot, signal.side)
            units = self.risk.calculate_position_size(levels.entry_price, levels.stop_loss)
            if units == 0:
                continue
            self.tracker.record_signal(shadow.name, signal.side, levels, units,
                                       signal.reason, signal.confidence)

    # ------------------------------------------------------------------
    # Remote control
    # ------------------------------------------------------------------
    def emergency_close_all(self) -> Tuple[int, int]:
        """Close every open trade on the instrument and pause trading."""
        self.pause()
        closed = failed = 0
        for trade in self.client.get_open_trades():
            if trade.instrument != self.symbol:
                continue
            try:
                result = self.client.close_trade(trade.trade_id)
            except BrokerError as exc:
                logger.error("Emergency close of %s failed: %s", trade.trade_id, exc)
                failed += 1
                continue
            if result.success:
                closed += 1
            else:
                logger.error("Emergency close of %s rejected: %s", trade.trade_id, result.reason)
                failed += 1
        logger.warning("Emergency close: %d closed, %d failed", closed, failed)
        self.notifier.notify(NotificationEvent.EMERGENCY_CLOSE, {"closed": closed, "failed": failed})
        # Book the closed trades now rather than on the next monitor tick.
        self.monitor_positions()
        return closed, failed
