"""
Position lifecycle controller.

Drives every tracked position through its phases on each monitor tick::

    OPEN_FULL --TP1 hit--> (TP1_PARTIAL_CLOSING) --> OPEN_PARTIAL --> CLOSED

Trailing-stop activation is a separate flag: it switches on when TP1 is
taken or, earlier, once price has moved the trail distance in the
position's favor.

The controller keeps no state of its own.  Positions live in the
`PositionLedger`, realized P&L goes to the `RiskController`, and the
broker's open-trade list is authoritative: a multi-step operation that
fails half way (partial close filled, stop move rejected) is detected
on a later tick by comparing the desired state with what the broker
reports, then finished.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..broker.models import BrokerTrade, ClosedTradeDetail
from ..broker.oanda_client import BrokerError
from ..config.schema import Config
from ..notify.telegram import NotificationEvent
from .ledger import PositionLedger
from .models import TrackedPosition


logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What one monitor tick did."""
    managed: int = 0
    tp1_closed: List[str] = field(default_factory=list)
    breakeven_set: List[str] = field(default_factory=list)
    breakeven_pending: List[str] = field(default_factory=list)
    stops_moved: List[Tuple[str, float]] = field(default_factory=list)
    closed: List[Tuple[str, Optional[float]]] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)


class LifecycleController:
    def __init__(self, client, ledger: PositionLedger, risk, config: Config,
                 notifier, tracker=None) -> None:
        self.client = client
        self.ledger = ledger
        self.risk = risk
        self.config = config
        self.exits = config.exits
        self.instrument = config.instrument
        self.notifier = notifier
        self.tracker = tracker

    @property
    def _epsilon(self) -> float:
        return self.instrument.pip_size / 2

    def _round(self, price: float) -> float:
        return round(price, self.instrument.price_precision)

    def run_tick(self) -> TickReport:
        """Manage open positions and reconcile the ledger with the broker.

        A failure fetching the open-trade list propagates; a failure while
        managing one position is logged and the remaining positions are
        still processed.
        """
        report = TickReport()
        broker_trades = self.client.get_open_trades()
        open_ids = {trade.trade_id for trade in broker_trades}
        quotes: Dict[str, float] = {}

        for trade in broker_trades:
            position = self.ledger.get(trade.trade_id)
            if position is None:
                report.untracked.append(trade.trade_id)
                continue
            report.managed += 1
            try:
                self._manage(trade, position, quotes, report)
            except BrokerError as exc:
                logger.error("Failed to manage position %s: %s", trade.trade_id, exc)
                report.errors.append((trade.trade_id, str(exc)))

        if report.untracked:
            logger.debug("Broker trades not tracked by this bot: %s", ", ".join(report.untracked))

        for position in self.ledger.all():
            if position.trade_id not in open_ids:
                self._finalize(position, report)

        return report

    def _mid_price(self, instrument: str, quotes: Dict[str, float]) -> float:
        if instrument not in quotes:
            quotes[instrument] = self.client.get_price(instrument).mid
        return quotes[instrument]

    # ------------------------------------------------------------------
    # Open positions
    # ------------------------------------------------------------------
    def _manage(self, trade: BrokerTrade, position: TrackedPosition,
                quotes: Dict[str, float], report: TickReport) -> None:
        price = self._mid_price(position.instrument, quotes)
        logger.debug("Position %s %s: price %.2f, TP1 %.2f, stop %.2f",
                     position.trade_id, position.phase.value, price,
                     position.take_profit1, position.current_stop_loss)

        if not position.tp1_hit:
            if abs(trade.units) < position.size:
                self._adopt_broker_reduction(trade, position, report)
                return
            if position.price_reached(price, position.take_profit1):
                self._take_tp1(position, price, report)
                return
        elif self._needs_breakeven(trade, position):
            logger.info("Position %s: broker stop/target not at breakeven/TP2 yet, retrying", position.trade_id)
            if not self._arm_breakeven(position, report):
                return

        if self.exits.trailing_enabled:
            self._trail(position, price, report)

    def _take_tp1(self, position: TrackedPosition, price: float, report: TickReport) -> None:
        close_units = math.floor(position.size * self.exits.partial_close_fraction)
        trailing = self.exits.trailing_enabled

        if close_units < 1:
            logger.warning("Position %s: %d unit(s) too small to split at TP1, protecting at breakeven instead",
                           position.trade_id, position.size)

            def mark_only(p: TrackedPosition) -> None:
                p.tp1_hit = True
                p.trailing_active = p.trailing_active or trailing

            self.ledger.update(position.trade_id, mark_only)
            report.tp1_closed.append(position.trade_id)
            self._arm_breakeven(position, report)
            return

        logger.info("[TP1] Position %s reached %.2f (TP1 %.2f) - closing %d of %d units",
                    position.trade_id, price, position.take_profit1, close_units, position.size)
        result = self.client.partial_close(position.trade_id, close_units)
        if not result.success:
            logger.warning("[TP1] Partial close of %s not filled: %s", position.trade_id, result.reason)
            report.errors.append((position.trade_id, f"partial close failed: {result.reason}"))
            return

        remaining = position.size - close_units

        def mark_partial(p: TrackedPosition) -> None:
            p.units = p.side.sign * remaining
            p.tp1_hit = True
            if trailing:
                p.trailing_active = True
                if p.is_favorable(price, p.best_price_seen):
                    p.best_price_seen = price

        self.ledger.update(position.trade_id, mark_partial)
        report.tp1_closed.append(position.trade_id)
        self.notifier.notify(NotificationEvent.TP1_PARTIAL_CLOSED, {
            "trade_id": position.trade_id,
            "instrument": position.instrument,
            "units_closed": close_units,
            "remaining_units": remaining,
            "price": result.price if result.price is not None else price,
            "realized_pl": result.realized_pl,
            "take_profit2": position.take_profit2,
        })
        self._arm_breakeven(position, report)

    def _adopt_broker_reduction(self, trade: BrokerTrade, position: TrackedPosition,
                                report: TickReport) -> None:
        """The broker already holds fewer units than tracked: the TP1 close
        filled even though its response never arrived. Record it instead of
        closing again."""
        remaining = abs(trade.units)
        logger.warning("[TP1] Position %s: broker holds %d of %d tracked units, recording the partial close",
                       position.trade_id, remaining, position.size)
        trailing = self.exits.trailing_enabled

        def adopt(p: TrackedPosition) -> None:
            p.units = p.side.sign * remaining
            p.tp1_hit = True
            p.trailing_active = p.trailing_active or trailing

        self.ledger.update(position.trade_id, adopt)
        report.tp1_closed.append(position.trade_id)
        self._arm_breakeven(position, report)

    def _breakeven_stop(self, position: TrackedPosition) -> Optional[float]:
        """Entry price, unless the trailing stop is already tighter."""
        if not self.exits.move_stop_to_breakeven:
            return None
        if position.is_favorable(position.current_stop_loss, position.entry_price):
            return position.current_stop_loss
        return position.entry_price

    def _needs_breakeven(self, trade: BrokerTrade, position: TrackedPosition) -> bool:
        eps = self._epsilon
        if self.exits.move_stop_to_breakeven:
            if trade.stop_loss is None:
                return True
            if position.is_favorable(position.entry_price, trade.stop_loss) and \
                    abs(position.entry_price - trade.stop_loss) > eps:
                return True
        if trade.take_profit is None or abs(trade.take_profit - position.take_profit2) > eps:
            return True
        return False

    def _arm_breakeven(self, position: TrackedPosition, report: TickReport) -> bool:
        """Move the stop to breakeven and set TP2 on the remainder.

        Returns False when the broker did not accept the change; the
        next tick retries.
        """
        stop = self._breakeven_stop(position)
        take_profit = self._round(position.take_profit2)
        stop = self._round(stop) if stop is not None else None
        try:
            result = self.client.modify_trade(position.trade_id, stop_loss=stop, take_profit=take_profit)
        except BrokerError as exc:
            logger.error("Breakeven update for %s failed, will retry next tick: %s", position.trade_id, exc)
            report.breakeven_pending.append(position.trade_id)
            return False
        if not result.success:
            logger.warning("Breakeven update for %s rejected, will retry next tick: %s",
                           position.trade_id, result.reason)
            report.breakeven_pending.append(position.trade_id)
            return False

        def apply(p: TrackedPosition) -> None:
            if stop is not None:
                p.stop_loss = stop
                p.current_stop_loss = stop

        self.ledger.update(position.trade_id, apply)
        report.breakeven_set.append(position.trade_id)
        logger.info("Position %s: stop %s, take profit %.2f",
                    position.trade_id, "unchanged" if stop is None else f"{stop:.2f}", take_profit)
        return True

    def _trail(self, position: TrackedPosition, price: float, report: TickReport) -> None:
        distance = self.instrument.pips_to_price(self.exits.trailing_distance_pips)
        sign = position.side.sign

        activate = not position.trailing_active and (
            position.tp1_hit or (price - position.entry_price) * sign >= distance
        )
        if not position.trailing_active and not activate:
            return
        improve = position.is_favorable(price, position.best_price_seen)
        if activate or improve:
            def track(p: TrackedPosition) -> None:
                p.trailing_active = True
                if p.is_favorable(price, p.best_price_seen):
                    p.best_price_seen = price

            self.ledger.update(position.trade_id, track)
            if activate:
                logger.info("Trailing stop activated for %s at %.2f", position.trade_id, price)

        candidate = self._round(position.best_price_seen - sign * distance)
        if not position.is_favorable(candidate, position.current_stop_loss):
            return
        # A stop on the wrong side of the market would close the trade immediately.
        if not position.is_favorable(price, candidate):
            return

        old_stop = position.current_stop_loss
        result = self.client.modify_trade(position.trade_id, stop_loss=candidate)
        if not result.success:
            logger.warning("Trailing stop update for %s rejected: %s", position.trade_id, result.reason)
            report.errors.append((position.trade_id, f"trailing stop rejected: {result.reason}"))
            return

        def move(p: TrackedPosition) -> None:
            p.current_stop_loss = candidate
            p.stop_loss = candidate

        self.ledger.update(position.trade_id, move)
        report.stops_moved.append((position.trade_id, candidate))
        logger.info("Trailing stop for %s moved %.2f -> %.2f (best %.2f)",
                    position.trade_id, old_stop, candidate, position.best_price_seen)
        self.notifier.notify(NotificationEvent.TRAILING_STOP_UPDATED, {
            "trade_id": position.trade_id,
            "instrument": position.instrument,
            "old_stop": old_stop,
            "new_stop": candidate,
            "best_price": position.best_price_seen,
        })

    # ------------------------------------------------------------------
    # Closed positions
    # ------------------------------------------------------------------
    def _finalize(self, position: TrackedPosition, report: TickReport) -> None:
        """Drop a position the broker no longer reports and book its P&L once."""
        self.ledger.remove(position.trade_id)
        logger.info("Position %s no longer open at broker - removed from ledger", position.trade_id)

        detail: Optional[ClosedTradeDetail] = None
        try:
            detail = self.client.get_closed_trade_detail(position.trade_id)
        except BrokerError as exc:
            logger.warning("Could not fetch close details for %s: %s", position.trade_id, exc)

        pnl: Optional[float] = None
        if detail is not None and detail.is_closed:
            pnl = detail.realized_pl
            self.risk.record_trade(pnl)
            if self.tracker is not None:
                self.tracker.record_live_close(position, detail)
        elif detail is not None:
            logger.warning("Trade %s reported in state %s; P&L not recorded", position.trade_id, detail.state)

        report.closed.append((position.trade_id, pnl))
        self.notifier.notify(NotificationEvent.TRADE_CLOSED, {
            "trade_id": position.trade_id,
            "instrument": position.instrument,
            "side": position.side.value,
            "entry_price": position.entry_price,
            "exit_price": detail.exit_price if detail is not None else None,
            "realized_pl": pnl,
            "close_reason": detail.close_reason if detail is not None else "UNKNOWN",
        })
