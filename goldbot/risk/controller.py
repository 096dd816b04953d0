"""
Risk controller.

Owns the account's running risk ledger (`RiskState`) and answers three
questions for the engine: how many units to trade, whether a new trade
is allowed right now, and how the account is doing.

Daily counters reset on the first check made on a new UTC calendar
date.  There is no timer involved: every risk check compares the stored
``last_reset_date`` with today, so a missed scheduled tick still resets
correctly on the next check.

Broker failures propagate to the caller, except in `sync_balance`,
which keeps the last known balance: trading on a slightly stale balance
is preferable to halting.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import pandas as pd

from ..broker.models import BrokerTrade
from ..broker.oanda_client import BrokerError
from ..config.schema import RiskConfig
from ..utils.persistence import load_state, save_state
from ..utils.timeutils import utc_date, utc_now


logger = logging.getLogger(__name__)

DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
DAILY_TARGET_MET = "DAILY_TARGET_MET"
PORTFOLIO_HEAT_EXCEEDED = "PORTFOLIO_HEAT_EXCEEDED"


@dataclass
class RiskState:
    """Running account statistics.  One per process, persisted on change."""
    current_balance: float
    initial_balance: float
    daily_pnl: float = 0.0
    daily_trade_count: int = 0
    daily_win_count: int = 0
    daily_loss_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    total_pnl: float = 0.0
    total_trade_count: int = 0
    last_reset_date: str = ""


@dataclass
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None
    details: Optional[dict] = None


@dataclass
class PortfolioSummary:
    balance: float
    initial_balance: float
    total_pnl: float
    total_pnl_pct: float
    daily_pnl: float
    daily_trades: int
    portfolio_heat: float
    open_positions: int
    unrealized_pl: float
    portfolio_value: float
    winning_trades: int
    losing_trades: int
    total_trades: int
    win_rate: float


class RiskController:
    """Position sizing, daily limits and portfolio heat."""

    def __init__(
        self,
        client,
        config: RiskConfig,
        state_path: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.config = config
        self.state_path = state_path
        self.clock = clock
        self.state = RiskState(
            current_balance=config.initial_balance,
            initial_balance=config.initial_balance,
            last_reset_date=self._today(),
        )

    def _today(self, now: Optional[datetime] = None) -> str:
        return utc_date(pd.Timestamp(now if now is not None else self.clock())).isoformat()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def persist(self) -> None:
        if self.state_path:
            save_state(self.state_path, {"risk": asdict(self.state)})

    def restore(self) -> bool:
        """Load the persisted state; returns False when there is none."""
        if not self.state_path or not Path(self.state_path).exists():
            return False
        data = load_state(self.state_path) or {}
        stored = data.get("risk")
        if not stored:
            return False
        known = set(RiskState.__dataclass_fields__)
        self.state = RiskState(**{k: v for k, v in stored.items() if k in known})
        logger.info("Restored risk state: total P&L %.2f over %d trades, daily P&L %.2f (%s)",
                    self.state.total_pnl, self.state.total_trade_count,
                    self.state.daily_pnl, self.state.last_reset_date)
        self.reset_daily_stats()
        return True

    # ------------------------------------------------------------------
    # Balance & daily reset
    # ------------------------------------------------------------------
    def sync_balance(self) -> float:
        """Overwrite the balance with the broker's NAV; keep the old one on failure."""
        try:
            balance = self.client.get_balance()
        except BrokerError as exc:
            logger.error("Failed to sync balance, keeping %.2f: %s", self.state.current_balance, exc)
            return self.state.current_balance

        nav = balance.nav
        if nav is None or not math.isfinite(nav) or nav < 0:
            logger.error("Ignoring implausible NAV %r, keeping %.2f", nav, self.state.current_balance)
            return self.state.current_balance

        self.state.current_balance = float(nav)
        logger.info("Balance synced: %.2f", self.state.current_balance)
        return self.state.current_balance

    def reset_daily_stats(self, now: Optional[datetime] = None) -> bool:
        """Zero the daily counters when the UTC date has advanced.  Idempotent."""
        today = self._today(now)
        if today == self.state.last_reset_date:
            return False
        logger.info("New trading day %s - resetting daily statistics (previous daily P&L %.2f)",
                    today, self.state.daily_pnl)
        self.state.daily_pnl = 0.0
        self.state.daily_trade_count = 0
        self.state.daily_win_count = 0
        self.state.daily_loss_count = 0
        self.state.last_reset_date = today
        self.persist()
        return True

    # ------------------------------------------------------------------
    # Sizing & gating
    # ------------------------------------------------------------------
    def calculate_position_size(self, entry_price: float, stop_loss: float,
                                risk_percent: Optional[float] = None) -> int:
        """Units such that hitting the stop loses `risk_percent` of the balance.

        Returns 0 when the stop distance is zero; callers must abort the
        trade in that case.
        """
        if risk_percent is None:
            risk_percent = self.config.max_risk_per_trade
        distance = abs(entry_price - stop_loss)
        if distance == 0:
            logger.error("Price distance to stop loss is zero - cannot size position")
            return 0

        risk_amount = self.state.current_balance * risk_percent
        units = math.floor(risk_amount / distance)
        size = max(min(units, self.config.max_position_size), self.config.min_position_size)
        logger.info("Position sizing: risk %.2f, distance %.2f, raw %d, size %d units",
                    risk_amount, distance, units, size)
        return size

    def calculate_portfolio_heat(self, open_trades: Optional[List[BrokerTrade]] = None) -> float:
        """Fraction of the balance at risk across open broker trades."""
        if open_trades is None:
            open_trades = self.client.get_open_trades()
        total_risk = sum(
            abs(trade.price - trade.stop_loss) * abs(trade.units)
            for trade in open_trades
            if trade.stop_loss is not None
        )
        if self.state.current_balance <= 0:
            return math.inf if total_risk > 0 else 0.0
        return total_risk / self.state.current_balance

    def can_open_trade(self, entry_price: float, stop_loss: float, size: int) -> RiskDecision:
        """Gate a proposed trade on the daily limits and portfolio heat."""
        self.reset_daily_stats()

        if self.state.daily_pnl <= -self.config.max_daily_loss:
            logger.warning("[RISK] Daily loss limit reached (daily P&L %.2f)", self.state.daily_pnl)
            return RiskDecision(False, DAILY_LOSS_LIMIT, {"daily_pnl": self.state.daily_pnl})

        if self.config.stop_at_daily_target and self.state.daily_pnl >= self.config.target_daily_profit:
            logger.info("[RISK] Daily profit target met (daily P&L %.2f)", self.state.daily_pnl)
            return RiskDecision(False, DAILY_TARGET_MET, {"daily_pnl": self.state.daily_pnl})

        balance = self.state.current_balance
        open_trades = self.client.get_open_trades()
        current_heat = self.calculate_portfolio_heat(open_trades)
        new_risk = abs(entry_price - stop_loss) * abs(size)
        new_heat = current_heat + (new_risk / balance if balance > 0 else math.inf)

        if new_heat > self.config.max_portfolio_risk:
            details = {
                "current_heat": round(current_heat, 4),
                "new_heat": round(new_heat, 4),
                "max_allowed": self.config.max_portfolio_risk,
            }
            logger.warning("[RISK] Portfolio heat too high: %s", details)
            return RiskDecision(False, PORTFOLIO_HEAT_EXCEEDED, details)

        return RiskDecision(True, details={"new_heat": round(new_heat, 4)})

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------
    def record_trade(self, pnl: float) -> None:
        """Book a closed trade's realized P&L.  Call exactly once per trade."""
        self.reset_daily_stats()
        state = self.state
        state.daily_pnl += pnl
        state.daily_trade_count += 1
        state.total_pnl += pnl
        state.total_trade_count += 1
        if pnl > 0:
            state.daily_win_count += 1
            state.win_count += 1
        elif pnl < 0:
            state.daily_loss_count += 1
            state.loss_count += 1
        self.persist()
        logger.info("[TRADE] Trade recorded: P&L %.2f | daily %.2f | total %.2f",
                    pnl, state.daily_pnl, state.total_pnl)

    @property
    def win_rate(self) -> float:
        total = self.state.total_trade_count
        return (self.state.win_count / total) * 100 if total else 0.0

    def get_portfolio_summary(self) -> PortfolioSummary:
        """Fresh view of the account; syncs the balance and recomputes heat."""
        self.reset_daily_stats()
        self.sync_balance()
        open_trades = self.client.get_open_trades()
        heat = self.calculate_portfolio_heat(open_trades)
        unrealized = sum(trade.unrealized_pl for trade in open_trades)
        state = self.state
        initial = state.initial_balance
        return PortfolioSummary(
            balance=state.current_balance,
            initial_balance=initial,
            total_pnl=state.total_pnl,
            total_pnl_pct=((state.current_balance - initial) / initial) * 100 if initial else 0.0,
            daily_pnl=state.daily_pnl,
            daily_trades=state.daily_trade_count,
            portfolio_heat=heat,
            open_positions=len(open_trades),
            unrealized_pl=unrealized,
            portfolio_value=state.current_balance + unrealized,
            winning_trades=state.win_count,
            losing_trades=state.loss_count,
            total_trades=state.total_trade_count,
            win_rate=self.win_rate,
        )
