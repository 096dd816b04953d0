"""
Simple moving average crossover.

LONG when the fast SMA crosses above the slow SMA between two scans,
SHORT when it crosses below.  Stops sit a fixed distance from entry and
targets use the same reward multiples as every other strategy.
"""

from __future__ import annotations

import logging
from typing import Optional
import pandas as pd

from ..analysis.technical import MarketSnapshot, sma
from .base import EntryLevels, Side, Signal, Strategy


logger = logging.getLogger(__name__)


class MACrossoverStrategy(Strategy):
    key = "ma_crossover"

    def __init__(self, config) -> None:
        super().__init__(config)
        cfg = config.strategy
        self.name = f"MA Crossover ({cfg.sma_fast}/{cfg.sma_slow})"
        self.previous_fast: Optional[float] = None
        self.previous_slow: Optional[float] = None

    def evaluate(self, snapshot: MarketSnapshot, bars: Optional[pd.DataFrame] = None) -> Signal:
        cfg = self.config.strategy
        if bars is None or len(bars) < cfg.sma_slow:
            return Signal.none("Insufficient candle data for SMA calculation")

        close = bars["close"].astype(float)
        fast = float(sma(close, cfg.sma_fast).iloc[-1])
        slow = float(sma(close, cfg.sma_slow).iloc[-1])

        if self.previous_fast is None or self.previous_slow is None:
            self.previous_fast, self.previous_slow = fast, slow
            return Signal.none("Initializing - need previous SMA values to detect crosses")

        side: Optional[Side] = None
        confidence = 50.0
        if self.previous_fast <= self.previous_slow and fast > slow:
            side = Side.LONG
            reason = f"Bullish crossover: SMA{cfg.sma_fast} ({fast:.2f}) crossed above SMA{cfg.sma_slow} ({slow:.2f})"
            if snapshot.price > slow:
                confidence = 65.0
            if fast - slow > 5:
                confidence = 75.0
        elif self.previous_fast >= self.previous_slow and fast < slow:
            side = Side.SHORT
            reason = f"Bearish crossover: SMA{cfg.sma_fast} ({fast:.2f}) crossed below SMA{cfg.sma_slow} ({slow:.2f})"
            if snapshot.price < slow:
                confidence = 65.0
            if slow - fast > 5:
                confidence = 75.0
        else:
            reason = f"No crossover detected (SMA{cfg.sma_fast} {fast:.2f}, SMA{cfg.sma_slow} {slow:.2f})"

        self.previous_fast, self.previous_slow = fast, slow

        if side is None:
            return Signal.none(reason)
        logger.info("MA crossover detected: %s (confidence %.0f%%)", side.value, confidence)
        return Signal(side=side, reason=reason, confidence=confidence,
                      extras={"sma_fast": fast, "sma_slow": slow})

    def levels(self, snapshot: MarketSnapshot, side: Side) -> EntryLevels:
        return self._fixed_stop_levels(snapshot.price, side)

    def describe(self) -> str:
        cfg = self.config.strategy
        return (
            f"{self.name}\n"
            f"  Entry: SMA{cfg.sma_fast} crosses SMA{cfg.sma_slow}\n"
            f"  Stop loss: {cfg.stop_loss_pips:.0f} pips"
        )
