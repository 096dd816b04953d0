"""
Triple Confirmation trend follower.

Entry rules
-----------
1. Trend filter: price, EMA fast and EMA slow aligned.
2. Momentum: RSI inside the band configured for the trend direction.
3. Entry trigger: a reversal candle or pullback at a support/resistance
   level or at the fast EMA.

Setups below the configured minimum EMA separation or confidence are
skipped to stay out of choppy markets.
"""

from __future__ import annotations

import logging
from typing import Optional
import pandas as pd

from ..analysis.technical import (
    BEARISH,
    BEARISH_ENGULFING,
    BULLISH,
    BULLISH_ENGULFING,
    HAMMER,
    NEUTRAL,
    SHOOTING_STAR,
    MarketSnapshot,
)
from .base import EntryLevels, Side, Signal, Strategy, build_entry_levels


logger = logging.getLogger(__name__)

EMA_PROXIMITY = 0.002


class TripleConfirmationStrategy(Strategy):
    name = "Triple Confirmation Trend Follower"
    key = "triple_confirmation"

    def evaluate(self, snapshot: MarketSnapshot, bars: Optional[pd.DataFrame] = None) -> Signal:
        cfg = self.config.strategy
        if snapshot.trend == NEUTRAL:
            return Signal.none("No clear trend - EMAs tangled")

        separation = abs(snapshot.ema_fast - snapshot.ema_slow)
        min_separation = self.config.instrument.pips_to_price(cfg.min_ema_separation_pips)
        if separation < min_separation:
            return Signal.none(
                f"EMA separation {separation:.2f} below minimum {min_separation:.2f} - market too choppy"
            )

        if not snapshot.rsi_valid:
            return Signal.none(f"RSI {snapshot.rsi:.2f} outside valid range for {snapshot.trend} trend")

        trigger = self.identify_entry_trigger(snapshot)
        if trigger is None:
            return Signal.none("No entry trigger - waiting for pattern at key level")

        confidence = self.calculate_confidence(snapshot)
        if confidence < cfg.min_confidence:
            return Signal.none(f"Confidence {confidence:.0f}% below minimum {cfg.min_confidence:.0f}%")

        side = Side.LONG if snapshot.trend == BULLISH else Side.SHORT
        logger.info("Triple confirmation met: %s %s (RSI %.2f, pattern %s)",
                    side.value, trigger, snapshot.rsi, snapshot.pattern)
        return Signal(side=side, reason=trigger, confidence=confidence,
                      extras={"trend": snapshot.trend, "pattern": snapshot.pattern})

    def identify_entry_trigger(self, snapshot: MarketSnapshot) -> Optional[str]:
        ema_label = f"EMA{self.config.strategy.ema_fast}"
        near_ema = abs(snapshot.price - snapshot.ema_fast) / snapshot.price < EMA_PROXIMITY

        if snapshot.trend == BULLISH:
            reversal = snapshot.pattern in (BULLISH_ENGULFING, HAMMER)
            if snapshot.at_support and reversal:
                return f"{snapshot.pattern} at support ({snapshot.nearest_support:.2f})"
            if near_ema and reversal:
                return f"{snapshot.pattern} at {ema_label} bounce"
            if snapshot.at_support:
                return f"Pullback to support ({snapshot.nearest_support:.2f})"
            if near_ema:
                return f"Pullback to {ema_label}"

        if snapshot.trend == BEARISH:
            reversal = snapshot.pattern in (BEARISH_ENGULFING, SHOOTING_STAR)
            if snapshot.at_resistance and reversal:
                return f"{snapshot.pattern} at resistance ({snapshot.nearest_resistance:.2f})"
            if near_ema and reversal:
                return f"{snapshot.pattern} at {ema_label} rejection"
            if snapshot.at_resistance:
                return f"Bounce to resistance ({snapshot.nearest_resistance:.2f})"
            if near_ema:
                return f"Bounce to {ema_label}"

        return None

    def calculate_confidence(self, snapshot: MarketSnapshot) -> float:
        """Score 0-100; 40 for the three confirmations plus bonuses."""
        score = 40.0
        if snapshot.pattern in (BULLISH_ENGULFING, BEARISH_ENGULFING):
            score += 20
        elif snapshot.pattern:
            score += 15
        if snapshot.at_support or snapshot.at_resistance:
            score += 15
        if snapshot.trend == BULLISH and 50 <= snapshot.rsi <= 65:
            score += 10
        elif snapshot.trend == BEARISH and 35 <= snapshot.rsi <= 50:
            score += 10
        spread = abs(snapshot.ema_fast - snapshot.ema_slow) / snapshot.price
        if spread > 0.01:
            score += 10
        elif spread > 0.005:
            score += 5
        return min(score, 100.0)

    def levels(self, snapshot: MarketSnapshot, side: Side) -> EntryLevels:
        """Stop beyond the nearest level when there is one, else a fixed distance."""
        instrument = self.config.instrument
        entry = snapshot.price
        stop_distance = instrument.pips_to_price(self.config.strategy.stop_loss_pips)

        if side is Side.LONG and snapshot.nearest_support is not None and snapshot.nearest_support < entry:
            stop = snapshot.nearest_support - stop_distance
        elif side is Side.SHORT and snapshot.nearest_resistance is not None and snapshot.nearest_resistance > entry:
            stop = snapshot.nearest_resistance + stop_distance
        else:
            stop = entry - side.sign * stop_distance

        levels = build_entry_levels(entry, stop, side, self.config.exits.take_profit1_rr,
                                    self.config.exits.take_profit2_rr, instrument.pip_size)
        logger.info("Entry levels: entry %.2f stop %.2f TP1 %.2f TP2 %.2f (%.1f pips risk)",
                    levels.entry_price, levels.stop_loss, levels.take_profit1,
                    levels.take_profit2, levels.risk_pips)
        return levels

    def describe(self) -> str:
        cfg = self.config.strategy
        exits = self.config.exits
        return (
            f"{self.name}\n"
            f"  Confirmation #1: Trend filter (EMA {cfg.ema_fast}/{cfg.ema_slow})\n"
            f"  Confirmation #2: Momentum (RSI {cfg.rsi_period})\n"
            f"  Confirmation #3: Entry trigger (pattern + level)\n"
            f"  Risk/Reward: {exits.take_profit1_rr}R / {exits.take_profit2_rr}R\n"
            f"  Stop loss: {cfg.stop_loss_pips:.0f} pips"
        )
