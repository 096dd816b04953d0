"""
Technical analysis.

Turns a DataFrame of completed bars into a `MarketSnapshot`: latest
EMA fast/slow and RSI values, trend classification, the last
candlestick pattern and nearby swing support/resistance levels.  Every
function here is pure; the snapshot is recomputed on each scan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional
import pandas as pd

from ..config.schema import StrategyConfig


logger = logging.getLogger(__name__)

BULLISH = "BULLISH"
BEARISH = "BEARISH"
NEUTRAL = "NEUTRAL"

BULLISH_ENGULFING = "BULLISH_ENGULFING"
BEARISH_ENGULFING = "BEARISH_ENGULFING"
HAMMER = "HAMMER"
SHOOTING_STAR = "SHOOTING_STAR"


@dataclass
class MarketSnapshot:
    """Indicator values and derived market structure for the latest bar."""
    price: float
    ema_fast: float
    ema_slow: float
    rsi: float
    time: pd.Timestamp
    trend: str
    pattern: Optional[str]
    rsi_valid: bool
    support_levels: List[float] = field(default_factory=list)
    resistance_levels: List[float] = field(default_factory=list)
    nearest_support: Optional[float] = None
    nearest_resistance: Optional[float] = None
    at_support: bool = False
    at_resistance: bool = False


def ema(close: pd.Series, period: int) -> pd.Series:
    return close.ewm(span=period, adjust=False, min_periods=period).mean()


def sma(close: pd.Series, period: int) -> pd.Series:
    return close.rolling(window=period, min_periods=period).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder's RSI."""
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss
    out = 100.0 - 100.0 / (1.0 + rs)
    # No losses in the window means maximum strength.
    return out.where(avg_loss != 0, 100.0)


def identify_trend(price: float, ema_fast: float, ema_slow: float) -> str:
    if price > ema_fast > ema_slow:
        return BULLISH
    if price < ema_fast < ema_slow:
        return BEARISH
    return NEUTRAL


def identify_candlestick_pattern(bars: pd.DataFrame) -> Optional[str]:
    """Classify the last bar against the one before it."""
    if len(bars) < 2:
        return None
    prev = bars.iloc[-2]
    cur = bars.iloc[-1]

    if (prev["close"] < prev["open"] and cur["close"] > cur["open"]
            and cur["open"] < prev["close"] and cur["close"] > prev["open"]):
        return BULLISH_ENGULFING
    if (prev["close"] > prev["open"] and cur["close"] < cur["open"]
            and cur["open"] > prev["close"] and cur["close"] < prev["open"]):
        return BEARISH_ENGULFING

    body = abs(cur["close"] - cur["open"])
    rng = cur["high"] - cur["low"]
    lower_wick = min(cur["open"], cur["close"]) - cur["low"]
    upper_wick = cur["high"] - max(cur["open"], cur["close"])
    if rng <= 0 or body >= rng * 0.3:
        return None
    if lower_wick > body * 2 and upper_wick < body * 0.5:
        return HAMMER
    if upper_wick > body * 2 and lower_wick < body * 0.5:
        return SHOOTING_STAR
    return None


def _cluster_levels(levels: List[float], threshold: float = 0.002) -> List[float]:
    """Average together levels within `threshold` (relative) of each other."""
    if not levels:
        return []
    ordered = sorted(levels)
    clusters: List[float] = []
    current = [ordered[0]]
    for level in ordered[1:]:
        if abs(level - current[0]) / current[0] <= threshold:
            current.append(level)
        else:
            clusters.append(sum(current) / len(current))
            current = [level]
    clusters.append(sum(current) / len(current))
    return clusters


def identify_support_resistance(bars: pd.DataFrame, lookback: int = 50, keep: int = 3):
    """Swing highs/lows (higher/lower than two bars either side), clustered.

    Returns
    -------
    (support, resistance) : tuple of lists
        At most `keep` levels each, highest first.
    """
    recent = bars.tail(lookback)
    highs = recent["high"].tolist()
    lows = recent["low"].tolist()
    swing_highs: List[float] = []
    swing_lows: List[float] = []
    for i in range(2, len(recent) - 2):
        neighbours = (i - 2, i - 1, i + 1, i + 2)
        if all(highs[i] > highs[j] for j in neighbours):
            swing_highs.append(highs[i])
        if all(lows[i] < lows[j] for j in neighbours):
            swing_lows.append(lows[i])

    resistance = sorted(_cluster_levels(swing_highs), reverse=True)[:keep]
    support = sorted(_cluster_levels(swing_lows), reverse=True)[:keep]
    return support, resistance


def is_near_level(price: float, level: float, threshold: float = 0.002) -> bool:
    return abs(price - level) / level <= threshold


class TechnicalAnalyzer:
    """Compute a `MarketSnapshot` from completed bars."""

    def __init__(self, config: StrategyConfig) -> None:
        self.config = config

    def is_rsi_valid(self, value: float, trend: str) -> bool:
        cfg = self.config
        if trend == BULLISH:
            return cfg.rsi_bullish_min <= value <= cfg.rsi_bullish_max
        if trend == BEARISH:
            return cfg.rsi_bearish_min <= value <= cfg.rsi_bearish_max
        return False

    def analyze(self, bars: pd.DataFrame) -> MarketSnapshot:
        close = bars["close"].astype(float)
        ema_fast = float(ema(close, self.config.ema_fast).iloc[-1])
        ema_slow = float(ema(close, self.config.ema_slow).iloc[-1])
        rsi_value = float(rsi(close, self.config.rsi_period).iloc[-1])
        price = float(close.iloc[-1])

        trend = identify_trend(price, ema_fast, ema_slow)
        support, resistance = identify_support_resistance(bars)
        below = [level for level in support if level < price]
        above = [level for level in resistance if level > price]
        nearest_support = max(below) if below else None
        nearest_resistance = min(above) if above else None

        return MarketSnapshot(
            price=price,
            ema_fast=ema_fast,
            ema_slow=ema_slow,
            rsi=rsi_value,
            time=bars.index[-1],
            trend=trend,
            pattern=identify_candlestick_pattern(bars),
            rsi_valid=self.is_rsi_valid(rsi_value, trend),
            support_levels=support,
            resistance_levels=resistance,
            nearest_support=nearest_support,
            nearest_resistance=nearest_resistance,
            at_support=nearest_support is not None and is_near_level(price, nearest_support),
            at_resistance=nearest_resistance is not None and is_near_level(price, nearest_resistance),
        )

    @staticmethod
    def log_snapshot(snapshot: MarketSnapshot) -> None:
        logger.info(
            "Price %.2f | EMA fast %.2f | EMA slow %.2f | RSI %.2f | trend %s | pattern %s | RSI valid %s",
            snapshot.price, snapshot.ema_fast, snapshot.ema_slow, snapshot.rsi,
            snapshot.trend, snapshot.pattern or "None", snapshot.rsi_valid,
        )
        if snapshot.nearest_support is not None:
            logger.info("Support %.2f%s", snapshot.nearest_support, " (at level)" if snapshot.at_support else "")
        if snapshot.nearest_resistance is not None:
            logger.info("Resistance %.2f%s", snapshot.nearest_resistance,
                        " (at level)" if snapshot.at_resistance else "")
