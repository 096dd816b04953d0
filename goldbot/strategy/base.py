"""
Strategy interface and shared signal types.

A strategy turns a `MarketSnapshot` (plus the raw completed bars when it
needs them) into a `Signal`, and proposes `EntryLevels` for a side.
The engine only talks to this interface, so a new rule-set is a new
subclass registered in `goldbot.strategy.registry`.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import pandas as pd

from ..analysis.technical import MarketSnapshot
from ..config.schema import Config


class Side(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @classmethod
    def from_units(cls, units: float) -> "Side":
        return cls.LONG if units > 0 else cls.SHORT


@dataclass
class Signal:
    """A strategy's recommendation.  ``side`` is None when there is no trade."""
    side: Optional[Side]
    reason: str
    confidence: float = 0.0
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def none(cls, reason: str) -> "Signal":
        return cls(side=None, reason=reason, confidence=0.0)

    @property
    def is_trade(self) -> bool:
        return self.side is not None


@dataclass(frozen=True)
class EntryLevels:
    """Proposed order levels; computed per signal and never persisted."""
    entry_price: float
    stop_loss: float
    take_profit1: float
    take_profit2: float
    risk_distance: float
    tp1_rr: float
    tp2_rr: float
    risk_pips: float


def build_entry_levels(entry_price: float, stop_loss: float, side: Side,
                       tp1_rr: float, tp2_rr: float, pip_size: float) -> EntryLevels:
    """Place TP1/TP2 at reward multiples of the entry-to-stop distance."""
    risk_distance = abs(entry_price - stop_loss)
    return EntryLevels(
        entry_price=entry_price,
        stop_loss=stop_loss,
        take_profit1=entry_price + side.sign * risk_distance * tp1_rr,
        take_profit2=entry_price + side.sign * risk_distance * tp2_rr,
        risk_distance=risk_distance,
        tp1_rr=tp1_rr,
        tp2_rr=tp2_rr,
        risk_pips=risk_distance / pip_size,
    )


class Strategy(ABC):
    """Common interface of every trading rule-set."""

    name: str = "strategy"
    key: str = "strategy"

    def __init__(self, config: Config) -> None:
        self.config = config

    @abstractmethod
    def evaluate(self, snapshot: MarketSnapshot, bars: Optional[pd.DataFrame] = None) -> Signal:
        """Return a `Signal`; ``signal.side`` is None when there is no setup."""

    @abstractmethod
    def levels(self, snapshot: MarketSnapshot, side: Side) -> EntryLevels:
        """Entry, stop and take-profit levels for a trade in `side`."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable rule summary."""

    def _fixed_stop_levels(self, entry_price: float, side: Side) -> EntryLevels:
        instrument = self.config.instrument
        stop_distance = instrument.pips_to_price(self.config.strategy.stop_loss_pips)
        return build_entry_levels(
            entry_price,
            entry_price - side.sign * stop_distance,
            side,
            self.config.exits.take_profit1_rr,
            self.config.exits.take_profit2_rr,
            instrument.pip_size,
        )
