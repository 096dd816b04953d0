"""
Tracked position record and its lifecycle phases.

A `TrackedPosition` is the bot's local view of one broker trade it
opened.  The broker stays authoritative for whether the trade exists;
this record carries what the broker does not know: the TP1/TP2 plan,
whether TP1 has been taken, and the trailing-stop bookkeeping.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import pandas as pd

from ..strategy.base import Side
from ..utils.timeutils import from_iso, to_iso, utc_now


class PositionPhase(str, enum.Enum):
    OPEN_FULL = "OPEN_FULL"
    # Held only for the duration of the partial-close call; never persisted.
    TP1_PARTIAL_CLOSING = "TP1_PARTIAL_CLOSING"
    OPEN_PARTIAL = "OPEN_PARTIAL"
    CLOSED = "CLOSED"

    @classmethod
    def of(cls, position: "TrackedPosition") -> "PositionPhase":
        return cls.OPEN_PARTIAL if position.tp1_hit else cls.OPEN_FULL


@dataclass
class TrackedPosition:
    """Local state of one open trade.

    Attributes
    ----------
    units : int
        Signed current units; positive for long.  Shrinks once, at TP1.
    initial_units : int
        Signed units at open.  Never changes.
    stop_loss : float
        Stop currently believed to be on the broker side.
    current_stop_loss : float
        Stop as tracked by the trailing logic; equal to `stop_loss`
        except while a modification is in flight.
    best_price_seen : float
        Most favorable price observed while trailing is active.
    """

    trade_id: str
    instrument: str
    side: Side
    strategy_name: str
    entry_price: float
    units: int
    initial_units: int
    stop_loss: float
    take_profit1: float
    take_profit2: float
    tp1_hit: bool = False  # also set with no close when the position is too small to split
    best_price_seen: Optional[float] = None
    current_stop_loss: Optional[float] = None
    trailing_active: bool = False
    open_time: pd.Timestamp = None
    reason: str = ""
    confidence: float = 0.0

    def __post_init__(self) -> None:
        self.side = Side(self.side)
        if self.best_price_seen is None:
            self.best_price_seen = self.entry_price
        if self.current_stop_loss is None:
            self.current_stop_loss = self.stop_loss
        if self.open_time is None:
            self.open_time = utc_now()

    @property
    def size(self) -> int:
        return abs(self.units)

    @property
    def phase(self) -> PositionPhase:
        return PositionPhase.of(self)

    def is_favorable(self, candidate: float, reference: float) -> bool:
        """True when `candidate` is strictly better than `reference` for this side."""
        return candidate > reference if self.side is Side.LONG else candidate < reference

    def price_reached(self, price: float, target: float) -> bool:
        return price >= target if self.side is Side.LONG else price <= target

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["open_time"] = to_iso(self.open_time)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedPosition":
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in data.items() if k in known}
        values["side"] = Side(values["side"])
        if values.get("open_time"):
            values["open_time"] = from_iso(values["open_time"])
        return cls(**values)
