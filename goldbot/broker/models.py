"""
Broker data transfer objects.

These dataclasses are the shapes the rest of the bot depends on.  The
OANDA client converts raw JSON into them so that the risk, ledger and
lifecycle code never touches wire formats.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import pandas as pd


@dataclass
class BrokerTrade:
    """An open trade as reported by the broker."""
    trade_id: str
    instrument: str
    units: int  # signed: positive long, negative short
    price: float
    unrealized_pl: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    open_time: Optional[pd.Timestamp] = None

    @property
    def is_long(self) -> bool:
        return self.units > 0


@dataclass
class Quote:
    instrument: str
    bid: float
    ask: float
    time: Optional[str] = None

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass
class AccountBalance:
    balance: float
    nav: float
    unrealized_pl: float = 0.0
    margin_used: float = 0.0
    margin_available: float = 0.0
    currency: str = "USD"


@dataclass
class OrderResult:
    """Outcome of a market order.  `success` is False on cancel/reject."""
    success: bool
    trade_id: Optional[str] = None
    order_id: Optional[str] = None
    units: int = 0
    price: Optional[float] = None
    reason: Optional[str] = None
    reject_reason: Optional[str] = None


@dataclass
class CloseResult:
    """Outcome of a (partial) trade close."""
    success: bool
    units_closed: int = 0
    price: Optional[float] = None
    realized_pl: float = 0.0
    reason: Optional[str] = None


@dataclass
class ModifyResult:
    success: bool
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class ClosedTradeDetail:
    trade_id: str
    state: str
    entry_price: float
    exit_price: Optional[float]
    realized_pl: float
    initial_units: int
    close_reason: str = "UNKNOWN"
    close_time: Optional[pd.Timestamp] = None

    @property
    def is_closed(self) -> bool:
        return self.state == "CLOSED"

    @property
    def pnl_pct(self) -> float:
        notional = self.entry_price * abs(self.initial_units)
        return (self.realized_pl / notional) * 100 if notional else 0.0
