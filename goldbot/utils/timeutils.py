"""
Time helpers.

All bookkeeping happens in UTC: trade open times, the daily risk reset
boundary and the persisted timestamps.  Timestamps are
`pandas.Timestamp` objects so they line up with the candle index and
round-trip losslessly through their ISO-8601 representation.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union
import pandas as pd


def utc_now() -> pd.Timestamp:
    """Return the current time as a timezone-aware UTC timestamp."""
    return pd.Timestamp.now(tz="UTC")


def to_utc(ts: Union[str, datetime, pd.Timestamp]) -> pd.Timestamp:
    """Convert `ts` to a UTC `pandas.Timestamp`.

    Naive values are assumed to already be in UTC.
    """
    if not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def utc_date(ts: Optional[Union[datetime, pd.Timestamp]] = None) -> date:
    """Calendar date in UTC of `ts` (defaults to now)."""
    return to_utc(ts if ts is not None else utc_now()).date()


def to_iso(ts: pd.Timestamp) -> str:
    """Serialise a timestamp so that `from_iso` restores it exactly."""
    return to_utc(ts).isoformat()


def from_iso(value: str) -> pd.Timestamp:
    return to_utc(pd.Timestamp(value))


def format_duration(seconds: float) -> str:
    """Render a duration as ``"3h 12m"``."""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}m"
