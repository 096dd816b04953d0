"""
Market data feed.

Wraps the broker candle endpoint and hands the analysis layer a
DataFrame of completed bars only.  The bar still forming at the time of
the request is dropped so indicators never repaint.
"""

from __future__ import annotations

import logging
from typing import Optional
import pandas as pd

from ..config.schema import InstrumentConfig


logger = logging.getLogger(__name__)


class MarketDataFeed:
    """Fetch completed OHLC bars for the configured instrument."""

    def __init__(self, client, config: InstrumentConfig) -> None:
        self.client = client
        self.config = config

    def get_completed_bars(self) -> Optional[pd.DataFrame]:
        """Return completed bars, or `None` when fewer than ``min_bars`` exist.

        Broker failures propagate to the caller.
        """
        df = self.client.get_candles(self.config.symbol, self.config.timeframe, self.config.candle_count)
        if df.empty:
            logger.warning("No candles returned for %s", self.config.symbol)
            return None
        completed = df[df["complete"].astype(bool)].drop(columns=["complete"])
        if len(completed) < self.config.min_bars:
            logger.warning(
                "Insufficient candle data for %s: %d completed bars, need %d",
                self.config.symbol, len(completed), self.config.min_bars,
            )
            return None
        return completed
