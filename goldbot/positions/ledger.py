"""
Position ledger.

In-memory map of `TrackedPosition` keyed by broker trade id, mirrored
to a JSON file.  Every mutation rewrites the whole file before the call
returns, so after a crash at most the in-flight operation is lost.
The file layout is::

    {"positions": {"<trade_id>": {...}}, "saved_at": "<ISO timestamp>"}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..utils.persistence import load_state, save_state
from ..utils.timeutils import to_iso, utc_now
from .models import TrackedPosition


logger = logging.getLogger(__name__)


class PositionLedger:
    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._positions: Dict[str, TrackedPosition] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, trade_id: object) -> bool:
        return str(trade_id) in self._positions

    def create(self, trade_id: str, **attrs) -> TrackedPosition:
        trade_id = str(trade_id)
        if trade_id in self._positions:
            logger.warning("Trade %s already tracked - overwriting ledger entry", trade_id)
        position = TrackedPosition(trade_id=trade_id, **attrs)
        self._positions[trade_id] = position
        self.persist()
        logger.info("Tracking position %s: %s %d %s @ %.2f",
                    trade_id, position.side.value, position.size, position.instrument, position.entry_price)
        return position

    def get(self, trade_id: str) -> Optional[TrackedPosition]:
        return self._positions.get(str(trade_id))

    def update(self, trade_id: str, mutator: Callable[[TrackedPosition], None]) -> TrackedPosition:
        """Apply `mutator` to the entry in place and persist.

        Raises KeyError when the trade is not tracked.
        """
        position = self._positions[str(trade_id)]
        mutator(position)
        self.persist()
        return position

    def remove(self, trade_id: str) -> Optional[TrackedPosition]:
        position = self._positions.pop(str(trade_id), None)
        if position is not None:
            self.persist()
            logger.info("Stopped tracking position %s", trade_id)
        return position

    def all(self) -> List[TrackedPosition]:
        return list(self._positions.values())

    def ids(self) -> List[str]:
        return list(self._positions)

    def persist(self) -> None:
        if not self.path:
            return
        save_state(self.path, {
            "positions": {tid: pos.to_dict() for tid, pos in self._positions.items()},
            "saved_at": to_iso(utc_now()),
        })
        logger.debug("Saved %d position(s) to %s", len(self._positions), self.path)

    def restore(self) -> int:
        """Reload the ledger from disk, replacing the in-memory contents."""
        self._positions = {}
        if not self.path or not Path(self.path).exists():
            logger.info("No saved positions found")
            return 0
        data = load_state(self.path) or {}
        for trade_id, raw in (data.get("positions") or {}).items():
            self._positions[str(trade_id)] = TrackedPosition.from_dict(raw)
        logger.info("Restored %d position(s) from %s (saved %s)",
                    len(self._positions), self.path, data.get("saved_at", "unknown"))
        return len(self._positions)
