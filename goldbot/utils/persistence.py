"""
Durable JSON state.

The ledger, the risk counters and the strategy journal each live in one
JSON file under the data directory.  A save goes to a temporary file in
the same directory, is fsynced and then renamed over the previous file,
so a crash mid-write leaves either the old or the new content on disk.

A file that exists but cannot be parsed is never treated as "no state":
starting with an empty ledger would orphan the trades it tracked.
`StateFileError` is raised instead and startup stops.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class StateFileError(Exception):
    """A state file exists but does not hold a JSON object."""


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Return the saved state, or None when `path` does not exist.

    Raises
    ------
    StateFileError
        If the file is unreadable as a JSON object.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    try:
        with file_path.open("r", encoding="utf-8") as fh:
            state = json.load(fh)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.error("State file %s is corrupt: %s", path, exc)
        raise StateFileError(f"{path}: {exc}") from exc
    if not isinstance(state, dict):
        raise StateFileError(f"{path}: expected a JSON object, got {type(state).__name__}")
    return state


def save_state(path: str, state: Dict[str, Any]) -> None:
    """Atomically replace `path` with `state` serialised as JSON."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
