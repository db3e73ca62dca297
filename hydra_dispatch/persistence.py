"""
Queue snapshot and state persistence.

Contains:
- QueueSnapshot: pending and retry items at a point in time
- QueueState: loop counters and flags
- QueueSnapshotStore: atomic JSON save/load of both documents

Items in flight when the process dies are not in any snapshot; they are
lost rather than replayed.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .types import QueueItem

logger = logging.getLogger(__name__)


@dataclass
class QueueSnapshot:
    """Restorable queue contents."""

    pending_items: list[QueueItem] = field(default_factory=list)
    retry_items: list[QueueItem] = field(default_factory=list)
    saved_at: float = field(default_factory=time.time)
    version: str = "1.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_items": [item.to_dict() for item in self.pending_items],
            "retry_items": [item.to_dict() for item in self.retry_items],
            "saved_at": self.saved_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueSnapshot:
        return cls(
            pending_items=[QueueItem.from_dict(d) for d in data.get("pending_items", [])],
            retry_items=[QueueItem.from_dict(d) for d in data.get("retry_items", [])],
            saved_at=data.get("saved_at", time.time()),
            version=data.get("version", "1.0"),
        )


@dataclass
class QueueState:
    """Loop counters and flags."""

    is_running: bool = False
    is_paused: bool = False
    processed_count: int = 0
    failed_count: int = 0
    retry_count: int = 0
    start_time: float | None = None
    last_processed: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueState:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to a temp file in the same directory, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: expected a JSON object")
        return None
    return data


class QueueSnapshotStore:
    """Reads and writes the queue snapshot and state documents."""

    def __init__(self, snapshot_path: str | Path, state_path: str | Path):
        self.snapshot_path = Path(snapshot_path).expanduser()
        self.state_path = Path(state_path).expanduser()

    def save_snapshot(self, snapshot: QueueSnapshot) -> Path:
        atomic_write_json(self.snapshot_path, snapshot.to_dict())
        logger.debug(
            f"Saved queue snapshot ({len(snapshot.pending_items)} pending, "
            f"{len(snapshot.retry_items)} retry) to {self.snapshot_path}"
        )
        return self.snapshot_path

    def load_snapshot(self) -> QueueSnapshot | None:
        """Last snapshot, or None if missing or unreadable."""
        data = _read_json(self.snapshot_path)
        if data is None:
            return None
        try:
            return QueueSnapshot.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed snapshot {self.snapshot_path}: {e}")
            return None

    def save_state(self, state: QueueState) -> Path:
        atomic_write_json(self.state_path, state.to_dict())
        return self.state_path

    def load_state(self) -> QueueState | None:
        data = _read_json(self.state_path)
        if data is None:
            return None
        try:
            return QueueState.from_dict(data)
        except TypeError as e:
            logger.warning(f"Ignoring malformed queue state {self.state_path}: {e}")
            return None

    def clear(self) -> None:
        for path in (self.snapshot_path, self.state_path):
            path.unlink(missing_ok=True)


__all__ = ["QueueSnapshot", "QueueSnapshotStore", "QueueState", "atomic_write_json"]
