"""
Recently played items.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from mediaroulette.logging_config import get_logger
from mediaroulette.models import parse_time
from mediaroulette.persistence import atomic_write_json, load_json

logger = get_logger('history')

DEFAULT_HISTORY_SIZE = 20


@dataclass
class HistoryEntry:
    path: str
    file_name: str
    played_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "fileName": self.file_name, "playedAt": self.played_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        path = str(data["path"])
        return cls(
            path=path,
            file_name=str(data.get("fileName") or os.path.basename(path)),
            played_at=parse_time(data.get("playedAt")) or datetime.now(timezone.utc),
        )


class PlaybackHistory:
    """Most recent plays, newest first, capped at max_entries."""

    def __init__(self, path: Optional[Union[str, Path]] = None, max_entries: int = DEFAULT_HISTORY_SIZE):
        self.path = Path(path) if path else None
        self.max_entries = max(1, max_entries)
        self._entries: List[HistoryEntry] = []

    def add(self, path: str, when: Optional[datetime] = None) -> HistoryEntry:
        entry = HistoryEntry(path=path, file_name=os.path.basename(path), played_at=when or datetime.now(timezone.utc))
        self._entries.insert(0, entry)
        del self._entries[self.max_entries:]
        return entry

    def entries(self) -> List[HistoryEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def load(self) -> int:
        entries = []
        data = load_json(self.path) if self.path else None
        if isinstance(data, list):
            for raw in data:
                try:
                    entries.append(HistoryEntry.from_dict(raw))
                except (KeyError, TypeError, AttributeError) as e:
                    logger.debug(f"Skipping bad history entry: {e}")
        self._entries = entries[:self.max_entries]
        return len(self._entries)

    def save(self) -> None:
        if self.path is not None:
            atomic_write_json(self.path, [e.to_dict() for e in self._entries])
