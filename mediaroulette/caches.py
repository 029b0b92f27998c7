"""
Path-keyed metadata caches filled by scans.
"""
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar, Union

from mediaroulette.logging_config import get_logger
from mediaroulette.models import path_key
from mediaroulette.persistence import atomic_write_json, load_json

logger = get_logger('caches')

T = TypeVar('T')


@dataclass(frozen=True)
class LoudnessInfo:
    """Loudness measured by volumedetect.

    Both values are None for a file that has no audio stream.
    """
    mean_volume_db: Optional[float]
    peak_db: Optional[float]

    @classmethod
    def no_audio(cls) -> "LoudnessInfo":
        return cls(mean_volume_db=None, peak_db=None)

    @property
    def has_audio(self) -> bool:
        return self.mean_volume_db is not None

    def to_dict(self) -> Dict[str, Any]:
        if not self.has_audio:
            return {"hasAudio": False}
        return {"meanVolumeDb": self.mean_volume_db, "peakDb": self.peak_db}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoudnessInfo":
        if not isinstance(data, dict):
            raise TypeError(f"expected an object, got {type(data).__name__}")
        if data.get("hasAudio") is False:
            return cls.no_audio()
        return cls(
            mean_volume_db=float(data["meanVolumeDb"]),
            peak_db=float(data["peakDb"]),
        )


class PathCache(Generic[T]):
    """Thread-safe map from file path to a scanned value.

    Lookups ignore case; the path as first stored is what gets persisted.
    Callers never see the underlying dictionary.
    """

    name = "cache"

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._entries: Dict[str, Tuple[str, T]] = {}
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()

    def _encode(self, value: T) -> Any:
        return value

    def _decode(self, raw: Any) -> T:
        return raw

    def get(self, file_path: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(path_key(file_path))
            return entry[1] if entry else None

    def set(self, file_path: str, value: T) -> None:
        key = path_key(file_path)
        with self._lock:
            existing = self._entries.get(key)
            self._entries[key] = (existing[0] if existing else file_path, value)

    def remove(self, file_path: str) -> bool:
        with self._lock:
            return self._entries.pop(path_key(file_path), None) is not None

    def contains(self, file_path: str) -> bool:
        with self._lock:
            return path_key(file_path) in self._entries

    def __contains__(self, file_path: str) -> bool:
        return self.contains(file_path)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def partition(self, paths: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Split paths into already cached and still to scan.

        The check runs against one consistent view of the cache.
        """
        cached, to_scan = [], []
        with self._lock:
            keys = set(self._entries)
        for p in paths:
            (cached if path_key(p) in keys else to_scan).append(p)
        return cached, to_scan

    def snapshot(self) -> Dict[str, T]:
        """Copy of the entries keyed by their stored path."""
        with self._lock:
            return {stored: value for stored, value in self._entries.values()}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def load(self) -> int:
        """Load entries from disk. A missing or corrupt document loads empty.

        Returns:
            Number of entries loaded
        """
        entries: Dict[str, Tuple[str, T]] = {}
        data = load_json(self.path) if self.path else None
        if isinstance(data, dict):
            for stored, raw in data.items():
                try:
                    entries[path_key(stored)] = (stored, self._decode(raw))
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug(f"Dropping bad {self.name} entry for {stored}: {e}")
        elif data is not None:
            logger.warning(f"{self.name} document has unexpected shape, starting empty")

        with self._lock:
            self._entries = entries
        logger.info(f"Loaded {len(entries)} {self.name} entries")
        return len(entries)

    def save(self) -> None:
        """Persist the cache atomically.

        Raises:
            PersistenceError: If the write fails
        """
        if self.path is None:
            return
        with self._save_lock:
            with self._lock:
                document = {stored: self._encode(v) for stored, v in self._entries.values()}
            atomic_write_json(self.path, document)
            logger.debug(f"Saved {len(document)} {self.name} entries")


class DurationCache(PathCache[int]):
    """Durations in whole seconds."""

    name = "duration"

    def _decode(self, raw: Any) -> int:
        if isinstance(raw, bool):
            raise TypeError("boolean is not a duration")
        seconds = int(raw)
        if seconds <= 0:
            raise ValueError(f"non-positive duration {seconds}")
        return seconds


class LoudnessCache(PathCache[LoudnessInfo]):
    """Mean and peak volume per file, or a no-audio marker."""

    name = "loudness"

    def _encode(self, value: LoudnessInfo) -> Dict[str, Any]:
        return value.to_dict()

    def _decode(self, raw: Any) -> LoudnessInfo:
        return LoudnessInfo.from_dict(raw)
