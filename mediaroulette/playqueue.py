"""
Randomized draw order over the eligible set.
"""
import random
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from mediaroulette.logging_config import get_logger
from mediaroulette.models import Item, path_key

logger = get_logger('playqueue')

# Process-wide random source, replaceable in tests
_rng = random.Random()

PoolProvider = Callable[[], List[Item]]


class PlayQueue:
    """Shuffled queue that serves every eligible item once before repeating.

    With no-repeat mode off the queue stays empty and each draw samples
    the pool with replacement.
    """

    def __init__(self, pool_provider: PoolProvider, no_repeat: bool = True, rng: Optional[random.Random] = None):
        self._pool_provider = pool_provider
        self._rng = rng or _rng
        self._queue: Deque[Item] = deque()
        self._no_repeat = no_repeat
        self._dirty = True
        self._lock = threading.Lock()

    @property
    def no_repeat(self) -> bool:
        return self._no_repeat

    def set_no_repeat(self, enabled: bool) -> None:
        with self._lock:
            if enabled == self._no_repeat:
                return
            self._no_repeat = enabled
            self._queue.clear()
            self._dirty = True
        logger.info(f"No-repeat mode {'enabled' if enabled else 'disabled'}")

    def invalidate(self) -> None:
        """Mark the queue stale so the next draw rebuilds it."""
        with self._lock:
            self._dirty = True

    def rebuild_if_needed(self) -> None:
        """Recompute the pool and reshuffle, replacing any pending order."""
        with self._lock:
            self._rebuild()

    def _rebuild(self) -> None:
        if not self._no_repeat:
            self._queue.clear()
            self._dirty = False
            return
        pool = list(self._pool_provider())
        self._rng.shuffle(pool)
        self._queue = deque(pool)
        self._dirty = False
        logger.debug(f"Queue rebuilt with {len(pool)} items")

    def draw(self) -> Optional[Item]:
        """Next item to play, or None if nothing is eligible."""
        with self._lock:
            if not self._no_repeat:
                pool = self._pool_provider()
                self._dirty = False
                return self._rng.choice(pool) if pool else None

            if self._dirty or not self._queue:
                self._rebuild()
            if not self._queue:
                return None
            return self._queue.popleft()

    def remove(self, path: str) -> bool:
        """Drop a pending item right away. Returns True if it was queued."""
        key = path_key(path)
        with self._lock:
            before = len(self._queue)
            self._queue = deque(i for i in self._queue if i.key != key)
            removed = len(self._queue) != before
        if removed:
            logger.debug(f"Removed {path} from queue")
        return removed

    def pending(self) -> List[Item]:
        with self._lock:
            return list(self._queue)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
