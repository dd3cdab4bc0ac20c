"""In-memory maps whose entries expire a fixed time after their last write.

Both stores sit on a ``cachetools.TLRUCache`` whose time-to-use is the absolute
expiry stamped on each entry, so a per-entry TTL is just a different stamp.
Expiry is lazy (reads drop expired entries first) and periodic: a background
sweep calls ``expire()`` even if nobody reads. The sweep is an asyncio task
started with ``start()`` inside a running loop; it is a plain task, so it never
keeps the process alive and is cancelled by ``close()``.

Both stores are instance-local. A restart loses everything they hold.
"""

import asyncio
import math
import time
from typing import Any, Callable, Generic, Hashable, Iterator, List, NamedTuple, Optional, Tuple, TypeVar

from cachetools import TLRUCache

from supportbot.logging_config import get_logger

logger = get_logger("ttl_store")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0


class _Entry(NamedTuple):
    value: Any
    expires_at: float


def _time_to_use(key, entry: _Entry, now: float) -> float:
    return entry.expires_at


class _ExpiringBase(Generic[K]):
    def __init__(
        self,
        ttl_seconds: float,
        cleanup_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        # The sweep never runs less often than once per TTL.
        self.cleanup_interval_seconds = min(ttl_seconds, cleanup_interval_seconds or DEFAULT_CLEANUP_INTERVAL_SECONDS)
        self._clock = clock
        self._cache: TLRUCache = TLRUCache(maxsize=math.inf, ttu=_time_to_use, timer=clock)
        self._sweep_task: Optional[asyncio.Task] = None

    def _put(self, key: K, value: Any, ttl_seconds: float) -> None:
        self._cache[key] = _Entry(value, self._clock() + ttl_seconds)

    def _live_entry(self, key: K) -> Optional[_Entry]:
        self._cache.expire()
        return self._cache.get(key)

    def sweep(self) -> int:
        """Remove every expired entry now. Returns the number removed."""
        return len(self._cache.expire())

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval_seconds)
                removed = self.sweep()
                if removed:
                    logger.debug(f"Swept {removed} expired entries")
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("TTL sweep failed", extra={"context": {"error": str(exc)}})

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        """Stop the periodic sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def has(self, key: K) -> bool:
        return self._live_entry(key) is not None

    __contains__ = has

    def delete(self, key: K) -> bool:
        self._cache.expire()
        try:
            return self._cache.pop(key, None) is not None
        except KeyError:
            # Expired between the membership check and the removal.
            return False

    def clear(self) -> None:
        self._cache.clear()

    def size(self) -> int:
        self.sweep()
        return len(self._cache)

    def expires_at(self, key: K) -> Optional[float]:
        entry = self._live_entry(key)
        return entry.expires_at if entry else None

    def stats(self) -> dict:
        return {"size": self.size(), "ttl_seconds": self.ttl_seconds}


class ExpiringStore(_ExpiringBase[K], Generic[K, V]):
    """Single value per key with a per-entry TTL."""

    def set(self, key: K, value: V, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            self.delete(key)
            return
        self._put(key, value, ttl)

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        entry = self._live_entry(key)
        return entry.value if entry else default

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return the live value and remove the key in one step."""
        entry = self._live_entry(key)
        if entry is None:
            return default
        self.delete(key)
        return entry.value

    def refresh(self, key: K) -> bool:
        """Re-arm the default TTL of a live key without changing its value."""
        entry = self._live_entry(key)
        if entry is None:
            return False
        self._put(key, entry.value, self.ttl_seconds)
        return True

    def items(self) -> Iterator[Tuple[K, V]]:
        self._cache.expire()
        for key in list(self._cache):
            entry = self._cache.get(key)
            if entry is not None:
                yield key, entry.value

    def keys(self) -> Iterator[K]:
        for key, _ in self.items():
            yield key

    def values(self) -> Iterator[V]:
        for _, value in self.items():
            yield value


class ExpiringListStore(_ExpiringBase[K], Generic[K, V]):
    """Bounded ordered sequence per key; every write re-arms the TTL, reads never do."""

    def __init__(
        self,
        ttl_seconds: float,
        max_items: int,
        cleanup_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        super().__init__(ttl_seconds, cleanup_interval_seconds, clock)
        self.max_items = max_items

    def push(self, key: K, value: V) -> None:
        entry = self._live_entry(key)
        values = list(entry.value) if entry else []
        values.append(value)
        self._put(key, tuple(values[-self.max_items :]), self.ttl_seconds)

    def set(self, key: K, values: List[V]) -> None:
        self._put(key, tuple(list(values)[-self.max_items :]), self.ttl_seconds)

    def get(self, key: K) -> Optional[List[V]]:
        entry = self._live_entry(key)
        return list(entry.value) if entry else None

    def stats(self) -> dict:
        return {**super().stats(), "max_items": self.max_items}
