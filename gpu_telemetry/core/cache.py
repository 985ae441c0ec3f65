"""Time-based caches used to keep external tool invocations rare."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Generic, Hashable, TypeVar

from .config import CACHES, CacheDurations

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CachedValue(Generic[T]):
    value: T
    timestamp: float
    duration: float

    def is_fresh(self, now: float) -> bool:
        return (now - self.timestamp) < self.duration


class TTLCache(Generic[T]):
    """Keyed cache whose entries expire ``duration`` seconds after being stored.

    Lookups read the entry table without taking the lock; refreshes take the
    lock and re-check freshness before calling the producer, so concurrent
    callers that all observe a stale entry trigger a single refresh.
    """

    def __init__(self, duration: float, *, clock: Callable[[], float] = time.monotonic, name: str = "") -> None:
        self.duration = duration
        self.name = name
        self._clock = clock
        self._entries: dict[Hashable, CachedValue[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable = None) -> tuple[T | None, bool]:
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.value, True
        return None, False

    def peek(self, key: Hashable = None) -> T | None:
        """Return the stored value regardless of its age."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def put(self, key: Hashable, value: T) -> None:
        with self._lock:
            self._entries[key] = CachedValue(value, self._clock(), self.duration)

    def refresh(self, key: Hashable, producer: Callable[[], T]) -> T:
        value, hit = self.get(key)
        if hit:
            return value  # type: ignore[return-value]

        with self._lock:
            previous = self._entries.get(key)
            now = self._clock()
            if previous is not None and previous.is_fresh(now):
                return previous.value
            try:
                value = producer()
            except Exception as exc:
                if previous is None:
                    raise
                logger.warning(
                    "Refresh of cache '%s' failed, keeping previous value: %s", self.name or key, exc
                )
                return previous.value
            self._entries[key] = CachedValue(value, self._clock(), self.duration)
            return value

    def invalidate(self, key: Hashable = None) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CollectorCaches:
    """The set of caches owned by one collector instance."""

    def __init__(self, durations: CacheDurations = CACHES, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.tool_paths: TTLCache[Any] = TTLCache(durations.tool_path, clock=clock, name="tool_paths")
        self.video_controllers: TTLCache[Any] = TTLCache(
            durations.video_controllers, clock=clock, name="video_controllers"
        )
        self.gpu_info: TTLCache[Any] = TTLCache(durations.gpu_info, clock=clock, name="gpu_info")
        self.gpu_processes: TTLCache[Any] = TTLCache(durations.gpu_processes, clock=clock, name="gpu_processes")
        self.battery: TTLCache[Any] = TTLCache(durations.battery, clock=clock, name="battery")
        self.process_names: TTLCache[Any] = TTLCache(durations.process_names, clock=clock, name="process_names")

    def all(self) -> dict[str, TTLCache[Any]]:
        return {
            "tool_paths": self.tool_paths,
            "video_controllers": self.video_controllers,
            "gpu_info": self.gpu_info,
            "gpu_processes": self.gpu_processes,
            "battery": self.battery,
            "process_names": self.process_names,
        }

    def clear_all(self) -> None:
        for cache in self.all().values():
            cache.clear()
