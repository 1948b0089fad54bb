"""Small in-process TTL cache owned by the component that reads through it."""

import time
from collections.abc import Callable
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Key/value cache where entries go stale after ``ttl`` seconds.

    Stale entries are kept until invalidated or overwritten so that callers
    can fall back to the last known value when the source is unavailable.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}

    def get(self, key: K) -> tuple[V | None, bool]:
        """Return (value, fresh). A missing key returns (None, False)."""
        entry = self._entries.get(key)
        if entry is None:
            return None, False
        value, stored_at = entry
        return value, (self._clock() - stored_at) < self.ttl

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (value, self._clock())

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries
