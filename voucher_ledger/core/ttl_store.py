from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLKeyedStore(Generic[K, V]):
    """Thread-safe keyed store whose entries expire after ``ttl_seconds`` without access.

    Writes sweep every expired entry at most once per TTL, so keys that never
    come back are still dropped. Instances are owned by whoever creates them
    (middleware, tests); nothing here is process-global.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[K, tuple[V, float]] = {}
        self._next_sweep = clock() + self._ttl

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def get(self, key: K) -> V | None:
        with self._lock:
            return self._get_locked(key)

    def set(self, key: K, value: V) -> None:
        with self._lock:
            now = self._clock()
            self._sweep_if_due_locked(now)
            self._items[key] = (value, now + self._ttl)

    def get_or_create(self, key: K, factory: Callable[[], V]) -> V:
        """Caller must hold :attr:`lock`."""
        now = self._clock()
        self._sweep_if_due_locked(now)
        value = self._get_locked(key)
        if value is None:
            value = factory()
        self._items[key] = (value, now + self._ttl)
        return value

    def pop(self, key: K) -> V | None:
        with self._lock:
            item = self._items.pop(key, None)
        return None if item is None else item[0]

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _get_locked(self, key: K) -> V | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._items[key]
            return None
        return value

    def _sweep_if_due_locked(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._ttl
        self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        expired = [key for key, (_, expires_at) in self._items.items() if expires_at <= now]
        for key in expired:
            del self._items[key]
        return len(expired)
