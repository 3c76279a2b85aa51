"""An in-process cache of over-limit keys with expiry and usage statistics."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Union

_MIN_SIZE = 512 * 1024
_ENTRY_HEADER_SIZE = 24
_MAX_KEY_SIZE = 65535

Key = Union[str, bytes]


def _as_bytes(data: Key) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


@dataclass
class _Entry:
    value: bytes
    expire_at: int
    access_time: int

    def expired(self, now: int) -> bool:
        return self.expire_at != 0 and self.expire_at <= now


class LocalCache:
    """A size-bounded cache; the least recently used entries are evicted first.

    ``size`` is the capacity in bytes (at least 512 KiB); an entry may take at most
    1/1024 of it. ``clock`` returns the current time in seconds.
    """

    def __init__(self, size: int = _MIN_SIZE, clock: Callable[[], float] = time.time) -> None:
        self._capacity = max(size, _MIN_SIZE)
        self._clock = clock
        self._entries: OrderedDict[bytes, _Entry] = OrderedDict()
        self._used = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._expired = 0
        self._evacuated = 0
        self._overwrites = 0

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _size(key: bytes, entry: _Entry) -> int:
        return len(key) + len(entry.value) + _ENTRY_HEADER_SIZE

    def _remove(self, key: bytes) -> None:
        entry = self._entries.pop(key)
        self._used -= self._size(key, entry)

    def get(self, key: Key) -> bytes:
        """Return the value stored for ``key``; raise KeyError if absent or expired."""
        raw = _as_bytes(key)
        with self._lock:
            now = self._now()
            entry = self._entries.get(raw)
            if entry is not None and entry.expired(now):
                self._remove(raw)
                self._expired += 1
                entry = None
            if entry is None:
                self._misses += 1
                raise KeyError(key)
            entry.access_time = now
            self._entries.move_to_end(raw)
            self._hits += 1
            return entry.value

    def set(self, key: Key, value: Key, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds`` (0 means no expiry)."""
        raw_key = _as_bytes(key)
        raw_value = _as_bytes(value)
        if len(raw_key) > _MAX_KEY_SIZE:
            raise ValueError(f"key is larger than {_MAX_KEY_SIZE} bytes")
        if ttl_seconds < 0:
            raise ValueError("ttl cannot be negative")
        with self._lock:
            now = self._now()
            entry = _Entry(
                value=raw_value,
                expire_at=now + ttl_seconds if ttl_seconds > 0 else 0,
                access_time=now,
            )
            size = self._size(raw_key, entry)
            if size > self._capacity // 1024:
                raise ValueError("entry size exceeds the cache's entry limit")

            if raw_key in self._entries:
                self._overwrites += 1
                self._remove(raw_key)

            while self._entries and self._used + size > self._capacity:
                oldest_key, oldest = next(iter(self._entries.items()))
                self._remove(oldest_key)
                if oldest.expired(now):
                    self._expired += 1
                else:
                    self._evacuated += 1

            self._entries[raw_key] = entry
            self._used += size

    @property
    def evacuate_count(self) -> int:
        return self._evacuated

    @property
    def expired_count(self) -> int:
        return self._expired

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def average_access_time(self) -> int:
        """Mean of the entries' last access times, in seconds; 0 when empty."""
        with self._lock:
            if not self._entries:
                return 0
            return sum(e.access_time for e in self._entries.values()) // len(self._entries)

    @property
    def hit_count(self) -> int:
        return self._hits

    @property
    def miss_count(self) -> int:
        return self._misses

    @property
    def lookup_count(self) -> int:
        return self._hits + self._misses

    @property
    def overwrite_count(self) -> int:
        return self._overwrites


_GAUGES = (
    ("evacuateCount", "evacuate_count"),
    ("expiredCount", "expired_count"),
    ("entryCount", "entry_count"),
    ("averageAccessTime", "average_access_time"),
    ("hitCount", "hit_count"),
    ("missCount", "miss_count"),
    ("lookupCount", "lookup_count"),
    ("overwriteCount", "overwrite_count"),
)


class LocalCacheStats:
    """Gauges mirroring a LocalCache's statistics under a scope name."""

    def __init__(self, cache: LocalCache, scope: str = "") -> None:
        self.cache = cache
        self.scope = scope
        self.gauges: dict[str, int] = {self._name(name): 0 for name, _ in _GAUGES}

    def _name(self, name: str) -> str:
        return f"{self.scope}.{name}" if self.scope else name

    def generate_stats(self) -> dict[str, int]:
        """Refresh every gauge from the cache and return the gauges."""
        for name, attribute in _GAUGES:
            self.gauges[self._name(name)] = getattr(self.cache, attribute)
        return dict(self.gauges)