"""Bounded LRU cache of frame signatures."""

from collections import OrderedDict
from pathlib import Path
from typing import Optional, Union

from .models import FrameSignature

DEFAULT_CAPACITY = 100

CacheKey = tuple[str, int]


class FrameCache:
    """
    Memoizes frame signatures by (path, timestamp_ms).

    Holds at most `capacity` entries; the least recently used entry is
    evicted first.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.hits = 0
        self.misses = 0
        self._entries: "OrderedDict[CacheKey, FrameSignature]" = OrderedDict()

    @staticmethod
    def _key(path: Union[str, Path], timestamp_ms: int) -> CacheKey:
        return str(path), int(timestamp_ms)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(
        self, path: Union[str, Path], timestamp_ms: int
    ) -> Optional[FrameSignature]:
        key = self._key(path, timestamp_ms)
        signature = self._entries.get(key)
        if signature is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return signature

    def put(
        self, path: Union[str, Path], timestamp_ms: int, signature: FrameSignature
    ) -> None:
        key = self._key(path, timestamp_ms)
        self._entries[key] = signature
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def invalidate_path(self, path: Union[str, Path]) -> int:
        """Drop every entry for a path. Returns the number removed."""
        path_str = str(path)
        stale = [key for key in self._entries if key[0] == path_str]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
