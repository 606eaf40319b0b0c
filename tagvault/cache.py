"""LRU caches for decoded item images.

Two caches exist per opened datasource, both keyed by runtime id: cropped
thumbnails and full images.  Whenever an entry is replaced, evicted or
cleared the superseded value is handed to the ``on_release`` callback so
callers holding handles for it can drop them.

Full images may be the only copy of a freshly placed but unsaved image, so
that cache is created without a size limit.  Thumbnails can always be
cropped again from their pool and are bounded.
"""

from __future__ import annotations

from collections import OrderedDict
from threading import RLock
from typing import Any, Callable, Iterator, Optional

ReleaseCallback = Callable[[str, Any], None]


class ImageCache:
    """A simple thread-safe LRU cache that reports released values."""

    def __init__(
        self,
        max_size: Optional[int] = 50,
        cleanup_threshold: float = 0.8,
        on_release: Optional[ReleaseCallback] = None,
    ) -> None:
        self.max_size = max_size
        self.cleanup_threshold = cleanup_threshold
        self._on_release = on_release
        self._cache: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = RLock()

    def _release(self, key: str, value: Any) -> None:
        if self._on_release is not None:
            self._on_release(key, value)

    def get(self, key: str) -> Optional[Any]:
        """Retrieve *key* from the cache.

        Returns ``None`` if the key is absent.  Accessing an item moves it to
        the end to mark it as most recently used.
        """
        with self._lock:
            try:
                value = self._cache.pop(key)
            except KeyError:
                return None
            self._cache[key] = value  # re-insert as most recent
            return value

    def put(self, key: str, value: Any) -> None:
        """Insert or replace *key*.

        A replaced value is released unless it is the very same object.  When
        the cache grows beyond ``max_size * cleanup_threshold`` a cleanup pass
        evicts the least recently used entries.
        """
        with self._lock:
            previous = self._cache.pop(key, None)
            if previous is None and self.max_size is not None:
                if len(self._cache) >= self.max_size * self.cleanup_threshold:
                    self._cleanup()
            self._cache[key] = value
        if previous is not None and previous is not value:
            self._release(key, previous)

    def pop(self, key: str) -> None:
        """Remove *key* and release its value."""
        with self._lock:
            value = self._cache.pop(key, None)
        if value is not None:
            self._release(key, value)

    def _cleanup(self) -> None:
        """Remove the oldest entries until the cache is at half capacity."""
        target = max((self.max_size or 0) // 2, 1)
        while len(self._cache) > target:
            key, value = self._cache.popitem(last=False)
            self._release(key, value)

    def clear(self) -> None:
        """Remove and release all cached entries."""
        with self._lock:
            entries = list(self._cache.items())
            self._cache.clear()
        for key, value in entries:
            self._release(key, value)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def keys(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._cache))


__all__ = ["ImageCache", "ReleaseCallback"]
