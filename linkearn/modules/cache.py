"""
Bounded in-process cache with per-entry expiry
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """
    Least-recently-used cache whose entries also expire after `ttl` seconds

    Per process only: entries invalidated here are not invalidated in other
    workers, which converge once their own entries expire.
    """

    def __init__(self, maxsize: int = 512, ttl: float = 300, timer: Callable[[], float] = time.monotonic):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.ttl = ttl
        self.timer = timer
        self._data: "OrderedDict[Hashable, tuple[float, Any]]" = OrderedDict()

    def get(self, key: Hashable, default: Optional[Any] = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default

        expires_at, value = entry
        if expires_at <= self.timer():
            del self._data[key]
            return default

        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self.timer() + self.ttl, value)
        self._data.move_to_end(key)

        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def __len__(self) -> int:
        return len(self._data)
