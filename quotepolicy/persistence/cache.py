from __future__ import annotations

import asyncio
import time
from typing import Any, Callable


class TTLCache:
    """Explicit read-through cache for config documents.

    Nothing in the engine caches implicitly; stores accept an instance of this
    class and invalidate the affected key on every write.
    """

    def __init__(self, ttl_s: float, *, clock: Callable[[], float] | None = None) -> None:
        self._ttl_s = max(0.0, float(ttl_s))
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._ttl_s > 0

    async def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            async with self._lock:
                self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        async with self._lock:
            self._entries[key] = (self._clock() + self._ttl_s, value)

    def invalidate(self, key: str | None = None) -> None:
        # Drop one key after a write, or everything for deterministic tests.
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
