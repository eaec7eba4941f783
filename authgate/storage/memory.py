from __future__ import annotations

import fnmatch
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple


class MemoryCache:
    """In-process stand-in for RedisCache used by tests and single-node dev runs.

    Mirrors the RedisCache method surface. Entries carry an absolute expiry and
    are dropped lazily on access, matching Redis' passive expiration.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._data_lock = threading.RLock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._data_lock:
            self._data[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self._live(key)

    async def delete(self, key: str) -> int:
        with self._data_lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            return self._live(key) is not None

    async def getdel(self, key: str) -> Optional[str]:
        with self._data_lock:
            value = self._live(key)
            if value is not None:
                del self._data[key]
            return value

    async def keys(self, pattern: str) -> List[str]:
        with self._data_lock:
            return [
                key
                for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()
