# classes/response_cache.py

import hashlib
import threading
import time
from typing import Any, Callable, Dict, Optional

from classes import settings


class ResponseCache:
    """
    In-memory cache of validated model responses with:
    - fixed TTL (expires ttl_seconds after it was stored)
    - thread-safe operations (single worker, but concurrent tasks)
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._lock = threading.Lock()
        # key -> {"response": Any, "expires_at": float}
        self._items: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def make_key(section: str, prompt: str, system: Optional[str] = None) -> str:
        # the prompt embeds the caller's admitted input, so it identifies the request
        digest = hashlib.sha256(f"{system or ''}\x00{prompt}".encode("utf-8")).hexdigest()
        return f"{section}-{prompt[:50]}-{digest}"

    def get(self, key: str) -> Optional[Any]:
        now = self.clock()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            if float(item["expires_at"]) <= now:
                del self._items[key]
                return None
            return item["response"]

    def set(self, key: str, response: Any) -> None:
        with self._lock:
            self._items[key] = {"response": response, "expires_at": self.clock() + self.ttl_seconds}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def sweep_expired(self) -> int:
        """
        Delete expired entries. Returns how many entries were removed.
        """
        now = self.clock()
        with self._lock:
            expired = [k for k, v in self._items.items() if float(v["expires_at"]) <= now]
            for k in expired:
                del self._items[k]
        return len(expired)


GLOBAL_RESPONSE_CACHE = ResponseCache(ttl_seconds=settings.RESPONSE_CACHE_TTL_SECONDS)
