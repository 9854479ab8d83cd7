import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger


@dataclass
class CacheEntry:
    key: str
    value: Any
    validator: Optional[str]
    stored_at: float


class InMemoryCache:
    """Bounded TTL store keyed by request signature.

    Expired entries are dropped on read; when full, the least recently used
    entry is evicted. get/set never await, so each call is atomic on the
    event loop.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.name = name
        self._clock = clock
        self.store: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self.store.get(key)
        if not entry:
            return None
        if self._clock() - entry.stored_at > self.ttl_seconds:
            self.store.pop(key, None)
            return None
        self.store.move_to_end(key)
        return entry

    def get(self, key: str):
        entry = self.get_entry(key)
        return entry.value if entry else None

    def set(self, key: str, value: Any, validator: Optional[str] = None):
        if self.max_entries <= 0:
            return
        if key in self.store:
            self.store.pop(key)
        elif len(self.store) >= self.max_entries:
            evicted, _ = self.store.popitem(last=False)
            logger.debug(f"[{self.name}] evicted {evicted}")
        self.store[key] = CacheEntry(
            key=key, value=value, validator=validator, stored_at=self._clock()
        )

    def __len__(self) -> int:
        return len(self.store)

    def clear(self):
        self.store.clear()
