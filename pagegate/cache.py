import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .models import FetchResult

logger = logging.getLogger(__name__)


def make_cache_key(url: str, options: Mapping[str, Any]) -> str:
    """
    Fingerprint a request as sha256 over canonical JSON.

    Keys are sorted before serialization, so the order query parameters
    arrived in never changes the key.
    """
    payload = json.dumps(
        {"url": url, "options": dict(options)},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    value: FetchResult
    inserted_at: float


class ResponseCache:
    """
    In-memory result cache with a fixed TTL and LRU eviction.

    Behavior:
    - Entries expire `ttl_s` seconds after they were stored, however often
      they are read in between
    - An expired entry seen by `get` is dropped and reported as a miss
    - Both hits and stores mark an entry as most recently used
    - Once `max_entries` is exceeded the least recently used entry goes
    """

    def __init__(
        self,
        ttl_s: float = 300.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> FetchResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[key]
            logger.debug("Cache entry %s expired", key[:12])
            return None
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: FetchResult) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, inserted_at=self._clock())
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted %s", evicted[:12])

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        stale = [k for k, e in self._entries.items() if self._expired(e)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.inserted_at) > self.ttl_s
