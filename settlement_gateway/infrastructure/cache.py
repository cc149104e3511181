"""In-memory response cache with rate-limit admission tracking"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from settlement_gateway.domain.models import CacheEntry, Layer
from settlement_gateway.infrastructure.signing import canonical_json_bytes
from settlement_gateway.utils.date_utils import utcnow


def make_cache_key(layer: Layer, method: str, params: Dict[str, Any]) -> str:
    """Hash of layer + method + normalized params"""
    normalized = canonical_json_bytes(params or {}).decode("utf-8")
    digest = hashlib.sha256(f"{Layer(layer).value}:{method}:{normalized}".encode("utf-8")).hexdigest()
    # Method-scoped prefix keeps invalidation by method cheap
    return f"{Layer(layer).value}:{method}:{digest}"


@dataclass
class Admission:
    """Outcome of the single admission check"""

    allowed: bool
    next_allowed_at: Optional[datetime]
    entry: Optional[CacheEntry]


class ResponseCache:
    """
    Payload table plus a separate next-allowed side table.

    The side table outlives the payload: a key can be "not yet allowed"
    after its cached value expired. Writers replace whole entries.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._next_allowed: Dict[str, datetime] = {}
        self.hits = 0
        self.misses = 0

    def now(self) -> datetime:
        return self._clock()

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(cache_key)
        if entry is None or self.now() >= entry.expires_at:
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def peek(self, cache_key: str) -> Optional[CacheEntry]:
        """Entry regardless of expiry, without touching stats"""
        return self._entries.get(cache_key)

    def put(self, cache_key: str, payload: Any, ttl: float) -> Optional[CacheEntry]:
        if ttl <= 0:
            return None
        self.cleanup_expired()
        entry = CacheEntry(
            cache_key=cache_key,
            payload=payload,
            cached_at=self.now(),
            ttl=ttl,
            next_allowed_at=self._next_allowed.get(cache_key),
        )
        self._entries[cache_key] = entry
        return entry

    def next_allowed_at(self, cache_key: str) -> Optional[datetime]:
        return self._next_allowed.get(cache_key)

    def mark_called(self, cache_key: str, min_interval: float) -> datetime:
        """Record a call attempt; returns the new earliest time for the next one"""
        allowed_at = self.now() + timedelta(seconds=max(0.0, min_interval))
        self._next_allowed[cache_key] = allowed_at
        entry = self._entries.get(cache_key)
        if entry is not None:
            self._entries[cache_key] = CacheEntry(
                cache_key=entry.cache_key,
                payload=entry.payload,
                cached_at=entry.cached_at,
                ttl=entry.ttl,
                next_allowed_at=allowed_at,
            )
        return allowed_at

    def admission(self, cache_key: str) -> Admission:
        """Single admission check shared by every caller"""
        entry = self.get(cache_key)
        allowed_at = self._next_allowed.get(cache_key)
        allowed = allowed_at is None or self.now() >= allowed_at
        return Admission(allowed=allowed, next_allowed_at=allowed_at, entry=entry)

    def invalidate_method(self, layer: Layer, method: str) -> int:
        """Drop cached payloads of one method; admission state is kept"""
        prefix = f"{Layer(layer).value}:{method}:"
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            self._entries.pop(key, None)
        return len(stale)

    def cleanup_expired(self) -> int:
        now = self.now()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            self._entries.pop(key, None)
        for key in [k for k, at in self._next_allowed.items() if now >= at]:
            self._next_allowed.pop(key, None)
        return len(expired)

    def clear(self) -> None:
        self._entries = {}
        self._next_allowed = {}

    def stats(self) -> Dict[str, float]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": len(self._entries),
            "hit_rate": self.hits / total if total > 0 else 0.0,
        }
