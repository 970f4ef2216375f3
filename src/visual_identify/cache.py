from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Callable, Protocol

from visual_identify.models import Decision, decision_from_dict

_LOGGER = logging.getLogger(__name__)

_HOUR = 60 * 60

# Fast-moving markets get short lifetimes, stable ones long.
CACHE_TTL_BY_CATEGORY: dict[str, int] = {
    "watch": 24 * _HOUR,
    "watches": 24 * _HOUR,
    "shoe": 24 * _HOUR,
    "shoes": 24 * _HOUR,
    "vintage": 24 * _HOUR,
    "vintageclothing": 24 * _HOUR,
    "antique": 24 * _HOUR,
    "antiques": 24 * _HOUR,
    "collectibles": 12 * _HOUR,
    "toy": 12 * _HOUR,
    "electronics": 12 * _HOUR,
    "card": 3 * _HOUR,
    "cards": 3 * _HOUR,
    "tradingcards": 3 * _HOUR,
    "sportscards": 3 * _HOUR,
}
DEFAULT_CACHE_TTL_SECONDS = 12 * _HOUR


def ttl_for_category(category: str | None) -> int:
    if not category:
        return DEFAULT_CACHE_TTL_SECONDS
    normalized = re.sub(r"[^a-z]", "", category.lower())
    return CACHE_TTL_BY_CATEGORY.get(normalized, DEFAULT_CACHE_TTL_SECONDS)


def cache_key(image_hash: str, category: str | None) -> str:
    return f"{image_hash}-{category or 'all'}"


class ResultCache(Protocol):
    """Key/value store with per-entry expiry. Values are opaque strings."""

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryResultCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def encode_decision(decision: Decision) -> str:
    return json.dumps(decision.to_dict(), sort_keys=True, separators=(",", ":"))


def decode_decision(raw: str) -> Decision:
    return decision_from_dict(json.loads(raw))


class DecisionCache:
    """Typed view over a ResultCache holding serialized decisions."""

    def __init__(self, backend: ResultCache, ttl_fn: Callable[[str | None], float] = ttl_for_category) -> None:
        self.backend = backend
        self.ttl_fn = ttl_fn

    def get(self, image_hash: str, category: str | None) -> tuple[Decision, str] | None:
        key = cache_key(image_hash, category)
        raw = self.backend.get(key)
        if raw is None:
            return None
        try:
            return decode_decision(raw), raw
        except (ValueError, KeyError, TypeError):
            _LOGGER.warning("Dropping unreadable cache entry %s", key)
            self.backend.delete(key)
            return None

    def put(self, image_hash: str, category: str | None, decision: Decision, ttl_category: str | None = None) -> str:
        raw = encode_decision(decision)
        ttl = self.ttl_fn(ttl_category or category)
        self.backend.set(cache_key(image_hash, category), raw, ttl)
        _LOGGER.info(
            "Cached %s for %s (TTL: %dh)",
            decision.decision,
            cache_key(image_hash, category),
            round(ttl / _HOUR),
        )
        return raw
