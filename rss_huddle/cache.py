"""Freshness-tiered cache for the aggregated feed result."""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .db import BlobStore
from .models import CACHE_FORMAT_VERSION, AggregateResult, CacheEntry

logger = logging.getLogger(__name__)

CACHE_KEY = "rss-feeds-cache"

STALE_THRESHOLD_MS = 15 * 60 * 1000
EXPIRE_THRESHOLD_MS = 30 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Freshness(enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CacheStatus:
    freshness: Freshness
    age_ms: int
    age_minutes: int

    @property
    def is_stale(self) -> bool:
        return self.freshness is not Freshness.FRESH

    @property
    def is_expired(self) -> bool:
        return self.freshness is Freshness.EXPIRED


def classify_age(age_ms: int) -> Freshness:
    if age_ms >= EXPIRE_THRESHOLD_MS:
        return Freshness.EXPIRED
    if age_ms >= STALE_THRESHOLD_MS:
        return Freshness.STALE
    return Freshness.FRESH


class FreshnessCache:
    """Holds exactly one CacheEntry under a constant key."""

    def __init__(
        self,
        store: BlobStore,
        key: str = CACHE_KEY,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.key = key
        self.clock = clock

    def get(self) -> Optional[CacheEntry]:
        """Return the current entry, or None if absent or unreadable."""
        try:
            raw = self.store.get(self.key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error reading from cache store: %s", exc)
            return None

        if raw is None:
            logger.info("No cache found in store")
            return None

        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Discarding unreadable cache entry: %s", exc)
            return None

        logger.info(
            "Cache found: age=%ds, feeds=%d",
            round((self.clock() - entry.timestamp) / 1000),
            entry.feed_count,
        )
        return entry

    def set(self, data: AggregateResult) -> bool:
        """Replace the cached entry with ``data`` stamped with the current time."""
        entry = CacheEntry(
            data=data,
            timestamp=self.clock(),
            feed_count=len(data.sources),
            version=CACHE_FORMAT_VERSION,
        )
        try:
            self.store.put(self.key, json.dumps(entry.to_dict(), ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            logger.error("Error writing to cache store: %s", exc)
            return False

        logger.info("Cache written: %d feeds at %d", entry.feed_count, entry.timestamp)
        return True

    def clear(self) -> bool:
        """Delete the entry; clearing an empty cache succeeds."""
        try:
            self.store.delete(self.key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error clearing cache: %s", exc)
            return False

        logger.info("Cache cleared from store")
        return True

    def classify(self, timestamp: int, now: Optional[int] = None) -> CacheStatus:
        """Classify an entry written at ``timestamp`` by its age."""
        current = self.clock() if now is None else now
        age = max(0, current - timestamp)
        return CacheStatus(
            freshness=classify_age(age),
            age_ms=age,
            age_minutes=round(age / 60000),
        )
