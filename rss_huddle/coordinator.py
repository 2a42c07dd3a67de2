"""Stale-while-revalidate coordination between the cache and the fetcher."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .cache import Freshness, FreshnessCache
from .models import AggregateResult, CacheEntry

logger = logging.getLogger(__name__)

FRESH_HEADERS = {"Cache-Control": "public, s-maxage=60, stale-while-revalidate=900"}
STALE_HEADERS = {
    "Cache-Control": "public, s-maxage=0, stale-while-revalidate=1800",
    "X-Cache-Status": "STALE",
}
FALLBACK_ERROR = "Fresh fetch failed, serving cached data"
TOTAL_FAILURE_ERROR = "Failed to fetch RSS feeds"

REFRESHING = "refreshing"
SKIPPED = "skipped"


class EmptyAggregateError(RuntimeError):
    """Raised when a fetch pass produced no feeds at all."""


class RefreshFlag:
    """Process-wide "refresh in progress" marker with atomic test-and-set.

    Only guards refreshes within this process; separate server processes
    each hold their own flag.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_set(self) -> bool:
        return self._lock.acquire(blocking=False)

    def clear(self) -> None:
        if self._lock.locked():
            self._lock.release()

    @property
    def is_set(self) -> bool:
        return self._lock.locked()


class BackgroundRefresher:
    """Runs at most one refresh job at a time on a supervisor thread."""

    def __init__(self, job: Callable[[], Any], flag: Optional[RefreshFlag] = None):
        self.job = job
        self.flag = flag or RefreshFlag()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="feed-refresh"
        )
        self._future: Optional[concurrent.futures.Future] = None

    @property
    def is_running(self) -> bool:
        return self.flag.is_set

    def trigger(self) -> str:
        """Start a refresh unless one is already running."""
        if not self.flag.try_set():
            logger.info("Refresh already in progress, skipping")
            return SKIPPED

        try:
            future = self._executor.submit(self._run)
        except RuntimeError:
            self.flag.clear()
            logger.exception("Could not schedule background refresh")
            return SKIPPED

        future.add_done_callback(self._log_failure)
        self._future = future
        return REFRESHING

    def _run(self) -> Any:
        started = time.monotonic()
        logger.info("Background refresh started")
        try:
            result = self.job()
            logger.info(
                "Background refresh finished in %ds", round(time.monotonic() - started)
            )
            return result
        finally:
            self.flag.clear()

    @staticmethod
    def _log_failure(future: concurrent.futures.Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background refresh error: %s", exc, exc_info=exc)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the latest refresh has finished; False on timeout."""
        future = self._future
        if future is None:
            return True
        done, _ = concurrent.futures.wait([future], timeout=timeout)
        return bool(done)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


@dataclass
class CoordinatorResponse:
    body: Dict[str, Any]
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


def cache_metadata(
    age: int = 0,
    stale: bool = False,
    refreshing: bool = False,
    error: Optional[str] = None,
    fetch_duration: Optional[int] = None,
) -> Dict[str, Any]:
    """Build the ``_cache`` block attached to every successful response."""
    meta: Dict[str, Any] = {
        "age": age,
        "ageMinutes": round(age / 60000),
        "stale": stale,
        "refreshing": refreshing,
    }
    if error:
        meta["error"] = error
    if fetch_duration is not None:
        meta["fetchDuration"] = fetch_duration
    return meta


class RefreshCoordinator:
    """Serves the aggregate from cache by freshness and refreshes it."""

    def __init__(
        self,
        cache: FreshnessCache,
        fetch_all: Callable[[], AggregateResult],
        refresher: Optional[BackgroundRefresher] = None,
    ):
        self.cache = cache
        self.fetch_all = fetch_all
        self.refresher = refresher or BackgroundRefresher(self.refresh)

    def refresh(self) -> AggregateResult:
        """Fetch a new aggregate and store it; raises if nothing was fetched."""
        data = self.fetch_all()
        if not data.sources:
            raise EmptyAggregateError("No feeds could be fetched")
        if not self.cache.set(data):
            logger.warning("Fetched %d feeds but the cache write failed", len(data.sources))
        return data

    def trigger_background_refresh(self) -> str:
        return self.refresher.trigger()

    def read(self, force_clear: bool = False) -> CoordinatorResponse:
        """Return the aggregate for one request; never raises."""
        if force_clear:
            logger.info("Cache clear requested")
            self.cache.clear()

        cached = self.cache.get()

        if cached is not None and not force_clear:
            status = self.cache.classify(cached.timestamp)

            if status.freshness is Freshness.FRESH:
                logger.info("Returning fresh cache (age: %d min)", status.age_minutes)
                return CoordinatorResponse(
                    body=self._with_meta(cached, cache_metadata(age=status.age_ms)),
                    headers=dict(FRESH_HEADERS),
                )

            if status.freshness is Freshness.STALE:
                logger.info(
                    "Returning stale cache (age: %d min), triggering background refresh",
                    status.age_minutes,
                )
                self.trigger_background_refresh()
                return CoordinatorResponse(
                    body=self._with_meta(
                        cached,
                        cache_metadata(age=status.age_ms, stale=True, refreshing=True),
                    ),
                    headers=dict(STALE_HEADERS),
                )

            logger.info("Cache expired (age: %d min), fetching fresh data", status.age_minutes)
        elif cached is None:
            logger.info("No cache found, fetching fresh data")

        return self._fetch_fresh(cached)

    def _fetch_fresh(self, previous: Optional[CacheEntry]) -> CoordinatorResponse:
        started = time.monotonic()
        try:
            data = self.refresh()
        except Exception:  # noqa: BLE001
            logger.exception("Error fetching RSS feeds")
            return self._fallback(previous)

        duration = int((time.monotonic() - started) * 1000)
        logger.info(
            "Fresh fetch completed: %d feeds in %ds", len(data.sources), round(duration / 1000)
        )
        body = data.to_dict()
        body["_cache"] = cache_metadata(fetch_duration=duration)
        return CoordinatorResponse(body=body, headers=dict(FRESH_HEADERS))

    def _fallback(self, previous: Optional[CacheEntry]) -> CoordinatorResponse:
        if previous is not None:
            logger.info("Returning stale cache as fallback due to fetch error")
            age = max(0, self.cache.clock() - previous.timestamp)
            return CoordinatorResponse(
                body=self._with_meta(
                    previous, cache_metadata(age=age, stale=True, error=FALLBACK_ERROR)
                ),
            )
        return CoordinatorResponse(
            body={"sources": [], "error": TOTAL_FAILURE_ERROR}, status_code=500
        )

    @staticmethod
    def _with_meta(entry: CacheEntry, meta: Dict[str, Any]) -> Dict[str, Any]:
        body = entry.data.to_dict()
        body["_cache"] = meta
        return body

    def refresh_status(self) -> bool:
        return self.refresher.is_running
