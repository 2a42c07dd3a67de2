"""Framework-free handlers for the feed endpoints."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .cache import FreshnessCache
from .config import AppConfig, load_feed_registry, resolve_cache_url
from .coordinator import REFRESHING, CoordinatorResponse, RefreshCoordinator
from .db import BlobStore
from .ratelimit import RateLimiter
from .runner import fetch_all_feeds

logger = logging.getLogger(__name__)

ApiResponse = CoordinatorResponse

RATE_LIMITED_ERROR = "Too many requests. Please try again later."


class FeedApi:
    """GET /api/rss, POST /api/rss/refresh and GET /api/rss/refresh."""

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.coordinator = coordinator
        self.rate_limiter = rate_limiter or RateLimiter()

    def get_feeds(self, client_key: str = "unknown", clear_cache: bool = False) -> ApiResponse:
        if not self.rate_limiter.check(f"rss-{client_key}"):
            logger.warning("Rate limit exceeded for %s", client_key)
            return ApiResponse(body={"error": RATE_LIMITED_ERROR}, status_code=429)
        return self.coordinator.read(force_clear=clear_cache)

    def trigger_refresh(self) -> ApiResponse:
        status = self.coordinator.trigger_background_refresh()
        if status == REFRESHING:
            return ApiResponse(
                body={
                    "status": REFRESHING,
                    "message": "Cache refresh started in background",
                    "startedAt": datetime.now(timezone.utc).isoformat(),
                }
            )
        return ApiResponse(
            body={"status": status, "message": "Refresh already in progress"}
        )

    def refresh_status(self) -> ApiResponse:
        running = self.coordinator.refresh_status()
        return ApiResponse(
            body={
                "refreshInProgress": running,
                "message": (
                    "A refresh is currently running" if running else "No refresh in progress"
                ),
            }
        )


def build_feed_api(config: AppConfig) -> FeedApi:
    """Wire registry, fetcher, cache and coordinator from configuration."""
    feeds = load_feed_registry(config.feeds_file)

    def fetch_all():
        return fetch_all_feeds(
            feeds,
            batch_size=config.batch_size,
            timeout=config.timeout,
            user_agent=config.user_agent,
        )

    cache = FreshnessCache(BlobStore(resolve_cache_url(config)))
    coordinator = RefreshCoordinator(cache, fetch_all)
    limiter = RateLimiter(
        limit=config.rate_limit.requests,
        window_seconds=config.rate_limit.window_seconds,
    )
    return FeedApi(coordinator, limiter)
