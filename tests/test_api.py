import json
import threading

import pytest

from conftest import make_aggregate
from rss_huddle import api
from rss_huddle.api import RATE_LIMITED_ERROR, FeedApi, build_feed_api
from rss_huddle.config import CACHE_URL_ENV, AppConfig, CacheConfig, RateLimitConfig
from rss_huddle.coordinator import RefreshCoordinator
from rss_huddle.ratelimit import RateLimiter


@pytest.fixture
def feed_api(cache):
    coordinator = RefreshCoordinator(cache, lambda: make_aggregate("espn", "cbs"))
    yield FeedApi(coordinator, RateLimiter(limit=2, window_seconds=60))
    coordinator.refresher.shutdown()


def test_get_feeds_returns_aggregate(feed_api):
    response = feed_api.get_feeds(client_key="203.0.113.5")

    assert response.status_code == 200
    assert [s["source"]["title"] for s in response.body["sources"]] == ["espn", "cbs"]


def test_get_feeds_rate_limits_per_client(feed_api):
    feed_api.get_feeds(client_key="203.0.113.5")
    feed_api.get_feeds(client_key="203.0.113.5")

    limited = feed_api.get_feeds(client_key="203.0.113.5")
    other = feed_api.get_feeds(client_key="198.51.100.7")

    assert limited.status_code == 429
    assert limited.body == {"error": RATE_LIMITED_ERROR}
    assert other.status_code == 200


def test_trigger_refresh_then_skip_while_running(cache):
    gate = threading.Event()

    def slow_fetch():
        gate.wait(timeout=5)
        return make_aggregate("espn")

    coordinator = RefreshCoordinator(cache, slow_fetch)
    feed_api = FeedApi(coordinator)
    try:
        started = feed_api.trigger_refresh()
        skipped = feed_api.trigger_refresh()
        status = feed_api.refresh_status()

        assert started.body["status"] == "refreshing"
        assert "startedAt" in started.body
        assert skipped.body == {"status": "skipped", "message": "Refresh already in progress"}
        assert status.body["refreshInProgress"] is True
    finally:
        gate.set()
        coordinator.refresher.wait(timeout=5)
        coordinator.refresher.shutdown()

    assert feed_api.refresh_status().body["refreshInProgress"] is False
    assert cache.get().feed_count == 1


def test_build_feed_api_wires_registry_and_cache(tmp_path, monkeypatch):
    registry = tmp_path / "feeds.json"
    registry.write_text(
        json.dumps(
            {
                "feeds": [
                    {"url": "https://espn.example.com/nfl/rss"},
                    {"url": "https://cbs.example.com/nfl/rss", "isTopChannel": True},
                    {"url": "https://espn.example.com/nfl/rss"},
                ]
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.delenv(CACHE_URL_ENV, raising=False)
    seen = {}

    def fake_fetch_all(feeds, batch_size, timeout, user_agent):
        seen["urls"] = [feed.url for feed in feeds]
        seen["batch_size"] = batch_size
        seen["timeout"] = timeout
        return make_aggregate("espn", "cbs")

    monkeypatch.setattr(api, "fetch_all_feeds", fake_fetch_all)
    config = AppConfig(
        feeds_file=str(registry),
        batch_size=4,
        timeout=2.5,
        cache=CacheConfig(connection_string=f"sqlite:///{tmp_path / 'cache.db'}"),
        rate_limit=RateLimitConfig(requests=1, window_seconds=60),
    )

    feed_api = build_feed_api(config)
    try:
        first = feed_api.get_feeds(client_key="cli")
        second = feed_api.get_feeds(client_key="cli")
    finally:
        feed_api.coordinator.refresher.shutdown()

    assert seen == {
        "urls": ["https://espn.example.com/nfl/rss", "https://cbs.example.com/nfl/rss"],
        "batch_size": 4,
        "timeout": 2.5,
    }
    assert first.status_code == 200
    assert second.status_code == 429
    assert (tmp_path / "cache.db").exists()
