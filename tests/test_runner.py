import threading
import time

import pytest

from conftest import make_result
from rss_huddle import runner
from rss_huddle.models import FeedDescriptor


def _descriptors(count):
    return [FeedDescriptor(url=f"https://feed-{i}.example.com") for i in range(count)]


def test_fetch_all_feeds_keeps_registry_order(monkeypatch):
    feeds = _descriptors(5)

    def fake_fetch(feed, timeout=None, user_agent=None):
        index = int(feed.url.split("-")[1].split(".")[0])
        # Later feeds finish first.
        time.sleep(0.05 * (5 - index))
        return make_result(f"feed{index}")

    monkeypatch.setattr(runner, "fetch_feed", fake_fetch)

    result = runner.fetch_all_feeds(feeds, batch_size=5)

    assert [source.source.title for source in result.sources] == [
        "feed0",
        "feed1",
        "feed2",
        "feed3",
        "feed4",
    ]


def test_fetch_all_feeds_drops_failures_without_affecting_others(monkeypatch):
    feeds = _descriptors(6)

    def fake_fetch(feed, timeout=None, user_agent=None):
        index = int(feed.url.split("-")[1].split(".")[0])
        if index == 1:
            return None
        if index == 4:
            raise RuntimeError("unexpected")
        return make_result(f"feed{index}")

    monkeypatch.setattr(runner, "fetch_feed", fake_fetch)

    result = runner.fetch_all_feeds(feeds, batch_size=4)

    assert [source.source.title for source in result.sources] == [
        "feed0",
        "feed2",
        "feed3",
        "feed5",
    ]


def test_fetch_all_feeds_all_failures_is_empty_result(monkeypatch):
    monkeypatch.setattr(runner, "fetch_feed", lambda feed, **kwargs: None)

    result = runner.fetch_all_feeds(_descriptors(3), batch_size=2)

    assert result.sources == []


def test_fetch_all_feeds_caps_concurrency_at_batch_size(monkeypatch):
    active = 0
    peak = 0
    lock = threading.Lock()

    def fake_fetch(feed, timeout=None, user_agent=None):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return make_result("feed")

    monkeypatch.setattr(runner, "fetch_feed", fake_fetch)

    result = runner.fetch_all_feeds(_descriptors(10), batch_size=3)

    assert len(result.sources) == 10
    assert peak <= 3


def test_fetch_all_feeds_finishes_each_chunk_before_the_next(monkeypatch):
    events = []
    lock = threading.Lock()

    def fake_fetch(feed, timeout=None, user_agent=None):
        index = int(feed.url.split("-")[1].split(".")[0])
        with lock:
            events.append(("start", index))
        time.sleep(0.02 if index % 2 else 0.06)
        with lock:
            events.append(("end", index))
        return make_result(f"feed{index}")

    monkeypatch.setattr(runner, "fetch_feed", fake_fetch)

    runner.fetch_all_feeds(_descriptors(4), batch_size=2)

    first_chunk_ends = max(events.index(("end", 0)), events.index(("end", 1)))
    second_chunk_starts = min(events.index(("start", 2)), events.index(("start", 3)))
    assert first_chunk_ends < second_chunk_starts


def test_fetch_all_feeds_passes_timeout_and_user_agent(monkeypatch):
    seen = []

    def fake_fetch(feed, timeout=None, user_agent=None):
        seen.append((timeout, user_agent))
        return None

    monkeypatch.setattr(runner, "fetch_feed", fake_fetch)

    runner.fetch_all_feeds(_descriptors(2), timeout=3.5, user_agent="Test/1.0")

    assert seen == [(3.5, "Test/1.0"), (3.5, "Test/1.0")]


def test_fetch_all_feeds_empty_registry():
    assert runner.fetch_all_feeds([]).sources == []


def test_fetch_all_feeds_rejects_invalid_batch_size():
    with pytest.raises(ValueError):
        runner.fetch_all_feeds(_descriptors(1), batch_size=0)
