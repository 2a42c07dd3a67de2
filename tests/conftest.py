import textwrap
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
import requests

from rss_huddle import feeds as feeds_module
from rss_huddle.cache import FreshnessCache
from rss_huddle.db import BlobStore
from rss_huddle.models import AggregateResult, Article, FeedResult, SourceInfo


class FakeResponse:
    def __init__(self, body, status_code: int = 200):
        self.content = body.encode("utf-8") if isinstance(body, str) else body
        self.text = self.content.decode("utf-8", errors="replace")
        self.status_code = status_code
        self.encoding = "utf-8"
        self.closed = threading.Event()

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def close(self):
        self.closed.set()


def rss_document(
    items: List[str],
    title: str = "Gridiron Daily",
    link: Optional[str] = "https://gridiron.example.com",
    channel_extra: str = "",
) -> str:
    link_xml = f"<link>{link}</link>" if link is not None else ""
    return textwrap.dedent(
        """\
        <?xml version="1.0" encoding="utf-8"?>
        <rss version="2.0"
             xmlns:media="http://search.yahoo.com/mrss/"
             xmlns:atom="http://www.w3.org/2005/Atom"
             xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">
        <channel>
        <title>{title}</title>
        {link}
        {extra}
        {items}
        </channel>
        </rss>
        """
    ).format(title=title, link=link_xml, extra=channel_extra, items="\n".join(items))


def rss_item(
    title: str = "Week 1 recap",
    link: Optional[str] = "https://gridiron.example.com/week-1",
    pub_date: Optional[str] = "Mon, 08 Sep 2025 12:00:00 GMT",
    description: Optional[str] = None,
    extra: str = "",
) -> str:
    parts = [f"<title>{title}</title>"]
    if link is not None:
        parts.append(f"<link>{link}</link>")
    if pub_date is not None:
        parts.append(f"<pubDate>{pub_date}</pubDate>")
    if description is not None:
        parts.append(f"<description><![CDATA[{description}]]></description>")
    if extra:
        parts.append(extra)
    return "<item>" + "".join(parts) + "</item>"


@pytest.fixture
def http_responses(monkeypatch):
    """Route feed downloads to canned responses keyed by URL."""
    responses: Dict[str, object] = {}
    calls: List[dict] = []

    def fake_get(url, headers=None, timeout=None, stream=False):
        calls.append({"url": url, "headers": headers, "timeout": timeout, "stream": stream})
        value = responses.get(url)
        if value is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(value, Exception):
            raise value
        return value

    monkeypatch.setattr(feeds_module.requests, "get", fake_get)
    responses["_calls"] = calls
    return responses


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 1_750_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += int(minutes * 60 * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return BlobStore(f"sqlite:///{tmp_path / 'cache.db'}")


@pytest.fixture
def cache(store, clock):
    return FreshnessCache(store, clock=clock)


def make_result(name: str, articles: int = 1) -> FeedResult:
    published = datetime(2025, 9, 8, 12, 0, tzinfo=timezone.utc)
    return FeedResult(
        source=SourceInfo(
            title=name,
            link=f"https://{name}.example.com",
            updated_at=published,
            is_top_channel=name.endswith("top"),
        ),
        articles=[
            Article(
                title=f"{name} story {index}",
                link=f"https://{name}.example.com/{index}",
                thumbnail=None,
                published_at=published,
                summary="Kickoff at noon.",
            )
            for index in range(articles)
        ],
    )


def make_aggregate(*names: str) -> AggregateResult:
    return AggregateResult(sources=[make_result(name) for name in names])
