"""Fetching, parsing and normalising a single feed."""

from __future__ import annotations

import calendar
import concurrent.futures
import logging
import re
import threading
import time
import xml.sax
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import urlsplit

import feedparser
import requests
from bs4 import BeautifulSoup

from .config import DEFAULT_USER_AGENT
from .models import Article, FeedDescriptor, FeedResult, SourceInfo
from .sanitize import decode_numeric_entities, sanitize_xml

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
ACCEPT_HEADER = "application/rss+xml, application/xml, text/xml, */*"
READ_CHUNK_SIZE = 1024


@dataclass
class FetchOutcome:
    """Result of downloading a feed document."""

    url: str
    content: Optional[bytes] = None
    text: str = ""
    status_code: Optional[int] = None
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.content is not None


def _decode(content: bytes, encoding: Optional[str]) -> str:
    try:
        return content.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return content.decode("utf-8", errors="replace")


def _request_feed(url: str, headers: dict, timeout: float, deadline: float) -> FetchOutcome:
    """Stream ``url`` into memory, giving up once ``deadline`` has passed."""
    timed_out = FetchOutcome(url=url, timed_out=True, error=f"timed out after {timeout}s")
    try:
        response = requests.get(url, headers=headers, timeout=timeout, stream=True)
    except requests.Timeout:
        return timed_out
    except requests.RequestException as exc:
        return FetchOutcome(url=url, error=str(exc))

    try:
        if not 200 <= response.status_code < 300:
            return FetchOutcome(
                url=url,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
            )

        chunks: List[bytes] = []
        for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
            if time.monotonic() > deadline:
                return timed_out
            chunks.append(chunk)
    except requests.Timeout:
        return timed_out
    except requests.RequestException as exc:
        return FetchOutcome(url=url, error=str(exc))
    finally:
        response.close()

    content = b"".join(chunks)
    return FetchOutcome(
        url=url,
        content=content,
        text=_decode(content, response.encoding),
        status_code=response.status_code,
    )


def download_feed(
    url: str, timeout: float = DEFAULT_TIMEOUT, user_agent: str = DEFAULT_USER_AGENT
) -> FetchOutcome:
    """GET ``url`` and describe the outcome as a FetchOutcome.

    ``timeout`` bounds the whole download, body included. The request runs on
    a daemon thread; if it is still going at the deadline the thread is left
    to close the response once its current read returns.
    """
    headers = {"User-Agent": user_agent, "Accept": ACCEPT_HEADER}
    deadline = time.monotonic() + timeout
    future: concurrent.futures.Future = concurrent.futures.Future()

    def run() -> None:
        try:
            future.set_result(_request_feed(url, headers, timeout, deadline))
        except Exception as exc:  # noqa: BLE001
            future.set_exception(exc)

    threading.Thread(target=run, name="feed-download", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        return FetchOutcome(url=url, timed_out=True, error=f"timed out after {timeout}s")


def parse_document(document: Any) -> Optional[feedparser.FeedParserDict]:
    """Parse a feed document; return None if it is not well-formed XML."""
    parsed = feedparser.parse(document)
    if parsed.get("bozo"):
        exc = parsed.get("bozo_exception")
        if isinstance(exc, xml.sax.SAXException):
            logger.debug("Feed document is malformed: %s", exc)
            return None
    return parsed


def to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert feedparser's UTC struct_time to an aware datetime."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def clamp_to_now(value: Optional[datetime], now: datetime) -> Optional[datetime]:
    """Replace timestamps later than ``now`` with ``now``."""
    if value is not None and value > now:
        return now
    return value


def _strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def _is_absolute(link: Optional[str]) -> bool:
    return bool(link) and link.startswith("http")


def _first_url(items: Any, key: str = "url") -> Optional[str]:
    if not items:
        return None
    try:
        first = items[0]
    except (TypeError, IndexError, KeyError):
        return None
    value = first.get(key) if hasattr(first, "get") else None
    return value or None


def resolve_feed_image(descriptor: FeedDescriptor, feed: Any) -> Optional[str]:
    """Descriptor override, then the feed image, then the podcast image."""
    if descriptor.image:
        return descriptor.image
    image = feed.get("image") or {}
    for key in ("url", "href"):
        if image.get(key):
            return image[key]
    itunes_image = feed.get("itunes_image")
    if isinstance(itunes_image, dict):
        return itunes_image.get("href") or None
    return itunes_image or None


def resolve_feed_link(feed: Any, entries: List[Any], requested_url: str) -> str:
    """Feed link if absolute, else the origin of the first item, else the request URL."""
    link = feed.get("link")
    if _is_absolute(link):
        return link
    if entries:
        first_link = entries[0].get("link")
        if _is_absolute(first_link):
            parts = urlsplit(first_link)
            return f"{parts.scheme}://{parts.netloc}"
    return requested_url


def resolve_thumbnail(entry: Any) -> Optional[str]:
    """Media thumbnail, then enclosure, then media content."""
    thumbnail = _first_url(entry.get("media_thumbnail"))
    if thumbnail:
        return thumbnail
    enclosure = _first_url(entry.get("enclosures"), key="href")
    if enclosure:
        return enclosure
    return _first_url(entry.get("media_content"))


def _entry_to_article(
    entry: Any, feed_link: str, feed_updated: Optional[datetime], now: datetime
) -> Optional[Article]:
    raw_link = entry.get("link")
    link = raw_link if _is_absolute(raw_link) else feed_link
    if not link:
        return None

    published = to_datetime(entry.get("published_parsed") or entry.get("updated_parsed"))
    published = published or feed_updated
    if published is not None and published > now:
        logger.debug(
            "Item %s has future date %s, using current date", link, published.isoformat()
        )
    published = clamp_to_now(published, now)

    summary = entry.get("summary") or ""
    if summary:
        summary = _strip_html(summary)

    return Article(
        title=decode_numeric_entities(entry.get("title") or "Untitled"),
        link=link,
        thumbnail=resolve_thumbnail(entry),
        published_at=published,
        summary=decode_numeric_entities(summary),
    )


def build_feed_result(
    descriptor: FeedDescriptor, parsed: Any, now: Optional[datetime] = None
) -> Optional[FeedResult]:
    """Normalise a parsed feed; None if no article survives."""
    now = now or datetime.now(timezone.utc)
    feed = parsed.get("feed") or {}
    entries = list(parsed.get("entries") or [])

    feed_link = resolve_feed_link(feed, entries, descriptor.url)

    updated = to_datetime(feed.get("updated_parsed"))
    if updated is None and entries:
        updated = to_datetime(
            entries[0].get("published_parsed") or entries[0].get("updated_parsed")
        )
    if updated is not None and updated > now:
        logger.warning(
            "Feed %s has future date %s, using current date",
            descriptor.url,
            updated.isoformat(),
        )
        updated = now

    articles: List[Article] = []
    for entry in entries:
        try:
            article = _entry_to_article(entry, feed_link, updated, now)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error processing item in feed %s: %s", descriptor.url, exc)
            continue
        if article is None:
            logger.debug("Skipping item without a usable link in %s", descriptor.url)
            continue
        articles.append(article)

    if not articles:
        logger.info("No articles found in feed: %s", descriptor.url)
        return None

    source = SourceInfo(
        title=decode_numeric_entities(feed.get("title") or "Unknown Feed"),
        link=feed_link,
        image=resolve_feed_image(descriptor, feed),
        updated_at=updated,
        is_podcast=descriptor.is_podcast,
        is_top_channel=descriptor.is_top_channel,
        is_up_and_coming=descriptor.is_up_and_coming,
    )
    return FeedResult(source=source, articles=articles)


def fetch_feed(
    descriptor: FeedDescriptor,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Optional[FeedResult]:
    """Fetch one feed; return None on any failure."""
    logger.debug("Fetching feed '%s'", descriptor.label)
    try:
        outcome = download_feed(descriptor.url, timeout=timeout, user_agent=user_agent)
        if outcome.timed_out:
            logger.warning("Timed out fetching feed %s", descriptor.url)
            return None
        if outcome.status_code is not None and not outcome.ok:
            logger.warning(
                "Skipping feed due to HTTP error: %s (%d)",
                descriptor.url,
                outcome.status_code,
            )
            return None
        if not outcome.ok:
            logger.warning("Failed to fetch feed %s: %s", descriptor.url, outcome.error)
            return None

        parsed = parse_document(outcome.content)
        if parsed is None:
            logger.warning("Error parsing feed %s; retrying after sanitization", descriptor.url)
            parsed = parse_document(sanitize_xml(outcome.text))
            if parsed is None:
                logger.error("Failed to parse %s even after sanitizing", descriptor.url)
                return None
            logger.info("Successfully parsed %s after sanitization", descriptor.url)

        result = build_feed_result(descriptor, parsed)
    except Exception:  # noqa: BLE001
        logger.exception("Error processing feed %s", descriptor.url)
        return None

    if result is not None:
        logger.info(
            "Collected %d articles from feed '%s'", len(result.articles), descriptor.url
        )
    return result
