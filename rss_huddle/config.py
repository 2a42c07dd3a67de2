"""Configuration loading for the feed registry and the application."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree as ET

from .models import FeedDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CACHE_URL = "sqlite:///rss_cache.db"
CACHE_URL_ENV = "RSS_HUDDLE_CACHE_URL"
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; RssHuddle/1.0)"


@dataclass
class CacheConfig:
    connection_string: str = DEFAULT_CACHE_URL


@dataclass
class RateLimitConfig:
    requests: int = 10
    window_seconds: float = 60.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AppConfig:
    feeds_file: str
    env_file: Optional[str] = None
    batch_size: int = 15
    timeout: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes")


def parse_feeds_config(path: str) -> List[FeedDescriptor]:
    """Parse an OPML feed list and return feed descriptors in document order."""
    logger.info("Loading OPML feed configuration from %s", path)
    tree = ET.parse(path)
    root = tree.getroot()
    body = root.find("body")
    feeds: List[FeedDescriptor] = []

    def walk(outline: ET.Element) -> None:
        feed_url = outline.attrib.get("xmlUrl")
        if feed_url:
            feeds.append(
                FeedDescriptor(
                    url=feed_url,
                    image=outline.attrib.get("image") or None,
                    is_podcast=_as_bool(outline.attrib.get("isPodcast")),
                    is_top_channel=_as_bool(outline.attrib.get("isTopChannel")),
                    is_up_and_coming=_as_bool(outline.attrib.get("isUpAndComing")),
                    title=outline.attrib.get("title") or outline.attrib.get("text"),
                )
            )
            logger.debug("Registered feed '%s'", feed_url)
            return

        for child in outline.findall("outline"):
            walk(child)

    if body is None:
        raise ValueError("OPML feed list is missing the <body> section.")

    for outline in body.findall("outline"):
        walk(outline)

    return feeds


def parse_feeds_json(path: str) -> List[FeedDescriptor]:
    """Parse a ``{"feeds": [...]}`` JSON feed list."""
    logger.info("Loading JSON feed configuration from %s", path)
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict) or not isinstance(payload.get("feeds"), list):
        raise ValueError("Feed list must be an object with a 'feeds' array.")

    feeds: List[FeedDescriptor] = []
    for item in payload["feeds"]:
        if not isinstance(item, dict) or not item.get("url"):
            logger.warning("Ignoring feed entry without a url: %r", item)
            continue
        feeds.append(
            FeedDescriptor(
                url=str(item["url"]),
                image=item.get("image") or None,
                is_podcast=_as_bool(item.get("isPodcast")),
                is_top_channel=_as_bool(item.get("isTopChannel")),
                is_up_and_coming=_as_bool(item.get("isUpAndComing")),
                title=item.get("title"),
            )
        )
    return feeds


def deduplicate_feeds(feeds: List[FeedDescriptor]) -> List[FeedDescriptor]:
    """Keep the first descriptor for every url, preserving order."""
    seen = set()
    unique: List[FeedDescriptor] = []
    for feed in feeds:
        if feed.url in seen:
            continue
        seen.add(feed.url)
        unique.append(feed)
    return unique


def load_feed_registry(path: str) -> List[FeedDescriptor]:
    """Load and de-duplicate the feed registry; unreadable files yield []."""
    try:
        if Path(path).suffix.lower() == ".json":
            feeds = parse_feeds_json(path)
        else:
            feeds = parse_feeds_config(path)
    except (OSError, ValueError, ET.ParseError) as exc:
        logger.error("Error loading feed registry %s: %s", path, exc)
        return []

    logger.info("Loaded %d feeds from %s", len(feeds), path)
    unique = deduplicate_feeds(feeds)
    logger.info(
        "Processing %d unique feeds (removed %d duplicates)",
        len(unique),
        len(feeds) - len(unique),
    )
    return unique


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def parse_env_config(path: str) -> Dict[str, str]:
    """Parse environment variables from XML."""
    env_vars = {}
    if not path:
        return env_vars

    logger.info("Loading environment configuration from %s", path)
    try:
        tree = ET.parse(path)
    except (OSError, ET.ParseError) as exc:
        logger.warning("Failed to load environment config: %s", exc)
        raise

    for var in tree.getroot().findall("variable"):
        name = var.attrib.get("name")
        value = var.text
        if name and value:
            env_vars[name] = value.strip()
    return env_vars


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()

    feeds_node = root.find("feeds")
    if feeds_node is None or not feeds_node.text:
        raise ValueError("Config missing <feeds> path")
    feeds_file = _resolve_path(config_path, feeds_node.text.strip())

    env_node = root.find("env")
    env_file = (
        _resolve_path(config_path, env_node.text.strip())
        if env_node is not None and env_node.text
        else None
    )

    batch_size = int(root.findtext("batch-size", "15"))
    if batch_size < 1:
        raise ValueError("<batch-size> must be at least 1.")
    timeout = float(root.findtext("timeout", "10"))
    if timeout <= 0:
        raise ValueError("<timeout> must be positive.")
    user_agent = (root.findtext("user-agent") or "").strip() or DEFAULT_USER_AGENT

    cache_config = CacheConfig()
    cache_node = root.find("cache")
    if cache_node is not None:
        connection_string = (cache_node.findtext("connection-string") or "").strip()
        if connection_string:
            cache_config.connection_string = connection_string

    rate_config = RateLimitConfig()
    rate_node = root.find("rate-limit")
    if rate_node is not None:
        rate_config.requests = int(rate_node.findtext("requests", "10"))
        rate_config.window_seconds = float(rate_node.findtext("window-seconds", "60"))

    logging_config = LoggingConfig()
    log_node = root.find("logging")
    if log_node is not None:
        logging_config.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            logging_config.file = _resolve_path(config_path, log_file)

    return AppConfig(
        feeds_file=feeds_file,
        env_file=env_file,
        batch_size=batch_size,
        timeout=timeout,
        user_agent=user_agent,
        cache=cache_config,
        rate_limit=rate_config,
        logging=logging_config,
    )


def resolve_cache_url(config: AppConfig) -> str:
    """Return the cache connection string, honouring the environment override."""
    return os.environ.get(CACHE_URL_ENV) or config.cache.connection_string
