"""Shared data models for rss_huddle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

CACHE_FORMAT_VERSION = "1.0"


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class FeedDescriptor:
    """Registry entry for a single RSS feed."""

    url: str
    image: Optional[str] = None
    is_podcast: bool = False
    is_top_channel: bool = False
    is_up_and_coming: bool = False
    title: Optional[str] = None

    @property
    def label(self) -> str:
        return self.title or self.url


@dataclass
class Article:
    """Normalised feed item."""

    title: str
    link: str
    thumbnail: Optional[str] = None
    published_at: Optional[datetime] = None
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "link": self.link,
            "thumbnail": self.thumbnail,
            "pubDate": _format_datetime(self.published_at),
            "contentSnippet": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Article":
        return cls(
            title=data["title"],
            link=data["link"],
            thumbnail=data.get("thumbnail"),
            published_at=_parse_datetime(data.get("pubDate")),
            summary=data.get("contentSnippet") or "",
        )


@dataclass
class SourceInfo:
    """Feed-level metadata attached to a FeedResult."""

    title: str
    link: str
    image: Optional[str] = None
    updated_at: Optional[datetime] = None
    is_podcast: bool = False
    is_top_channel: bool = False
    is_up_and_coming: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "link": self.link,
            "image": self.image,
            "updatedAt": _format_datetime(self.updated_at),
            "isPodcast": self.is_podcast,
            "isTopChannel": self.is_top_channel,
            "isUpAndComing": self.is_up_and_coming,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceInfo":
        return cls(
            title=data["title"],
            link=data["link"],
            image=data.get("image"),
            updated_at=_parse_datetime(data.get("updatedAt")),
            is_podcast=bool(data.get("isPodcast", False)),
            is_top_channel=bool(data.get("isTopChannel", False)),
            is_up_and_coming=bool(data.get("isUpAndComing", False)),
        )


@dataclass
class FeedResult:
    """Outcome of one successfully fetched feed."""

    source: SourceInfo
    articles: List[Article]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "articles": [article.to_dict() for article in self.articles],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedResult":
        return cls(
            source=SourceInfo.from_dict(data["source"]),
            articles=[Article.from_dict(item) for item in data.get("articles", [])],
        )


@dataclass
class AggregateResult:
    """Combined output of one pass over the feed registry."""

    sources: List[FeedResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"sources": [source.to_dict() for source in self.sources]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateResult":
        return cls(
            sources=[FeedResult.from_dict(item) for item in data.get("sources", [])]
        )


@dataclass
class CacheEntry:
    """The single persisted cache record."""

    data: AggregateResult
    timestamp: int
    feed_count: int
    version: str = CACHE_FORMAT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data.to_dict(),
            "timestamp": self.timestamp,
            "feedCount": self.feed_count,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            data=AggregateResult.from_dict(data["data"]),
            timestamp=int(data["timestamp"]),
            feed_count=int(data.get("feedCount", 0)),
            version=str(data.get("version", CACHE_FORMAT_VERSION)),
        )
