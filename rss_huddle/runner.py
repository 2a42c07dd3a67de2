"""Batched fan-out of feed fetches over the registry."""

from __future__ import annotations

import concurrent.futures
import logging
import math
import time
from typing import List, Optional, Sequence

from .config import DEFAULT_USER_AGENT
from .feeds import DEFAULT_TIMEOUT, fetch_feed
from .models import AggregateResult, FeedDescriptor, FeedResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 15


def fetch_all_feeds(
    feeds: Sequence[FeedDescriptor],
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
) -> AggregateResult:
    """Fetch every feed in chunks of ``batch_size`` and keep the successes.

    Chunks run one after another; the fetches inside a chunk run concurrently
    and the whole chunk settles before the next one starts. Successes are kept
    in registry order regardless of completion order.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1.")
    if not feeds:
        return AggregateResult(sources=[])

    sources: List[FeedResult] = []
    start = time.monotonic()
    total_batches = math.ceil(len(feeds) / batch_size)

    def process_feed(feed: FeedDescriptor) -> Optional[FeedResult]:
        return fetch_feed(feed, timeout=timeout, user_agent=user_agent)

    with concurrent.futures.ThreadPoolExecutor(max_workers=batch_size) as executor:
        for offset in range(0, len(feeds), batch_size):
            batch = feeds[offset : offset + batch_size]
            logger.info(
                "Processing batch %d/%d (%d feeds)",
                offset // batch_size + 1,
                total_batches,
                len(batch),
            )
            futures = [executor.submit(process_feed, feed) for feed in batch]
            concurrent.futures.wait(futures)

            for feed, future in zip(batch, futures):
                try:
                    result = future.result()
                except Exception:  # noqa: BLE001
                    logger.exception("Feed %s failed", feed.url)
                    continue
                if result is not None:
                    sources.append(result)

    duration = time.monotonic() - start
    logger.info(
        "Successfully processed %d of %d feeds in %ds",
        len(sources),
        len(feeds),
        round(duration),
    )
    return AggregateResult(sources=sources)
