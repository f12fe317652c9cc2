from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .config import Source
from .fetch import FetchError, fetch_feed_text
from .main import FeedParseError, IncompleteEntryPolicy, Post, parse

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], str]

# Each producer puts this on the channel exactly once, after its last post
_DONE = object()


@dataclass
class AggregateResult:
    posts: list[Post] = field(default_factory=list)
    failures: dict[str, Exception] = field(default_factory=dict)


@dataclass(frozen=True)
class _Failure:
    source: Source
    error: Exception


def _produce(
    source: Source,
    fetch: Fetcher,
    channel: queue.Queue,
    on_incomplete: IncompleteEntryPolicy,
) -> None:
    count = 0
    try:
        text = fetch(source.url)
        for post in parse(text, source.author, on_incomplete=on_incomplete):
            channel.put(post)
            count += 1
    except (FetchError, FeedParseError) as e:
        channel.put(_Failure(source, e))
    else:
        logger.info("Fetched %d posts from %s", count, source.slug)
    finally:
        channel.put(_DONE)


def aggregate(
    sources: Iterable[Source],
    *,
    fetch: Optional[Fetcher] = None,
    max_workers: Optional[int] = None,
    on_incomplete: IncompleteEntryPolicy = IncompleteEntryPolicy.TRUNCATE,
) -> AggregateResult:
    """Fetch and parse every source concurrently and collect their posts.

    One producer runs per source and pushes posts onto a shared channel as
    they are parsed. Posts from different sources arrive in no particular
    order; the collected list is sorted newest first once every producer
    has finished. A source that fails to fetch or parse is logged and
    reported in ``failures`` without affecting the others.
    """
    fetch = fetch or fetch_feed_text
    sources = list(sources)
    result = AggregateResult()
    if not sources:
        return result

    channel: queue.Queue = queue.Queue()
    with ThreadPoolExecutor(
        max_workers=max_workers or len(sources), thread_name_prefix="feedpull"
    ) as executor:
        futures = [
            executor.submit(_produce, source, fetch, channel, on_incomplete)
            for source in sources
        ]
        pending = len(futures)
        while pending:
            message = channel.get()
            if message is _DONE:
                pending -= 1
            elif isinstance(message, _Failure):
                logger.warning("Source %s failed: %s", message.source.slug, message.error)
                result.failures[message.source.slug] = message.error
            else:
                result.posts.append(message)

        # Anything other than a fetch or parse failure is a bug; let it surface
        for future in futures:
            future.result()

    result.posts.sort(key=lambda post: post.timestamp, reverse=True)
    return result
