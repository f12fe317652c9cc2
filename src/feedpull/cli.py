from __future__ import annotations

import argparse
import logging
from functools import partial
from typing import Optional, Sequence

from .config import load_sources
from .fetch import DEFAULT_TIMEOUT, fetch_feed_text
from .main import IncompleteEntryPolicy
from .pipeline import aggregate
from .render import write_html
from .storage import PostStore

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedpull",
        description="Collect posts from RSS and Atom feeds into one HTML page.",
    )
    parser.add_argument("--sources", required=True, help="YAML file listing the feeds to read.")
    parser.add_argument("--db", help="SQLite database to keep posts in across runs.")
    parser.add_argument("--output", default="html", help="Directory to write feed.html into.")
    parser.add_argument("--workers", type=int, default=None, help="Concurrent fetches (default: one per source).")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout in seconds.")
    parser.add_argument(
        "--skip-incomplete",
        action="store_true",
        help="Skip entries missing a link, title or date instead of stopping at them.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sources = load_sources(args.sources)
    policy = (
        IncompleteEntryPolicy.SKIP if args.skip_incomplete else IncompleteEntryPolicy.TRUNCATE
    )
    result = aggregate(
        sources,
        fetch=partial(fetch_feed_text, timeout=args.timeout),
        max_workers=args.workers,
        on_incomplete=policy,
    )
    logger.info(
        "Collected %d posts from %d of %d sources",
        len(result.posts),
        len(sources) - len(result.failures),
        len(sources),
    )

    posts = result.posts
    if args.db:
        with PostStore(args.db) as store:
            inserted = store.upsert_posts(posts)
            logger.info("Stored %d new posts in %s", inserted, args.db)
            posts = store.fetch_all_posts()

    path = write_html(posts, args.output)
    logger.info("Wrote %d posts to %s", len(posts), path)

    return 1 if len(result.failures) == len(sources) else 0
