"""
SQLite storage for parsed posts.

Posts are keyed by link: storing a post whose link is already present is a
no-op, so the same feed can be stored on every run. The schema carries its
own version number in ``_metadata`` and is migrated forward on open.
"""

from __future__ import annotations

import datetime
import logging
import sqlite3
from pathlib import Path
from typing import Iterable

from .main import Post

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_MIGRATIONS: dict[int, tuple[str, ...]] = {
    1: (
        """
        CREATE TABLE IF NOT EXISTS posts(
            link TEXT PRIMARY KEY,
            title TEXT,
            date TEXT,
            author TEXT
        )
        """,
    ),
}


class StorageError(Exception):
    pass


class PostStore:
    def __init__(self, path: str | Path):
        self._conn = sqlite3.connect(str(path))
        try:
            self._migrate()
        except Exception:
            self._conn.close()
            raise

    def __enter__(self) -> PostStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    @property
    def version(self) -> int:
        self._conn.execute("CREATE TABLE IF NOT EXISTS _metadata(version INTEGER)")
        row = self._conn.execute(
            "SELECT version FROM _metadata ORDER BY version DESC LIMIT 1"
        ).fetchone()
        return row[0] if row else 0

    def _migrate(self) -> None:
        version = self.version
        if version > SCHEMA_VERSION:
            raise StorageError(
                f"Database schema version {version} is newer than supported ({SCHEMA_VERSION})"
            )
        for target in range(version + 1, SCHEMA_VERSION + 1):
            with self._conn:
                for statement in _MIGRATIONS[target]:
                    self._conn.execute(statement)
                self._conn.execute("INSERT INTO _metadata(version) VALUES(?)", (target,))
            logger.info("Migrated post database to version %d", target)

    def upsert_posts(self, posts: Iterable[Post]) -> int:
        """Store posts in one transaction, returning how many were new."""
        inserted = 0
        with self._conn:
            for post in posts:
                cursor = self._conn.execute(
                    "INSERT INTO posts(link, title, date, author) "
                    "VALUES(:link, :title, :date, :author) "
                    "ON CONFLICT(link) DO NOTHING",
                    {
                        "link": post.link,
                        "title": post.title,
                        "date": post.timestamp.isoformat(),
                        "author": post.author,
                    },
                )
                inserted += cursor.rowcount
        return inserted

    def fetch_all_posts(self) -> list[Post]:
        """All stored posts, newest first."""
        rows = self._conn.execute(
            "SELECT link, title, date, author FROM posts ORDER BY date DESC"
        ).fetchall()
        return [
            Post(
                link=link,
                title=title,
                timestamp=datetime.datetime.fromisoformat(date),
                author=author,
            )
            for link, title, date, author in rows
        ]
