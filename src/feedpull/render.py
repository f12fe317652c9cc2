from __future__ import annotations

import html as _html_mod
from pathlib import Path
from typing import Iterable

from .main import Post

OUTPUT_FILENAME = "feed.html"

_PAGE_START = (
    '<html lang="en"><head><meta charset="utf-8">'
    '<link rel="stylesheet" href="style.css"></head><body>'
)
_PAGE_END = "</body></html>\n"
_ITEM = (
    '<div class="item">'
    '<span class="date">{date}</span> '
    '<a href="{link}">{title}</a> '
    '- <span class="author">{author}</span>'
    "</div>"
)


def render_html(posts: Iterable[Post]) -> str:
    """Render posts, in the order given, as a standalone HTML page."""
    escape = _html_mod.escape
    parts = [_PAGE_START]
    for post in posts:
        parts.append(
            _ITEM.format(
                date=post.timestamp.date().isoformat(),
                link=escape(post.link, quote=True),
                title=escape(post.title),
                author=escape(post.author),
            )
        )
    parts.append(_PAGE_END)
    return "\n".join(parts)


def write_html(posts: Iterable[Post], output_dir: str | Path) -> Path:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / OUTPUT_FILENAME
    path.write_text(render_html(posts), encoding="utf-8")
    return path
