from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class Source:
    slug: str
    url: str
    author: str


def parse_sources(data: Any) -> list[Source]:
    """Validate an already-loaded source list and build ``Source`` records.

    The expected shape is::

        sources:
          - slug: eatonphil
            url: https://notes.eatonphil.com/rss.xml
            author: Phil Eaton
          - slug: danluu
            url: https://danluu.com/atom.xml
            author: Dan Luu

    Every field is required. Slugs name a source in logs and error reports,
    so they must be unique.
    """
    if not isinstance(data, dict) or "sources" not in data:
        raise ValueError("sources file must be a mapping with a top-level 'sources' key")

    entries = data["sources"]
    if not isinstance(entries, list) or not entries:
        raise ValueError("'sources' must be a non-empty list")

    result: list[Source] = []
    seen: set[str] = set()
    for i, entry in enumerate(entries, 1):
        if not isinstance(entry, dict):
            raise ValueError(f"Source #{i} must be a mapping")
        fields = {}
        for key in ("slug", "url", "author"):
            value = entry.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"Source #{i} must include a string '{key}'")
            fields[key] = value.strip()

        if not fields["url"].startswith(("http://", "https://")):
            raise ValueError(
                f"Source '{fields['slug']}' URL must start with http:// or https://"
            )
        if fields["slug"] in seen:
            raise ValueError(f"Duplicate source slug '{fields['slug']}'")
        seen.add(fields["slug"])
        result.append(Source(**fields))
    return result


def load_sources(path: str | Path) -> list[Source]:
    """Read the YAML source list at ``path``."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return parse_sources(data)
