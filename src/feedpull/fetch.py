from __future__ import annotations

import gzip
import http.client
import logging
import zlib
from urllib.error import URLError
from urllib.request import (
    HTTPErrorProcessor,
    HTTPRedirectHandler,
    Request,
    build_opener,
)

from .main import decode_document

try:
    import brotli

    HAS_BROTLI = True
except ImportError:
    HAS_BROTLI = False

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
USER_AGENT = "feedpull/0.1"


class FetchError(Exception):
    """Retrieving a feed document failed."""


def _decompress(content: bytes, content_encoding: str | None) -> bytes:
    if content_encoding == "gzip":
        return gzip.decompress(content)
    elif content_encoding == "deflate":
        return zlib.decompress(content, -zlib.MAX_WBITS)
    elif content_encoding == "br":
        if not HAS_BROTLI:
            raise FetchError(
                "Received brotli-compressed response but 'brotli' is not installed"
            )
        return brotli.decompress(content)
    return content


def fetch_feed_text(url: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Download a feed document and return it as text.

    Raises:
        FetchError: On network or HTTP errors, or an undecodable body
    """
    accept_encoding = "gzip, deflate, br" if HAS_BROTLI else "gzip, deflate"
    request = Request(
        url,
        method="GET",
        headers={
            "Accept-Encoding": accept_encoding,
            "User-Agent": USER_AGENT,
        },
    )
    opener = build_opener(HTTPRedirectHandler(), HTTPErrorProcessor())
    try:
        with opener.open(request, timeout=timeout) as response:
            content: bytes = response.read()
            content_encoding = response.headers.get("Content-Encoding")
            content_charset = response.headers.get_content_charset()
    except (URLError, OSError, http.client.HTTPException) as e:
        raise FetchError(f"HTTP error fetching {url}: {e}") from e

    try:
        content = _decompress(content, content_encoding)
    except (OSError, EOFError, zlib.error) as e:
        raise FetchError(f"Failed to decompress {url}: {e}") from e

    logger.debug("Fetched %d bytes from %s", len(content), url)
    return decode_document(content, content_charset)
