from __future__ import annotations

import datetime
import enum
import logging
import re
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Callable, Optional

from dateutil import parser as dateutil_parser
from lxml import etree

if TYPE_CHECKING:
    from lxml.etree import _Element

logger = logging.getLogger(__name__)

_UTC = datetime.timezone.utc

# Documents are fed to the pull parser this many bytes at a time
DEFAULT_CHUNK_SIZE = 64 * 1024

_RE_XML_DECL_ENCODING = re.compile(
    r'(<\?xml[^>]*encoding=["\'])([^"\']+)(["\'][^>]*\?>)', re.IGNORECASE
)
_RE_XML_DECL_ENCODING_BYTES = re.compile(
    rb'(<\?xml[^>]*encoding=["\'])([^"\']+)(["\'][^>]*\?>)', re.IGNORECASE
)
_RE_WHITESPACE = re.compile(r"\s+")
_RE_RFC822 = re.compile(
    r"^(?:[A-Za-z]+,?\s+)?(\d{1,2})\s+([A-Za-z]{3})[A-Za-z]*\.?\s+(\d{4}|\d{2})\s+"
    r"(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([+-]\d{2}:?\d{2}|[A-Za-z]{1,5})$"
)
_MONTHS_RFC822: dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
# Zone names RFC 822 itself defines, in seconds east of UTC
_RFC822_ZONES: dict[str, int] = {
    "UT": 0,
    "UTC": 0,
    "GMT": 0,
    "Z": 0,
    "EST": -18000,
    "EDT": -14400,
    "CST": -21600,
    "CDT": -18000,
    "MST": -25200,
    "MDT": -21600,
    "PST": -28800,
    "PDT": -25200,
}

_CDATA_OPEN = "<![CDATA["
_CDATA_CLOSE = "]]>"


class FeedParseError(ValueError):
    """Base class for everything that can go wrong while parsing a feed."""


class MalformedDocumentError(FeedParseError):
    """The document is not a usable RSS 2.0 or Atom document."""


class UnexpectedTagError(MalformedDocumentError):
    """An element showed up where the feed grammar does not allow it."""

    def __init__(self, tag: str, context: str):
        super().__init__(f"Unexpected <{tag}> {context}")
        self.tag = tag
        self.context = context


class DateFormatError(MalformedDocumentError):
    """A timestamp matched none of the accepted date grammars."""

    def __init__(self, value: str):
        super().__init__(f"Unrecognized timestamp: {value!r}")
        self.value = value


class Dialect(enum.Enum):
    RSS = "rss"
    ATOM = "atom"


class TagKind(enum.Enum):
    ENTRY_CONTAINER = "entry_container"
    TITLE = "title"
    LINK = "link"
    TIMESTAMP = "timestamp"
    UNRECOGNIZED = "unrecognized"


class ParserState(enum.Enum):
    BEFORE_FIRST_ENTRY = "before_first_entry"
    SEEKING_NEXT_ENTRY = "seeking_next_entry"
    INSIDE_ENTRY = "inside_entry"
    EXHAUSTED = "exhausted"


class IncompleteEntryPolicy(enum.Enum):
    """What to do when an entry closes before link, title and timestamp were all seen.

    TRUNCATE ends the whole sequence at that entry. SKIP drops only that entry
    and carries on with the next one. Running out of document in the middle of
    an entry always ends the sequence.
    """

    TRUNCATE = "truncate"
    SKIP = "skip"


@dataclass(frozen=True)
class Post:
    link: str
    title: str
    timestamp: datetime.datetime
    author: str

    def __str__(self) -> str:
        return f'{self.timestamp.isoformat()} "{self.title}" ({self.author}) - {self.link}'


_TAG_TABLE: dict[Dialect, dict[str, TagKind]] = {
    Dialect.RSS: {
        "item": TagKind.ENTRY_CONTAINER,
        "title": TagKind.TITLE,
        "link": TagKind.LINK,
        "pubDate": TagKind.TIMESTAMP,
    },
    Dialect.ATOM: {
        "entry": TagKind.ENTRY_CONTAINER,
        "title": TagKind.TITLE,
        "link": TagKind.LINK,
        "updated": TagKind.TIMESTAMP,
    },
}

_ROOT_DIALECTS: dict[str, Dialect] = {
    "rss": Dialect.RSS,
    "feed": Dialect.ATOM,
}

_NON_FEED_MESSAGES: dict[str, str] = {
    "html": "Received HTML page instead of feed",
    "body": "Received HTML fragment instead of feed",
    "div": "Received HTML fragment instead of feed",
    "rdf": "Received RSS 1.0 (RDF) document; only RSS 2.0 and Atom are supported",
    "opml": "Received OPML document instead of feed (OPML is an outline format, not a feed)",
    "urlset": "Received XML sitemap instead of feed (sitemap is for search engines, not a feed)",
    "sitemapindex": "Received XML sitemap instead of feed (sitemap is for search engines, not a feed)",
    "error": "Feed server returned error",
}


def classify_tag(dialect: Dialect, name: Optional[str]) -> TagKind:
    """Map an element's local name to the part of a post it carries."""
    if name is None:
        return TagKind.UNRECOGNIZED
    return _TAG_TABLE[dialect].get(name, TagKind.UNRECOGNIZED)


def _split_tag(tag: str) -> tuple[Optional[str], str]:
    if tag.startswith("{"):
        namespace, local = tag[1:].split("}", 1)
        return namespace, local
    return None, tag


def _local_name(tag: str, namespace: Optional[str]) -> Optional[str]:
    """Local name of ``tag`` if it lives in the document namespace, else None."""
    tag_namespace, local = _split_tag(tag)
    if tag_namespace != namespace:
        return None
    return local


# --------------------------------------------------------------------------
# Timestamps
# --------------------------------------------------------------------------


def _ensure_utc(dt: datetime.datetime) -> Optional[datetime.datetime]:
    """Return a timezone-aware datetime normalized to UTC."""
    try:
        return dt.replace(tzinfo=_UTC) if dt.tzinfo is None else dt.astimezone(_UTC)
    except (ValueError, OverflowError):
        return None


def _rfc822_offset(zone: str) -> Optional[int]:
    if zone[0] in "+-":
        digits = zone[1:].replace(":", "")
        seconds = int(digits[:2]) * 3600 + int(digits[2:4]) * 60
        seconds = seconds if zone[0] == "+" else -seconds
        # Python requires offset strictly between -24h and +24h
        if not (-86400 < seconds < 86400):
            return None
        return seconds
    return _RFC822_ZONES.get(zone.upper())


def _parse_rfc822(value: str) -> Optional[datetime.datetime]:
    """RSS ``pubDate`` grammar, e.g. ``Wed, 02 Oct 2024 15:00:00 +0000``."""
    m = _RE_RFC822.match(value)
    if m:
        day, mon_str, year, hour, minute, second, zone = m.groups()
        month = _MONTHS_RFC822.get(mon_str.lower())
        offset = _rfc822_offset(zone)
        if offset is None:
            # An unknown zone is not read as UTC
            return None
        if month is not None:
            full_year = int(year)
            if len(year) == 2:
                full_year += 2000 if full_year < 50 else 1900
            try:
                dt = datetime.datetime(
                    full_year,
                    month,
                    int(day),
                    int(hour),
                    int(minute),
                    int(second or 0),
                    tzinfo=datetime.timezone(datetime.timedelta(seconds=offset)),
                )
            except ValueError:
                return None
            return _ensure_utc(dt)

    # Spacing and layouts the regex does not cover
    words = value.split()
    if words and words[-1].isalpha() and words[-1].upper() not in _RFC822_ZONES:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return _ensure_utc(parsed)


def _parse_rfc3339(value: str) -> Optional[datetime.datetime]:
    """Atom ``updated`` grammar, e.g. ``2024-10-02T15:00:00Z``."""
    if len(value) < 10 or not value[0:4].isdigit() or value[4] != "-":
        return None
    try:
        dt = dateutil_parser.isoparse(value.upper())
    except (ValueError, OverflowError):
        return None
    return _ensure_utc(dt)


_TIMESTAMP_GRAMMARS: tuple[Callable[[str], Optional[datetime.datetime]], ...] = (
    _parse_rfc822,
    _parse_rfc3339,
)


@lru_cache(maxsize=4096)
def parse_timestamp(value: str) -> datetime.datetime:
    """Parse a feed timestamp into an aware UTC datetime.

    The RSS date grammar is tried first, then RFC 3339. Timestamps without
    an offset are taken to be UTC.

    Raises:
        DateFormatError: If no grammar accepts the value
    """
    candidate = _RE_WHITESPACE.sub(" ", value.strip())
    if candidate:
        for grammar in _TIMESTAMP_GRAMMARS:
            dt = grammar(candidate)
            if dt is not None:
                return dt
    raise DateFormatError(value)


# --------------------------------------------------------------------------
# Document text
# --------------------------------------------------------------------------


def _detect_xml_encoding(content: bytes) -> str:
    """Detect encoding from XML declaration or BOM.

    Returns the detected encoding or 'utf-8' as default.
    """
    if content.startswith((b"\xff\xfe", b"\xfe\xff")):
        return "utf-16"
    elif content.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"

    encoding_match = _RE_XML_DECL_ENCODING_BYTES.search(content[:2000])
    if encoding_match:
        return encoding_match.group(2).decode("ascii", errors="replace").lower()

    return "utf-8"


def decode_document(content: bytes, charset: Optional[str] = None) -> str:
    """Decode raw feed bytes to text.

    ``charset`` (usually from the HTTP Content-Type) wins when it actually
    decodes the bytes; otherwise the BOM or XML declaration decides.
    """
    if charset:
        try:
            return content.decode(charset)
        except (UnicodeDecodeError, LookupError):
            # Server lied about charset; fall back to the document's own claim
            pass
    try:
        return content.decode(_detect_xml_encoding(content))
    except (UnicodeDecodeError, LookupError):
        return content.decode("utf-8", errors="replace")


def _ensure_utf8_xml_declaration(content: str) -> str:
    """Ensure the XML declaration's encoding matches the UTF-8 bytes we emit."""
    if not content.startswith("<?xml"):
        return content
    return _RE_XML_DECL_ENCODING.sub(r"\1utf-8\3", content, count=1)


def _prepare_xml_bytes(text: str) -> bytes:
    text = text.lstrip("\ufeff").lstrip()
    return _ensure_utf8_xml_declaration(text).encode("utf-8", errors="replace")


def _strip_cdata(text: str) -> str:
    # lxml already unwraps real CDATA sections; this catches the escaped
    # "&lt;![CDATA[...]]&gt;" some feeds emit
    if text.startswith(_CDATA_OPEN) and text.endswith(_CDATA_CLOSE):
        return text[len(_CDATA_OPEN) : -len(_CDATA_CLOSE)]
    return text


# --------------------------------------------------------------------------
# Tokens
# --------------------------------------------------------------------------

_START = "start"
_END = "end"
_EOF = "eof"


class _PullTokenizer:
    """Pulls start/end/eof tokens out of lxml, feeding it only when it runs dry."""

    def __init__(self, data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._data = data
        self._offset = 0
        self._chunk_size = chunk_size
        self._closed = False
        self._parser = etree.XMLPullParser(
            events=(_START, _END),
            resolve_entities=False,
            no_network=True,
            remove_comments=True,
            remove_pis=True,
        )

    def next_token(self) -> tuple[str, Optional[_Element]]:
        while True:
            for event, element in self._parser.read_events():
                return event, element
            if self._closed:
                return _EOF, None
            self._feed_more()

    def _feed_more(self) -> None:
        if self._offset < len(self._data):
            chunk = self._data[self._offset : self._offset + self._chunk_size]
            self._offset += len(chunk)
            try:
                self._parser.feed(chunk)
            except etree.XMLSyntaxError as e:
                self._closed = True
                raise MalformedDocumentError(f"Failed to parse XML content: {e}") from e
            return

        self._closed = True
        try:
            self._parser.close()
        except etree.XMLSyntaxError as e:
            # Only complaints about the document ending early reach this
            # point; treat them as end of input
            logger.debug("Document ended prematurely: %s", e)

    def skip_subtree(self) -> bool:
        """Consume tokens through the end of the element just opened.

        Returns False if the document ran out first.
        """
        depth = 1
        while depth:
            event, _ = self.next_token()
            if event == _EOF:
                return False
            depth += 1 if event == _START else -1
        return True


def _release(element: _Element) -> None:
    """Drop a finished entry and everything before it from the partial tree."""
    element.clear()
    parent = element.getparent()
    if parent is None:
        return
    while element.getprevious() is not None:
        del parent[0]


# --------------------------------------------------------------------------
# Dialect detection
# --------------------------------------------------------------------------


def detect_dialect(tokens: _PullTokenizer) -> tuple[Dialect, Optional[str]]:
    """Read the root element and decide between RSS and Atom.

    Returns the dialect and the root's namespace, which is the namespace
    entry fields are expected in.

    Raises:
        MalformedDocumentError: For an empty document or any other root
    """
    event, root = tokens.next_token()
    if event != _START or root is None:
        raise MalformedDocumentError("Empty document: no root element found")

    namespace, local = _split_tag(root.tag)
    dialect = _ROOT_DIALECTS.get(local)
    if dialect is None:
        message = _NON_FEED_MESSAGES.get(local.lower())
        raise MalformedDocumentError(message or f"Unknown feed type: {root.tag}")
    return dialect, namespace


# --------------------------------------------------------------------------
# Entries
# --------------------------------------------------------------------------


class _EntryEnd(enum.Enum):
    OPEN = "open"  # all fields found, closing element not consumed yet
    CLOSED = "closed"
    END_OF_DOCUMENT = "end_of_document"


@dataclass
class _EntryFields:
    link: Optional[str] = None
    fallback_link: Optional[str] = None
    title: Optional[str] = None
    timestamp: Optional[datetime.datetime] = None

    @property
    def complete(self) -> bool:
        return (
            self.link is not None
            and self.title is not None
            and self.timestamp is not None
        )

    def settle(self) -> bool:
        """Fall back to a non-alternate link once the entry has closed."""
        if self.link is None:
            self.link = self.fallback_link
        return self.complete


def _read_text(tokens: _PullTokenizer, element: _Element) -> Optional[str]:
    if not tokens.skip_subtree():
        return None
    return _strip_cdata("".join(element.itertext()).strip())


def _extract_entry(
    tokens: _PullTokenizer,
    dialect: Dialect,
    namespace: Optional[str],
) -> tuple[_EntryEnd, _EntryFields]:
    """Collect link, title and timestamp from the entry the tokenizer is inside.

    Every child element is consumed whole, so the first end token seen here
    belongs to the entry itself.
    """
    fields = _EntryFields()
    while not fields.complete:
        event, element = tokens.next_token()
        if event == _EOF:
            return _EntryEnd.END_OF_DOCUMENT, fields
        if event == _END:
            fields.settle()
            return _EntryEnd.CLOSED, fields
        if element is None:
            raise MalformedDocumentError("Start token arrived without an element")

        kind = classify_tag(dialect, _local_name(element.tag, namespace))
        if kind is TagKind.ENTRY_CONTAINER:
            raise UnexpectedTagError(element.tag, "inside another entry")

        if kind is TagKind.UNRECOGNIZED:
            if not tokens.skip_subtree():
                return _EntryEnd.END_OF_DOCUMENT, fields
            continue

        href = element.get("href") if dialect is Dialect.ATOM else None
        if kind is TagKind.LINK and href is not None:
            if not tokens.skip_subtree():
                return _EntryEnd.END_OF_DOCUMENT, fields
            if element.get("rel", "alternate") == "alternate":
                fields.link = href.strip()
            elif fields.fallback_link is None:
                fields.fallback_link = href.strip()
            continue

        text = _read_text(tokens, element)
        if text is None:
            return _EntryEnd.END_OF_DOCUMENT, fields
        if kind is TagKind.TITLE:
            fields.title = text
        elif kind is TagKind.LINK:
            fields.link = text
        else:
            fields.timestamp = parse_timestamp(text)

    return _EntryEnd.OPEN, fields


# --------------------------------------------------------------------------
# Driver
# --------------------------------------------------------------------------


class FeedParser:
    """Lazily turn one RSS 2.0 or Atom document into ``Post`` records.

    The dialect is decided as soon as the parser is built; every later
    step only happens when the caller asks for the next post. A parser
    runs once: iterate again by building a new one.

    Raises:
        MalformedDocumentError: When built, if the root is neither
            ``rss`` nor ``feed``; while iterating, on XML syntax errors,
            unexpected tags and unparseable timestamps
    """

    def __init__(
        self,
        text: str,
        author: str,
        *,
        on_incomplete: IncompleteEntryPolicy = IncompleteEntryPolicy.TRUNCATE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.author = author
        self.on_incomplete = on_incomplete
        self._tokens = _PullTokenizer(_prepare_xml_bytes(text), chunk_size)
        self._entry: Optional[_Element] = None
        self.dialect, self._namespace = detect_dialect(self._tokens)
        self.state = ParserState.BEFORE_FIRST_ENTRY
        logger.debug("Detected %s document for %s", self.dialect.value, author)

    def __iter__(self) -> FeedParser:
        return self

    def __next__(self) -> Post:
        post = self.next_post()
        if post is None:
            raise StopIteration
        return post

    def next_post(self) -> Optional[Post]:
        """Return the next post, or None once the document is used up."""
        try:
            while self.state is not ParserState.EXHAUSTED:
                if self.state is ParserState.INSIDE_ENTRY:
                    post = self._finish_entry()
                    if post is not None:
                        return post
                else:
                    self._seek_entry()
        except FeedParseError:
            self.state = ParserState.EXHAUSTED
            raise
        return None

    def _seek_entry(self) -> None:
        while True:
            event, element = self._tokens.next_token()
            if event == _EOF:
                self.state = ParserState.EXHAUSTED
                return
            if event != _START or element is None:
                continue
            name = _local_name(element.tag, self._namespace)
            if classify_tag(self.dialect, name) is TagKind.ENTRY_CONTAINER:
                self._entry = element
                self.state = ParserState.INSIDE_ENTRY
                return

    def _finish_entry(self) -> Optional[Post]:
        end, fields = _extract_entry(self._tokens, self.dialect, self._namespace)

        if end is _EntryEnd.OPEN:
            closed = self._tokens.skip_subtree()
        else:
            closed = end is _EntryEnd.CLOSED

        if closed and self._entry is not None:
            _release(self._entry)
        self._entry = None

        link, title, timestamp = fields.link, fields.title, fields.timestamp
        if link is None or title is None or timestamp is None:
            if closed and self.on_incomplete is IncompleteEntryPolicy.SKIP:
                logger.debug("Skipping incomplete entry in feed for %s", self.author)
                self.state = ParserState.SEEKING_NEXT_ENTRY
            else:
                logger.debug(
                    "Incomplete entry in feed for %s, ending the sequence", self.author
                )
                self.state = ParserState.EXHAUSTED
            return None

        if not closed:
            logger.debug(
                "Document for %s ended inside an entry, dropping it", self.author
            )
            self.state = ParserState.EXHAUSTED
            return None

        self.state = ParserState.SEEKING_NEXT_ENTRY
        return Post(link=link, title=title, timestamp=timestamp, author=self.author)


def parse(
    source: str | bytes,
    author: str,
    *,
    on_incomplete: IncompleteEntryPolicy = IncompleteEntryPolicy.TRUNCATE,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> FeedParser:
    """Parse an RSS 2.0 or Atom document.

    Args:
        source: Document text, or raw bytes decoded via the BOM / XML declaration
        author: Author credited on every post of this document
        on_incomplete: What an entry missing link, title or timestamp does
        chunk_size: Bytes handed to the XML tokenizer at a time

    Returns:
        A ``FeedParser`` yielding ``Post`` records in document order

    Raises:
        MalformedDocumentError: If the document is not RSS 2.0 or Atom
    """
    if isinstance(source, bytes):
        source = decode_document(source)
    return FeedParser(
        source, author, on_incomplete=on_incomplete, chunk_size=chunk_size
    )
