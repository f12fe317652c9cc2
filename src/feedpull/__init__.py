from .main import (
    DateFormatError,
    Dialect,
    FeedParseError,
    FeedParser,
    IncompleteEntryPolicy,
    MalformedDocumentError,
    ParserState,
    Post,
    UnexpectedTagError,
    parse,
    parse_timestamp,
)

__all__ = [
    "DateFormatError",
    "Dialect",
    "FeedParseError",
    "FeedParser",
    "IncompleteEntryPolicy",
    "MalformedDocumentError",
    "ParserState",
    "Post",
    "UnexpectedTagError",
    "parse",
    "parse_timestamp",
]
