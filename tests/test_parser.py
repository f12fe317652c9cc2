import dataclasses
import datetime

import pytest

from feedpull import (
    DateFormatError,
    Dialect,
    FeedParser,
    IncompleteEntryPolicy,
    MalformedDocumentError,
    ParserState,
    Post,
    UnexpectedTagError,
    parse,
)

UTC = datetime.timezone.utc


def _rss(*items: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom"'
        ' xmlns:media="http://search.yahoo.com/mrss/">'
        "<channel>"
        "<title>Channel title</title>"
        "<link>https://example.com/</link>"
        '<atom:link href="https://example.com/rss.xml" rel="self"/>'
        + "".join(items)
        + "</channel></rss>"
    )


def _atom(*entries: str, close: bool = True) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom">'
        "<title>Feed title</title>"
        '<link href="https://example.com/"/>'
        "<updated>2024-10-01T00:00:00Z</updated>"
        + "".join(entries)
        + ("</feed>" if close else "")
    )


def _item(title: str, link: str, date: str, extra: str = "") -> str:
    return (
        f"<item>{extra}<title>{title}</title><link>{link}</link>"
        f"<pubDate>{date}</pubDate></item>"
    )


def _entry(title: str, href: str, updated: str, extra: str = "") -> str:
    return (
        f'<entry>{extra}<title>{title}</title><link href="{href}"/>'
        f"<updated>{updated}</updated></entry>"
    )


def test_rss_items_in_document_order():
    xml = _rss(
        _item("First", "https://example.com/1", "Wed, 02 Oct 2024 15:00:00 +0000"),
        _item("Second", "https://example.com/2", "Thu, 03 Oct 2024 09:30:00 +0200"),
    )
    posts = list(parse(xml, "Phil Eaton"))

    assert posts == [
        Post(
            link="https://example.com/1",
            title="First",
            timestamp=datetime.datetime(2024, 10, 2, 15, 0, tzinfo=UTC),
            author="Phil Eaton",
        ),
        Post(
            link="https://example.com/2",
            title="Second",
            timestamp=datetime.datetime(2024, 10, 3, 7, 30, tzinfo=UTC),
            author="Phil Eaton",
        ),
    ]


def test_rss_dialect_detected():
    parser = parse(_rss(), "a")
    assert parser.dialect is Dialect.RSS
    assert parser.state is ParserState.BEFORE_FIRST_ENTRY


def test_atom_self_closing_link_uses_href():
    xml = _atom(_entry("Hello", "https://x/1", "2024-10-02T15:00:00Z"))
    parser = parse(xml, "Dan Luu")
    assert parser.dialect is Dialect.ATOM

    posts = list(parser)
    assert len(posts) == 1
    assert posts[0].link == "https://x/1"
    assert posts[0].title == "Hello"
    assert posts[0].timestamp == datetime.datetime(2024, 10, 2, 15, 0, tzinfo=UTC)


def test_atom_prefers_alternate_link():
    entry = (
        "<entry><title>Linked</title>"
        '<link rel="replies" href="https://x/1#comments"/>'
        '<link rel="alternate" href="https://x/1"/>'
        "<updated>2024-10-02T15:00:00Z</updated></entry>"
    )
    posts = list(parse(_atom(entry), "a"))
    assert posts[0].link == "https://x/1"


def test_atom_falls_back_to_other_link_when_no_alternate():
    entry = (
        "<entry><title>Related only</title>"
        '<link rel="related" href="https://x/related"/>'
        "<updated>2024-10-02T15:00:00Z</updated></entry>"
    )
    posts = list(parse(_atom(entry), "a"))
    assert posts[0].link == "https://x/related"


def test_atom_link_without_href_uses_text():
    entry = (
        "<entry><title>Text link</title><link>https://x/text</link>"
        "<updated>2024-10-02T15:00:00Z</updated></entry>"
    )
    assert list(parse(_atom(entry), "a"))[0].link == "https://x/text"


def test_cdata_title():
    xml = _rss(
        _item(
            "<![CDATA[Hello & World]]>",
            "https://example.com/1",
            "Wed, 02 Oct 2024 15:00:00 +0000",
        )
    )
    assert list(parse(xml, "a"))[0].title == "Hello & World"


def test_escaped_cdata_markers_are_stripped():
    xml = _rss(
        _item(
            "&lt;![CDATA[Tom &amp; Jerry]]&gt;",
            "https://example.com/1",
            "Wed, 02 Oct 2024 15:00:00 +0000",
        )
    )
    assert list(parse(xml, "a"))[0].title == "Tom & Jerry"


def test_entities_are_unescaped():
    xml = _rss(
        _item(
            "Fish &amp; Chips &#8212; &lt;b&gt;",
            "https://example.com/?a=1&amp;b=2",
            "Wed, 02 Oct 2024 15:00:00 +0000",
        )
    )
    post = list(parse(xml, "a"))[0]
    assert post.title == "Fish & Chips — <b>"
    assert post.link == "https://example.com/?a=1&b=2"


def test_whitespace_around_fields_is_stripped():
    xml = _rss(
        _item(
            "\n    Spaced out\n  ",
            "\n https://example.com/1 \n",
            "\n Wed, 02 Oct 2024 15:00:00 +0000 \n",
        )
    )
    post = list(parse(xml, "a"))[0]
    assert post.title == "Spaced out"
    assert post.link == "https://example.com/1"


def test_xhtml_atom_title_uses_all_text():
    entry = (
        '<entry><title type="xhtml"><div xmlns="http://www.w3.org/1999/xhtml">'
        "Rich <em>title</em></div></title>"
        '<link href="https://x/1"/><updated>2024-10-02T15:00:00Z</updated></entry>'
    )
    assert list(parse(_atom(entry), "a"))[0].title == "Rich title"


def test_html_root_is_rejected():
    html = "<html><head><title>Not a feed</title></head><body></body></html>"
    with pytest.raises(MalformedDocumentError, match="HTML"):
        parse(html, "a")


def test_unknown_root_is_rejected():
    with pytest.raises(MalformedDocumentError, match="Unknown feed type"):
        parse("<catalog><item/></catalog>", "a")


def test_empty_document_is_rejected():
    with pytest.raises(MalformedDocumentError):
        parse("", "a")


def test_garbage_is_rejected():
    with pytest.raises(MalformedDocumentError):
        parse("this is not xml at all", "a")


def test_malformed_document_error_is_value_error():
    with pytest.raises(ValueError):
        parse("<html></html>", "a")


def test_truncated_atom_yields_complete_entries_only():
    xml = _atom(
        _entry("One", "https://x/1", "2024-10-02T15:00:00Z"),
        _entry("Two", "https://x/2", "2024-10-03T15:00:00Z"),
        '<entry><title>Three</title><link href="https://x/3"/>',
        close=False,
    )
    parser = parse(xml, "a")
    posts = list(parser)

    assert [post.title for post in posts] == ["One", "Two"]
    assert parser.state is ParserState.EXHAUSTED
    assert parser.next_post() is None


@pytest.mark.parametrize("tail", ["", "\n", "<summary>Cut off"])
def test_unclosed_entry_with_every_field_is_dropped(tail):
    xml = _atom(
        _entry("One", "https://x/1", "2024-10-02T15:00:00Z"),
        '<entry><title>Two</title><link href="https://x/2"/>'
        "<updated>2024-10-03T15:00:00Z</updated>" + tail,
        close=False,
    )
    parser = parse(xml, "a")

    assert [post.title for post in parser] == ["One"]
    assert parser.state is ParserState.EXHAUSTED


def test_document_ending_in_its_only_entry_yields_nothing():
    xml = _atom(
        '<entry><title>Two</title><link href="https://x/2"/>'
        "<updated>2024-10-03T15:00:00Z</updated>\n",
        close=False,
    )
    assert list(parse(xml, "a")) == []


def test_truncated_mid_tag_ends_normally():
    xml = _atom(_entry("One", "https://x/1", "2024-10-02T15:00:00Z"), "<entry><tit", close=False)
    assert [post.title for post in parse(xml, "a")] == ["One"]


def test_rss_and_atom_dates_normalize_to_same_instant():
    rss = _rss(_item("Same", "https://x/1", "Wed, 02 Oct 2024 15:00:00 +0000"))
    atom = _atom(_entry("Same", "https://x/1", "2024-10-02T15:00:00Z"))
    assert list(parse(rss, "a")) == list(parse(atom, "a"))


def test_unrecognized_elements_are_skipped_with_their_subtree():
    extra = (
        "<description><title>Not the title</title></description>"
        "<media:title>Media title</media:title>"
        "<guid>https://example.com/guid</guid>"
    )
    xml = _rss(_item("Real", "https://example.com/1", "Wed, 02 Oct 2024 15:00:00 +0000", extra))
    assert list(parse(xml, "a"))[0].title == "Real"


def test_channel_fields_are_not_posts():
    posts = list(parse(_rss(), "a"))
    assert posts == []


def test_fields_after_completion_are_ignored():
    item = (
        "<item><title>Title</title><link>https://x/1</link>"
        "<pubDate>Wed, 02 Oct 2024 15:00:00 +0000</pubDate>"
        "<title>Late title</title><comments>https://x/1#c</comments></item>"
    )
    xml = _rss(item, _item("Next", "https://x/2", "Wed, 02 Oct 2024 16:00:00 +0000"))
    assert [post.title for post in parse(xml, "a")] == ["Title", "Next"]


def test_incomplete_entry_truncates_by_default():
    xml = _rss(
        _item("One", "https://x/1", "Wed, 02 Oct 2024 15:00:00 +0000"),
        "<item><title>No link</title><pubDate>Wed, 02 Oct 2024 16:00:00 +0000</pubDate></item>",
        _item("Three", "https://x/3", "Wed, 02 Oct 2024 17:00:00 +0000"),
    )
    parser = parse(xml, "a")
    assert [post.title for post in parser] == ["One"]
    assert parser.state is ParserState.EXHAUSTED


def test_incomplete_entry_skipped_when_configured():
    xml = _rss(
        _item("One", "https://x/1", "Wed, 02 Oct 2024 15:00:00 +0000"),
        "<item><title>No link</title><pubDate>Wed, 02 Oct 2024 16:00:00 +0000</pubDate></item>",
        _item("Three", "https://x/3", "Wed, 02 Oct 2024 17:00:00 +0000"),
    )
    posts = list(parse(xml, "a", on_incomplete=IncompleteEntryPolicy.SKIP))
    assert [post.title for post in posts] == ["One", "Three"]


def test_skip_policy_still_stops_at_end_of_document():
    xml = _atom(
        _entry("One", "https://x/1", "2024-10-02T15:00:00Z"),
        "<entry><title>Cut</title>",
        close=False,
    )
    posts = list(parse(xml, "a", on_incomplete=IncompleteEntryPolicy.SKIP))
    assert [post.title for post in posts] == ["One"]


def test_unparseable_date_is_fatal():
    xml = _rss(
        _item("One", "https://x/1", "Wed, 02 Oct 2024 15:00:00 +0000"),
        _item("Two", "https://x/2", "sometime last week"),
        _item("Three", "https://x/3", "Wed, 02 Oct 2024 17:00:00 +0000"),
    )
    parser = parse(xml, "a")
    assert next(parser).title == "One"
    with pytest.raises(DateFormatError) as excinfo:
        next(parser)
    assert excinfo.value.value == "sometime last week"
    assert isinstance(excinfo.value, MalformedDocumentError)

    assert parser.state is ParserState.EXHAUSTED
    assert list(parser) == []


def test_nested_entry_is_an_error():
    xml = _rss("<item><title>Outer</title><item><title>Inner</title></item></item>")
    parser = parse(xml, "a")
    with pytest.raises(UnexpectedTagError):
        list(parser)
    assert parser.state is ParserState.EXHAUSTED


def test_syntax_error_surfaces_while_iterating():
    xml = _rss(
        _item("One", "https://x/1", "Wed, 02 Oct 2024 15:00:00 +0000"),
        "<item><title>Broken</titel></item>",
    )
    with pytest.raises(MalformedDocumentError):
        list(parse(xml, "a"))


def test_small_chunks_give_same_posts():
    xml = _rss(
        *(
            _item(f"Post {i}", f"https://x/{i}", f"Wed, 02 Oct 2024 {i:02d}:00:00 +0000")
            for i in range(10)
        )
    )
    assert list(parse(xml, "a", chunk_size=7)) == list(parse(xml, "a"))


def test_invalid_chunk_size():
    with pytest.raises(ValueError):
        parse(_rss(), "a", chunk_size=0)


def test_posts_are_pulled_one_at_a_time():
    xml = _rss(
        _item("One", "https://x/1", "Wed, 02 Oct 2024 15:00:00 +0000"),
        _item("Two", "https://x/2", "Wed, 02 Oct 2024 16:00:00 +0000"),
    )
    parser = FeedParser(xml, "a")
    assert parser.next_post().title == "One"
    assert parser.state is ParserState.SEEKING_NEXT_ENTRY
    assert parser.next_post().title == "Two"
    assert parser.next_post() is None
    assert parser.state is ParserState.EXHAUSTED
    assert parser.next_post() is None


def test_post_is_immutable():
    post = list(parse(_atom(_entry("One", "https://x/1", "2024-10-02T15:00:00Z")), "a"))[0]
    with pytest.raises(dataclasses.FrozenInstanceError):
        post.title = "Changed"


def test_post_str():
    post = Post(
        link="https://x/1",
        title="One",
        timestamp=datetime.datetime(2024, 10, 2, 15, 0, tzinfo=UTC),
        author="Dan Luu",
    )
    assert str(post) == '2024-10-02T15:00:00+00:00 "One" (Dan Luu) - https://x/1'
