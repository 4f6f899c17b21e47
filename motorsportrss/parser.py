"""RSS/Atom feed parsing for MotorsportRSS.

The payload is read as a stream of start/end tokens. The root element picks
the grammar (RSS for ``rss``/``channel``, Atom for ``feed``); when the RSS
grammar finds nothing valid the Atom grammar is tried, and feedparser's
lenient parser is the last resort before giving up.
"""

import io
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

import feedparser
from bs4 import BeautifulSoup

from .models import FeedItem

logger = logging.getLogger(__name__)

ATOM_NS = "http://www.w3.org/2005/Atom"
ATOM_03_NS = "http://purl.org/atom/ns#"
MEDIA_NS = "http://search.yahoo.com/mrss"
XHTML_NS = "http://www.w3.org/1999/xhtml"


class FeedFormat(Enum):
    """Grammar that produced a parse result."""

    RSS = "rss"
    ATOM = "atom"
    FALLBACK = "fallback"


class RssElement(Enum):
    """Elements recognized by the RSS grammar."""

    CHANNEL = "channel"
    ITEM = "item"
    TITLE = "title"
    LINK = "link"
    DESCRIPTION = "description"
    PUB_DATE = "pubDate"
    CATEGORY = "category"
    GUID = "guid"
    ENCLOSURE = "enclosure"
    MEDIA_GROUP = "media:group"
    MEDIA_CONTENT = "media:content"
    MEDIA_THUMBNAIL = "media:thumbnail"
    OTHER = ""


class AtomElement(Enum):
    """Elements recognized by the Atom grammar."""

    FEED = "feed"
    ENTRY = "entry"
    TITLE = "title"
    LINK = "link"
    ID = "id"
    SUMMARY = "summary"
    CONTENT = "content"
    PUBLISHED = "published"
    UPDATED = "updated"
    CATEGORY = "category"
    MEDIA_GROUP = "media:group"
    MEDIA_CONTENT = "media:content"
    MEDIA_THUMBNAIL = "media:thumbnail"
    OTHER = ""


_MEDIA_KINDS = {
    "group": "media:group",
    "content": "media:content",
    "thumbnail": "media:thumbnail",
}


@dataclass
class ParsedFeed:
    """Result of parsing a feed payload."""

    format: FeedFormat
    items: list[FeedItem]


class FeedParseError(Exception):
    """Raised when no grammar yields a valid item."""

    pass


def parse_feed_content(content: bytes) -> ParsedFeed:
    """Parse a feed payload into items.

    Only items carrying both a title and a link are returned. Items without
    a guid get one derived from link and title.

    Args:
        content: Raw response body

    Returns:
        ParsedFeed with the grammar used and the valid items

    Raises:
        FeedParseError: If no grammar finds a valid item
    """
    stream_error: Optional[ET.ParseError] = None
    root = None
    try:
        root = _detect_root(content)
    except ET.ParseError as e:
        stream_error = e

    if stream_error is None:
        if root is AtomElement.FEED:
            grammars = [(FeedFormat.ATOM, _parse_atom)]
        else:
            grammars = [(FeedFormat.RSS, _parse_rss), (FeedFormat.ATOM, _parse_atom)]

        for feed_format, grammar in grammars:
            try:
                items = grammar(content)
            except ET.ParseError as e:
                stream_error = e
                break
            if items:
                return ParsedFeed(format=feed_format, items=items)
            logger.debug("%s grammar found no valid items", feed_format.value)

    items = _parse_permissive(content)
    if items:
        logger.debug("Feed parsed with permissive fallback (%d items)", len(items))
        return ParsedFeed(format=FeedFormat.FALLBACK, items=items)

    if stream_error is not None:
        raise FeedParseError(f"XML parsing error: {stream_error}")
    raise FeedParseError("XML parsing error: no valid RSS or Atom items found")


def extract_image_from_html(html: str) -> str:
    """Return the src of the first <img> tag in an HTML fragment."""
    if not html or "<img" not in html.lower():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    img = soup.find("img", src=True)
    if img is None:
        return ""
    return img["src"].strip()


def _tokens(content: bytes) -> Iterator[tuple[str, ET.Element]]:
    return ET.iterparse(io.BytesIO(content), events=("start", "end"))


def _detect_root(content: bytes):
    """Peek at the first start tag to pick a grammar."""
    for event, elem in _tokens(content):
        if event != "start":
            continue
        atom_kind = _atom_kind(elem.tag)
        if atom_kind is AtomElement.FEED:
            return atom_kind
        rss_kind = _rss_kind(elem.tag)
        if rss_kind is RssElement.CHANNEL or _split_tag(elem.tag) == ("", "rss"):
            return RssElement.CHANNEL
        return None
    return None


def _split_tag(tag: str) -> tuple[str, str]:
    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace.rstrip("/"), local
    return "", tag


def _media_kind(namespace: str, local: str) -> Optional[str]:
    if namespace == MEDIA_NS:
        return _MEDIA_KINDS.get(local)
    return None


def _rss_kind(tag: str) -> RssElement:
    namespace, local = _split_tag(tag)
    media = _media_kind(namespace, local)
    if media:
        return RssElement(media)
    if namespace:
        return RssElement.OTHER
    try:
        return RssElement(local)
    except ValueError:
        return RssElement.OTHER


def _atom_kind(tag: str) -> AtomElement:
    namespace, local = _split_tag(tag)
    media = _media_kind(namespace, local)
    if media:
        return AtomElement(media)
    if namespace not in ("", ATOM_NS, ATOM_03_NS):
        return AtomElement.OTHER
    try:
        return AtomElement(local)
    except ValueError:
        return AtomElement.OTHER


def _text(elem: ET.Element) -> str:
    return (elem.text or "").strip()


def _inner_markup(elem: ET.Element) -> str:
    """Text of an element, or its serialized children for inline xhtml."""
    if len(elem) == 0:
        return _text(elem)
    parts = [elem.text or ""]
    parts.extend(_serialize(child) for child in elem)
    return "".join(parts).strip()


def _serialize(elem: ET.Element) -> str:
    # Inline xhtml is written without ns0: prefixes
    if _split_tag(elem.tag)[0] == XHTML_NS:
        try:
            return ET.tostring(elem, encoding="unicode", default_namespace=XHTML_NS)
        except ValueError:
            pass
    return ET.tostring(elem, encoding="unicode")


def _is_image_type(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and mime_type.lower().startswith("image/")


def _media_children(elem: ET.Element) -> Iterator[ET.Element]:
    for child in elem:
        yield child
        if _split_tag(child.tag) == (MEDIA_NS, "group"):
            yield from child


def _parse_rss(content: bytes) -> list[FeedItem]:
    items = []
    for event, elem in _tokens(content):
        if event == "end" and _rss_kind(elem.tag) is RssElement.ITEM:
            item = _build_rss_item(elem)
            if item is not None:
                items.append(item)
            elem.clear()
    return items


def _build_rss_item(elem: ET.Element) -> Optional[FeedItem]:
    fields = {}
    enclosure_image = ""
    media_image = ""

    for child in _media_children(elem):
        kind = _rss_kind(child.tag)
        if kind is RssElement.TITLE:
            fields.setdefault("title", _text(child))
        elif kind is RssElement.LINK:
            fields.setdefault("link", _text(child))
        elif kind is RssElement.DESCRIPTION:
            fields.setdefault("description", _text(child))
        elif kind is RssElement.PUB_DATE:
            fields.setdefault("pub_date", _text(child))
        elif kind is RssElement.CATEGORY:
            fields.setdefault("category", _text(child))
        elif kind is RssElement.GUID:
            fields.setdefault("guid", _text(child))
        elif kind is RssElement.ENCLOSURE:
            if not enclosure_image and _is_image_type(child.get("type")):
                enclosure_image = (child.get("url") or "").strip()
        elif kind in (RssElement.MEDIA_CONTENT, RssElement.MEDIA_THUMBNAIL):
            if not media_image:
                media_image = (child.get("url") or "").strip()
        elif kind in (RssElement.CHANNEL, RssElement.ITEM, RssElement.MEDIA_GROUP, RssElement.OTHER):
            pass

    return _finish_item(fields, enclosure_image, media_image)


def _parse_atom(content: bytes) -> list[FeedItem]:
    items = []
    for event, elem in _tokens(content):
        if event == "end" and _atom_kind(elem.tag) is AtomElement.ENTRY:
            item = _build_atom_entry(elem)
            if item is not None:
                items.append(item)
            elem.clear()
    return items


def _build_atom_entry(elem: ET.Element) -> Optional[FeedItem]:
    fields = {}
    enclosure_image = ""
    media_image = ""
    fallback_link = ""

    for child in _media_children(elem):
        kind = _atom_kind(child.tag)
        if kind is AtomElement.TITLE:
            fields.setdefault("title", _inner_markup(child))
        elif kind is AtomElement.LINK:
            href = (child.get("href") or "").strip() or _text(child)
            rel = child.get("rel", "alternate")
            if rel == "enclosure":
                if not enclosure_image and _is_image_type(child.get("type")):
                    enclosure_image = href
            elif rel == "alternate":
                fields.setdefault("link", href)
            elif not fallback_link:
                fallback_link = href
        elif kind is AtomElement.ID:
            fields.setdefault("guid", _text(child))
        elif kind in (AtomElement.SUMMARY, AtomElement.CONTENT):
            markup = _inner_markup(child)
            if markup:
                fields.setdefault("description", markup)
        elif kind in (AtomElement.PUBLISHED, AtomElement.UPDATED):
            fields.setdefault("pub_date", _text(child))
        elif kind is AtomElement.CATEGORY:
            fields.setdefault("category", (child.get("term") or "").strip() or _text(child))
        elif kind in (AtomElement.MEDIA_CONTENT, AtomElement.MEDIA_THUMBNAIL):
            if not media_image:
                media_image = (child.get("url") or "").strip()
        elif kind in (AtomElement.FEED, AtomElement.ENTRY, AtomElement.MEDIA_GROUP, AtomElement.OTHER):
            pass

    if not fields.get("link") and fallback_link:
        fields["link"] = fallback_link
    return _finish_item(fields, enclosure_image, media_image)


def _finish_item(fields: dict, enclosure_image: str, media_image: str) -> Optional[FeedItem]:
    """Build the item, applying image priority and the title/link check."""
    title = fields.pop("title", "")
    link = fields.pop("link", "")
    if not title or not link:
        return None

    item = FeedItem(title=title, link=link, **fields)
    item.image_url = (
        enclosure_image or media_image or extract_image_from_html(item.description)
    )
    item.ensure_guid()
    return item


def _parse_permissive(content: bytes) -> list[FeedItem]:
    """Last-resort parse with feedparser's lenient markup handling."""
    parsed = feedparser.parse(content)
    items = []
    for entry in parsed.entries:
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or "").strip()
        if not title or not link:
            continue

        description = entry.get("summary") or ""
        if not description and entry.get("content"):
            description = entry["content"][0].get("value", "")

        tags = entry.get("tags") or []
        category = (tags[0].get("term") or "") if tags else ""

        item = FeedItem(
            title=title,
            link=link,
            description=description.strip(),
            pub_date=(entry.get("published") or entry.get("updated") or "").strip(),
            category=category.strip(),
            guid=(entry.get("id") or "").strip(),
        )
        item.image_url = (
            _first_image_enclosure(entry)
            or _first_media_url(entry)
            or extract_image_from_html(item.description)
        )
        item.ensure_guid()
        items.append(item)
    return items


def _first_image_enclosure(entry) -> str:
    for enclosure in entry.get("enclosures") or []:
        if _is_image_type(enclosure.get("type")) and enclosure.get("href"):
            return enclosure["href"]
    return ""


def _first_media_url(entry) -> str:
    for key in ("media_content", "media_thumbnail"):
        for media in entry.get(key) or []:
            if media.get("url"):
                return media["url"]
    return ""
