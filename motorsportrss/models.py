"""Data models for MotorsportRSS."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


def derive_guid(link: str, title: str) -> str:
    """Derive a stable identifier for an item whose feed omits one.

    Args:
        link: Item link
        title: Item title

    Returns:
        Hex digest of link concatenated with title
    """
    return hashlib.md5((link + title).encode("utf-8")).hexdigest()


@dataclass
class FeedItem:
    """Represents one syndicated article."""

    title: str
    link: str
    description: str = ""
    pub_date: str = ""
    image_url: str = ""
    category: str = ""
    guid: str = ""
    is_read: bool = False
    fetch_time: datetime = field(default_factory=datetime.now)

    def ensure_guid(self) -> str:
        """Fill in a derived guid when the source provided none."""
        if not self.guid:
            self.guid = derive_guid(self.link, self.title)
        return self.guid

    def to_record(self) -> dict[str, Any]:
        """Convert to the cache file record layout."""
        return {
            "title": self.title,
            "link": self.link,
            "description": self.description,
            "pubDate": self.pub_date,
            "imageUrl": self.image_url,
            "category": self.category,
            "guid": self.guid,
            "isRead": self.is_read,
            "fetchTime": self.fetch_time.isoformat(timespec="seconds"),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "FeedItem":
        """Build an item from a cache file record.

        Missing keys fall back to empty values, and an unparseable
        fetchTime falls back to the current time.
        """
        return cls(
            title=str(record.get("title") or ""),
            link=str(record.get("link") or ""),
            description=str(record.get("description") or ""),
            pub_date=str(record.get("pubDate") or ""),
            image_url=str(record.get("imageUrl") or ""),
            category=str(record.get("category") or ""),
            guid=str(record.get("guid") or ""),
            is_read=bool(record.get("isRead", False)),
            fetch_time=_parse_fetch_time(record.get("fetchTime")),
        )


@dataclass
class FeedSource:
    """Represents a named feed subscription."""

    name: str
    url: str
    category: str = ""

    def to_record(self) -> dict[str, str]:
        return {"name": self.name, "url": self.url, "category": self.category}


def _parse_fetch_time(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value)
        except (TypeError, ValueError):
            pass
    return datetime.now()
