"""In-memory item collection for a single feed."""

from typing import Iterable, Optional

from .models import FeedItem

ALL_CATEGORIES = "All"


class ItemStore:
    """Ordered collection of feed items plus the set of guids already seen.

    Items are only ever appended; a reload never replaces an item that is
    already present, so read state survives refreshes.
    """

    def __init__(self) -> None:
        self._items: list[FeedItem] = []
        self._seen_guids: set[str] = set()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[FeedItem]:
        """Return a copy of the items in append order."""
        return list(self._items)

    def has_guid(self, guid: str) -> bool:
        return guid in self._seen_guids

    def load_snapshot(self, items: Iterable[FeedItem]) -> None:
        """Make a cache snapshot the baseline collection.

        The seen set is rebuilt from the cached guids so that a subsequent
        network parse treats exactly those items as already known.

        Args:
            items: Items deserialized from the cache
        """
        self._items = []
        self._seen_guids = set()
        for item in items:
            guid = item.ensure_guid()
            if guid in self._seen_guids:
                continue
            self._seen_guids.add(guid)
            self._items.append(item)

    def merge(self, items: Iterable[FeedItem]) -> list[FeedItem]:
        """Append the items whose guid has not been seen before.

        Items sharing a guid with an existing entry are dropped, which
        leaves the existing entry (and its read flag) untouched. Duplicates
        within ``items`` itself are dropped the same way.

        Args:
            items: Freshly parsed items

        Returns:
            The items that were genuinely new, in the order they were added
        """
        new_items = []
        for item in items:
            if not item.title or not item.link:
                continue
            guid = item.ensure_guid()
            if guid in self._seen_guids:
                continue
            self._seen_guids.add(guid)
            self._items.append(item)
            new_items.append(item)
        return new_items

    def get(self, guid: str) -> Optional[FeedItem]:
        for item in self._items:
            if item.guid == guid:
                return item
        return None

    def mark_read(self, guid: str) -> bool:
        """Flag the item with the given guid as read.

        Returns:
            True if an item with that guid exists
        """
        item = self.get(guid)
        if item is None:
            return False
        item.is_read = True
        return True

    def mark_all_read(self) -> int:
        """Flag every item as read.

        Returns:
            Number of items that were unread before the call
        """
        changed = 0
        for item in self._items:
            if not item.is_read:
                item.is_read = True
                changed += 1
        return changed

    def unread_count(self) -> int:
        return sum(1 for item in self._items if not item.is_read)

    def filter_items(
        self,
        category: Optional[str] = None,
        unread_only: bool = False,
        search_text: Optional[str] = None,
    ) -> list[FeedItem]:
        """Return the items matching all given filters.

        Args:
            category: Case-insensitive substring of the item category.
                Empty or "All" disables the filter.
            unread_only: Only include unread items
            search_text: Case-insensitive text looked up in the title,
                description and category

        Returns:
            Matching items in append order
        """
        wanted_category = (category or "").strip().lower()
        if wanted_category == ALL_CATEGORIES.lower():
            wanted_category = ""
        needle = (search_text or "").strip().lower()

        result = []
        for item in self._items:
            if wanted_category and wanted_category not in item.category.lower():
                continue
            if unread_only and item.is_read:
                continue
            if needle and not (
                needle in item.title.lower()
                or needle in item.description.lower()
                or needle in item.category.lower()
            ):
                continue
            result.append(item)
        return result

    def clear(self) -> None:
        """Drop all items and forget every seen guid."""
        self._items.clear()
        self._seen_guids.clear()
