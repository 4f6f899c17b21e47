"""Business logic controllers for MotorsportRSS."""

from typing import Optional

from .fetcher import FetchController
from .models import FeedItem, FeedSource
from .registry import FeedRegistry


class FeedNotFoundError(Exception):
    """Raised when a feed is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Feed '{name}' not found")


class ItemNotFoundError(Exception):
    """Raised when an item is not present in a feed."""

    def __init__(self, guid: str):
        self.guid = guid
        super().__init__(f"Item '{guid}' not found")


def get_feed(registry: FeedRegistry, name: str) -> FeedSource:
    """Look up a registered feed.

    Raises:
        FeedNotFoundError: If no feed has that name
    """
    feed = registry.get_feed(name)
    if feed is None:
        raise FeedNotFoundError(name)
    return feed


def remove_feed(registry: FeedRegistry, name: str) -> None:
    """Unregister a feed.

    Raises:
        FeedNotFoundError: If no feed has that name
    """
    if not registry.remove_feed(name):
        raise FeedNotFoundError(name)


def get_items(
    controller: FetchController,
    registry: FeedRegistry,
    name: str,
    show_all: bool = False,
    category: Optional[str] = None,
    search_text: Optional[str] = None,
) -> list[FeedItem]:
    """Get the cached items of a feed with optional filters.

    Args:
        controller: Fetch controller holding the items
        registry: Feed registry
        name: Feed name
        show_all: If True, include read items
        category: Optional category filter
        search_text: Optional text filter

    Returns:
        Matching items

    Raises:
        FeedNotFoundError: If no feed has that name
    """
    feed = get_feed(registry, name)
    controller.load_cache(feed.url)
    return controller.store_for(feed.url).filter_items(
        category=category,
        unread_only=not show_all,
        search_text=search_text,
    )


def mark_item_read(
    controller: FetchController, registry: FeedRegistry, name: str, guid: str
) -> FeedItem:
    """Mark an item of a feed as read.

    Returns:
        The item (after marking)

    Raises:
        FeedNotFoundError: If no feed has that name
        ItemNotFoundError: If the feed has no item with that guid
    """
    feed = get_feed(registry, name)
    controller.load_cache(feed.url)
    if not controller.mark_item_read(feed.url, guid):
        raise ItemNotFoundError(guid)
    return controller.store_for(feed.url).get(guid)


def mark_all_items_read(controller: FetchController, registry: FeedRegistry, name: str) -> int:
    """Mark every item of a feed as read.

    Returns:
        Number of items that were marked

    Raises:
        FeedNotFoundError: If no feed has that name
    """
    feed = get_feed(registry, name)
    controller.load_cache(feed.url)
    return controller.mark_all_read(feed.url)
