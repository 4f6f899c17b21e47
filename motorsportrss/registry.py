"""Feed subscription registry for MotorsportRSS."""

from typing import Optional

from .models import FeedSource
from .settings import SettingsStore
from .store import ALL_CATEGORIES

DEFAULT_FEEDS = [
    FeedSource("Motorsport.com", "https://www.motorsport.com/rss/all/", "All"),
    FeedSource("Autosport", "https://www.autosport.com/rss/feed/all", "All"),
    FeedSource("F1 News", "https://www.motorsport.com/rss/f1/news/", "Formula 1"),
    FeedSource("MotoGP News", "https://www.motorsport.com/rss/motogp/news/", "MotoGP"),
    FeedSource("NASCAR News", "https://www.motorsport.com/rss/nascar/news/", "NASCAR"),
    FeedSource("WRC News", "https://www.motorsport.com/rss/wrc/news/", "WRC"),
    FeedSource("Formula E News", "https://www.motorsport.com/rss/formula-e/news/", "Formula E"),
    FeedSource("WEC News", "https://www.motorsport.com/rss/wec/news/", "WEC"),
    FeedSource("IMSA News", "https://www.motorsport.com/rss/imsa/news/", "IMSA"),
    FeedSource("IndyCar News", "https://www.motorsport.com/rss/indycar/news/", "IndyCar"),
    FeedSource("Super Formula News", "https://www.motorsport.com/rss/superformula/news/", "Super Formula"),
]


class FeedRegistry:
    """Name -> (url, category) mapping persisted through the settings store."""

    def __init__(self, settings: SettingsStore, seed_defaults: bool = True):
        """Load the registry.

        Args:
            settings: Store holding the persisted feed records
            seed_defaults: Add the default motorsport feeds when nothing is registered
        """
        self.settings = settings
        self._feeds: dict[str, FeedSource] = {}
        for feed in settings.load_feeds():
            self._feeds[feed.name] = feed

        if not self._feeds and seed_defaults:
            for feed in DEFAULT_FEEDS:
                self._feeds[feed.name] = FeedSource(feed.name, feed.url, feed.category)
            self._save()

    def _save(self) -> None:
        self.settings.save_feeds(list(self._feeds.values()))

    def __len__(self) -> int:
        return len(self._feeds)

    def __contains__(self, name: str) -> bool:
        return name in self._feeds

    def get_feeds(self) -> dict[str, tuple[str, str]]:
        """Return the registry as name -> (url, category)."""
        return {name: (feed.url, feed.category) for name, feed in self._feeds.items()}

    def list_feeds(self) -> list[FeedSource]:
        """Return the registered feeds in insertion order."""
        return list(self._feeds.values())

    def get_feed(self, name: str) -> Optional[FeedSource]:
        return self._feeds.get(name)

    def add_feed(self, name: str, url: str, category: str = "") -> Optional[FeedSource]:
        """Register or replace a feed.

        Does nothing when name or url is empty.

        Returns:
            The stored FeedSource, or None if nothing was added
        """
        if not name or not url:
            return None
        feed = FeedSource(name=name, url=url, category=category)
        self._feeds[name] = feed
        self._save()
        return feed

    def remove_feed(self, name: str) -> bool:
        """Unregister a feed.

        Returns:
            True if a feed with that name was removed
        """
        if not name or name not in self._feeds:
            return False
        del self._feeds[name]
        self._save()
        return True

    def categories(self) -> list[str]:
        """Return the distinct categories plus "All", sorted."""
        found = {feed.category for feed in self._feeds.values() if feed.category}
        found.add(ALL_CATEGORIES)
        return sorted(found)
