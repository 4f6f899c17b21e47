"""Per-feed item cache for MotorsportRSS."""

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .models import FeedItem
from .settings import SettingsStore

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Raised when a cache file cannot be read or decoded."""

    pass


class CacheStore:
    """Stores one JSON array of items per feed, named by a hash of the feed URL."""

    def __init__(
        self,
        cache_dir: Path,
        settings: SettingsStore,
        stale_after: timedelta = timedelta(minutes=30),
    ):
        """Initialize the cache.

        Args:
            cache_dir: Directory holding the cache files; created if missing
            settings: Store receiving the last-update timestamps
            stale_after: Age after which a loaded cache is reported as stale
        """
        self.cache_dir = cache_dir
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.settings = settings
        self.stale_after = stale_after

    def path_for(self, feed_url: str) -> Path:
        """Return the cache file path for a feed URL."""
        url_hash = hashlib.md5(feed_url.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{url_hash}.json"

    def save(self, feed_url: str, items: list[FeedItem]) -> bool:
        """Write the full item collection for a feed.

        Args:
            feed_url: Feed URL the items belong to
            items: Items to persist

        Returns:
            True if the file was written
        """
        path = self.path_for(feed_url)
        records = [item.to_record() for item in items]
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=".cache-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(records, f, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.warning("Could not write cache file %s: %s", path, e)
            return False

        self.settings.set_last_cache_update(feed_url, datetime.now())
        logger.debug("Feed cache saved to %s", path)
        return True

    def load(self, feed_url: str) -> Optional[list[FeedItem]]:
        """Read the cached items for a feed.

        A cache older than ``stale_after`` is still returned; its age is
        only logged.

        Args:
            feed_url: Feed URL to look up

        Returns:
            Cached items, or None when there is no usable cache file
        """
        path = self.path_for(feed_url)
        if not path.exists():
            return None

        try:
            items = self._read(path)
        except CacheError as e:
            logger.warning("%s", e)
            return None

        self._log_staleness(feed_url)
        logger.debug("Loaded %d cached items from %s", len(items), path)
        return items

    def _read(self, path: Path) -> list[FeedItem]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheError(f"Invalid cache file format: {path}: {e}") from e

        if not isinstance(data, list):
            raise CacheError(f"Invalid cache file format: {path}: expected a JSON array")

        return [FeedItem.from_record(record) for record in data if isinstance(record, dict)]

    def _log_staleness(self, feed_url: str) -> None:
        last_update = self.settings.get_last_cache_update(feed_url)
        if last_update is None:
            return
        age = datetime.now() - last_update
        if age > self.stale_after:
            minutes = int(self.stale_after.total_seconds() // 60)
            logger.info("Cache for %s is older than %d minutes", feed_url, minutes)

    def clear(self) -> int:
        """Remove every cache file.

        Returns:
            Number of files removed
        """
        removed = 0
        if not self.cache_dir.exists():
            return removed
        for path in self.cache_dir.iterdir():
            if not path.is_file():
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove cache file %s: %s", path, e)
        return removed
