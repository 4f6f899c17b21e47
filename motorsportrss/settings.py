"""Persisted settings document for MotorsportRSS."""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import FeedSource

logger = logging.getLogger(__name__)

FEEDS_KEY = "feeds"
FEED_META_KEY = "feedMeta"


class SettingsStore:
    """JSON-backed store for the feed registry and per-feed metadata.

    The document looks like::

        {"feeds": [{"name": ..., "url": ..., "category": ...}],
         "feedMeta": {"<url>": {"etag": ..., "lastModified": ..., "lastCacheUpdate": ...}}}
    """

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Location of the settings file; its directory is created if needed
        """
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data: dict[str, Any] = self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed settings file %s", self.path)
            return {}

        if not isinstance(data.get(FEEDS_KEY, []), list):
            logger.warning("Ignoring malformed %r entry in %s", FEEDS_KEY, self.path)
            del data[FEEDS_KEY]

        meta = data.get(FEED_META_KEY, {})
        if not isinstance(meta, dict):
            logger.warning("Ignoring malformed %r entry in %s", FEED_META_KEY, self.path)
            del data[FEED_META_KEY]
        else:
            for url in [url for url, values in meta.items() if not isinstance(values, dict)]:
                logger.warning("Ignoring malformed metadata for %s in %s", url, self.path)
                del meta[url]
        return data

    def _write(self) -> bool:
        """Persist the document; on failure the in-memory copy is kept.

        Returns:
            True if the file was written
        """
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".settings-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.warning("Could not write settings file %s: %s", self.path, e)
            return False
        return True

    # Feed registry

    def load_feeds(self) -> list[FeedSource]:
        """Return the persisted feed records, skipping incomplete ones."""
        feeds = []
        for record in self._data.get(FEEDS_KEY, []):
            if not isinstance(record, dict):
                continue
            name = str(record.get("name") or "")
            url = str(record.get("url") or "")
            if name and url:
                feeds.append(FeedSource(name=name, url=url, category=str(record.get("category") or "")))
        return feeds

    def save_feeds(self, feeds: list[FeedSource]) -> None:
        self._data[FEEDS_KEY] = [feed.to_record() for feed in feeds]
        self._write()

    # Per-feed metadata

    def _meta(self, url: str) -> dict[str, str]:
        return self._data.get(FEED_META_KEY, {}).get(url, {})

    def _update_meta(self, url: str, **values: str) -> None:
        meta = self._data.setdefault(FEED_META_KEY, {}).setdefault(url, {})
        meta.update(values)
        self._write()

    def _meta_text(self, url: str, key: str) -> Optional[str]:
        value = self._meta(url).get(key)
        return value if isinstance(value, str) else None

    def get_etag(self, url: str) -> Optional[str]:
        return self._meta_text(url, "etag")

    def get_last_modified(self, url: str) -> Optional[str]:
        return self._meta_text(url, "lastModified")

    def set_conditional_headers(
        self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None
    ) -> None:
        """Store validators from a successful response.

        Only the values that are present overwrite what was stored before.
        """
        values = {}
        if etag:
            values["etag"] = etag
        if last_modified:
            values["lastModified"] = last_modified
        if values:
            self._update_meta(url, **values)

    def get_last_cache_update(self, url: str) -> Optional[datetime]:
        value = self._meta(url).get("lastCacheUpdate")
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except (TypeError, ValueError):
            return None

    def set_last_cache_update(self, url: str, when: datetime) -> None:
        self._update_meta(url, lastCacheUpdate=when.isoformat(timespec="seconds"))

    def clear_feed_meta(self) -> None:
        """Forget validators and cache timestamps for every feed."""
        if self._data.pop(FEED_META_KEY, None) is not None:
            self._write()
