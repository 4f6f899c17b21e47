"""Feed fetching, retry handling and event dispatch for MotorsportRSS.

All engine state lives on one asyncio event loop. The blocking HTTP call is
run in a worker thread and awaited with a deadline; parsing, merging and
cache writes happen back on the loop, so no locking is needed.
"""

import asyncio
import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

import requests

from .cache import CacheStore
from .config import EngineConfig
from .models import FeedItem, FeedSource
from .parser import FeedFormat, FeedParseError, parse_feed_content
from .settings import SettingsStore
from .store import ItemStore

logger = logging.getLogger(__name__)

HTTP_NOT_MODIFIED = 304

STATUS_FROM_CACHE = "Loaded from cache, fetching updates..."
STATUS_FETCHING = "Fetching feed..."
STATUS_NOT_MODIFIED = "Feed has not changed since last update"
STATUS_CACHE_CLEARED = "Cache cleared successfully"

_PARSED_STATUS = {
    FeedFormat.RSS: "Feed successfully updated",
    FeedFormat.ATOM: "Feed parsed as Atom format",
    FeedFormat.FALLBACK: "Feed parsed with fallback mechanism",
}


class NetworkError(Exception):
    """Raised for transport failures and unexpected HTTP statuses."""

    pass


class FetchTimeoutError(NetworkError):
    """Raised when a request does not complete before its deadline."""

    pass


class TlsWarning(Warning):
    """Certificate problem reported to listeners; the transfer continues."""

    pass


class EventKind(Enum):
    """Events delivered to listeners."""

    FEED_UPDATED = "feedUpdated"
    ERROR = "error"
    NEW_ITEMS_AVAILABLE = "newItemsAvailable"
    STATUS_MESSAGE = "statusMessage"


@dataclass(frozen=True)
class FeedEvent:
    """A single notification about one feed URL."""

    kind: EventKind
    url: str
    message: str = ""
    count: int = 0


class FetchOutcome(Enum):
    """How a fetch finished."""

    UPDATED = "updated"
    NOT_MODIFIED = "not_modified"
    EXHAUSTED = "exhausted"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class FetchAttempt:
    """One request for a feed: which try it is and when it must finish by."""

    url: str
    retry_count: int
    deadline: float

    def remaining(self, now: float) -> float:
        return max(self.deadline - now, 0.0)


Listener = Callable[[FeedEvent], None]


class FetchController:
    """Fetches feeds and keeps their items, cache and validators in sync."""

    def __init__(
        self,
        config: EngineConfig,
        settings: Optional[SettingsStore] = None,
        cache: Optional[CacheStore] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the controller.

        Args:
            config: Engine configuration
            settings: Settings store; created at config.settings_path if omitted
            cache: Item cache; created at config.cache_dir if omitted
            session: HTTP session used for requests
            sleep: Coroutine used to wait between retries
        """
        self.config = config
        self.settings = settings or SettingsStore(config.settings_path)
        self.cache = cache or CacheStore(config.cache_dir, self.settings, config.stale_after)
        self.session = session or requests.Session()
        self._sleep = sleep
        self._max_retry_attempts = config.max_retry_attempts
        self._stores: dict[str, ItemStore] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._attempts: dict[str, FetchAttempt] = {}
        self._listeners: list[Listener] = []

    @property
    def max_retry_attempts(self) -> int:
        return self._max_retry_attempts

    @max_retry_attempts.setter
    def max_retry_attempts(self, attempts: int) -> None:
        self._max_retry_attempts = max(0, attempts)

    # Events

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: EventKind, url: str, message: str = "", count: int = 0) -> None:
        event = FeedEvent(kind=kind, url=url, message=message, count=count)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed while handling %s", event)

    def _status(self, url: str, message: str) -> None:
        self._emit(EventKind.STATUS_MESSAGE, url, message)

    # Item access

    def store_for(self, url: str) -> ItemStore:
        store = self._stores.get(url)
        if store is None:
            store = self._stores[url] = ItemStore()
        return store

    def items(self, url: str) -> list[FeedItem]:
        return self.store_for(url).items

    def clear_items(self, url: str) -> None:
        self.store_for(url).clear()

    def mark_item_read(self, url: str, guid: str) -> bool:
        """Mark an item read by guid and persist the cache.

        Returns:
            True if the item was found
        """
        store = self.store_for(url)
        if not store.mark_read(guid):
            return False
        self.cache.save(url, store.items)
        return True

    def mark_all_read(self, url: str) -> int:
        """Mark every item of a feed read and persist the cache.

        Returns:
            Number of items that changed
        """
        store = self.store_for(url)
        changed = store.mark_all_read()
        if changed:
            self.cache.save(url, store.items)
        return changed

    def load_cache(self, url: str) -> bool:
        """Make the cached snapshot of a feed the in-memory baseline.

        Returns:
            True if cached items were loaded
        """
        cached = self.cache.load(url)
        if not cached:
            return False
        self.store_for(url).load_snapshot(cached)
        return True

    def clear_cache(self) -> None:
        """Drop cache files, validators and in-memory items for every feed."""
        removed = self.cache.clear()
        self.settings.clear_feed_meta()
        for store in self._stores.values():
            store.clear()
        logger.info("Cleared %d cache file(s)", removed)
        self._status("", STATUS_CACHE_CLEARED)

    # Fetching

    def is_fetching(self, url: str) -> bool:
        task = self._tasks.get(url)
        return task is not None and not task.done()

    def current_attempt(self, url: str) -> Optional[FetchAttempt]:
        return self._attempts.get(url)

    def fetch_feed(self, url: str) -> "asyncio.Task[FetchOutcome]":
        """Start fetching a feed.

        The cached snapshot is loaded first so callers can display it right
        away. A fetch already running for the same URL is cancelled, and any
        response it was still waiting for is discarded. The worker thread of
        a cancelled or timed-out request cannot be interrupted, so it runs
        until the HTTP call returns, and ``asyncio.run`` waits for it on exit.

        Must be called from a running event loop.

        Args:
            url: Feed URL

        Returns:
            Task resolving to the FetchOutcome
        """
        loop = asyncio.get_running_loop()

        previous = self._tasks.pop(url, None)
        if previous is not None and not previous.done():
            logger.debug("Superseding in-flight fetch of %s", url)
            previous.cancel()

        if self.load_cache(url):
            self._status(url, STATUS_FROM_CACHE)
        else:
            self._status(url, STATUS_FETCHING)

        task = loop.create_task(self._run(url))
        self._tasks[url] = task
        task.add_done_callback(lambda done: self._forget_task(url, done))
        return task

    async def refresh(self, url: str) -> FetchOutcome:
        """Fetch a feed and wait for the outcome."""
        task = self.fetch_feed(url)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return FetchOutcome.SUPERSEDED
            raise

    async def fetch_all(self, feeds: Iterable[FeedSource]) -> dict[str, FetchOutcome]:
        """Fetch several feeds concurrently.

        Args:
            feeds: Feeds to fetch; a URL shared by several names is fetched once

        Returns:
            Mapping of feed URL to outcome
        """
        urls = list(dict.fromkeys(feed.url for feed in feeds))
        tasks = [self.fetch_feed(url) for url in urls]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = {}
        for url, result in zip(urls, results):
            if isinstance(result, FetchOutcome):
                outcomes[url] = result
            elif isinstance(result, asyncio.CancelledError):
                outcomes[url] = FetchOutcome.SUPERSEDED
            else:
                logger.error("Unexpected failure fetching %s: %s", url, result)
                outcomes[url] = FetchOutcome.EXHAUSTED
        return outcomes

    def _forget_task(self, url: str, task: asyncio.Task) -> None:
        if self._tasks.get(url) is task:
            del self._tasks[url]

    async def _run(self, url: str) -> FetchOutcome:
        loop = asyncio.get_running_loop()
        attempt = FetchAttempt(url=url, retry_count=0, deadline=loop.time() + self.config.request_timeout)

        while True:
            self._attempts[url] = attempt
            try:
                return await self._attempt(attempt)
            except (NetworkError, FeedParseError) as e:
                logger.warning("Fetching %s failed: %s", url, e)
                self._emit(EventKind.ERROR, url, str(e))

            if attempt.retry_count >= self._max_retry_attempts:
                return self._give_up(url)

            retry_count = attempt.retry_count + 1
            delay = self.config.retry_base_delay * retry_count
            self._status(
                url,
                f"Retrying in {delay:g} seconds (attempt {retry_count}/{self._max_retry_attempts})...",
            )
            await self._sleep(delay)

            self._status(url, STATUS_FETCHING)
            attempt = FetchAttempt(
                url=url,
                retry_count=retry_count,
                deadline=loop.time() + self.config.request_timeout,
            )

    def _give_up(self, url: str) -> FetchOutcome:
        attempts = self._max_retry_attempts
        logger.warning("Giving up on %s after %d attempts", url, attempts)
        self._status(url, f"Failed after {attempts} attempts. Using cached data if available.")

        if len(self.store_for(url)) == 0 and self.load_cache(url):
            self._emit(EventKind.FEED_UPDATED, url)
        return FetchOutcome.EXHAUSTED

    def _request_headers(self, url: str) -> dict[str, str]:
        headers = {"User-Agent": self.config.user_agent}

        etag = self.settings.get_etag(url)
        if etag:
            headers["If-None-Match"] = etag
            logger.debug("Using If-None-Match: %s for %s", etag, url)

        last_modified = self.settings.get_last_modified(url)
        if last_modified:
            headers["If-Modified-Since"] = last_modified
            logger.debug("Using If-Modified-Since: %s for %s", last_modified, url)

        return headers

    async def _attempt(self, attempt: FetchAttempt) -> FetchOutcome:
        headers = self._request_headers(attempt.url)
        try:
            response = await self._request(attempt, headers, verify=True)
        except requests.exceptions.SSLError as e:
            warning = TlsWarning(f"SSL Error: {e}")
            logger.warning("%s (continuing without certificate verification)", warning)
            self._emit(EventKind.ERROR, attempt.url, str(warning))
            response = await self._request(attempt, headers, verify=False)

        return self._handle_response(attempt.url, response)

    async def _request(
        self, attempt: FetchAttempt, headers: dict[str, str], verify: bool
    ) -> requests.Response:
        remaining = attempt.remaining(asyncio.get_running_loop().time())
        if remaining <= 0:
            raise FetchTimeoutError("Network request timed out")

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.session.get if verify else self._get_unverified,
                    attempt.url,
                    headers=headers,
                    timeout=remaining,
                    verify=verify,
                ),
                timeout=remaining,
            )
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError("Network request timed out") from e
        except requests.exceptions.SSLError as e:
            if verify:
                raise
            raise NetworkError(f"Network error: {e}") from e
        except requests.Timeout as e:
            raise FetchTimeoutError("Network request timed out") from e
        except requests.RequestException as e:
            raise NetworkError(f"Network error: {e}") from e

    def _get_unverified(self, url: str, **kwargs) -> requests.Response:
        # urllib3 InsecureRequestWarning is reported through the TlsWarning event
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return self.session.get(url, **kwargs)

    def _handle_response(self, url: str, response: requests.Response) -> FetchOutcome:
        if response.status_code == HTTP_NOT_MODIFIED:
            logger.info("Feed %s not modified since last fetch", url)
            self._status(url, STATUS_NOT_MODIFIED)
            return FetchOutcome.NOT_MODIFIED

        if not 200 <= response.status_code < 300:
            raise NetworkError(f"Network error: HTTP {response.status_code}")

        self.settings.set_conditional_headers(
            url,
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )

        parsed = parse_feed_content(response.content)
        store = self.store_for(url)
        new_items = store.merge(parsed.items)
        self._status(url, _PARSED_STATUS[parsed.format])

        if new_items:
            logger.info("Feed %s: %d new items", url, len(new_items))
            self._emit(EventKind.NEW_ITEMS_AVAILABLE, url, count=len(new_items))

        self.cache.save(url, store.items)
        self._emit(EventKind.FEED_UPDATED, url)
        return FetchOutcome.UPDATED

    def close(self) -> None:
        """Cancel running fetches and close the HTTP session."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self.session.close()
