"""Tests for fetching, retries and events."""

import asyncio
import json
import time
import warnings
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

from motorsportrss.config import EngineConfig
from motorsportrss.fetcher import (
    EventKind,
    FeedEvent,
    FetchAttempt,
    FetchController,
    FetchOutcome,
)
from motorsportrss.models import FeedItem, FeedSource
from motorsportrss.registry import FeedRegistry

FEED_URL = "https://example.com/rss/f1/"

SAMPLE_RSS_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>F1</title>
    <item>
      <title>Verstappen takes pole</title>
      <link>https://example.com/f1/pole</link>
      <guid>pole</guid>
    </item>
    <item>
      <title>Race report</title>
      <link>https://example.com/f1/race</link>
    </item>
  </channel>
</rss>
"""

UPDATED_RSS_FEED = SAMPLE_RSS_FEED.replace(
    b"<item>",
    b"<item><title>Sprint result</title><link>https://example.com/f1/sprint</link><guid>sprint</guid></item>\n    <item>",
    1,
)

SAMPLE_ATOM_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <entry>
    <title>MotoGP test</title>
    <link href="https://example.com/motogp/test"/>
    <id>motogp-test</id>
  </entry>
</feed>
"""


def _response(status_code: int = 200, content: bytes = SAMPLE_RSS_FEED, headers=None) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.content = content
    response.headers = headers or {}
    return response


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def session() -> Mock:
    """Create a mock HTTP session."""
    session = Mock()
    session.get.return_value = _response()
    return session


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    """Create a config rooted in a temporary directory."""
    return EngineConfig(data_dir=tmp_path)


@pytest.fixture
def controller(config: EngineConfig, session: Mock, sleeper: RecordingSleep) -> FetchController:
    """Create a controller with mocked network and sleep."""
    return FetchController(config, session=session, sleep=sleeper)


@pytest.fixture
def events(controller: FetchController) -> list[FeedEvent]:
    """Collect every emitted event."""
    collected: list[FeedEvent] = []
    controller.subscribe(collected.append)
    return collected


def _kinds(events: list[FeedEvent]) -> list[EventKind]:
    return [e.kind for e in events]


def _messages(events: list[FeedEvent], kind: EventKind = EventKind.STATUS_MESSAGE) -> list[str]:
    return [e.message for e in events if e.kind is kind]


class TestSuccessfulFetch:
    """Tests for a fetch that receives a feed."""

    @pytest.mark.asyncio
    async def test_fetch_parses_items(self, controller: FetchController):
        """Test that a 200 response fills the item store."""
        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        assert [i.title for i in controller.items(FEED_URL)] == ["Verstappen takes pole", "Race report"]

    @pytest.mark.asyncio
    async def test_event_order(self, controller: FetchController, events: list[FeedEvent]):
        """Test status, new items and updated events arrive in order."""
        await controller.refresh(FEED_URL)

        assert _kinds(events) == [
            EventKind.STATUS_MESSAGE,
            EventKind.STATUS_MESSAGE,
            EventKind.NEW_ITEMS_AVAILABLE,
            EventKind.FEED_UPDATED,
        ]
        assert _messages(events) == ["Fetching feed...", "Feed successfully updated"]
        assert events[2].count == 2
        assert all(e.url == FEED_URL for e in events)

    @pytest.mark.asyncio
    async def test_atom_status(self, controller: FetchController, session: Mock, events: list[FeedEvent]):
        """Test that Atom payloads report the Atom status."""
        session.get.return_value = _response(content=SAMPLE_ATOM_FEED)

        await controller.refresh(FEED_URL)

        assert "Feed parsed as Atom format" in _messages(events)

    @pytest.mark.asyncio
    async def test_request_headers(self, controller: FetchController, session: Mock):
        """Test the user agent and absence of validators on first fetch."""
        await controller.refresh(FEED_URL)

        headers = session.get.call_args.kwargs["headers"]
        assert headers == {"User-Agent": "MotorsportRSS Reader 1.0"}
        assert session.get.call_args.kwargs["verify"] is True
        assert 0 < session.get.call_args.kwargs["timeout"] <= 15.0

    @pytest.mark.asyncio
    async def test_validators_are_stored_and_sent(self, controller: FetchController, session: Mock):
        """Test conditional GET headers round trip."""
        session.get.return_value = _response(
            headers={"ETag": '"v1"', "Last-Modified": "Mon, 01 Jan 2024 12:00:00 GMT"}
        )
        await controller.refresh(FEED_URL)

        await controller.refresh(FEED_URL)

        headers = session.get.call_args.kwargs["headers"]
        assert headers["If-None-Match"] == '"v1"'
        assert headers["If-Modified-Since"] == "Mon, 01 Jan 2024 12:00:00 GMT"

    @pytest.mark.asyncio
    async def test_cache_is_written(self, controller: FetchController):
        """Test that the merged items are persisted."""
        await controller.refresh(FEED_URL)

        data = json.loads(controller.cache.path_for(FEED_URL).read_text())
        assert [record["title"] for record in data] == ["Verstappen takes pole", "Race report"]

    @pytest.mark.asyncio
    async def test_only_new_items_are_counted(
        self, controller: FetchController, session: Mock, events: list[FeedEvent]
    ):
        """Test that a later payload reports only the genuinely new item."""
        await controller.refresh(FEED_URL)
        events.clear()
        session.get.return_value = _response(content=UPDATED_RSS_FEED)

        await controller.refresh(FEED_URL)

        new_events = [e for e in events if e.kind is EventKind.NEW_ITEMS_AVAILABLE]
        assert [e.count for e in new_events] == [1]
        assert [i.guid for i in controller.items(FEED_URL)][-1] == "sprint"


class TestMergeIdempotence:
    """Tests for merging across reloads."""

    @pytest.mark.asyncio
    async def test_reparse_keeps_read_state(
        self, controller: FetchController, events: list[FeedEvent]
    ):
        """Test that an identical payload adds nothing and keeps read flags."""
        await controller.refresh(FEED_URL)
        assert controller.mark_item_read(FEED_URL, "pole") is True
        events.clear()

        await controller.refresh(FEED_URL)

        assert EventKind.NEW_ITEMS_AVAILABLE not in _kinds(events)
        items = {i.guid: i for i in controller.items(FEED_URL)}
        assert len(items) == 2
        assert items["pole"].is_read is True

    @pytest.mark.asyncio
    async def test_reload_from_disk_then_reparse(
        self, config: EngineConfig, controller: FetchController, session: Mock, sleeper: RecordingSleep
    ):
        """Test idempotence for a fresh controller reading the cache."""
        await controller.refresh(FEED_URL)
        controller.mark_item_read(FEED_URL, "pole")

        fresh = FetchController(config, session=session, sleep=sleeper)
        fresh_events: list[FeedEvent] = []
        fresh.subscribe(fresh_events.append)

        await fresh.refresh(FEED_URL)

        assert fresh_events[0].message == "Loaded from cache, fetching updates..."
        assert EventKind.NEW_ITEMS_AVAILABLE not in _kinds(fresh_events)
        read_flags = {i.guid: i.is_read for i in fresh.items(FEED_URL)}
        assert read_flags["pole"] is True
        assert list(read_flags.values()).count(True) == 1


class TestNotModified:
    """Tests for HTTP 304 handling."""

    @pytest.mark.asyncio
    async def test_304_leaves_items_and_cache_untouched(
        self, controller: FetchController, session: Mock, events: list[FeedEvent]
    ):
        """Test that a 304 changes neither memory nor disk."""
        await controller.refresh(FEED_URL)
        cache_path = controller.cache.path_for(FEED_URL)
        before_disk = cache_path.read_bytes()
        before_items = [i.to_record() for i in controller.items(FEED_URL)]
        events.clear()
        session.get.return_value = _response(status_code=304, content=b"")

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.NOT_MODIFIED
        assert cache_path.read_bytes() == before_disk
        assert [i.to_record() for i in controller.items(FEED_URL)] == before_items
        assert _messages(events)[-1] == "Feed has not changed since last update"
        assert EventKind.FEED_UPDATED not in _kinds(events)


class TestRetries:
    """Tests for the retry and backoff state machine."""

    @pytest.mark.asyncio
    async def test_backoff_delays_and_exhaustion(
        self, controller: FetchController, session: Mock, sleeper: RecordingSleep, events: list[FeedEvent]
    ):
        """Test delays of 1s, 2s, 3s and no fourth retry."""
        session.get.side_effect = requests.ConnectionError("connection refused")

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.EXHAUSTED
        assert sleeper.delays == [1.0, 2.0, 3.0]
        assert session.get.call_count == 4
        statuses = _messages(events)
        assert "Retrying in 1 seconds (attempt 1/3)..." in statuses
        assert "Retrying in 3 seconds (attempt 3/3)..." in statuses
        assert statuses[-1] == "Failed after 3 attempts. Using cached data if available."
        assert all(m.startswith("Network error:") for m in _messages(events, EventKind.ERROR))

    @pytest.mark.asyncio
    async def test_max_attempts_is_configurable(
        self, controller: FetchController, session: Mock, sleeper: RecordingSleep
    ):
        """Test that fewer attempts means fewer retries."""
        controller.max_retry_attempts = 1
        session.get.side_effect = requests.ConnectionError("down")

        await controller.refresh(FEED_URL)

        assert sleeper.delays == [1.0]
        assert session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_http_error_then_success(
        self, controller: FetchController, session: Mock, sleeper: RecordingSleep, events: list[FeedEvent]
    ):
        """Test that an HTTP error status is retried."""
        session.get.side_effect = [_response(status_code=500, content=b""), _response()]

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        assert sleeper.delays == [1.0]
        assert _messages(events, EventKind.ERROR) == ["Network error: HTTP 500"]

    @pytest.mark.asyncio
    async def test_parse_error_is_retried(
        self, controller: FetchController, session: Mock, sleeper: RecordingSleep, events: list[FeedEvent]
    ):
        """Test that an unparseable body goes through the retry path."""
        session.get.side_effect = [_response(content=b"<html>maintenance</html>"), _response()]

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        assert sleeper.delays == [1.0]
        assert _messages(events, EventKind.ERROR)[0].startswith("XML parsing error")

    @pytest.mark.asyncio
    async def test_timeout_is_a_network_failure(self, tmp_path: Path):
        """Test that a request exceeding the deadline is retried as a timeout."""
        config = EngineConfig(data_dir=tmp_path, request_timeout=0.05, max_retry_attempts=1)
        sleeper = RecordingSleep()
        session = Mock()

        def slow_get(url, **kwargs):
            time.sleep(0.3)
            return _response()

        session.get.side_effect = slow_get
        controller = FetchController(config, session=session, sleep=sleeper)
        collected: list[FeedEvent] = []
        controller.subscribe(collected.append)

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.EXHAUSTED
        assert _messages(collected, EventKind.ERROR) == ["Network request timed out"] * 2
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_requests_timeout_is_reported_as_timeout(
        self, controller: FetchController, session: Mock, events: list[FeedEvent]
    ):
        """Test that the HTTP client's own timeout maps to a timeout error."""
        session.get.side_effect = [requests.Timeout("read timed out"), _response()]

        await controller.refresh(FEED_URL)

        assert _messages(events, EventKind.ERROR) == ["Network request timed out"]

    @pytest.mark.asyncio
    async def test_exhausted_falls_back_to_cache(
        self, controller: FetchController, session: Mock, events: list[FeedEvent]
    ):
        """Test that an empty store is filled from cache after giving up."""
        controller.cache.save(FEED_URL, [FeedItem(title="Cached", link="https://example.com/c", guid="c")])
        session.get.side_effect = requests.ConnectionError("down")

        outcome = await controller._run(FEED_URL)

        assert outcome is FetchOutcome.EXHAUSTED
        assert [i.guid for i in controller.items(FEED_URL)] == ["c"]
        assert events[-1].kind is EventKind.FEED_UPDATED

    @pytest.mark.asyncio
    async def test_exhausted_keeps_existing_items(
        self, controller: FetchController, session: Mock, events: list[FeedEvent]
    ):
        """Test that the cache is not reloaded over a non-empty store."""
        await controller.refresh(FEED_URL)
        controller.mark_item_read(FEED_URL, "pole")
        events.clear()
        session.get.side_effect = requests.ConnectionError("down")

        await controller.refresh(FEED_URL)

        assert len(controller.items(FEED_URL)) == 2
        assert _kinds(events)[-1] is EventKind.STATUS_MESSAGE

    @pytest.mark.asyncio
    async def test_retry_count_tracked_on_attempt(self, controller: FetchController, session: Mock):
        """Test that the latest attempt carries the retry count."""
        session.get.side_effect = [requests.ConnectionError("down"), requests.ConnectionError("down"), _response()]

        await controller.refresh(FEED_URL)

        attempt = controller.current_attempt(FEED_URL)
        assert isinstance(attempt, FetchAttempt)
        assert attempt.retry_count == 2
        assert attempt.url == FEED_URL


class TestTls:
    """Tests for certificate problems."""

    @pytest.mark.asyncio
    async def test_ssl_error_warns_and_continues(
        self, controller: FetchController, session: Mock, sleeper: RecordingSleep, events: list[FeedEvent]
    ):
        """Test that a certificate failure is reported and the transfer proceeds."""
        session.get.side_effect = [requests.exceptions.SSLError("certificate verify failed"), _response()]

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        assert sleeper.delays == []
        errors = _messages(events, EventKind.ERROR)
        assert len(errors) == 1
        assert errors[0].startswith("SSL Error:")
        assert session.get.call_args_list[1].kwargs["verify"] is False

    @pytest.mark.asyncio
    async def test_unverified_request_warnings_are_silenced(
        self, controller: FetchController, session: Mock, recwarn, events: list[FeedEvent]
    ):
        """Test that the certificate problem is reported once, through the event."""

        def get(url, **kwargs):
            if kwargs["verify"]:
                raise requests.exceptions.SSLError("certificate verify failed")
            warnings.warn("Unverified HTTPS request is being made", UserWarning)
            return _response()

        session.get.side_effect = get

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        assert not [w for w in recwarn if "Unverified HTTPS" in str(w.message)]
        assert len(_messages(events, EventKind.ERROR)) == 1


class TestSettingsFailures:
    """Tests for fetching while the settings document misbehaves."""

    @pytest.mark.asyncio
    async def test_unwritable_settings_do_not_fail_fetch(self, config: EngineConfig, session: Mock):
        """Test that a settings write error is logged and the fetch still succeeds."""
        config.settings_path.mkdir(parents=True)
        session.get.return_value = _response(headers={"ETag": '"v1"'})
        controller = FetchController(config, session=session)

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        assert len(controller.items(FEED_URL)) == 2
        assert controller.settings.get_etag(FEED_URL) == '"v1"'

    def test_unwritable_settings_do_not_fail_read_state(self, config: EngineConfig):
        """Test that marking items read survives a settings write error."""
        config.settings_path.mkdir(parents=True)
        controller = FetchController(config, session=Mock())
        controller.cache.save(FEED_URL, [FeedItem(title="T", link="https://l", guid="g")])
        controller.load_cache(FEED_URL)

        assert controller.mark_item_read(FEED_URL, "g") is True
        assert controller.mark_all_read(FEED_URL) == 0
        controller.clear_cache()

    @pytest.mark.asyncio
    async def test_malformed_feed_meta_is_ignored(self, config: EngineConfig, session: Mock):
        """Test that a non-object metadata entry does not break the fetch."""
        config.settings_path.write_text(json.dumps({"feedMeta": {FEED_URL: "oops"}}))
        controller = FetchController(config, session=session)

        outcome = await controller.refresh(FEED_URL)

        assert outcome is FetchOutcome.UPDATED
        headers = session.get.call_args.kwargs["headers"]
        assert "If-None-Match" not in headers


class TestCancellation:
    """Tests for re-entrant fetches of the same URL."""

    @pytest.mark.asyncio
    async def test_new_fetch_supersedes_in_flight_one(self, controller: FetchController, session: Mock):
        """Test that a second fetch cancels the first."""
        calls = []

        def slow_then_fast(url, **kwargs):
            calls.append(url)
            if len(calls) == 1:
                time.sleep(0.2)
            return _response()

        session.get.side_effect = slow_then_fast

        first = controller.fetch_feed(FEED_URL)
        await asyncio.sleep(0)
        second = controller.fetch_feed(FEED_URL)
        outcome = await second

        assert outcome is FetchOutcome.UPDATED
        assert first.cancelled()
        assert len(controller.items(FEED_URL)) == 2

    @pytest.mark.asyncio
    async def test_refresh_reports_superseded(self, controller: FetchController, session: Mock):
        """Test that an awaited refresh reports being superseded."""

        def slow_get(url, **kwargs):
            time.sleep(0.1)
            return _response()

        session.get.side_effect = slow_get

        pending = asyncio.ensure_future(controller.refresh(FEED_URL))
        await asyncio.sleep(0)
        latest = controller.fetch_feed(FEED_URL)

        assert await pending is FetchOutcome.SUPERSEDED
        assert await latest is FetchOutcome.UPDATED

    @pytest.mark.asyncio
    async def test_different_urls_are_independent(self, controller: FetchController, session: Mock):
        """Test that fetching another URL does not cancel the first."""
        first = controller.fetch_feed(FEED_URL)
        second = controller.fetch_feed("https://example.com/other")

        assert await first is FetchOutcome.UPDATED
        assert await second is FetchOutcome.UPDATED


class TestFetchAll:
    """Tests for fetching every registered feed."""

    @pytest.mark.asyncio
    async def test_fetch_all_registered_feeds(self, controller: FetchController, session: Mock):
        """Test fetching each registered URL once."""
        registry = FeedRegistry(controller.settings, seed_defaults=False)
        registry.add_feed("F1", FEED_URL, "Formula 1")
        registry.add_feed("F1 again", FEED_URL, "Formula 1")
        registry.add_feed("MotoGP", "https://example.com/motogp", "MotoGP")

        def by_url(url, **kwargs):
            if url == FEED_URL:
                return _response()
            return _response(content=SAMPLE_ATOM_FEED)

        session.get.side_effect = by_url

        outcomes = await controller.fetch_all(registry.list_feeds())

        assert outcomes == {
            FEED_URL: FetchOutcome.UPDATED,
            "https://example.com/motogp": FetchOutcome.UPDATED,
        }
        assert session.get.call_count == 2
        assert [i.guid for i in controller.items("https://example.com/motogp")] == ["motogp-test"]

    @pytest.mark.asyncio
    async def test_fetch_all_accepts_sources(self, controller: FetchController):
        """Test passing FeedSource objects directly."""
        outcomes = await controller.fetch_all([FeedSource("F1", FEED_URL, "")])

        assert outcomes == {FEED_URL: FetchOutcome.UPDATED}


class TestReadStateAndCache:
    """Tests for read state persistence and cache clearing."""

    @pytest.mark.asyncio
    async def test_mark_item_read_persists(self, controller: FetchController):
        """Test that marking read immediately rewrites the cache."""
        await controller.refresh(FEED_URL)

        controller.mark_item_read(FEED_URL, "pole")

        data = json.loads(controller.cache.path_for(FEED_URL).read_text())
        assert {r["guid"]: r["isRead"] for r in data}["pole"] is True

    def test_mark_unknown_item(self, controller: FetchController):
        """Test that an unknown guid is reported and nothing is written."""
        assert controller.mark_item_read(FEED_URL, "missing") is False
        assert not controller.cache.path_for(FEED_URL).exists()

    @pytest.mark.asyncio
    async def test_mark_all_read(self, controller: FetchController):
        """Test marking every item of a feed read."""
        await controller.refresh(FEED_URL)

        assert controller.mark_all_read(FEED_URL) == 2
        assert all(i.is_read for i in controller.items(FEED_URL))

    @pytest.mark.asyncio
    async def test_clear_cache(self, controller: FetchController, session: Mock, events: list[FeedEvent]):
        """Test that clearing removes files, items and seen guids for all feeds."""
        session.get.return_value = _response(headers={"ETag": '"v1"'})
        await controller.refresh(FEED_URL)
        await controller.refresh("https://example.com/other")

        controller.clear_cache()

        assert list(controller.cache.cache_dir.iterdir()) == []
        assert controller.items(FEED_URL) == []
        assert controller.items("https://example.com/other") == []
        assert controller.store_for(FEED_URL).has_guid("pole") is False
        assert controller.settings.get_etag(FEED_URL) is None
        assert events[-1].message == "Cache cleared successfully"

    @pytest.mark.asyncio
    async def test_fetch_after_clear_counts_items_as_new(
        self, controller: FetchController, events: list[FeedEvent]
    ):
        """Test that cleared items are treated as new on the next fetch."""
        await controller.refresh(FEED_URL)
        controller.clear_cache()
        events.clear()

        await controller.refresh(FEED_URL)

        new_events = [e for e in events if e.kind is EventKind.NEW_ITEMS_AVAILABLE]
        assert [e.count for e in new_events] == [2]


class TestListeners:
    """Tests for listener handling."""

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_fetch(self, controller: FetchController):
        """Test that listener errors are contained."""
        controller.subscribe(Mock(side_effect=RuntimeError("ui gone")))

        assert await controller.refresh(FEED_URL) is FetchOutcome.UPDATED

    @pytest.mark.asyncio
    async def test_unsubscribe(self, controller: FetchController):
        """Test that an unsubscribed listener gets no events."""
        listener = Mock()
        controller.subscribe(listener)
        controller.unsubscribe(listener)

        await controller.refresh(FEED_URL)

        listener.assert_not_called()
