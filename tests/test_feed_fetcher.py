"""Tests for the content fetcher."""

from datetime import datetime, timezone
from typing import List, Union
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.models.items import FeedStatus, utcnow
from src.tools import feed_fetcher as fetcher_module
from src.tools.feed_fetcher import (
    FeedFetcher, build_content, extract_images, make_excerpt, published_at,
)
from tests.helpers import make_item

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:media="http://search.yahoo.com/mrss/">
<channel>
  <title>Tech News</title>
  <link>https://news.example.com</link>
  <description>Latest technology news</description>
  <item>
    <title>First article</title>
    <link>https://news.example.com/1</link>
    <description>Short summary</description>
    <content:encoded><![CDATA[<p>Full <b>content</b> of the first article.</p>]]></content:encoded>
    <pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>
    <enclosure url="https://img.example.com/1.jpg" type="image/jpeg" length="100" />
  </item>
  <item>
    <title>Second article</title>
    <link>https://news.example.com/2</link>
    <description>Only a summary here</description>
    <media:content url="https://img.example.com/2.png" medium="image" />
    <media:thumbnail url="https://img.example.com/2-thumb.png" />
  </item>
  <item>
    <link>https://news.example.com/untitled</link>
    <description>Entry without a title</description>
  </item>
</channel>
</rss>"""


class FeedServer:
    """MockTransport handler replaying queued responses; the last one repeats."""

    def __init__(self, *responses: Union[int, str, Exception]):
        self.responses = list(responses) or [RSS]
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, int):
            return httpx.Response(response, text="error")
        return httpx.Response(200, text=response, headers={"Content-Type": "application/rss+xml"})

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_fetcher(database, scorer, server: FeedServer, enrichment=None) -> FeedFetcher:
    return FeedFetcher(
        database,
        scorer,
        enrichment=enrichment,
        transport=httpx.MockTransport(server),
        max_attempts=3,
        retry_base_delay=0,
        user_agent="TestAgent/1.0",
    )


class TestFetchFeed:
    """Polling a stored feed."""

    async def test_stores_new_items(self, database, feed, scorer) -> None:
        enrichment = MagicMock()
        fetcher = make_fetcher(database, scorer, FeedServer(), enrichment)

        result = await fetcher.fetch_feed(feed.id)

        assert result.success
        assert result.items_added == 2
        stored = await database.get_item_by_link("https://news.example.com/1")
        assert stored.title == "First article"
        assert stored.excerpt == "Full content of the first article."
        assert stored.published_at == datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
        assert stored.content.startswith('<img src="https://img.example.com/1.jpg" alt="First article"')
        assert await database.get_item_by_link("https://news.example.com/untitled") is None
        assert enrichment.schedule.call_count == 2

        refreshed = await database.get_feed(feed.id)
        assert refreshed.item_count == 2
        assert refreshed.last_fetched_at is not None
        assert refreshed.last_error is None

    async def test_media_images_and_summary_fallback(self, database, feed, scorer) -> None:
        fetcher = make_fetcher(database, scorer, FeedServer())

        await fetcher.fetch_feed(feed.id)

        stored = await database.get_item_by_link("https://news.example.com/2")
        lines = stored.content.split("\n")
        assert 'src="https://img.example.com/2.png"' in lines[0]
        assert 'src="https://img.example.com/2-thumb.png"' in lines[1]
        assert lines[2] == "Only a summary here"
        assert stored.published_at == stored.fetched_at

    async def test_polling_twice_adds_nothing(self, database, feed, scorer) -> None:
        server = FeedServer()
        fetcher = make_fetcher(database, scorer, server)

        first = await fetcher.fetch_feed(feed.id)
        second = await fetcher.fetch_feed(feed.id)

        assert first.items_added == 2
        assert second.success
        assert second.items_added == 0
        assert len(await database.list_items()) == 2
        assert (await database.get_feed(feed.id)).item_count == 2

    async def test_link_inserted_concurrently_counts_as_duplicate(self, database, feed, scorer) -> None:
        await database.create_item(make_item(feed.id, link="https://news.example.com/1"))
        fetcher = make_fetcher(database, scorer, FeedServer())
        database.get_item_by_link = AsyncMock(return_value=None)

        result = await fetcher.fetch_feed(feed.id)

        assert result.items_added == 1

    async def test_initial_score_is_persisted(self, database, feed, scorer) -> None:
        scorer.rescore_item = AsyncMock(return_value=0.5)
        fetcher = make_fetcher(database, scorer, FeedServer())

        await fetcher.fetch_feed(feed.id)

        assert scorer.rescore_item.await_count == 2

    async def test_malformed_entry_is_skipped(self, database, feed, scorer, monkeypatch) -> None:
        real_build_content = fetcher_module.build_content

        def flaky_build_content(entry, title):
            if title == "First article":
                raise ValueError("broken entry")
            return real_build_content(entry, title)

        monkeypatch.setattr(fetcher_module, "build_content", flaky_build_content)
        fetcher = make_fetcher(database, scorer, FeedServer())

        result = await fetcher.fetch_feed(feed.id)

        assert result.success
        assert result.items_added == 1

    async def test_missing_feed(self, database, scorer) -> None:
        fetcher = make_fetcher(database, scorer, FeedServer())

        result = await fetcher.fetch_feed("missing")

        assert not result.success
        assert result.error == "Feed not found"

    async def test_sends_user_agent(self, database, feed, scorer) -> None:
        server = FeedServer()
        await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert server.requests[0].headers["user-agent"] == "TestAgent/1.0"

    async def test_success_restores_error_status(self, database, feed, scorer) -> None:
        await database.update_feed(feed.id, status=FeedStatus.ERROR, last_error="HTTP 503")

        await make_fetcher(database, scorer, FeedServer()).fetch_feed(feed.id)

        refreshed = await database.get_feed(feed.id)
        assert refreshed.status == FeedStatus.ACTIVE
        assert refreshed.last_error is None

    async def test_success_keeps_paused_status(self, database, feed, scorer) -> None:
        await database.update_feed(feed.id, status=FeedStatus.PAUSED)

        await make_fetcher(database, scorer, FeedServer()).fetch_feed(feed.id)

        assert (await database.get_feed(feed.id)).status == FeedStatus.PAUSED


class TestFetchRetry:
    """Transient failures are retried, permanent ones are not."""

    async def test_transient_error_then_success(self, database, feed, scorer) -> None:
        server = FeedServer(503, RSS)

        result = await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert result.success
        assert server.calls == 2

    async def test_transient_errors_exhaust_attempts(self, database, feed, scorer) -> None:
        server = FeedServer(503)

        result = await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert not result.success
        assert "503" in result.error
        assert server.calls == 3
        refreshed = await database.get_feed(feed.id)
        assert refreshed.last_error == result.error
        assert refreshed.last_fetched_at is not None
        assert refreshed.status == FeedStatus.ACTIVE

    async def test_timeouts_are_retried(self, database, feed, scorer) -> None:
        server = FeedServer(httpx.ConnectTimeout("timed out"), httpx.ConnectTimeout("timed out"), RSS)

        result = await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert result.success
        assert server.calls == 3

    @pytest.mark.parametrize("status", [404, 403, 410])
    async def test_permanent_errors_not_retried(self, database, feed, scorer, status) -> None:
        server = FeedServer(status)

        result = await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert not result.success
        assert str(status) in result.error
        assert server.calls == 1

    async def test_rate_limit_is_transient(self, database, feed, scorer) -> None:
        server = FeedServer(429, RSS)

        result = await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert result.success
        assert server.calls == 2

    async def test_unparseable_document_not_retried(self, database, feed, scorer) -> None:
        server = FeedServer("this is definitely not a feed")

        result = await make_fetcher(database, scorer, server).fetch_feed(feed.id)

        assert not result.success
        assert server.calls == 1


class TestValidateFeedUrl:
    """Subscription-time validation."""

    async def test_invalid_format(self, database, scorer) -> None:
        result = await make_fetcher(database, scorer, FeedServer()).validate_feed_url("not a url")

        assert not result.is_valid
        assert result.error == "Invalid URL format"

    async def test_non_http_scheme(self, database, scorer) -> None:
        result = await make_fetcher(database, scorer, FeedServer()).validate_feed_url("ftp://example.com/feed")

        assert not result.is_valid
        assert result.error == "URL must use HTTP or HTTPS protocol"

    async def test_valid_feed(self, database, scorer) -> None:
        result = await make_fetcher(database, scorer, FeedServer()).validate_feed_url(
            "https://news.example.com/rss"
        )

        assert result.is_valid
        assert result.title == "Tech News"
        assert result.description == "Latest technology news"

    async def test_unreachable_feed(self, database, scorer) -> None:
        result = await make_fetcher(database, scorer, FeedServer(404)).validate_feed_url(
            "https://news.example.com/missing"
        )

        assert not result.is_valid
        assert result.error.startswith("Failed to parse feed:")


class TestEntryHelpers:
    """Normalisation of single entries."""

    def test_excerpt_truncates_with_ellipsis(self) -> None:
        excerpt = make_excerpt("<p>" + "x" * 250 + "</p>", 200)
        assert excerpt == "x" * 200 + "..."

    def test_short_excerpt_untouched(self) -> None:
        assert make_excerpt("<b>Hello</b> world") == "Hello world"

    def test_published_falls_back_to_updated(self) -> None:
        entry = {"updated_parsed": (2024, 5, 1, 12, 30, 0, 2, 122, 0)}
        assert published_at(entry) == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_published_falls_back_to_fetch_time(self) -> None:
        fetched = utcnow()
        assert published_at({}, fetched) == fetched

    def test_images_deduplicated_across_conventions(self) -> None:
        entry = {
            "enclosures": [
                {"href": "https://img.example.com/a.jpg", "type": "image/jpeg"},
                {"href": "https://cdn.example.com/episode.mp3", "type": "audio/mpeg"},
            ],
            "media_content": [{"url": "https://img.example.com/a.jpg", "medium": "image"}],
            "media_thumbnail": [{"url": "https://img.example.com/thumb.jpg"}],
            "image": {"href": "https://img.example.com/cover.jpg"},
        }
        assert extract_images(entry) == [
            "https://img.example.com/a.jpg",
            "https://img.example.com/thumb.jpg",
            "https://img.example.com/cover.jpg",
        ]

    def test_content_prefers_full_content(self) -> None:
        entry = {"content": [{"value": "<p>Full</p>"}], "summary": "Short"}
        assert build_content(entry, "Title") == "<p>Full</p>"

    def test_alt_text_is_escaped(self) -> None:
        entry = {"summary": "Body", "media_thumbnail": [{"url": "https://img.example.com/t.jpg"}]}
        assert 'alt="Tom &amp; &quot;Jerry&quot;"' in build_content(entry, 'Tom & "Jerry"')
