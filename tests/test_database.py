"""Tests for the SQLite storage layer."""

import pytest
from unittest.mock import patch

from src.models.items import (
    Connection, ConnectionType, FeedStatus, Feedback, PreferenceProfile, PreferenceWeight,
)
from tests.helpers import days_ago, make_feed, make_item


class TestFeeds:
    """Feed rows."""

    async def test_round_trip(self, database) -> None:
        created = await database.create_feed(make_feed(description="All the news"))

        stored = await database.get_feed(created.id)

        assert stored == created
        assert (await database.get_feed_by_url(created.url)).id == created.id

    async def test_list_by_status(self, database) -> None:
        active = await database.create_feed(make_feed("https://a.example.com/rss"))
        await database.create_feed(make_feed("https://b.example.com/rss", status=FeedStatus.PAUSED))

        assert [f.id for f in await database.list_feeds([FeedStatus.ACTIVE])] == [active.id]
        assert len(await database.list_feeds()) == 2
        assert await database.list_feeds([]) == []

    async def test_update_rejects_unknown_fields(self, database, feed) -> None:
        with pytest.raises(ValueError):
            await database.update_feed(feed.id, url="https://elsewhere.example.com")

    async def test_update_and_increment(self, database, feed) -> None:
        assert await database.update_feed(feed.id, status=FeedStatus.ERROR, last_error="HTTP 500")
        await database.increment_item_count(feed.id, 3)

        stored = await database.get_feed(feed.id)
        assert stored.status == FeedStatus.ERROR
        assert stored.last_error == "HTTP 500"
        assert stored.item_count == 3
        assert not await database.update_feed("missing", last_error=None)

    async def test_delete_cascades_to_items(self, database, feed) -> None:
        first = make_item(feed.id, link="https://example.com/1", topics=["ai"])
        second = make_item(feed.id, link="https://example.com/2", topics=["ai"])
        await database.create_item(first)
        await database.create_item(second)
        await database.create_connection(
            Connection(item_a_id=first.id, item_b_id=second.id, type=ConnectionType.TOPIC, strength=1.0)
        )

        assert await database.delete_feed(feed.id)

        assert await database.get_item(first.id) is None
        assert await database.count_connections() == 0


class TestItems:
    """Item rows."""

    async def test_round_trip_with_json_columns(self, database, feed) -> None:
        created = make_item(
            feed.id, topics=["ai", "ml"], entities=["OpenAI"], embedding=[0.1, 0.2],
            published_at=days_ago(2),
        )
        assert await database.create_item(created)

        stored = await database.get_item(created.id)

        assert stored.topics == ["ai", "ml"]
        assert stored.entities == ["OpenAI"]
        assert stored.embedding == [0.1, 0.2]
        assert stored.published_at == created.published_at

    async def test_duplicate_link_is_ignored(self, database, feed) -> None:
        assert await database.create_item(make_item(feed.id, title="First"))
        assert not await database.create_item(make_item(feed.id, title="Second"))

        stored = await database.get_item_by_link("https://example.com/a")
        assert stored.title == "First"

    async def test_update_rejects_unknown_fields(self, database, feed) -> None:
        stored = make_item(feed.id)
        await database.create_item(stored)

        with pytest.raises(ValueError):
            await database.update_item(stored.id, link="https://example.com/b")

    async def test_ordering(self, database, feed) -> None:
        old = make_item(feed.id, link="https://example.com/old", published_at=days_ago(3), relevance_score=0.9)
        new = make_item(feed.id, link="https://example.com/new", published_at=days_ago(1), relevance_score=0.4)
        await database.create_item(old)
        await database.create_item(new)

        assert [i.id for i in await database.list_items()] == [new.id, old.id]
        assert [i.id for i in await database.list_items_by_relevance()] == [old.id, new.id]
        assert [i.id for i in await database.list_items_by_relevance(0.5)] == [old.id]
        assert [i.id for i in await database.list_items_by_date_range(days_ago(2), days_ago(0))] == [new.id]

    async def test_items_needing_enrichment(self, database, feed) -> None:
        pending = make_item(feed.id, link="https://example.com/1", summary="Done", topics=["ai"])
        done = make_item(feed.id, link="https://example.com/2", summary="Done", topics=["ai"], embedding=[1.0])
        await database.create_item(pending)
        await database.create_item(done)

        assert [i.id for i in await database.list_items_needing_enrichment()] == [pending.id]

    async def test_rescore_items(self, database, feed) -> None:
        first = make_item(feed.id, link="https://example.com/1")
        second = make_item(feed.id, link="https://example.com/2")
        await database.create_item(first)
        await database.create_item(second)

        scores = await database.rescore_items(lambda item, profile, weights: 0.75)
        assert scores == {first.id: 0.75, second.id: 0.75}
        assert (await database.get_item(second.id)).relevance_score == pytest.approx(0.75)

        assert await database.rescore_items(lambda item, profile, weights: 0.25, first.id) == {first.id: 0.25}
        assert (await database.get_item(second.id)).relevance_score == pytest.approx(0.75)
        assert await database.rescore_items(lambda item, profile, weights: 0.1, "missing") == {}

    async def test_failed_rescore_writes_nothing(self, database, feed) -> None:
        stored = make_item(feed.id, relevance_score=0.4)
        await database.create_item(stored)

        def broken(item, profile, weights):
            raise ValueError("bad score")

        with pytest.raises(ValueError):
            await database.rescore_items(broken)
        assert (await database.get_item(stored.id)).relevance_score == pytest.approx(0.4)


class TestPreferences:
    """Profile and learned weights."""

    async def test_default_profile(self, database) -> None:
        assert await database.get_preferences() == PreferenceProfile()

    async def test_save_profile(self, database) -> None:
        profile = PreferenceProfile(interests=["ai"], excluded_topics=["sports"], notification_threshold=0.4)
        await database.save_preferences(profile)

        assert await database.get_preferences() == profile

    async def test_weights_stored_lower_cased(self, database, feed) -> None:
        stored = make_item(feed.id)
        await database.create_item(stored)
        await database.save_feedback(
            stored.id, Feedback.LIKE, [PreferenceWeight(topic="ai", weight=1.1, positive_count=1)]
        )

        assert (await database.get_weight("AI")).weight == pytest.approx(1.1)
        assert await database.get_weight_map() == {"ai": pytest.approx(1.1)}
        assert await database.reset_weights() == 1

    async def test_weight_outside_range_rejected(self, database, feed) -> None:
        stored = make_item(feed.id)
        await database.create_item(stored)

        with pytest.raises(Exception):
            await database.save_feedback(stored.id, Feedback.LIKE, [PreferenceWeight(topic="ai", weight=2.5)])

    async def test_feedback_event_is_atomic(self, database, feed) -> None:
        stored = make_item(feed.id)
        await database.create_item(stored)
        profile = PreferenceProfile(interests=["ai"])

        with patch.object(database, "_write_preferences", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                await database.save_feedback(
                    stored.id, Feedback.LIKE, [PreferenceWeight(topic="ai", weight=1.1)], profile
                )

        assert (await database.get_item(stored.id)).user_feedback is None
        assert await database.list_weights() == []
        assert await database.get_preferences() == PreferenceProfile()


class TestConnections:
    """Connection rows."""

    async def test_pair_stored_once_in_canonical_order(self, database, feed) -> None:
        first = make_item(feed.id, link="https://example.com/1")
        second = make_item(feed.id, link="https://example.com/2")
        await database.create_item(first)
        await database.create_item(second)
        low, high = sorted((first.id, second.id))

        assert await database.create_connection(
            Connection(item_a_id=high, item_b_id=low, type=ConnectionType.TOPIC, strength=0.5)
        )
        assert not await database.create_connection(
            Connection(item_a_id=low, item_b_id=high, type=ConnectionType.SEMANTIC, strength=0.9)
        )

        connections = await database.list_connections_for_item(first.id)
        assert len(connections) == 1
        assert (connections[0].item_a_id, connections[0].item_b_id) == (low, high)
        assert await database.connection_exists(high, low)
        assert await database.delete_all_connections() == 1
