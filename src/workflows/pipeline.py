import asyncio
from typing import Any, Dict, List, Optional, Set, Union
import httpx
from src.config import settings
from src.feeds_config import DEFAULT_RSS_FEEDS
from src.models.errors import FeedValidationError, NotFoundError
from src.models.items import (
    EnrichmentOutcome, Feed, Feedback, FeedbackResult, FeedStatus, FetchResult, Item,
    PreferenceProfile, RelatedItem, TrendingLabel,
)
from src.services.analysis import AnalysisService
from src.services.database import Database, db
from src.services.embedding import EmbeddingService
from src.services.logger import logger
from src.services.notifications import NotificationService
from src.tools.connections import ConnectionDetector
from src.tools.feed_fetcher import FeedFetcher
from src.tools.feedback import FeedbackLearner
from src.tools.relevance import RelevanceScorer
from src.tools.trending import TOPICS, TrendingAnalyzer
from src.workflows.enrichment import EnrichmentOrchestrator
from src.workflows.scheduler import FeedScheduler


class Pipeline:
    """
    Wires the ingestion core together and exposes the operator-level operations.

    Flow per poll:
    1. Scheduler picks due feeds (sequentially, with failure backoff)
    2. Fetcher stores new items with a placeholder score
    3. Enrichment runs detached per item (analyze -> rescore -> notify -> embed -> connect)
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        analysis: Optional[AnalysisService] = None,
        embedder: Optional[EmbeddingService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = database or db
        self.scorer = RelevanceScorer(self.db)
        self.notifier = NotificationService(self.db)
        self.detector = ConnectionDetector(self.db)
        self.learner = FeedbackLearner(self.db, self.scorer)
        self.trend_analyzer = TrendingAnalyzer(self.db)
        self.enrichment = EnrichmentOrchestrator(
            self.db,
            analysis or AnalysisService(),
            embedder or EmbeddingService(),
            self.notifier,
            self.scorer,
            self.detector,
        )
        self.fetcher = FeedFetcher(self.db, self.scorer, self.enrichment, transport=transport)
        self.scheduler = FeedScheduler(self.db, self.fetcher)
        self._background: Set[asyncio.Task] = set()

    async def init(self):
        await self.db.init()
        if settings.SEED_DEFAULT_FEEDS:
            await self.seed_default_feeds()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ---- Feed lifecycle ----

    async def subscribe_feed(self, url: str, title: Optional[str] = None, description: Optional[str] = None,
                             fetch_interval: Optional[int] = None) -> Feed:
        """Validates and stores a feed, then polls it once in the background."""
        url = url.strip()
        if await self.db.get_feed_by_url(url):
            raise FeedValidationError("Feed already exists")

        validation = await self.fetcher.validate_feed_url(url)
        if not validation.is_valid:
            raise FeedValidationError(validation.error or "Invalid feed")

        feed = await self.db.create_feed(Feed(
            url=url,
            title=title or validation.title or "Untitled Feed",
            description=description or validation.description,
            fetch_interval_minutes=fetch_interval or settings.DEFAULT_FETCH_INTERVAL_MINUTES,
        ))
        logger.info(f"➕ Subscribed to {feed.title} ({feed.url})")
        self._spawn(self.scheduler.fetch_with_backoff(feed.id))
        return feed

    async def refresh_feed(self, feed_id: str) -> FetchResult:
        """Polls a feed now, ignoring its interval and any pending backoff."""
        if not await self.db.get_feed(feed_id):
            return FetchResult(success=False, error="Feed not found")
        self.scheduler.reset_backoff(feed_id)
        return await self.scheduler.fetch_with_backoff(feed_id)

    async def _require_feed(self, feed_id: str) -> Feed:
        feed = await self.db.get_feed(feed_id)
        if not feed:
            raise NotFoundError("Feed", feed_id)
        return feed

    async def pause_feed(self, feed_id: str) -> Feed:
        feed = await self._require_feed(feed_id)
        await self.db.update_feed(feed.id, status=FeedStatus.PAUSED)
        logger.info(f"⏸️ Paused {feed.title}")
        return feed.model_copy(update={"status": FeedStatus.PAUSED})

    async def resume_feed(self, feed_id: str) -> Feed:
        feed = await self._require_feed(feed_id)
        await self.db.update_feed(feed.id, status=FeedStatus.ACTIVE)
        self.scheduler.reset_backoff(feed.id)
        logger.info(f"▶️ Resumed {feed.title}")
        return feed.model_copy(update={"status": FeedStatus.ACTIVE})

    async def remove_feed(self, feed_id: str):
        feed = await self._require_feed(feed_id)
        await self.db.delete_feed(feed.id)
        self.scheduler.reset_backoff(feed.id)
        logger.info(f"🗑️ Removed {feed.title} and its items")

    async def seed_default_feeds(self) -> int:
        """Subscribes the default feeds on an empty database, without network validation."""
        if await self.db.list_feeds():
            return 0
        for entry in DEFAULT_RSS_FEEDS:
            await self.db.create_feed(Feed(
                url=entry["url"],
                title=entry["title"],
                fetch_interval_minutes=settings.DEFAULT_FETCH_INTERVAL_MINUTES,
            ))
        logger.info(f"Seeded {len(DEFAULT_RSS_FEEDS)} default feeds")
        return len(DEFAULT_RSS_FEEDS)

    # ---- Personalisation ----

    async def submit_feedback(self, item_id: str, feedback: Union[Feedback, str]) -> FeedbackResult:
        return await self.learner.process_feedback(item_id, feedback)

    async def update_preferences(self, **changes: Any) -> PreferenceProfile:
        """Applies profile changes (interests, excluded topics, notification settings) and rescores."""
        current = await self.db.get_preferences()
        profile = PreferenceProfile(**{**current.model_dump(), **changes})
        await self.db.save_preferences(profile)
        await self.scorer.rescore_all()
        return profile

    # ---- Reading state ----

    async def _require_item(self, item_id: str) -> Item:
        item = await self.db.get_item(item_id)
        if not item:
            raise NotFoundError("Item", item_id)
        return item

    async def mark_read(self, item_id: str, is_read: bool = True) -> Item:
        item = await self._require_item(item_id)
        await self.db.update_item(item.id, is_read=is_read)
        return item.model_copy(update={"is_read": is_read})

    async def set_favorite(self, item_id: str, is_favorite: bool = True) -> Item:
        item = await self._require_item(item_id)
        await self.db.update_item(item.id, is_favorite=is_favorite)
        return item.model_copy(update={"is_favorite": is_favorite})

    async def trending(self, days_back: int = 7, limit: int = 10,
                       kind: Optional[str] = TOPICS) -> List[TrendingLabel]:
        return await self.trend_analyzer.get_trending(days_back, limit, kind)

    # ---- Connections and enrichment ----

    async def related_items(self, item_id: str, limit: int = 5) -> List[RelatedItem]:
        return await self.detector.find_related(item_id, limit)

    async def rebuild_connections(self) -> int:
        return await self.detector.rebuild_all_connections()

    async def reenrich_pending(self, limit: Optional[int] = None) -> List[EnrichmentOutcome]:
        return await self.enrichment.reenrich_pending(limit)

    async def stats(self) -> Dict[str, Any]:
        feeds = await self.db.list_feeds()
        return {
            "feeds": len(feeds),
            "feeds_by_status": {
                status.value: sum(1 for f in feeds if f.status == status) for status in FeedStatus
            },
            "items": len(await self.db.list_items()),
            "connections": await self.db.count_connections(),
            "notifications": await self.notifier.count(),
            "backoff": [a.model_dump(mode="json") for a in self.scheduler.get_backoff_status()],
            "feedback": await self.learner.get_feedback_stats(),
        }

    # ---- Process lifecycle ----

    async def run_forever(self):
        await self.init()
        task = self.scheduler.start()
        try:
            await task
        finally:
            await self.shutdown()

    async def run_once(self) -> int:
        """One polling cycle; returns after every enrichment chain it started has finished."""
        await self.init()
        try:
            return await self.scheduler.fetch_due_feeds()
        finally:
            await self.shutdown()

    async def shutdown(self):
        await self.scheduler.stop()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.enrichment.drain()
        logger.info("Pipeline shut down")


pipeline = Pipeline()
