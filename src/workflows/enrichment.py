"""
Enrichment Orchestrator - the per-item chain run after a new item is stored.

    analyze -> rescore -> notify -> embed -> connect

Steps run strictly in that order for one item; different items run
concurrently in detached tasks, bounded by a semaphore. A failing step aborts
only the rest of that item's chain. Every step checks for data already present,
so re-running the chain on an enriched item makes no external calls.
"""
import asyncio
from typing import Any, Awaitable, List, Optional, Set
from src.config import settings
from src.models.errors import EnrichmentStepError
from src.models.items import EnrichmentOutcome, Item
from src.services.analysis import AnalysisService, FALLBACK_SUMMARY_CHARS, strip_html
from src.services.database import Database
from src.services.embedding import EmbeddingService
from src.services.logger import logger
from src.services.notifications import NotificationService
from src.tools.connections import ConnectionDetector
from src.tools.relevance import RelevanceScorer

ANALYZE = "analyze"
RESCORE = "rescore"
NOTIFY = "notify"
EMBED = "embed"
CONNECT = "connect"


class EnrichmentOrchestrator:
    def __init__(
        self,
        database: Database,
        analysis: AnalysisService,
        embedder: EmbeddingService,
        notifier: NotificationService,
        scorer: RelevanceScorer,
        detector: ConnectionDetector,
        max_concurrent: Optional[int] = None,
        analysis_timeout: Optional[float] = None,
        embedding_timeout: Optional[float] = None,
        embedding_max_chars: Optional[int] = None,
    ):
        self.db = database
        self.analysis = analysis
        self.embedder = embedder
        self.notifier = notifier
        self.scorer = scorer
        self.detector = detector
        self.analysis_timeout = analysis_timeout or settings.ANALYSIS_TIMEOUT_SECONDS
        self.embedding_timeout = embedding_timeout or settings.EMBEDDING_TIMEOUT_SECONDS
        self.embedding_max_chars = embedding_max_chars or settings.EMBEDDING_MAX_CHARS
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.ENRICHMENT_MAX_CONCURRENT)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def schedule(self, item_id: str) -> asyncio.Task:
        """Starts the chain for an item in the background and returns immediately."""
        task = asyncio.create_task(self._limited(item_id), name=f"enrich-{item_id}")
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Waits for every scheduled chain, including ones scheduled while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _limited(self, item_id: str) -> EnrichmentOutcome:
        async with self._semaphore:
            return await self.enrich(item_id)

    async def _step(self, step: str, item_id: str, call: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        try:
            if timeout:
                return await asyncio.wait_for(call, timeout=timeout)
            return await call
        except Exception as e:
            raise EnrichmentStepError(step, item_id, e) from e

    async def enrich(self, item_id: str) -> EnrichmentOutcome:
        """Runs the full chain inline. Never raises for step failures."""
        outcome = EnrichmentOutcome(item_id=item_id)
        item = await self.db.get_item(item_id)
        if not item:
            logger.warning(f"Enrichment skipped, item {item_id} no longer exists")
            outcome.error = "Item not found"
            outcome.failed_step = ANALYZE
            return outcome

        try:
            item = await self._analyze(item, outcome)

            score = await self._step(RESCORE, item.id, self.scorer.rescore_item(item.id))
            if score is not None:
                item = item.model_copy(update={"relevance_score": score})
            outcome.completed_steps.append(RESCORE)

            await self._step(NOTIFY, item.id, self._notify(item))
            outcome.completed_steps.append(NOTIFY)

            embedded = await self._embed(item, outcome)

            if embedded:
                outcome.connections_created = await self._step(
                    CONNECT, item.id, self.detector.detect_connections_for_item(item.id)
                )
                outcome.completed_steps.append(CONNECT)
            else:
                outcome.skipped_steps.append(CONNECT)

        except EnrichmentStepError as e:
            outcome.failed_step = e.step
            outcome.error = str(e.cause) or type(e.cause).__name__
            logger.error(f"Enrichment aborted for '{item.title[:50]}' at {e.step}: {outcome.error}")

        return outcome

    async def _analyze(self, item: Item, outcome: EnrichmentOutcome) -> Item:
        if item.summary and item.topics:
            logger.debug(f"Analysis cached for {item.id}")
            outcome.skipped_steps.append(ANALYZE)
            return item

        result = await self._step(
            ANALYZE, item.id,
            self.analysis.analyze(item.title, item.content, excerpt=item.excerpt),
            self.analysis_timeout,
        )
        summary = result.summary or item.excerpt or strip_html(item.content)[:FALLBACK_SUMMARY_CHARS]
        updates = {"summary": summary, "topics": result.topics, "entities": result.entities}
        await self._step(ANALYZE, item.id, self.db.update_item(item.id, **updates))
        outcome.completed_steps.append(ANALYZE)
        return item.model_copy(update=updates)

    async def _notify(self, item: Item):
        profile = await self.db.get_preferences()
        if self.notifier.should_notify(item, profile):
            await self.notifier.create(item)

    async def _embed(self, item: Item, outcome: EnrichmentOutcome) -> bool:
        """Returns True only when a new embedding was stored."""
        if item.embedding:
            logger.debug(f"Embedding cached for {item.id}")
            outcome.skipped_steps.append(EMBED)
            return False

        text = item.embedding_text(self.embedding_max_chars)
        vector = await self._step(EMBED, item.id, self.embedder.embed(text), self.embedding_timeout)
        if not vector:
            raise EnrichmentStepError(EMBED, item.id, ValueError("embedding service returned an empty vector"))
        await self._step(EMBED, item.id, self.db.update_item(item.id, embedding=list(vector)))
        outcome.completed_steps.append(EMBED)
        return True

    async def reenrich_pending(self, limit: Optional[int] = None) -> List[EnrichmentOutcome]:
        """Re-runs the chain for items still missing a summary, topics or an embedding."""
        items = await self.db.list_items_needing_enrichment(limit)
        if not items:
            logger.info("No items need enrichment")
            return []

        logger.info(f"🚀 Re-enriching {len(items)} items...")
        outcomes = await asyncio.gather(*[self._limited(item.id) for item in items])
        failed = sum(1 for o in outcomes if not o.succeeded)
        logger.info(f"✅ Re-enrichment complete: {len(outcomes) - failed} succeeded, {failed} failed")
        return list(outcomes)
