import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional
from src.config import settings
from src.models.items import Feed, FeedStatus, FetchAttempt, FetchResult, utcnow
from src.services.database import Database, to_utc
from src.services.logger import logger
from src.tools.feed_fetcher import FeedFetcher

POLLED_STATUSES = (FeedStatus.ACTIVE, FeedStatus.ERROR)


class FeedScheduler:
    """
    Tick-driven feed poller with per-feed failure backoff.

    Feeds are polled one at a time. The backoff table lives only in memory; a
    restart forgets it and feeds re-poll as if they had never failed.
    """

    def __init__(
        self,
        database: Database,
        fetcher: FeedFetcher,
        tick_minutes: Optional[float] = None,
        backoff_base_minutes: Optional[int] = None,
        backoff_max_minutes: Optional[int] = None,
        failures_before_error: Optional[int] = None,
        startup_delay_seconds: Optional[float] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = database
        self.fetcher = fetcher
        self.tick_minutes = tick_minutes or settings.SCHEDULER_TICK_MINUTES
        self.backoff_base_minutes = backoff_base_minutes or settings.BACKOFF_BASE_MINUTES
        self.backoff_max_minutes = backoff_max_minutes or settings.BACKOFF_MAX_MINUTES
        self.failures_before_error = failures_before_error or settings.FAILURES_BEFORE_ERROR
        self.startup_delay_seconds = (
            settings.SCHEDULER_STARTUP_DELAY_SECONDS if startup_delay_seconds is None else startup_delay_seconds
        )
        self.now = now or utcnow
        self.failed_attempts: Dict[str, FetchAttempt] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def calculate_next_retry_delay(self, consecutive_failures: int) -> int:
        """Minutes to wait before the next attempt: 5, 10, 20, ... capped at the maximum."""
        delay = self.backoff_base_minutes * (2 ** max(consecutive_failures - 1, 0))
        return min(delay, self.backoff_max_minutes)

    def should_fetch_feed(self, feed: Feed, now: Optional[datetime] = None) -> bool:
        if feed.status == FeedStatus.PAUSED:
            return False
        if feed.last_fetched_at is None:
            return True

        now = to_utc(now or self.now())
        attempt = self.failed_attempts.get(feed.id)
        if attempt:
            minutes_since_attempt = (now - to_utc(attempt.last_attempt_at)).total_seconds() / 60
            return minutes_since_attempt >= attempt.next_retry_delay_minutes

        minutes_since_fetch = (now - to_utc(feed.last_fetched_at)).total_seconds() / 60
        return minutes_since_fetch >= feed.fetch_interval_minutes

    async def fetch_with_backoff(self, feed_id: str) -> FetchResult:
        result = await self.fetcher.fetch_feed(feed_id)

        if result.success:
            if self.failed_attempts.pop(feed_id, None):
                logger.info(f"✅ Feed {feed_id} recovered, backoff cleared")
            return result

        previous = self.failed_attempts.get(feed_id)
        failures = (previous.consecutive_failures if previous else 0) + 1
        attempt = FetchAttempt(
            feed_id=feed_id,
            consecutive_failures=failures,
            last_attempt_at=self.now(),
            next_retry_delay_minutes=self.calculate_next_retry_delay(failures),
        )
        self.failed_attempts[feed_id] = attempt

        logger.warning(
            f"Feed {feed_id} failed ({failures} consecutive), "
            f"next retry in {attempt.next_retry_delay_minutes} minutes: {result.error}"
        )

        if failures >= self.failures_before_error:
            feed = await self.db.get_feed(feed_id)
            # A feed paused or removed meanwhile keeps its state
            if feed and feed.status == FeedStatus.ACTIVE:
                await self.db.update_feed(feed_id, status=FeedStatus.ERROR, last_error=result.error)
                logger.error(f"Feed {feed.title} marked as error after {failures} consecutive failures")

        return result

    async def fetch_due_feeds(self) -> int:
        """Polls every due feed sequentially. Returns how many were polled."""
        feeds = await self.db.list_feeds(POLLED_STATUSES)
        now = self.now()
        due = [feed for feed in feeds if self.should_fetch_feed(feed, now)]
        if not due:
            logger.debug("No feeds due for polling")
            return 0

        logger.info(f"Polling {len(due)} of {len(feeds)} feeds")
        for feed in due:
            try:
                await self.fetch_with_backoff(feed.id)
            except Exception as e:
                logger.error(f"Error polling feed {feed.title} ({feed.url}): {e}")
        return len(due)

    def get_backoff_status(self) -> List[FetchAttempt]:
        return list(self.failed_attempts.values())

    def reset_backoff(self, feed_id: str) -> bool:
        return self.failed_attempts.pop(feed_id, None) is not None

    def start(self) -> asyncio.Task:
        if self.is_running:
            raise RuntimeError("Feed scheduler already running")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def stop(self, timeout: float = 5.0):
        if not self._task:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Feed scheduler stop timed out, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _wait(self, seconds: float) -> bool:
        """Sleeps until the timeout or a stop request. True if stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_loop(self):
        logger.info(f"⏰ Feed scheduler started (every {self.tick_minutes} minutes)")
        try:
            if await self._wait(self.startup_delay_seconds):
                return
            while not self._stop_event.is_set():
                try:
                    await self.fetch_due_feeds()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Scheduler cycle failed: {e}")

                if await self._wait(self.tick_minutes * 60):
                    return
        finally:
            logger.info("Feed scheduler stopped")
