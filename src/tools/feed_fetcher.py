import html
import re
import httpx
import feedparser
from typing import TYPE_CHECKING, Any, List, Optional
from datetime import datetime, timezone
from urllib.parse import urlparse
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from src.config import settings
from src.models.errors import FeedValidationError, FetchError, PermanentFetchError, TransientFetchError
from src.models.items import Feed, FeedStatus, FeedValidationResult, FetchResult, Item, utcnow
from src.services.database import Database
from src.services.logger import logger
from src.tools.relevance import RelevanceScorer

if TYPE_CHECKING:
    from src.workflows.enrichment import EnrichmentOrchestrator

TAG_PATTERN = re.compile(r"<[^>]*>")
IMAGE_STYLE = "max-width: 100%; height: auto; margin: 1rem 0;"
RETRYABLE_STATUS_CODES = {408, 429}


def _is_image(media: Any) -> bool:
    return media.get("medium") == "image" or str(media.get("type", "")).startswith("image/")


def extract_images(entry: Any) -> List[str]:
    """Image URLs from enclosures, Media RSS and itunes:image, in that order, de-duplicated."""
    urls = []
    for enclosure in entry.get("enclosures") or []:
        if enclosure.get("href") and str(enclosure.get("type", "")).startswith("image/"):
            urls.append(enclosure["href"])
    for media in entry.get("media_content") or []:
        if media.get("url") and _is_image(media):
            urls.append(media["url"])
    for thumb in entry.get("media_thumbnail") or []:
        if thumb.get("url"):
            urls.append(thumb["url"])
    image = entry.get("image")
    if isinstance(image, dict) and image.get("href"):
        urls.append(image["href"])
    return list(dict.fromkeys(urls))


def build_content(entry: Any, title: str) -> str:
    """Full content over summary/description, with any images prepended as <img> markup."""
    content = ""
    if entry.get("content"):
        content = entry["content"][0].get("value", "")
    content = content or entry.get("summary") or entry.get("description") or ""

    images = extract_images(entry)
    if images:
        alt = html.escape(title, quote=True)
        markup = "\n".join(f'<img src="{url}" alt="{alt}" style="{IMAGE_STYLE}" />' for url in images)
        content = markup + "\n" + content
    return content


def make_excerpt(content: str, length: int = 200) -> str:
    text = TAG_PATTERN.sub("", content).strip()
    if len(text) > length:
        return text[:length] + "..."
    return text


def published_at(entry: Any, fetched_at: Optional[datetime] = None) -> datetime:
    """Publish date, then update date, then fetch time. feedparser normalises to UTC."""
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc)
    return fetched_at or utcnow()


class FeedFetcher:
    """Downloads and parses feeds, persisting every entry not seen before."""

    def __init__(
        self,
        database: Database,
        scorer: RelevanceScorer,
        enrichment: Optional["EnrichmentOrchestrator"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        user_agent: Optional[str] = None,
        excerpt_length: Optional[int] = None,
    ):
        self.db = database
        self.scorer = scorer
        self.enrichment = enrichment
        self.transport = transport
        self.timeout = timeout or settings.FETCH_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.FETCH_MAX_ATTEMPTS
        self.retry_base_delay = settings.FETCH_RETRY_BASE_SECONDS if retry_base_delay is None else retry_base_delay
        self.user_agent = user_agent or settings.FETCH_USER_AGENT
        self.excerpt_length = excerpt_length or settings.EXCERPT_LENGTH

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
            transport=self.transport,
        )

    async def _download(self, url: str) -> bytes:
        try:
            async with self._client() as client:
                resp = await client.get(url)
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"Timed out fetching {url}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"Network error fetching {url}: {e}") from e

        if resp.is_success:
            return resp.content
        code = resp.status_code
        if code >= 500 or code in RETRYABLE_STATUS_CODES:
            raise TransientFetchError(f"HTTP {code} from {url}", status_code=code)
        raise PermanentFetchError(f"HTTP {code} from {url}", status_code=code)

    async def _fetch_document(self, url: str) -> bytes:
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_base_delay * 4),
            retry=retry_if_exception_type(TransientFetchError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Fetch attempt {retry_state.attempt_number} failed for {url}, "
                f"retrying in {retry_state.next_action.sleep} seconds..."
            ),
        )
        return await retryer(self._download, url)

    async def parse_feed(self, url: str) -> feedparser.FeedParserDict:
        """Fetches (with retry) and parses a feed document."""
        content = await self._fetch_document(url)
        parsed = feedparser.parse(content)
        if not parsed.entries and (parsed.bozo or not parsed.version):
            reason = parsed.get("bozo_exception") or "not an RSS or Atom document"
            raise FeedValidationError(str(reason))
        return parsed

    async def validate_feed_url(self, url: str) -> FeedValidationResult:
        parts = urlparse(url or "")
        if not parts.scheme:
            return FeedValidationResult(is_valid=False, error="Invalid URL format")
        if parts.scheme not in ("http", "https"):
            return FeedValidationResult(is_valid=False, error="URL must use HTTP or HTTPS protocol")
        if not parts.netloc:
            return FeedValidationResult(is_valid=False, error="Invalid URL format")

        try:
            parsed = await self.parse_feed(url)
        except (FetchError, FeedValidationError) as e:
            return FeedValidationResult(is_valid=False, error=f"Failed to parse feed: {e}")

        return FeedValidationResult(
            is_valid=True,
            title=parsed.feed.get("title"),
            description=parsed.feed.get("subtitle") or parsed.feed.get("description"),
        )

    async def fetch_feed(self, feed_id: str) -> FetchResult:
        feed = await self.db.get_feed(feed_id)
        if not feed:
            return FetchResult(success=False, error="Feed not found")

        try:
            parsed = await self.parse_feed(feed.url)
        except (FetchError, FeedValidationError) as e:
            logger.warning(f"Failed to fetch feed {feed.title} ({feed.url}): {e}")
            await self.db.update_feed(feed.id, last_fetched_at=utcnow(), last_error=str(e))
            return FetchResult(success=False, error=str(e))

        fetched_at = utcnow()
        items_added = 0
        for entry in parsed.entries:
            try:
                if await self._process_entry(feed, entry, fetched_at):
                    items_added += 1
            except Exception as e:
                logger.warning(f"Skipping malformed entry in {feed.url}: {e}")

        if items_added:
            await self.db.increment_item_count(feed.id, items_added)

        updates = {"last_fetched_at": utcnow(), "last_error": None}
        if feed.status == FeedStatus.ERROR:
            updates["status"] = FeedStatus.ACTIVE
        await self.db.update_feed(feed.id, **updates)

        logger.info(f"📰 {feed.title}: {items_added} new items ({len(parsed.entries)} entries)")
        return FetchResult(success=True, items_added=items_added)

    async def _process_entry(self, feed: Feed, entry: Any, fetched_at: datetime) -> Optional[Item]:
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or "").strip()
        if not title or not link:
            logger.debug(f"Skipping entry without title or link in {feed.url}")
            return None

        if await self.db.get_item_by_link(link):
            return None

        content = build_content(entry, title)
        item = Item(
            feed_id=feed.id,
            title=title,
            link=link,
            content=content,
            excerpt=make_excerpt(content, self.excerpt_length),
            author=entry.get("author"),
            published_at=published_at(entry, fetched_at),
            fetched_at=fetched_at,
        )
        # Same link inserted concurrently
        if not await self.db.create_item(item):
            return None

        # Placeholder score until enrichment adds topics and entities
        await self.scorer.rescore_item(item.id)
        if self.enrichment is not None:
            self.enrichment.schedule(item.id)
        return item
