from datetime import datetime, timedelta
from typing import List, Optional
from src.config import settings
from src.models.items import Item, NotificationRecord, PreferenceProfile, utcnow
from src.services.database import Database, to_utc
from src.services.logger import logger


class NotificationService:
    """Decides which freshly fetched items deserve a notification and records them."""

    def __init__(self, database: Database, window_minutes: Optional[int] = None):
        self.db = database
        self.window = timedelta(minutes=window_minutes or settings.NOTIFICATION_WINDOW_MINUTES)

    def should_notify(self, item: Item, profile: PreferenceProfile, now: Optional[datetime] = None) -> bool:
        if not profile.notifications_enabled:
            return False
        if item.relevance_score < profile.notification_threshold:
            return False
        if item.is_read:
            return False
        # Only items fetched moments ago, so the first load of a feed does not flood
        now = to_utc(now) if now else utcnow()
        return now - to_utc(item.fetched_at) <= self.window

    async def create(self, item: Item) -> NotificationRecord:
        """Records a notification for the item, returning the existing one if already present."""
        existing = await self.db.get_notification(item.id)
        if existing:
            return existing

        record = NotificationRecord(
            id=f"notif-{item.id}-{int(utcnow().timestamp() * 1000)}",
            item_id=item.id,
            title=item.title,
            summary=item.summary or item.excerpt or "",
            relevance_score=item.relevance_score,
        )
        if not await self.db.create_notification(record):
            return await self.db.get_notification(item.id) or record

        logger.info(f"🔔 Created notification for item: {item.title[:60]} (score: {item.relevance_score:.2f})")
        return record

    async def check_and_create(self, now: Optional[datetime] = None) -> List[NotificationRecord]:
        """Sweeps recent items and creates notifications for every eligible one not yet notified."""
        profile = await self.db.get_preferences()
        if not profile.notifications_enabled:
            return []

        created = []
        for item in await self.db.list_items_by_relevance(profile.notification_threshold):
            if not self.should_notify(item, profile, now):
                continue
            if await self.db.get_notification(item.id):
                continue
            created.append(await self.create(item))
        return created

    async def list_pending(self) -> List[NotificationRecord]:
        return await self.db.list_notifications()

    async def dismiss(self, item_id: str) -> bool:
        return await self.db.delete_notification(item_id)

    async def clear(self) -> int:
        return await self.db.clear_notifications()

    async def count(self) -> int:
        return len(await self.db.list_notifications())
