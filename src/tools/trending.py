import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from src.models.items import Item, TrendingArticle, TrendingLabel, utcnow
from src.services.database import Database, to_utc

TOPICS = "topic"
ENTITIES = "entity"
KINDS = (TOPICS, ENTITIES)

MAX_AGE_DAYS = 30
RECENCY_SCALE = 10  # Brings average recency into the range of log(count + 1)
RECENT_ITEMS_LIMIT = 5
MAX_LIMIT = 50


def trending_recency(published_at: datetime, now: datetime, max_age_days: int = MAX_AGE_DAYS) -> float:
    """Linear decay from 1 (now) to 0 (max_age_days old)."""
    age_days = (now - to_utc(published_at)).total_seconds() / 86400
    if age_days > max_age_days:
        return 0.0
    return max(0.0, min(1.0, 1 - age_days / max_age_days))


def trending_score(item_count: int, average_recency: float) -> float:
    return math.log(item_count + 1) + average_recency * RECENCY_SCALE


def rank_labels(items: List[Item], kind: str, now: datetime, limit: int) -> List[TrendingLabel]:
    """Groups items by lower-cased topic or entity and ranks the groups by trending score."""
    grouped: Dict[str, List[Item]] = defaultdict(list)
    for item in items:
        labels = item.topics if kind == TOPICS else item.entities
        for key in dict.fromkeys(label.strip().lower() for label in labels):
            if key:
                grouped[key].append(item)

    ranked = []
    for label, members in grouped.items():
        recency = sum(trending_recency(i.published_at, now) for i in members) / len(members)
        newest = sorted(members, key=lambda i: i.published_at, reverse=True)[:RECENT_ITEMS_LIMIT]
        ranked.append(TrendingLabel(
            label=label,
            kind=kind,
            item_count=len(members),
            trending_score=trending_score(len(members), recency),
            recent_items=[TrendingArticle(id=i.id, title=i.title, published_at=i.published_at) for i in newest],
        ))
    ranked.sort(key=lambda t: t.trending_score, reverse=True)
    return ranked[:limit]


class TrendingAnalyzer:
    """Topics and entities gaining traction across recently published items."""

    def __init__(self, database: Database):
        self.db = database

    async def get_trending(self, days_back: int = 7, limit: int = 10, kind: Optional[str] = TOPICS,
                           now: Optional[datetime] = None) -> List[TrendingLabel]:
        """
        kind is "topic", "entity" or None for both, merged by score.
        Items without a publication date are left out.
        """
        if kind is not None and kind not in KINDS:
            raise ValueError(f"Unknown trending kind: {kind}")
        limit = min(limit, MAX_LIMIT)
        now = to_utc(now) if now else utcnow()

        items = await self.db.list_items_by_date_range(now - timedelta(days=days_back), now)
        if not items:
            return []

        if kind is not None:
            return rank_labels(items, kind, now, limit)
        merged = rank_labels(items, TOPICS, now, limit * 2) + rank_labels(items, ENTITIES, now, limit * 2)
        merged.sort(key=lambda t: t.trending_score, reverse=True)
        return merged[:limit]
