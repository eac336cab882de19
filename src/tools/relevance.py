from datetime import datetime
from typing import Dict, Iterable, List, Optional
from src.models.items import Item, PreferenceProfile, utcnow
from src.services.database import Database, to_utc
from src.services.logger import logger

# Component weights
TOPIC_MATCH_WEIGHT = 0.4
ENTITY_MATCH_WEIGHT = 0.3
RECENCY_WEIGHT = 0.2
EXCLUDED_TOPIC_PENALTY = 0.1  # Subtracted from the sum, never part of the denominator

NEUTRAL_SCORE = 0.5
DEFAULT_LEARNED_WEIGHT = 1.0
FULL_RECENCY_DAYS = 1
RECENCY_DECAY_DAYS = 29


def fuzzy_match(value: str, candidates: Iterable[str]) -> bool:
    """Case-insensitive substring match in either direction ("AI" matches "air")."""
    needle = value.lower()
    for candidate in candidates:
        other = candidate.lower()
        if other and (other in needle or needle in other):
            return True
    return False


def recency_score(published_at: datetime, now: datetime) -> float:
    age_days = (now - to_utc(published_at)).total_seconds() / 86400
    if age_days <= FULL_RECENCY_DAYS:
        return 1.0
    return max(0.0, 1 - (age_days - FULL_RECENCY_DAYS) / RECENCY_DECAY_DAYS)


def calculate_relevance_score(
    item: Item,
    preferences: PreferenceProfile,
    weights: Optional[Dict[str, float]] = None,
    now: Optional[datetime] = None,
) -> float:
    """
    Relevance of an item for the profile, in [0, 1].

    Weighted average of topic match, entity match and recency, normalised by
    the weights of the components that apply, minus a penalty for excluded
    topics. Returns 0.5 when no component applies.
    """
    weights = weights or {}
    interests = preferences.interests
    score = 0.0
    total_weight = 0.0

    # 1. Topic match, scaled by learned weights
    if interests and item.topics:
        weighted_topic_score = sum(
            weights.get(topic.lower(), DEFAULT_LEARNED_WEIGHT)
            for topic in item.topics
            if fuzzy_match(topic, interests)
        )
        score += min(weighted_topic_score / len(interests), 1.0) * TOPIC_MATCH_WEIGHT
        total_weight += TOPIC_MATCH_WEIGHT

    # 2. Entity match
    if interests and item.entities:
        entity_matches = sum(1 for entity in item.entities if fuzzy_match(entity, interests))
        score += min(entity_matches / len(interests), 1.0) * ENTITY_MATCH_WEIGHT
        total_weight += ENTITY_MATCH_WEIGHT

    # 3. Recency
    if item.published_at is not None:
        score += recency_score(item.published_at, to_utc(now) if now else utcnow()) * RECENCY_WEIGHT
        total_weight += RECENCY_WEIGHT

    # 4. Excluded topic penalty
    if preferences.excluded_topics and item.topics:
        excluded_matches = sum(1 for topic in item.topics if fuzzy_match(topic, preferences.excluded_topics))
        if excluded_matches:
            score -= EXCLUDED_TOPIC_PENALTY * (excluded_matches / len(item.topics))

    if total_weight == 0:
        return NEUTRAL_SCORE
    return max(0.0, min(1.0, score / total_weight))


class RelevanceScorer:
    """Recomputes and persists relevance scores."""

    def __init__(self, database: Database):
        self.db = database

    @staticmethod
    def _scorer(now: datetime):
        def score(item: Item, preferences: PreferenceProfile, weights: Dict[str, float]) -> float:
            return calculate_relevance_score(item, preferences, weights, now)
        return score

    async def rescore_item(self, item_id: str) -> Optional[float]:
        scores = await self.db.rescore_items(self._scorer(utcnow()), item_id)
        return scores.get(item_id)

    async def rescore_all(self) -> int:
        scores = await self.db.rescore_items(self._scorer(utcnow()))
        logger.info(f"Rescored {len(scores)} items")
        return len(scores)

    async def items_by_relevance(self, min_score: float = 0.0, limit: Optional[int] = None) -> List[Item]:
        return await self.db.list_items_by_relevance(min_score, limit)
