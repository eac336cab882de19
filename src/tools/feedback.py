import asyncio
from typing import Any, Dict, Optional, Union
from src.models.items import Feedback, FeedbackResult, PreferenceWeight
from src.services.database import Database
from src.services.logger import logger
from src.tools.relevance import RelevanceScorer

TOPIC_DELTA = 0.1
ENTITY_DELTA = 0.05
MIN_WEIGHT = 0.1
MAX_WEIGHT = 2.0
EXCLUDE_AFTER_DISLIKES = 3
TOP_TOPICS_LIMIT = 10


def clamp_weight(weight: float) -> float:
    return round(max(MIN_WEIGHT, min(MAX_WEIGHT, weight)), 4)


class FeedbackLearner:
    """
    Turns like/dislike events into learned topic weights and profile changes.

    Sole writer of the preference weights and the preference profile. Events are
    processed one at a time and each is committed in a single transaction.
    """

    def __init__(self, database: Database, scorer: RelevanceScorer):
        self.db = database
        self.scorer = scorer
        self._lock = asyncio.Lock()

    async def process_feedback(self, item_id: str, feedback: Union[Feedback, str]) -> FeedbackResult:
        try:
            feedback = Feedback(feedback)
        except ValueError:
            return FeedbackResult(success=False, error=f"Invalid feedback value: {feedback}")

        async with self._lock:
            item = await self.db.get_item(item_id)
            if not item:
                return FeedbackResult(success=False, error="Item not found")

            is_like = feedback == Feedback.LIKE
            direction = 1 if is_like else -1

            # Accumulate in memory first so a topic that is also an entity gets both deltas
            updated: Dict[str, PreferenceWeight] = {}
            for labels, delta in ((item.topics, TOPIC_DELTA), (item.entities, ENTITY_DELTA)):
                for label in labels:
                    key = label.strip().lower()
                    if not key:
                        continue
                    current = updated.get(key) or await self.db.get_weight(key)
                    updated[key] = self._apply(key, current, delta * direction, is_like)

            profile = await self.db.get_preferences()
            interests = list(profile.interests)
            excluded = list(profile.excluded_topics)
            known_interests = {i.lower() for i in interests}
            known_excluded = {e.lower() for e in excluded}

            for topic in item.topics:
                key = topic.strip().lower()
                if not key:
                    continue
                if is_like:
                    if key not in known_interests and key not in known_excluded:
                        interests.append(key)
                        known_interests.add(key)
                elif updated[key].negative_count >= EXCLUDE_AFTER_DISLIKES and key not in known_excluded:
                    excluded.append(key)
                    known_excluded.add(key)

            profile_changed = interests != profile.interests or excluded != profile.excluded_topics
            new_profile = profile.model_copy(update={"interests": interests, "excluded_topics": excluded})

            await self.db.save_feedback(
                item_id, feedback, list(updated.values()), new_profile if profile_changed else None
            )
            logger.info(
                f"{'👍' if is_like else '👎'} Feedback on '{item.title[:50]}': {len(updated)} weights updated"
            )

        await self.scorer.rescore_all()
        return FeedbackResult(success=True, weights_updated=len(updated))

    @staticmethod
    def _apply(key: str, current: Optional[PreferenceWeight], delta: float, is_like: bool) -> PreferenceWeight:
        if current is None:
            current = PreferenceWeight(topic=key, weight=1.0)
        return PreferenceWeight(
            topic=key,
            weight=clamp_weight(current.weight + delta),
            positive_count=current.positive_count + (1 if is_like else 0),
            negative_count=current.negative_count + (0 if is_like else 1),
        )

    async def get_feedback_stats(self) -> Dict[str, Any]:
        weights = await self.db.list_weights()
        positive = sorted((w for w in weights if w.positive_count > 0),
                          key=lambda w: w.positive_count, reverse=True)
        negative = sorted((w for w in weights if w.negative_count > 0),
                          key=lambda w: w.negative_count, reverse=True)
        return {
            "total_feedback": sum(w.positive_count + w.negative_count for w in weights),
            "total_topics": len(weights),
            "top_positive_topics": [
                {"topic": w.topic, "count": w.positive_count, "weight": w.weight}
                for w in positive[:TOP_TOPICS_LIMIT]
            ],
            "top_negative_topics": [
                {"topic": w.topic, "count": w.negative_count, "weight": w.weight}
                for w in negative[:TOP_TOPICS_LIMIT]
            ],
        }

    async def reset_weights(self) -> int:
        async with self._lock:
            removed = await self.db.reset_weights()
        logger.info(f"Reset {removed} learned weights")
        await self.scorer.rescore_all()
        return removed
