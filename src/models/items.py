from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FeedStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    PAUSED = "paused"


class ConnectionType(str, Enum):
    SEMANTIC = "semantic"
    TOPIC = "topic"
    ENTITY = "entity"


class Feedback(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class Feed(BaseModel):
    id: str = Field(default_factory=new_id)
    url: str
    title: str
    description: Optional[str] = None
    fetch_interval_minutes: int = 60
    status: FeedStatus = FeedStatus.ACTIVE
    last_fetched_at: Optional[datetime] = None
    last_error: Optional[str] = None
    item_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Item(BaseModel):
    id: str = Field(default_factory=new_id)
    feed_id: str
    title: str
    link: str  # Global dedup key
    content: str = ""
    excerpt: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    fetched_at: datetime = Field(default_factory=utcnow)
    summary: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)
    relevance_score: float = 0.0
    embedding: Optional[List[float]] = None
    is_read: bool = False
    is_favorite: bool = False
    user_feedback: Optional[Feedback] = None

    def embedding_text(self, max_chars: int = 8000) -> str:
        """Text sent to the embedding model: title, summary/excerpt, topics, entities."""
        parts = [
            self.title,
            self.summary or self.excerpt or "",
            " ".join(self.topics),
            " ".join(self.entities),
        ]
        return " ".join(p for p in parts if p)[:max_chars]


class PreferenceProfile(BaseModel):
    interests: List[str] = Field(default_factory=list)
    excluded_topics: List[str] = Field(default_factory=list)
    notifications_enabled: bool = True
    notification_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class PreferenceWeight(BaseModel):
    topic: str  # lower-cased
    weight: float = 1.0
    positive_count: int = 0
    negative_count: int = 0


class Connection(BaseModel):
    id: str = Field(default_factory=new_id)
    item_a_id: str
    item_b_id: str
    type: ConnectionType
    strength: float
    shared_elements: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class FetchAttempt(BaseModel):
    feed_id: str
    consecutive_failures: int
    last_attempt_at: datetime
    next_retry_delay_minutes: int


class NotificationRecord(BaseModel):
    id: str
    item_id: str
    title: str
    summary: str = ""
    relevance_score: float
    created_at: datetime = Field(default_factory=utcnow)


class AnalysisResult(BaseModel):
    summary: str = ""
    topics: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)


class FeedValidationResult(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class FetchResult(BaseModel):
    success: bool
    items_added: int = 0
    error: Optional[str] = None


class FeedbackResult(BaseModel):
    success: bool
    weights_updated: int = 0
    error: Optional[str] = None


class EnrichmentOutcome(BaseModel):
    item_id: str
    completed_steps: List[str] = Field(default_factory=list)
    skipped_steps: List[str] = Field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    connections_created: int = 0

    @property
    def succeeded(self) -> bool:
        return self.failed_step is None


class RelatedItem(BaseModel):
    item: Item
    type: ConnectionType
    strength: float
    shared_elements: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item.id,
            "title": self.item.title,
            "link": self.item.link,
            "type": self.type.value,
            "strength": round(self.strength, 3),
            "shared_elements": self.shared_elements,
        }


class TrendingArticle(BaseModel):
    id: str
    title: str
    published_at: datetime


class TrendingLabel(BaseModel):
    label: str  # lower-cased topic or entity
    kind: str  # "topic" or "entity"
    item_count: int
    trending_score: float
    recent_items: List[TrendingArticle] = Field(default_factory=list)
