from itertools import combinations
from typing import List, Optional, Sequence, Set
from src.config import settings
from src.models.items import Connection, ConnectionType, Item, RelatedItem
from src.services.database import Database
from src.services.embedding import cosine_similarity
from src.services.logger import logger


def shared_labels(first: Sequence[str], second: Sequence[str]) -> List[str]:
    """Case-insensitive intersection, in the order of the first list."""
    other: Set[str] = {label.lower() for label in second}
    seen: Set[str] = set()
    shared = []
    for label in first:
        key = label.lower()
        if key in other and key not in seen:
            seen.add(key)
            shared.append(label)
    return shared


def union_labels(*groups: Sequence[str]) -> List[str]:
    """Case-insensitive union, first occurrence wins."""
    seen: Set[str] = set()
    labels = []
    for group in groups:
        for label in group:
            if label.lower() not in seen:
                seen.add(label.lower())
                labels.append(label)
    return labels


class ConnectionDetector:
    """Links related items into an undirected, weighted connection graph."""

    def __init__(self, database: Database, similarity_threshold: Optional[float] = None,
                 min_strength: Optional[float] = None):
        self.db = database
        self.similarity_threshold = (
            settings.SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.min_strength = settings.MIN_CONNECTION_STRENGTH if min_strength is None else min_strength

    def evaluate_pair(self, a: Item, b: Item) -> Optional[Connection]:
        """
        Decides whether two items are related. Pure; nothing is stored.

        Semantic similarity wins when both embeddings clear the threshold,
        otherwise shared topics, otherwise shared entities. Weak topic/entity
        overlaps are rejected.
        """
        if a.id == b.id:
            return None

        topics = shared_labels(a.topics, b.topics)
        entities = shared_labels(a.entities, b.entities)

        if a.embedding and b.embedding and len(a.embedding) == len(b.embedding):
            similarity = cosine_similarity(a.embedding, b.embedding)
            if similarity >= self.similarity_threshold:
                return Connection(
                    item_a_id=a.id, item_b_id=b.id, type=ConnectionType.SEMANTIC,
                    strength=min(similarity, 1.0), shared_elements=union_labels(topics, entities),
                )

        if topics:
            kind, shared = ConnectionType.TOPIC, topics
            strength = len(topics) / max(len(a.topics), len(b.topics))
        elif entities:
            kind, shared = ConnectionType.ENTITY, entities
            strength = len(entities) / max(len(a.entities), len(b.entities))
        else:
            return None

        if strength < self.min_strength:
            return None
        return Connection(item_a_id=a.id, item_b_id=b.id, type=kind, strength=strength, shared_elements=shared)

    async def create_connection(self, a: Item, b: Item) -> bool:
        """Evaluates and stores the pair. False for self-pairs, existing pairs and unrelated items."""
        if a.id == b.id or await self.db.connection_exists(a.id, b.id):
            return False
        connection = self.evaluate_pair(a, b)
        if connection is None:
            return False
        return await self.db.create_connection(connection)

    async def detect_connections_for_item(self, item_id: str) -> int:
        item = await self.db.get_item(item_id)
        if not item:
            return 0

        created = 0
        for other in await self.db.list_items():
            if other.id == item.id:
                continue
            if await self.create_connection(item, other):
                created += 1

        if created:
            logger.info(f"🔗 Created {created} connections for '{item.title[:50]}'")
        return created

    async def rebuild_all_connections(self) -> int:
        removed = await self.db.delete_all_connections()
        items = await self.db.list_items()
        logger.info(f"Rebuilding connections for {len(items)} items ({removed} removed)")

        created = 0
        for a, b in combinations(items, 2):
            connection = self.evaluate_pair(a, b)
            if connection and await self.db.create_connection(connection):
                created += 1

        logger.info(f"✅ Rebuilt connection graph: {created} connections")
        return created

    async def find_related(self, item_id: str, limit: int = 5) -> List[RelatedItem]:
        related = []
        for connection in await self.db.list_connections_for_item(item_id):
            if len(related) >= limit:
                break
            other_id = connection.item_b_id if connection.item_a_id == item_id else connection.item_a_id
            other = await self.db.get_item(other_id)
            if not other:
                continue
            related.append(RelatedItem(
                item=other,
                type=connection.type,
                strength=connection.strength,
                shared_elements=connection.shared_elements,
            ))
        return related
