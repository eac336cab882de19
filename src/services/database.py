import aiosqlite
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
from src.config import settings
from src.services.logger import logger
from src.models.items import (
    Connection, ConnectionType, Feed, FeedStatus, Feedback, Item,
    NotificationRecord, PreferenceProfile, PreferenceWeight,
)

INIT_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    fetch_interval_minutes INTEGER NOT NULL DEFAULT 60,
    status TEXT NOT NULL DEFAULT 'active',
    last_fetched_at TIMESTAMP,
    last_error TEXT,
    item_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL,
    title TEXT NOT NULL,
    link TEXT NOT NULL UNIQUE,
    content TEXT NOT NULL DEFAULT '',
    excerpt TEXT,
    author TEXT,
    published_at TIMESTAMP,
    fetched_at TIMESTAMP NOT NULL,
    summary TEXT,
    topics JSON NOT NULL DEFAULT '[]',
    entities JSON NOT NULL DEFAULT '[]',
    relevance_score REAL NOT NULL DEFAULT 0,
    embedding JSON,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    user_feedback TEXT,
    FOREIGN KEY(feed_id) REFERENCES feeds(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_items_feed_id ON items(feed_id);
CREATE INDEX IF NOT EXISTS idx_items_published_at ON items(published_at DESC);
CREATE INDEX IF NOT EXISTS idx_items_relevance_score ON items(relevance_score DESC);

CREATE TABLE IF NOT EXISTS user_preferences (
    id TEXT PRIMARY KEY,
    interests JSON NOT NULL DEFAULT '[]',
    excluded_topics JSON NOT NULL DEFAULT '[]',
    notifications_enabled INTEGER NOT NULL DEFAULT 1,
    notification_threshold REAL NOT NULL DEFAULT 0.7,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

INSERT OR IGNORE INTO user_preferences (id) VALUES ('default');

CREATE TABLE IF NOT EXISTS preference_weights (
    topic TEXT PRIMARY KEY,
    weight REAL NOT NULL DEFAULT 1.0 CHECK (weight >= 0.1 AND weight <= 2.0),
    positive_count INTEGER NOT NULL DEFAULT 0,
    negative_count INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS connections (
    id TEXT PRIMARY KEY,
    item_a_id TEXT NOT NULL,
    item_b_id TEXT NOT NULL,
    type TEXT NOT NULL,
    strength REAL NOT NULL,
    shared_elements JSON NOT NULL DEFAULT '[]',
    created_at TIMESTAMP NOT NULL,
    UNIQUE(item_a_id, item_b_id),
    CHECK (item_a_id < item_b_id),
    FOREIGN KEY(item_a_id) REFERENCES items(id) ON DELETE CASCADE,
    FOREIGN KEY(item_b_id) REFERENCES items(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_connections_item_a ON connections(item_a_id);
CREATE INDEX IF NOT EXISTS idx_connections_item_b ON connections(item_b_id);

CREATE TABLE IF NOT EXISTS notifications (
    item_id TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT,
    relevance_score REAL NOT NULL,
    created_at TIMESTAMP NOT NULL,
    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
);
"""

PROFILE_ID = "default"

FEED_COLUMNS = {"title", "description", "fetch_interval_minutes", "status", "last_fetched_at", "last_error"}
ITEM_COLUMNS = {
    "summary", "topics", "entities", "relevance_score", "embedding",
    "is_read", "is_favorite", "user_feedback", "excerpt",
}


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(value: Any) -> Any:
    """Converts a python value into its SQLite column representation."""
    if isinstance(value, datetime):
        return to_utc(value).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))


def _row_to_feed(row) -> Feed:
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        description=row["description"],
        fetch_interval_minutes=row["fetch_interval_minutes"],
        status=FeedStatus(row["status"]),
        last_fetched_at=_parse_dt(row["last_fetched_at"]),
        last_error=row["last_error"],
        item_count=row["item_count"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_item(row) -> Item:
    return Item(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        link=row["link"],
        content=row["content"] or "",
        excerpt=row["excerpt"],
        author=row["author"],
        published_at=_parse_dt(row["published_at"]),
        fetched_at=_parse_dt(row["fetched_at"]),
        summary=row["summary"],
        topics=json.loads(row["topics"]) if row["topics"] else [],
        entities=json.loads(row["entities"]) if row["entities"] else [],
        relevance_score=row["relevance_score"],
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        is_read=bool(row["is_read"]),
        is_favorite=bool(row["is_favorite"]),
        user_feedback=Feedback(row["user_feedback"]) if row["user_feedback"] else None,
    )


def _row_to_weight(row) -> PreferenceWeight:
    return PreferenceWeight(
        topic=row["topic"],
        weight=row["weight"],
        positive_count=row["positive_count"],
        negative_count=row["negative_count"],
    )


def _row_to_connection(row) -> Connection:
    return Connection(
        id=row["id"],
        item_a_id=row["item_a_id"],
        item_b_id=row["item_b_id"],
        type=ConnectionType(row["type"]),
        strength=row["strength"],
        shared_elements=json.loads(row["shared_elements"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_notification(row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        item_id=row["item_id"],
        title=row["title"],
        summary=row["summary"] or "",
        relevance_score=row["relevance_score"],
        created_at=_parse_dt(row["created_at"]),
    )


class Database:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else settings.database_path

    async def init(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.executescript(INIT_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def get_connection(self):
        async with aiosqlite.connect(self.db_path, timeout=30) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    async def _fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, tuple(params))
            return await cursor.fetchall()

    async def _fetch_one(self, sql: str, params: Iterable[Any] = ()):
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, tuple(params))
            return await cursor.fetchone()

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Runs a single write statement and returns the affected row count."""
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, tuple(params))
            await conn.commit()
            return cursor.rowcount

    # ---- Feeds ----

    async def create_feed(self, feed: Feed) -> Feed:
        await self._execute(
            """
            INSERT INTO feeds (id, url, title, description, fetch_interval_minutes, status,
                               last_fetched_at, last_error, item_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (feed.id, feed.url, feed.title, feed.description, feed.fetch_interval_minutes,
             _dump(feed.status), _dump(feed.last_fetched_at), feed.last_error,
             feed.item_count, _dump(feed.created_at))
        )
        return feed

    async def get_feed(self, feed_id: str) -> Optional[Feed]:
        row = await self._fetch_one("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row_to_feed(row) if row else None

    async def get_feed_by_url(self, url: str) -> Optional[Feed]:
        row = await self._fetch_one("SELECT * FROM feeds WHERE url = ?", (url,))
        return _row_to_feed(row) if row else None

    async def list_feeds(self, statuses: Optional[Iterable[FeedStatus]] = None) -> List[Feed]:
        if statuses is None:
            rows = await self._fetch_all("SELECT * FROM feeds ORDER BY created_at DESC")
        else:
            values = [_dump(s) for s in statuses]
            if not values:
                return []
            placeholders = ", ".join("?" for _ in values)
            rows = await self._fetch_all(
                f"SELECT * FROM feeds WHERE status IN ({placeholders}) ORDER BY created_at DESC", values
            )
        return [_row_to_feed(r) for r in rows]

    async def update_feed(self, feed_id: str, **fields) -> bool:
        unknown = set(fields) - FEED_COLUMNS
        if unknown:
            raise ValueError(f"Unknown feed fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_dump(v) for v in fields.values()] + [feed_id]
        return await self._execute(f"UPDATE feeds SET {assignments} WHERE id = ?", values) > 0

    async def increment_item_count(self, feed_id: str, increment: int = 1):
        await self._execute(
            "UPDATE feeds SET item_count = item_count + ? WHERE id = ?", (increment, feed_id)
        )

    async def delete_feed(self, feed_id: str) -> bool:
        """Deletes a feed; its items, connections and notifications cascade."""
        return await self._execute("DELETE FROM feeds WHERE id = ?", (feed_id,)) > 0

    # ---- Items ----

    async def create_item(self, item: Item) -> bool:
        """Inserts an item. Returns False if an item with the same link already exists."""
        rowcount = await self._execute(
            """
            INSERT OR IGNORE INTO items (id, feed_id, title, link, content, excerpt, author,
                                         published_at, fetched_at, summary, topics, entities,
                                         relevance_score, embedding, is_read, is_favorite, user_feedback)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (item.id, item.feed_id, item.title, item.link, item.content, item.excerpt, item.author,
             _dump(item.published_at), _dump(item.fetched_at), item.summary,
             _dump(item.topics), _dump(item.entities), item.relevance_score,
             _dump(item.embedding) if item.embedding is not None else None,
             _dump(item.is_read), _dump(item.is_favorite), _dump(item.user_feedback))
        )
        return rowcount == 1

    async def get_item(self, item_id: str) -> Optional[Item]:
        row = await self._fetch_one("SELECT * FROM items WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    async def get_item_by_link(self, link: str) -> Optional[Item]:
        row = await self._fetch_one("SELECT * FROM items WHERE link = ?", (link,))
        return _row_to_item(row) if row else None

    async def list_items(self, limit: Optional[int] = None) -> List[Item]:
        sql = "SELECT * FROM items ORDER BY published_at DESC"
        params: List[Any] = []
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_item(r) for r in await self._fetch_all(sql, params)]

    async def list_items_by_feed(self, feed_id: str, limit: Optional[int] = None) -> List[Item]:
        sql = "SELECT * FROM items WHERE feed_id = ? ORDER BY published_at DESC"
        params: List[Any] = [feed_id]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_item(r) for r in await self._fetch_all(sql, params)]

    async def list_items_by_relevance(self, min_score: float = 0.0, limit: Optional[int] = None) -> List[Item]:
        sql = ("SELECT * FROM items WHERE relevance_score >= ? "
               "ORDER BY relevance_score DESC, published_at DESC")
        params: List[Any] = [min_score]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_item(r) for r in await self._fetch_all(sql, params)]

    async def list_items_by_date_range(self, start: datetime, end: datetime) -> List[Item]:
        rows = await self._fetch_all(
            "SELECT * FROM items WHERE published_at BETWEEN ? AND ? ORDER BY published_at DESC",
            (_dump(start), _dump(end))
        )
        return [_row_to_item(r) for r in rows]

    async def list_items_needing_enrichment(self, limit: Optional[int] = None) -> List[Item]:
        sql = ("SELECT * FROM items WHERE summary IS NULL OR topics = '[]' OR embedding IS NULL "
               "ORDER BY fetched_at DESC")
        params: List[Any] = []
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_item(r) for r in await self._fetch_all(sql, params)]

    async def update_item(self, item_id: str, **fields) -> bool:
        unknown = set(fields) - ITEM_COLUMNS
        if unknown:
            raise ValueError(f"Unknown item fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_dump(v) for v in fields.values()] + [item_id]
        return await self._execute(f"UPDATE items SET {assignments} WHERE id = ?", values) > 0

    async def rescore_items(self, compute: Callable[[Item, PreferenceProfile, Dict[str, float]], float],
                            item_id: Optional[str] = None) -> Dict[str, float]:
        """
        Recomputes relevance scores for one item (or all items) and stores them.

        Profile, weights and items are read and the scores written inside a single
        IMMEDIATE transaction, so a concurrent enrichment or feedback write waits
        for the commit instead of being overwritten with a stale score.
        """
        async with self.get_connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                profile = await self._read_preferences(conn)
                cursor = await conn.execute("SELECT topic, weight FROM preference_weights")
                weights = {row["topic"]: row["weight"] for row in await cursor.fetchall()}
                if item_id is None:
                    cursor = await conn.execute("SELECT * FROM items")
                else:
                    cursor = await conn.execute("SELECT * FROM items WHERE id = ?", (item_id,))
                scores = {row["id"]: compute(_row_to_item(row), profile, weights)
                          for row in await cursor.fetchall()}
                await conn.executemany(
                    "UPDATE items SET relevance_score = ? WHERE id = ?",
                    [(score, key) for key, score in scores.items()]
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return scores

    async def delete_item(self, item_id: str) -> bool:
        return await self._execute("DELETE FROM items WHERE id = ?", (item_id,)) > 0

    # ---- Preferences ----

    async def get_preferences(self) -> PreferenceProfile:
        async with self.get_connection() as conn:
            return await self._read_preferences(conn)

    async def _read_preferences(self, conn) -> PreferenceProfile:
        cursor = await conn.execute("SELECT * FROM user_preferences WHERE id = ?", (PROFILE_ID,))
        row = await cursor.fetchone()
        if not row:
            return PreferenceProfile()
        return PreferenceProfile(
            interests=json.loads(row["interests"]),
            excluded_topics=json.loads(row["excluded_topics"]),
            notifications_enabled=bool(row["notifications_enabled"]),
            notification_threshold=row["notification_threshold"],
        )

    async def save_preferences(self, profile: PreferenceProfile):
        async with self.get_connection() as conn:
            await self._write_preferences(conn, profile)
            await conn.commit()

    async def _write_preferences(self, conn, profile: PreferenceProfile):
        await conn.execute(
            """
            INSERT INTO user_preferences (id, interests, excluded_topics, notifications_enabled,
                                          notification_threshold, updated_at)
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id) DO UPDATE SET
                interests = excluded.interests,
                excluded_topics = excluded.excluded_topics,
                notifications_enabled = excluded.notifications_enabled,
                notification_threshold = excluded.notification_threshold,
                updated_at = CURRENT_TIMESTAMP
            """,
            (PROFILE_ID, json.dumps(profile.interests), json.dumps(profile.excluded_topics),
             int(profile.notifications_enabled), profile.notification_threshold)
        )

    # ---- Preference weights ----

    async def get_weight(self, topic: str) -> Optional[PreferenceWeight]:
        row = await self._fetch_one(
            "SELECT * FROM preference_weights WHERE topic = ?", (topic.lower(),)
        )
        return _row_to_weight(row) if row else None

    async def list_weights(self) -> List[PreferenceWeight]:
        rows = await self._fetch_all("SELECT * FROM preference_weights ORDER BY weight DESC")
        return [_row_to_weight(r) for r in rows]

    async def get_weight_map(self) -> Dict[str, float]:
        rows = await self._fetch_all("SELECT topic, weight FROM preference_weights")
        return {row["topic"]: row["weight"] for row in rows}

    async def save_feedback(self, item_id: str, feedback: Feedback,
                            weights: List[PreferenceWeight],
                            profile: Optional[PreferenceProfile] = None):
        """Persists one feedback event atomically: item feedback, weights and profile."""
        async with self.get_connection() as conn:
            try:
                await conn.execute(
                    "UPDATE items SET user_feedback = ? WHERE id = ?", (feedback.value, item_id)
                )
                await conn.executemany(
                    """
                    INSERT INTO preference_weights (topic, weight, positive_count, negative_count, updated_at)
                    VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(topic) DO UPDATE SET
                        weight = excluded.weight,
                        positive_count = excluded.positive_count,
                        negative_count = excluded.negative_count,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    [(w.topic, w.weight, w.positive_count, w.negative_count) for w in weights]
                )
                if profile is not None:
                    await self._write_preferences(conn, profile)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def reset_weights(self) -> int:
        return await self._execute("DELETE FROM preference_weights")

    # ---- Connections ----

    async def connection_exists(self, item_a_id: str, item_b_id: str) -> bool:
        a, b = sorted((item_a_id, item_b_id))
        row = await self._fetch_one(
            "SELECT 1 FROM connections WHERE item_a_id = ? AND item_b_id = ?", (a, b)
        )
        return row is not None

    async def create_connection(self, connection: Connection) -> bool:
        """Stores a connection under its canonical pair order. False if the pair already exists."""
        a, b = sorted((connection.item_a_id, connection.item_b_id))
        rowcount = await self._execute(
            """
            INSERT OR IGNORE INTO connections (id, item_a_id, item_b_id, type, strength,
                                               shared_elements, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (connection.id, a, b, _dump(connection.type), connection.strength,
             json.dumps(connection.shared_elements), _dump(connection.created_at))
        )
        return rowcount == 1

    async def list_connections_for_item(self, item_id: str) -> List[Connection]:
        rows = await self._fetch_all(
            """
            SELECT * FROM connections WHERE item_a_id = ? OR item_b_id = ?
            ORDER BY strength DESC
            """,
            (item_id, item_id)
        )
        return [_row_to_connection(r) for r in rows]

    async def list_connections(self) -> List[Connection]:
        rows = await self._fetch_all("SELECT * FROM connections ORDER BY strength DESC")
        return [_row_to_connection(r) for r in rows]

    async def count_connections(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) AS count FROM connections")
        return row["count"]

    async def delete_all_connections(self) -> int:
        return await self._execute("DELETE FROM connections")

    # ---- Notifications ----

    async def get_notification(self, item_id: str) -> Optional[NotificationRecord]:
        row = await self._fetch_one("SELECT * FROM notifications WHERE item_id = ?", (item_id,))
        return _row_to_notification(row) if row else None

    async def create_notification(self, record: NotificationRecord) -> bool:
        rowcount = await self._execute(
            """
            INSERT OR IGNORE INTO notifications (item_id, id, title, summary, relevance_score, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (record.item_id, record.id, record.title, record.summary,
             record.relevance_score, _dump(record.created_at))
        )
        return rowcount == 1

    async def list_notifications(self) -> List[NotificationRecord]:
        rows = await self._fetch_all("SELECT * FROM notifications ORDER BY created_at DESC")
        return [_row_to_notification(r) for r in rows]

    async def delete_notification(self, item_id: str) -> bool:
        return await self._execute("DELETE FROM notifications WHERE item_id = ?", (item_id,)) > 0

    async def clear_notifications(self) -> int:
        return await self._execute("DELETE FROM notifications")


db = Database()
