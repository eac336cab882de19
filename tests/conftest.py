"""Shared fixtures: temporary database and component instances."""

import os

# Configure before any src import reads settings
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ANALYSIS_ENABLED", "false")
os.environ.setdefault("SEED_DEFAULT_FEEDS", "false")

import pytest
import pytest_asyncio

from src.models.items import Feed
from src.services.database import Database
from src.services.notifications import NotificationService
from src.tools.connections import ConnectionDetector
from src.tools.relevance import RelevanceScorer
from tests.helpers import FakeAnalysis, FakeEmbedder, make_feed


@pytest_asyncio.fixture
async def database(tmp_path) -> Database:
    """Initialized database in a temporary directory."""
    db = Database(tmp_path / "feeds.db")
    await db.init()
    return db


@pytest_asyncio.fixture
async def feed(database: Database) -> Feed:
    return await database.create_feed(make_feed())


@pytest.fixture
def scorer(database: Database) -> RelevanceScorer:
    return RelevanceScorer(database)


@pytest.fixture
def detector(database: Database) -> ConnectionDetector:
    return ConnectionDetector(database, similarity_threshold=0.7, min_strength=0.3)


@pytest.fixture
def notifier(database: Database) -> NotificationService:
    return NotificationService(database, window_minutes=5)


@pytest.fixture
def fake_analysis() -> FakeAnalysis:
    return FakeAnalysis()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()
