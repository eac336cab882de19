"""Fake AI collaborators and model factories shared by the tests."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from src.models.items import AnalysisResult, Feed, Item, utcnow


class FakeAnalysis:
    """Analysis collaborator returning canned results per title."""

    def __init__(self, results: Optional[Dict[str, AnalysisResult]] = None,
                 default: Optional[AnalysisResult] = None, error: Optional[Exception] = None):
        self.results = results or {}
        self.default = default or AnalysisResult(
            summary="A summary.", topics=["technology"], entities=["Python"]
        )
        self.error = error
        self.calls: List[str] = []

    async def analyze(self, title: str, content: str, excerpt: Optional[str] = None) -> AnalysisResult:
        self.calls.append(title)
        if self.error:
            raise self.error
        return self.results.get(title, self.default)


class FakeEmbedder:
    """Embedding collaborator returning a fixed vector."""

    def __init__(self, vector: Optional[List[float]] = None, error: Optional[Exception] = None):
        self.vector = [1.0, 0.0, 0.0] if vector is None else vector
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error:
            raise self.error
        return list(self.vector)


def make_feed(url: str = "https://example.com/feed.xml", **kwargs) -> Feed:
    kwargs.setdefault("title", "Example Feed")
    return Feed(url=url, **kwargs)


def make_item(feed_id: str, link: str = "https://example.com/a", **kwargs) -> Item:
    kwargs.setdefault("title", "An article")
    kwargs.setdefault("published_at", utcnow())
    return Item(feed_id=feed_id, link=link, **kwargs)


def days_ago(days: float) -> datetime:
    return utcnow() - timedelta(days=days)
