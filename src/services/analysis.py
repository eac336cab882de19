"""
Analysis collaborator: summary, topics and entities for one item.

Asks the local LLM first and falls back to simple text heuristics when the
model is disabled, unreachable or answers with nothing usable. Callers treat
the result as authoritative and never retry it themselves.
"""
import asyncio
import html
import re
import string
from typing import Any, Iterable, List, Optional
from src.config import settings
from src.models.items import AnalysisResult
from src.services.llm import LLMService
from src.services.logger import logger

MAX_TOPICS = 5
MAX_ENTITIES = 10
SUMMARY_WORDS = 150
FALLBACK_SUMMARY_CHARS = 300

STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "about", "after", "before", "their", "there", "these", "those", "which", "while",
}

ENTITY_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
TAG_PATTERN = re.compile(r"<[^>]*>")

ANALYSIS_PROMPT = """
You are a news analyst. Read the article below and answer with a single JSON object.

ARTICLE TITLE: {title}

ARTICLE CONTENT:
{content}

OUTPUT FORMAT (JSON only):
{{"summary": "<summary in at most {words} words>",
  "topics": ["<3 to 5 short topic labels>"],
  "entities": ["<up to 10 named people, organisations, products or places>"]}}
"""


def strip_html(text: str) -> str:
    """Removes markup and collapses whitespace."""
    cleaned = html.unescape(TAG_PATTERN.sub(" ", text or ""))
    return re.sub(r"\s+", " ", cleaned).strip()


def unique_labels(values: Iterable[Any], limit: int) -> List[str]:
    """Trimmed, case-insensitively de-duplicated labels, first occurrence wins."""
    if isinstance(values, str):
        values = values.split(",")
    seen = set()
    labels = []
    for value in values:
        if not isinstance(value, str):
            continue
        label = value.strip()
        if not label or label.lower() in seen:
            continue
        seen.add(label.lower())
        labels.append(label)
        if len(labels) >= limit:
            break
    return labels


class FallbackAnalyzer:
    """Heuristic analysis used when no model is available."""

    def summarize(self, content: str, excerpt: Optional[str] = None) -> str:
        cleaned = strip_html(excerpt or content)
        if len(cleaned) > FALLBACK_SUMMARY_CHARS:
            return cleaned[:FALLBACK_SUMMARY_CHARS] + "..."
        return cleaned

    def extract_topics(self, title: str) -> List[str]:
        words = [w.strip(string.punctuation) for w in title.lower().split()]
        return unique_labels((w for w in words if len(w) > 4 and w not in STOP_WORDS), MAX_TOPICS)

    def extract_entities(self, content: str) -> List[str]:
        return unique_labels(ENTITY_PATTERN.findall(strip_html(content)), MAX_ENTITIES)

    def analyze(self, title: str, content: str, excerpt: Optional[str] = None) -> AnalysisResult:
        return AnalysisResult(
            summary=self.summarize(content, excerpt),
            topics=self.extract_topics(title),
            entities=self.extract_entities(content),
        )


class AnalysisService:
    def __init__(self, llm: Optional[LLMService] = None, enabled: Optional[bool] = None,
                 llm_budget: Optional[float] = None):
        self.enabled = settings.ANALYSIS_ENABLED if enabled is None else enabled
        self._llm = llm
        # Below the orchestrator's step timeout so the fallback always gets to run
        self.llm_budget = llm_budget or settings.LLM_BUDGET_SECONDS
        self.fallback = FallbackAnalyzer()

    @property
    def llm(self) -> LLMService:
        if self._llm is None:
            self._llm = LLMService()
        return self._llm

    async def analyze(self, title: str, content: str, excerpt: Optional[str] = None) -> AnalysisResult:
        if not self.enabled:
            return self.fallback.analyze(title, content, excerpt)

        prompt = ANALYSIS_PROMPT.format(title=title, content=strip_html(content)[:4000], words=SUMMARY_WORDS)
        try:
            data = await asyncio.wait_for(self.llm.generate_json(prompt), timeout=self.llm_budget)
        except asyncio.TimeoutError:
            logger.warning(f"LLM analysis exceeded {self.llm_budget}s for '{title[:50]}', using fallback")
            return self.fallback.analyze(title, content, excerpt)
        except Exception as e:
            logger.warning(f"LLM analysis failed, using fallback: {e}")
            return self.fallback.analyze(title, content, excerpt)

        result = AnalysisResult(
            summary=str(data.get("summary") or "").strip(),
            topics=unique_labels(data.get("topics") or [], MAX_TOPICS),
            entities=unique_labels(data.get("entities") or [], MAX_ENTITIES),
        )
        if not result.summary and not result.topics:
            logger.warning(f"LLM returned an empty analysis for '{title[:50]}', using fallback")
            return self.fallback.analyze(title, content, excerpt)
        return result
