"""Tests for item analysis and its heuristic fallback."""

import asyncio

import pytest
from pydantic import ValidationError
from unittest.mock import AsyncMock, MagicMock

from src.config import Settings
from src.services.analysis import AnalysisService, FallbackAnalyzer, strip_html, unique_labels


def mock_llm(**kwargs) -> MagicMock:
    llm = MagicMock()
    llm.generate_json = AsyncMock(**kwargs)
    return llm


class TestHelpers:
    def test_strip_html(self) -> None:
        assert strip_html("<p>Fish &amp;\n chips</p>") == "Fish & chips"

    def test_unique_labels(self) -> None:
        assert unique_labels([" AI ", "ai", "", 3, "Robots"], 5) == ["AI", "Robots"]

    def test_unique_labels_from_comma_string(self) -> None:
        assert unique_labels("ai, ml, cloud", 2) == ["ai", "ml"]


class TestFallbackAnalyzer:
    """Heuristics used without a model."""

    def setup_method(self) -> None:
        self.analyzer = FallbackAnalyzer()

    def test_summary_truncated(self) -> None:
        summary = self.analyzer.summarize("<p>" + "word " * 100 + "</p>")
        assert len(summary) == 303
        assert summary.endswith("...")

    def test_summary_prefers_excerpt(self) -> None:
        assert self.analyzer.summarize("<p>Long body</p>", "Short excerpt") == "Short excerpt"

    def test_topics_from_title(self) -> None:
        topics = self.analyzer.extract_topics("Quantum computing breakthrough: researchers reveal a faster chip, about time")
        assert topics == ["quantum", "computing", "breakthrough", "researchers", "reveal"]

    def test_topics_skip_stop_words_and_short_words(self) -> None:
        assert self.analyzer.extract_topics("The cat sat after their dinner") == ["dinner"]

    def test_entities(self) -> None:
        entities = self.analyzer.extract_entities("<p>Sam Altman spoke at OpenAI in San Francisco.</p>")
        assert "Sam Altman" in entities
        assert "San Francisco" in entities


class TestAnalysisService:
    """Model first, heuristics as fallback."""

    async def test_disabled_uses_fallback(self) -> None:
        llm = mock_llm()
        service = AnalysisService(llm=llm, enabled=False)

        result = await service.analyze("Kubernetes release notes", "<p>Kubernetes ships today.</p>")

        assert result.topics == ["kubernetes", "release", "notes"]
        llm.generate_json.assert_not_awaited()

    async def test_uses_model_answer(self) -> None:
        llm = mock_llm(return_value={
            "summary": " Short summary. ",
            "topics": ["AI", "ai", "Chips"],
            "entities": ["Nvidia"],
        })
        service = AnalysisService(llm=llm, enabled=True)

        result = await service.analyze("Title", "Body")

        assert result.summary == "Short summary."
        assert result.topics == ["AI", "Chips"]
        assert result.entities == ["Nvidia"]

    async def test_model_error_falls_back(self) -> None:
        service = AnalysisService(llm=mock_llm(side_effect=ConnectionError("offline")), enabled=True)

        result = await service.analyze("Compiler internals explained", "Body text")

        assert result.summary == "Body text"
        assert result.topics == ["compiler", "internals", "explained"]

    @pytest.mark.parametrize("answer", [{}, {"summary": "", "topics": []}, {"summary": None}])
    async def test_empty_answer_falls_back(self, answer) -> None:
        service = AnalysisService(llm=mock_llm(return_value=answer), enabled=True)

        result = await service.analyze("Compiler internals explained", "Body text")

        assert result.summary == "Body text"

    async def test_slow_model_falls_back_within_budget(self) -> None:
        async def hang(prompt):
            await asyncio.sleep(5)

        service = AnalysisService(llm=mock_llm(side_effect=hang), enabled=True, llm_budget=0.05)

        result = await asyncio.wait_for(service.analyze("Compiler internals explained", "Body text"), timeout=1)

        assert result.topics == ["compiler", "internals", "explained"]
        assert result.summary == "Body text"

    async def test_model_timeout_error_falls_back(self) -> None:
        service = AnalysisService(llm=mock_llm(side_effect=asyncio.TimeoutError()), enabled=True)

        result = await service.analyze("Compiler internals explained", "Body text")

        assert result.topics == ["compiler", "internals", "explained"]


class TestAnalysisSettings:
    def test_budget_must_stay_below_step_timeout(self) -> None:
        with pytest.raises(ValidationError):
            Settings(LLM_BUDGET_SECONDS=30.0, ANALYSIS_TIMEOUT_SECONDS=30.0)

    def test_defaults_leave_room_for_fallback(self) -> None:
        defaults = Settings()
        assert defaults.LLM_BUDGET_SECONDS < defaults.ANALYSIS_TIMEOUT_SECONDS
