"""Tests for the agent planner: heuristics, model plan coercion and fallback."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from subintel.llm import LLMCallError
from subintel.planner import (
    build_plan,
    coerce_plan,
    extract_keyword_hints,
    extract_year_hints,
    fallback_plan,
    format_history,
    is_norwegian,
    latest_user_message,
    wants_report,
)
from subintel.schemas import TABLE_NAMES, AgentMessage


def _messages(*texts: str) -> list[AgentMessage]:
    roles = ["user", "assistant"]
    return [AgentMessage(role=roles[i % 2], content=t) for i, t in enumerate(texts)]


def _llm(reply=None, error=None) -> MagicMock:
    llm = MagicMock()
    llm.complete = AsyncMock(return_value=reply, side_effect=error)
    return llm


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


class TestHeuristics:
    def test_year_hints(self):
        assert extract_year_hints("Sverdrup 2024-2026") == (2024, 2026)
        assert extract_year_hints("in 2025 only") == (2025, 2025)
        assert extract_year_hints("2030, 2021 and 2027") == (2021, 2030)
        assert extract_year_hints("no years") == (None, None)

    def test_keyword_hints_drop_stopwords_short_tokens_and_numbers(self):
        assert extract_keyword_hints("Report for Johan Sverdrup 2024-2026, please!") == ["johan", "sverdrup"]
        assert extract_keyword_hints("XMT på Troll og Oseberg") == ["xmt", "troll", "oseberg"]

    def test_keyword_hints_unique(self):
        assert extract_keyword_hints("Troll troll TROLL") == ["troll"]

    @pytest.mark.parametrize("text, expected", [
        ("Lag en rapport for Troll", True),
        ("Hva er status på Castberg?", True),
        ("Vis oversikt", True),
        ("Report for Johan Sverdrup", False),
        ("What is planned for 2026?", False),
    ])
    def test_is_norwegian(self, text, expected):
        assert is_norwegian(text) is expected

    @pytest.mark.parametrize("text, expected", [
        ("Make a PDF of this", True),
        ("Lag en rapport", True),
        ("Annual report please", True),
        ("How many trees in Brazil?", False),
        ("Reporting lines", False),
    ])
    def test_wants_report(self, text, expected):
        assert wants_report(text) is expected


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


class TestCoercePlan:
    def test_heuristic_only_plan(self):
        plan = fallback_plan("Report for Johan Sverdrup 2024-2026")
        assert plan.intent == "report"
        assert plan.report_scope == "custom"
        assert plan.language == "en"
        assert (plan.from_year, plan.to_year) == (2024, 2026)
        assert "sverdrup" in plan.project_keywords
        assert plan.include_tables == list(TABLE_NAMES)

    def test_annual_all_scope_from_text(self):
        plan = fallback_plan("Lag en rapport for alle prosjekter i 2025")
        assert plan.report_scope == "annual_all"
        assert plan.language == "no"

    def test_question_has_no_scope(self):
        plan = fallback_plan("How many XMTs in Norway?")
        assert plan.intent == "question"
        assert plan.report_scope == "none"

    def test_model_fields_take_precedence(self):
        raw = {
            "intent": "question",
            "report_scope": "project_period",
            "language": "no",
            "countries": ["Norway", "norway"],
            "operators": ["Equinor"],
            "projectKeywords": ["Castberg"],
            "fromYear": "2030",
            "to_year": 2020,
            "include_tables": ["Projects", "bogus"],
            "include_future": False,
        }
        plan = coerce_plan(raw, "What XMT activity is there?", now_year=2026)
        assert plan.intent == "question"
        assert plan.report_scope == "project_period"
        assert plan.language == "no"
        assert plan.countries == ["Norway"]
        assert plan.operators == ["Equinor"]
        assert plan.project_keywords[0] == "Castberg"
        # Reversed bounds are swapped
        assert (plan.from_year, plan.to_year) == (2020, 2030)
        assert plan.include_tables == ["projects"]
        assert plan.include_future is False
        assert plan.include_historical is True

    def test_report_in_text_overrides_model_intent(self):
        plan = coerce_plan({"intent": "question", "report_scope": "bogus"}, "PDF report on Troll")
        assert plan.intent == "report"
        assert plan.report_scope == "custom"

    def test_years_outside_window_dropped(self):
        plan = coerce_plan({"from_year": 1950, "to_year": 2090}, "anything", now_year=2026)
        assert plan.from_year == 1950
        assert plan.to_year is None

    def test_keyword_caps(self):
        text = " ".join(f"keyword{i}" for i in range(20))
        plan = fallback_plan(text)
        assert len(plan.project_keywords) <= 12
        assert len(plan.focus_points) <= 14


# ---------------------------------------------------------------------------
# build_plan
# ---------------------------------------------------------------------------


class TestBuildPlan:
    @pytest.mark.asyncio
    async def test_failing_model_falls_back_to_heuristics(self):
        llm = _llm(error=LLMCallError("503 from provider", retryable=True))
        plan = await build_plan(_messages("Report for Johan Sverdrup 2024-2026"), llm)
        assert plan.intent == "report"
        assert (plan.from_year, plan.to_year) == (2024, 2026)
        assert "sverdrup" in plan.project_keywords

    @pytest.mark.asyncio
    async def test_model_plan_is_used(self):
        llm = _llm('Sure:\n{"intent": "report", "report_scope": "annual_all", "countries": ["Brazil"]}')
        plan = await build_plan(_messages("Summarise Brazil"), llm)
        assert plan.intent == "report"
        assert plan.report_scope == "annual_all"
        assert plan.countries == ["Brazil"]
        prompt = llm.complete.call_args.args[0]
        assert "USER: Summarise Brazil" in prompt

    @pytest.mark.asyncio
    async def test_unparseable_model_reply_uses_heuristics(self):
        plan = await build_plan(_messages("Oseberg in 2027"), _llm("no idea"))
        assert plan.from_year == 2027
        assert "oseberg" in plan.project_keywords

    @pytest.mark.asyncio
    async def test_without_model(self):
        plan = await build_plan(_messages("Troll 2025"), None)
        assert plan.from_year == 2025

    @pytest.mark.asyncio
    async def test_no_user_message(self):
        llm = _llm("{}")
        plan = await build_plan([AgentMessage(role="assistant", content="Hello")], llm)
        assert plan.intent == "question"
        llm.complete.assert_not_awaited()


def test_latest_user_message_and_history():
    messages = _messages("first", "answer", "second", "")
    assert latest_user_message(messages).content == "second"
    history = format_history(_messages(*[f"m{i}" for i in range(10)]), limit=3)
    assert history.splitlines() == ["ASSISTANT: m7", "USER: m8", "ASSISTANT: m9"]
