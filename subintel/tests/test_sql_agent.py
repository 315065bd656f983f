"""Tests for the tool-calling data agent and the LLM tool-call plumbing."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from subintel import sql_agent
from subintel.llm import LLMCallError, LLMClient, ToolCall, ToolTurn, _anthropic_messages, _openai_messages
from subintel.models import Base
from subintel.sql_agent import (
    MAX_TOOL_ROUNDS,
    QUERY_TABLES,
    build_system_prompt,
    clamp_limit,
    extract_follow_ups,
    query_table,
    report_chat_summary,
    run_sql_agent,
    run_tool_call,
)
from subintel.storage import ObjectStorage
from subintel.store import RowStore


@pytest.fixture()
def store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'sql_agent.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    store = RowStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))
    for year, project, country, count in (
        (2024, "Castberg", "Norway", 4),
        (2025, "Castberg", "Norway", 6),
        (2025, "Buzios", "Brazil", 12),
        (2026, "Sepia", "Brazil", 3),
    ):
        store.insert("xmt_data", {"year": year, "development_project": project,
                                  "country": country, "xmt_count": count})
    store.insert("projects", {"development_project": "Castberg", "country": "Norway",
                              "operator": "Equinor", "first_year": 2024, "last_year": 2025})
    return store


@pytest.fixture()
def storage(tmp_path):
    return ObjectStorage(tmp_path / "objects", "test-secret", "http://testserver")


def _call(call_id: str = "c1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name="query_table", arguments=arguments)


def _llm(*turns) -> MagicMock:
    llm = MagicMock()
    llm.configured = True
    llm.complete_with_tools = AsyncMock(side_effect=list(turns))
    return llm


REPORT_MARKDOWN = "\n".join([
    "# Brazil XMT outlook",
    "",
    "## Summary",
    "Brazil leads 2025 tree demand with Buzios at 12 XMTs. " * 8,
    "",
    "## Projects",
    "| Project | XMTs |",
    "| --- | --- |",
    "| Buzios | 12 |",
    "| Sepia | 3 |",
    "",
    "# Appendix",
    "Raw notes.",
    "",
    "- Would you like a split by operator?",
    "Want me to add SURF km as well?",
])


# ---------------------------------------------------------------------------
# query_table
# ---------------------------------------------------------------------------


class TestQueryTable:
    def test_filters_order_and_columns(self, store):
        result = query_table(store, {
            "table": "xmt_data",
            "select": "development_project, year, xmt_count",
            "filters": {"year": {"gte": 2025}, "country": {"ilike": "*braz*"}},
            "order": "-xmt_count",
        })
        assert result["error"] is None
        assert result["rowCount"] == 2
        assert result["rows"] == [
            {"development_project": "Buzios", "year": 2025, "xmt_count": 12},
            {"development_project": "Sepia", "year": 2026, "xmt_count": 3},
        ]

    def test_in_and_neq_filters(self, store):
        result = query_table(store, {
            "table": "xmt_data", "select": "year",
            "filters": {"year": {"in": [2024, 2026]}, "country": {"neq": "Norway"}},
        })
        assert [r["year"] for r in result["rows"]] == [2026]

    def test_star_select_returns_all_columns(self, store):
        [row] = query_table(store, {"table": "projects", "select": "*"})["rows"]
        assert row["operator"] == "Equinor"
        assert isinstance(row["created_at"], str)

    def test_limit_capped(self, store, monkeypatch):
        monkeypatch.setattr(sql_agent, "MAX_ROWS", 2)
        assert query_table(store, {"table": "xmt_data", "limit": 500})["rowCount"] == 2

    def test_unknown_table(self, store):
        result = query_table(store, {"table": "users"})
        assert result["rows"] == []
        assert result["error"].startswith('Table "users" not found. Allowed: xmt_data')

    def test_store_errors_are_returned(self, store):
        result = query_table(store, {"table": "xmt_data", "select": "country,xmt_count.sum()"})
        assert result["rowCount"] == 0
        assert "unknown column(s): xmt_count.sum()" in result["error"]

    def test_bad_operator_is_returned(self, store):
        result = query_table(store, {"table": "xmt_data", "filters": {"year": {"between": 1}}})
        assert result["error"] == "unknown filter operator: between"

    def test_unknown_tool(self, store):
        result = run_tool_call(store, ToolCall(id="x", name="drop_table", arguments={}))
        assert result["error"] == "Unknown tool: drop_table"


class TestClampLimit:
    @pytest.mark.parametrize("value,expected", [
        (None, 100), ("abc", 100), (0, 100), (-5, 100), (25, 25), ("40", 40), (10_000, 200),
    ])
    def test_clamp(self, value, expected):
        assert clamp_limit(value) == expected


def test_system_prompt_lists_tables_without_ids():
    prompt = build_system_prompt()
    for table in QUERY_TABLES:
        assert f"- {table}: " in prompt
    assert "import_batch_id" not in prompt
    assert "xmt_count (integer)" in prompt


# ---------------------------------------------------------------------------
# Answer shaping
# ---------------------------------------------------------------------------


class TestFollowUps:
    def test_mixed_languages_and_bullets(self):
        answer = "\n".join([
            "Castberg has 10 XMTs.",
            "- Vil du se fordelingen per år?",
            "* Ønsker du en PDF-rapport?",
            "• Would you like Brazil too?",
            "Skal jeg ta med SURF?",
            "Trenger du operatørdata?",
            "Want me to compare with 2024?",
        ])
        assert extract_follow_ups(answer) == [
            "Vil du se fordelingen per år?",
            "Ønsker du en PDF-rapport?",
            "Would you like Brazil too?",
            "Skal jeg ta med SURF?",
        ]

    def test_ignores_mid_sentence_phrases(self):
        assert extract_follow_ups("Tell me if you would you like more.\nVilde data") == []


def test_report_chat_summary_stops_at_second_title():
    summary = report_chat_summary(REPORT_MARKDOWN, "en")
    assert summary.startswith("# Brazil XMT outlook")
    assert "| Buzios | 12 |" in summary
    assert "Appendix" not in summary
    assert summary.endswith("Full report available as PDF.")
    assert report_chat_summary("# T\nbody", "no").endswith("Full rapport tilgjengelig som PDF.")


# ---------------------------------------------------------------------------
# Conversation turn
# ---------------------------------------------------------------------------


class TestRunSqlAgent:
    @pytest.mark.asyncio
    async def test_queries_then_answers(self, store, storage):
        llm = _llm(
            ToolTurn(text="", tool_calls=[_call(table="xmt_data", filters={"country": {"eq": "Norway"}})]),
            ToolTurn(text="**Castberg** has 10 XMTs.\n\nWould you like the yearly split?"),
        )
        response = await run_sql_agent(
            [{"role": "user", "content": "How many trees for Castberg?"}], "u1", "u1@example.com",
            store=store, storage=storage, llm=llm,
        )
        assert response.answer.startswith("Castberg has 10 XMTs.")
        assert response.follow_ups == ["Would you like the yearly split?"]
        assert response.report is None
        assert response.data_coverage.counts == {"sql_queries": 1}

        chat = llm.complete_with_tools.await_args_list[1].args[0]
        assert chat[0] == {"role": "user", "content": "How many trees for Castberg?"}
        assert chat[1]["tool_calls"][0].id == "c1"
        tool_result = json.loads(chat[2]["content"])
        assert chat[2]["tool_call_id"] == "c1"
        assert tool_result["rowCount"] == 2
        assert {r["year"] for r in tool_result["rows"]} == {2024, 2025}

    @pytest.mark.asyncio
    async def test_tool_rounds_capped(self, store, storage):
        looping = [ToolTurn(text="", tool_calls=[_call(f"c{i}", table="projects")]) for i in range(MAX_TOOL_ROUNDS)]
        llm = _llm(*looping, ToolTurn(text="Castberg is operated by Equinor."))
        response = await run_sql_agent(
            [{"role": "user", "content": "Who operates Castberg?"}], "u1", "u1@example.com",
            store=store, storage=storage, llm=llm,
        )
        assert response.answer == "Castberg is operated by Equinor."
        assert response.data_coverage.counts == {"sql_queries": MAX_TOOL_ROUNDS}
        assert llm.complete_with_tools.await_count == MAX_TOOL_ROUNDS + 1

        final = llm.complete_with_tools.await_args_list[-1]
        assert final.kwargs["allow_tools"] is False
        assert final.args[0][-1] == {"role": "user", "content": sql_agent.FINAL_ANSWER_PROMPT}

    @pytest.mark.asyncio
    async def test_report_request_files_pdf(self, store, storage):
        llm = _llm(ToolTurn(text=REPORT_MARKDOWN))
        response = await run_sql_agent(
            [{"role": "user", "content": "Make a report on Brazil XMTs"}], "u1", "u1@example.com",
            store=store, storage=storage, llm=llm,
        )
        assert response.report is not None
        assert response.report.title == "Brazil XMT outlook"
        assert storage.exists("imports", response.report.storage_path)
        assert response.answer.endswith("Full report available as PDF.")
        assert "Appendix" not in response.answer
        assert response.follow_ups == ["Would you like a split by operator?", "Want me to add SURF km as well?"]
        [row] = store.select("ai_reports", ["title", "created_by"])
        assert row == {"title": "Brazil XMT outlook", "created_by": "u1"}

    @pytest.mark.asyncio
    async def test_short_answer_to_report_request_is_not_filed(self, store, storage):
        llm = _llm(ToolTurn(text="# Note\nNo Brazil data yet."))
        response = await run_sql_agent(
            [{"role": "user", "content": "Report on Brazil"}], "u1", "u1@example.com",
            store=store, storage=storage, llm=llm,
        )
        assert response.report is None
        assert store.count("ai_reports") == 0

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_templated_pipeline(self, store, storage):
        llm = MagicMock()
        llm.configured = True
        llm.complete_with_tools = AsyncMock(side_effect=LLMCallError("boom", retryable=True))
        response = await run_sql_agent(
            [{"role": "user", "content": "Castberg 2025"}], "u1", "u1@example.com",
            store=store, storage=storage, llm=llm,
        )
        assert response.answer
        assert response.data_coverage.counts["projects"] == 1

    @pytest.mark.asyncio
    async def test_no_user_message(self, store, storage):
        llm = _llm()
        response = await run_sql_agent([], "u1", "u1@example.com", store=store, storage=storage, llm=llm)
        assert response.answer == "No valid user prompt was provided."
        llm.complete_with_tools.assert_not_awaited()


# ---------------------------------------------------------------------------
# Provider message conversion
# ---------------------------------------------------------------------------


CHAT = [
    {"role": "user", "content": "Top projects?"},
    {"role": "assistant", "content": "", "tool_calls": [_call("a"), _call("b", table="projects")]},
    {"role": "tool", "tool_call_id": "a", "content": "{}"},
    {"role": "tool", "tool_call_id": "b", "content": "[]"},
    {"role": "user", "content": "Answer now."},
]


class TestProviderMessages:
    def test_openai_shape(self):
        converted = _openai_messages(CHAT)
        assert converted[1]["content"] is None
        assert converted[1]["tool_calls"][1] == {
            "id": "b", "type": "function",
            "function": {"name": "query_table", "arguments": json.dumps({"table": "projects"})},
        }
        assert converted[2] == {"role": "tool", "tool_call_id": "a", "content": "{}"}
        assert converted[4] == {"role": "user", "content": "Answer now."}

    def test_anthropic_merges_tool_results_into_one_user_turn(self):
        converted = _anthropic_messages(CHAT)
        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert [b["type"] for b in converted[1]["content"]] == ["tool_use", "tool_use"]
        assert [b["type"] for b in converted[2]["content"]] == ["tool_result", "tool_result", "text"]
        assert converted[2]["content"][1]["tool_use_id"] == "b"

    @pytest.mark.asyncio
    async def test_openai_tool_calls_parsed(self):
        client = LLMClient(provider="openai", model="gpt-test", api_key="sk-test")
        message = SimpleNamespace(content=None, tool_calls=[SimpleNamespace(
            id="call_1", function=SimpleNamespace(name="query_table", arguments='{"table": "projects", "limit": 5}'),
        )])
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
        client._client = fake

        turn = await client.complete_with_tools(CHAT[:1], [sql_agent.QUERY_TOOL], system="sys")
        assert turn == ToolTurn(text="", tool_calls=[
            ToolCall(id="call_1", name="query_table", arguments={"table": "projects", "limit": 5}),
        ])
        kwargs = fake.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert kwargs["tools"][0]["type"] == "function"
        assert kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_anthropic_tool_use_parsed(self):
        client = LLMClient(provider="anthropic", model="claude-test", api_key="sk-test")
        content = [
            SimpleNamespace(type="text", text="Checking."),
            SimpleNamespace(type="tool_use", id="tu_1", name="query_table", input={"table": "forecasts"}),
        ]
        fake = MagicMock()
        fake.messages.create = AsyncMock(return_value=SimpleNamespace(content=content))
        client._client = fake

        turn = await client.complete_with_tools(CHAT[:1], [sql_agent.QUERY_TOOL], allow_tools=False)
        assert turn.text == "Checking."
        assert turn.tool_calls == [ToolCall(id="tu_1", name="query_table", arguments={"table": "forecasts"})]
        kwargs = fake.messages.create.await_args.kwargs
        assert kwargs["tools"][0]["input_schema"]["required"] == ["table"]
        assert kwargs["tool_choice"] == {"type": "none"}

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self):
        client = LLMClient(provider="openai", model="gpt-test", api_key="sk-test")
        fake = MagicMock()
        fake.chat.completions.create = AsyncMock(side_effect=RuntimeError("rate limited"))
        client._client = fake
        with pytest.raises(LLMCallError, match="rate limited") as excinfo:
            await client.complete_with_tools(CHAT[:1], [sql_agent.QUERY_TOOL])
        assert excinfo.value.retryable is True
