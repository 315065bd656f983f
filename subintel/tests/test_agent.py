"""Tests for the agent conversation turn and report storage."""
from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from subintel import agent
from subintel.agent import (
    DEFAULT_SLUG,
    MAX_MESSAGES,
    list_reports,
    run_agent_conversation,
    sanitize_messages,
    store_report,
    to_slug,
)
from subintel.context import DataSummary
from subintel.models import Base
from subintel.schemas import AgentMessage, AgentPlan
from subintel.storage import ObjectStorage, StorageError
from subintel.store import RowStore, StoreError


@pytest.fixture()
def store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'agent.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    store = RowStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))
    store.insert("projects", {"development_project": "Castberg", "asset": "A", "country": "Norway",
                              "operator": "Equinor", "xmt_count": 6, "first_year": 2024, "last_year": 2026})
    return store


@pytest.fixture()
def storage(tmp_path):
    return ObjectStorage(tmp_path / "objects", "test-secret", "http://testserver")


def _user(text: str) -> list[dict]:
    return [{"role": "user", "content": text}]


def _llm(*replies: str) -> MagicMock:
    llm = MagicMock()
    llm.configured = True
    llm.complete = AsyncMock(side_effect=list(replies))
    return llm


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestSlug:
    def test_accents_and_punctuation(self):
        assert to_slug("Øst Troll: Årsrapport 2025") == "st-troll-arsrapport-2025"

    def test_collapses_dashes(self):
        assert to_slug("Castberg -- 2024  -  2026") == "castberg-2024-2026"

    def test_empty_falls_back(self):
        assert to_slug("!!!") == DEFAULT_SLUG

    def test_capped_length(self):
        assert len(to_slug("word " * 40)) == 64


def test_sanitize_messages_keeps_recent_non_empty_turns():
    raw = [{"role": "system", "content": f"m{i}"} for i in range(20)] + [{"role": "user", "content": "  "}]
    cleaned = sanitize_messages(raw)
    assert len(cleaned) == MAX_MESSAGES
    assert cleaned[-1].content == "m19"
    assert all(m.role == "user" for m in cleaned)


# ---------------------------------------------------------------------------
# Report storage
# ---------------------------------------------------------------------------


class TestStoreReport:
    def _data(self):
        return DataSummary(2024, 2026, {"projects": 1}, [], {})

    def test_uploads_pdf_and_records_metadata(self, store, storage):
        now = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
        report, warning = store_report(
            store, storage,
            user_id="u1", user_email="u1@example.com", request_text="Report on Castberg",
            title="Castberg Report", report_markdown="# Castberg\n\nBody", report_summary="Short",
            plan=AgentPlan(language="en", countries=["Norway"]), data=self._data(), now=now,
        )
        assert warning is None
        assert report.file_name == "castberg-report-2026-05-01.pdf"
        assert report.storage_path.startswith("ai-reports/2026-05-01/")
        assert report.storage_path.endswith("-castberg-report-2026-05-01.pdf")
        assert report.download_url.startswith(f"http://testserver/storage/imports/{report.storage_path}?ttl=")
        assert storage.download("imports", report.storage_path).startswith(b"%PDF")

        [row] = store.select("ai_reports")
        assert row["id"] == report.id
        assert row["filters"] == {"countries": ["Norway"], "operators": [], "keywords": []}
        assert row["report_json"]["coverage"] == {"fromYear": 2024, "toYear": 2026, "counts": {"projects": 1}}
        assert (row["period_start"].isoformat(), row["period_end"].isoformat()) == ("2024-01-01", "2026-12-31")

    def test_metadata_failure_is_a_warning(self, storage):
        fake = MagicMock()
        fake.insert.side_effect = StoreError("ai_reports", "relation does not exist")
        report, warning = store_report(
            fake, storage,
            user_id="u1", user_email="u1@example.com", request_text="r", title="T",
            report_markdown="# T", report_summary=None, plan=AgentPlan(), data=self._data(),
        )
        assert report.id is None
        assert warning == "Could not persist ai_reports metadata: relation does not exist"
        assert storage.exists("imports", report.storage_path)

    def test_list_reports(self, store, storage):
        store_report(
            store, storage,
            user_id="u1", user_email="u1@example.com", request_text="First", title="First",
            report_markdown="# First", report_summary=None, plan=AgentPlan(), data=self._data(),
        )
        store.insert("ai_reports", {
            "created_by": "u1", "created_by_email": "u1@example.com", "request_text": "Lost",
            "title": "Lost", "report_markdown": "# Lost", "storage_path": "ai-reports/missing.pdf",
            "file_name": "missing.pdf",
        })
        store.insert("ai_reports", {
            "created_by": "someone-else", "created_by_email": "x@example.com", "request_text": "Other",
            "title": "Other", "report_markdown": "# Other", "storage_path": "ai-reports/o.pdf",
            "file_name": "o.pdf",
        })

        reports = {r.title: r for r in list_reports(store, storage, "u1")}
        assert set(reports) == {"First", "Lost"}
        assert reports["First"].download_url.startswith("http://testserver/storage/imports/ai-reports/")
        assert reports["First"].period_start == "2024-01-01"
        assert reports["Lost"].download_url is None


# ---------------------------------------------------------------------------
# Conversation turn
# ---------------------------------------------------------------------------


class TestConversation:
    @pytest.mark.asyncio
    async def test_no_user_message(self, store, storage):
        response = await run_agent_conversation(
            [{"role": "assistant", "content": "Hello"}], "u1", "u1@example.com",
            store=store, storage=storage, llm=None,
        )
        assert response.answer == "No valid user prompt was provided."
        assert response.report is None

    @pytest.mark.asyncio
    async def test_report_rendered_off_the_event_loop(self, store, storage, monkeypatch):
        threads = []
        real_store_report = agent.store_report

        def recording(*args, **kwargs):
            threads.append(threading.get_ident())
            return real_store_report(*args, **kwargs)

        monkeypatch.setattr(agent, "store_report", recording)
        response = await run_agent_conversation(
            _user("Report for Castberg 2024-2026"), "u1", "u1@example.com",
            store=store, storage=storage, llm=None,
        )
        assert response.report is not None
        assert threads and threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_report_request_without_model(self, store, storage):
        response = await run_agent_conversation(
            _user("Report for Castberg 2024-2026"), "u1", "u1@example.com",
            store=store, storage=storage, llm=None,
        )
        assert response.plan.intent == "report"
        assert response.answer.startswith("I pulled data for period 2024-2026.")
        assert response.report is not None
        assert response.report.title == "Subintel AI Report"
        assert response.data_coverage.counts["projects"] == 1
        assert response.data_coverage.warnings == []

        [row] = store.select("ai_reports")
        assert row["created_by"] == "u1"
        assert row["request_text"] == "Report for Castberg 2024-2026"
        assert "## KPI Snapshot" in row["report_markdown"]

        body = response.model_dump(by_alias=True)
        assert body["report"]["downloadUrl"] == response.report.download_url
        assert body["dataCoverage"]["fromYear"] == 2024

    @pytest.mark.asyncio
    async def test_question_has_no_report(self, store, storage):
        response = await run_agent_conversation(
            _user("How many XMTs does Castberg have?"), "u1", "u1@example.com",
            store=store, storage=storage, llm=None,
        )
        assert response.report is None
        assert store.count("ai_reports") == 0

    @pytest.mark.asyncio
    async def test_unconfigured_model_is_not_called(self, store, storage):
        llm = _llm()
        llm.configured = False
        await run_agent_conversation(_user("Castberg?"), "u1", "u1@example.com",
                                     store=store, storage=storage, llm=llm)
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_model_report_markdown_creates_report(self, store, storage):
        llm = _llm(
            '{"intent": "question"}',
            json.dumps({
                "answer_text": "Castberg has **6** XMTs.",
                "report_title": "Castberg Status",
                "report_markdown": "# Castberg Status\n\n- 6 XMTs",
                "follow_up_suggestions": ["Compare with Johan Castberg phase 2?"],
            }),
        )
        response = await run_agent_conversation(
            _user("How is Castberg doing?"), "u1", "u1@example.com",
            store=store, storage=storage, llm=llm,
        )
        assert response.plan.intent == "question"
        assert response.answer == "Castberg has 6 XMTs."
        assert response.follow_ups == ["Compare with Johan Castberg phase 2?"]
        assert response.report.title == "Castberg Status"
        assert response.report.file_name.startswith("castberg-status-")
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_upload_failure_keeps_answer(self, store):
        broken = MagicMock()
        broken.upload.side_effect = StorageError("disk full")
        response = await run_agent_conversation(
            _user("Report for Castberg"), "u1", "u1@example.com",
            store=store, storage=broken, llm=None,
        )
        assert response.report is None
        assert response.answer
        assert response.data_coverage.warnings == ["Report generation failed: disk full"]
        assert store.count("ai_reports") == 0

    @pytest.mark.asyncio
    async def test_norwegian_report_title(self, store, storage):
        response = await run_agent_conversation(
            _user("Lag en rapport for Castberg"), "u1", "u1@example.com",
            store=store, storage=storage, llm=None,
        )
        assert response.plan.language == "no"
        assert response.report.title == "Subintel AI Rapport"
        assert response.answer.startswith("Jeg hentet data")


def test_messages_accept_models_and_dicts():
    messages = sanitize_messages([AgentMessage(role="user", content="a"), {"role": "assistant", "content": "b"}])
    assert [(m.role, m.content) for m in messages] == [("user", "a"), ("assistant", "b")]
