"""Tests for building the agent's data context from stored tables."""
from __future__ import annotations

from datetime import UTC, date, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from subintel.context import (
    ProjectRow,
    aggregate_by_year,
    build_context,
    keyword_score,
    matches_filters,
    project_within_year,
    rank,
    row_within_year,
    top_counts,
)
from subintel.models import Base
from subintel.schemas import AgentPlan
from subintel.store import RowStore, StoreError

NOW = datetime(2026, 5, 1, tzinfo=UTC)


@pytest.fixture()
def store(tmp_path):
    # File-backed so the threaded table reads each get their own connection
    engine = create_engine(f"sqlite:///{tmp_path / 'context.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    store = RowStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))
    _seed(store)
    return store


def _seed(store: RowStore) -> None:
    for project in (
        {"development_project": "Castberg", "asset": "A", "country": "Norway", "operator": "Equinor",
         "xmt_count": 6, "surf_km": 12.5, "subsea_unit_count": 2, "first_year": 2024, "last_year": 2026},
        {"development_project": "Bacalhau", "asset": "FPSO", "country": "Brazil", "operator": "Equinor",
         "xmt_count": 8, "first_year": 2026, "last_year": 2027},
        {"development_project": "Statfjord", "asset": "C", "country": "Norway", "operator": "Equinor",
         "xmt_count": 3, "first_year": 2008, "last_year": 2010},
    ):
        store.insert("projects", project)
    store.insert("contracts", {"external_id": "c1", "project_name": "Castberg", "supplier": "Subsea7",
                               "operator": "Equinor", "country": "Norway", "contract_type": "SURF",
                               "date": date(2025, 3, 1), "estimated_value_usd": 250_000_000})
    store.insert("contracts", {"external_id": "c2", "project_name": "Mero", "supplier": "SLB",
                               "operator": "Petrobras", "country": "Brazil", "contract_type": "SPS",
                               "date": date(2027, 1, 1)})
    for year, value in ((2025, 50.0), (2026, 54.3), (2031, 70.0)):
        store.insert("forecasts", {"year": year, "metric": "subsea_spend_usd_bn", "value": value, "unit": "USD bn"})
    for year, count in ((2024, 3), (2025, 2), (None, 4)):
        store.insert("xmt_data", {"year": year, "development_project": "Castberg", "country": "Norway",
                                  "operator": "Equinor", "purpose": f"p{count}", "state": "s", "xmt_count": count})
    store.insert("upcoming_awards", {"year": 2026, "development_project": "Bacalhau", "asset": "FPSO",
                                     "country": "Brazil", "operator": "Equinor", "xmts_awarded": 8})
    user = store.insert("users", {"email": "system@subintel.local"})
    store.insert("documents", {"uploaded_by": user["id"], "file_name": "Subsea Market Report Q1.pdf",
                               "file_path": "imports/uploads/r.pdf",
                               "ai_summary": "## Q1 2026\n\n### Executive Summary\nCastberg and Bacalhau lead."})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestFilters:
    def test_row_without_year_passes(self):
        assert row_within_year(None, 2024, 2026)
        assert not row_within_year(2023, 2024, 2026)
        assert row_within_year(2026, 2024, None)

    def test_project_overlap(self):
        project = ProjectRow.from_row({"development_project": "P", "first_year": 2020, "last_year": 2024})
        assert project_within_year(project, 2024, 2030)
        assert not project_within_year(project, 2025, 2030)
        assert not project_within_year(project, 2010, 2019)
        assert project_within_year(project, None, None)

    def test_substring_country_and_operator(self):
        assert matches_filters("Norway", "Equinor Energy", ["norway"], ["equinor"])
        assert not matches_filters("Brazil", "Equinor", ["norway"], [])
        assert matches_filters("", "", [], [])

    def test_keyword_score(self):
        assert keyword_score("Castberg Norway Equinor", ["castberg", "equinor", "troll", " "]) == 2

    def test_rank_by_score_then_recency(self):
        rows = [("a", 1, 2020), ("b", 2, 2019), ("c", 1, 2025)]
        ranked = rank(rows, lambda r: r[1], lambda r: r[2], limit=2)
        assert [r[0] for r in ranked] == ["b", "c"]

    def test_top_counts_merges_case(self):
        assert top_counts(["Norway", "norway", "Brazil", " "]) == [
            {"label": "Norway", "count": 2}, {"label": "Brazil", "count": 1},
        ]

    def test_aggregate_by_year_skips_unknown_year(self):
        rows = [(2025, 1.5), (2024, 2), (None, 9), (2025, 1)]
        assert aggregate_by_year(rows, lambda r: r[0], lambda r: r[1]) == [
            {"year": 2024, "value": 2}, {"year": 2025, "value": 2.5},
        ]


# ---------------------------------------------------------------------------
# build_context
# ---------------------------------------------------------------------------


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_period_and_country_filters(self, store):
        plan = AgentPlan(from_year=2024, to_year=2026, countries=["norway"])
        data = await build_context(plan, store, now=NOW)

        payload = data.context_payload
        assert (data.from_year, data.to_year) == (2024, 2026)
        assert [p["project"] for p in payload["project_highlights"]] == ["Castberg"]
        assert data.counts["contracts"] == 1
        # Forecasts carry no country, so only the period applies
        assert data.counts["forecasts"] == 2
        # The xmt row without a year is kept
        assert data.counts["xmt_data"] == 3
        assert payload["totals"]["xmt_total_from_xmt_table"] == 9
        assert payload["xmt_by_year"] == [{"year": 2024, "value": 3}, {"year": 2025, "value": 2}]
        assert payload["totals"]["contract_estimated_value_usd"] == 250_000_000
        assert data.counts["upcoming_awards"] == 0
        assert payload["generated_at"] == NOW.isoformat()
        assert data.warnings == []

    @pytest.mark.asyncio
    async def test_keywords_restrict_rows(self, store):
        plan = AgentPlan(project_keywords=["bacalhau"])
        data = await build_context(plan, store, now=NOW)
        assert data.counts["projects"] == 1
        assert data.counts["upcoming_awards"] == 1
        assert data.counts["contracts"] == 0
        assert data.counts["documents"] == 1
        assert data.context_payload["awards_by_year"] == [{"year": 2026, "value": 8}]

    @pytest.mark.asyncio
    async def test_period_inferred_from_rows(self, store):
        data = await build_context(AgentPlan(), store, now=NOW)
        assert (data.from_year, data.to_year) == (2008, 2031)
        assert data.counts["projects"] == 3
        series = data.context_payload["forecast_highlights"][0]
        assert series["metric"] == "subsea_spend_usd_bn"
        assert series["latest"]["year"] == 2031
        assert len(series["series"]) == 3
        top = data.context_payload["top_operators"][0]
        assert top == {"label": "Equinor", "count": 5}

    @pytest.mark.asyncio
    async def test_disabled_tables_are_empty(self, store):
        data = await build_context(AgentPlan(include_tables=["forecasts"]), store, now=NOW)
        assert data.counts["projects"] == 0
        assert data.counts["forecasts"] == 3

    @pytest.mark.asyncio
    async def test_failed_table_becomes_warning(self):
        def select_all(table, *args, **kwargs):
            if table == "contracts":
                raise StoreError("contracts", "connection reset")
            return []

        fake = MagicMock()
        fake.select_all.side_effect = select_all
        data = await build_context(AgentPlan(), fake, now=NOW)
        assert data.warnings == ["contracts: connection reset"]
        assert data.context_payload["warnings"] == ["contracts: connection reset"]
        assert data.counts["contracts"] == 0
        assert (data.from_year, data.to_year) == (None, None)
