"""Tests for contract-award and market-report extraction."""
from __future__ import annotations

import json
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from subintel.extractor import (
    NO_SUMMARY,
    ExtractedContract,
    Forecast,
    MarketReport,
    build_market_summary_markdown,
    contract_hash,
    dedupe_forecasts,
    extract_contracts,
    extract_market_report,
    extract_summary_highlights,
    fallback_forecasts,
    map_segment,
    normalize_forecasts,
    parse_contract_reply,
    parse_key_figures_block,
    parse_value,
    report_forecasts,
)


def _llm(reply: str) -> MagicMock:
    llm = MagicMock()
    llm.complete_with_document = AsyncMock(return_value=reply)
    return llm


# ---------------------------------------------------------------------------
# Contract awards
# ---------------------------------------------------------------------------


class TestContractFields:
    @pytest.mark.parametrize("segment, expected", [
        ("EPCI", "EPCI"), ("Subsea production systems", "SPS"), ("SPS", "SPS"),
        ("SURF", "SURF"), ("Drilling", "Other"), ("", "Other"), (None, "Other"),
    ])
    def test_map_segment(self, segment, expected):
        assert map_segment(segment) == expected

    @pytest.mark.parametrize("value, expected", [
        ("USD 1.2B", 1_200_000_000),
        ("NOK 500M", 500_000_000),
        ("250k", 250_000),
        ("USD 750", 750),
        ("", None),
        ("undisclosed", None),
    ])
    def test_parse_value(self, value, expected):
        assert parse_value(value) == expected

    def test_hash_is_stable_and_uses_scope_prefix(self):
        first = contract_hash("Aker Solutions", "Equinor", "x" * 100 + "tail A")
        second = contract_hash("Aker Solutions", "Equinor", "x" * 100 + "tail B")
        assert first == second
        assert len(first) == 16
        assert contract_hash("Subsea7", "Equinor", "x") != first


class TestContractRows:
    def test_as_row(self):
        contract = ExtractedContract(supplier="Subsea7", operator="Equinor", value="USD 1.2B",
                                     scope="SURF EPCI for Troll", region="Troll", segment="SURF",
                                     duration="2025-2027")
        row = contract.as_row(date(2026, 3, 1))
        assert row["contract_type"] == "SURF"
        assert row["description"] == "SURF EPCI for Troll | Varighet: 2025-2027"
        assert row["estimated_value_usd"] == 1_200_000_000
        assert row["external_id"] == f"rystad-pdf-{contract_hash('Subsea7', 'Equinor', 'SURF EPCI for Troll')}"
        assert row["pipeline_phase"] == "awarded"
        assert row["date"] == date(2026, 3, 1)

    def test_missing_names_become_unknown(self):
        row = ExtractedContract(scope="Umbilicals").as_row(date(2026, 1, 1))
        assert (row["supplier"], row["operator"], row["project_name"]) == ("Unknown", "Unknown", "Unknown")
        assert row["region"] is None
        assert row["estimated_value_usd"] is None

    def test_parse_array_reply(self):
        reply = 'Here you go:\n```json\n[{"supplier": "Aker", "operator": "Equinor", "value": 12}, "junk"]\n```'
        rows = parse_contract_reply(reply)
        assert len(rows) == 1
        assert rows[0].supplier == "Aker"
        assert rows[0].value == "12"

    def test_parse_wrapped_reply(self):
        reply = json.dumps({"contracts": [{"supplier": "TechnipFMC", "segment": "SPS"}]})
        assert [c.supplier for c in parse_contract_reply(reply)] == ["TechnipFMC"]
        assert parse_contract_reply('{"contracts": "none"}') == []

    def test_garbage_reply(self):
        assert parse_contract_reply("I could not read the table.") == []

    @pytest.mark.asyncio
    async def test_extract_contracts_calls_model_with_document(self):
        llm = _llm('[{"supplier": "Saipem", "operator": "Petrobras", "segment": "EPCI"}]')
        rows = await extract_contracts(llm, b"%PDF", "awards.pdf")
        assert rows[0].segment == "EPCI"
        args, kwargs = llm.complete_with_document.call_args
        assert args[:2] == (b"%PDF", "awards.pdf")
        assert kwargs["temperature"] == 0


# ---------------------------------------------------------------------------
# Market reports
# ---------------------------------------------------------------------------


class TestMarketReport:
    def test_from_json_filters_short_highlights(self):
        report = MarketReport.from_json({
            "summary": "  Spending grows.  ",
            "report_period": "Q1 2026",
            "highlights": ["short", "Subsea spend reaches a record level", 42],
            "key_figures": {"xmt_forecast_units": 400},
            "forecasts": "not a list",
        })
        assert report.summary == "Spending grows."
        assert report.highlights == ["Subsea spend reaches a record level"]
        assert report.raw_forecasts == []
        assert report.heading("file.pdf") == "Q1 2026"

    def test_from_empty_json(self):
        report = MarketReport.from_json({})
        assert report.summary == NO_SUMMARY
        assert report.heading("Subsea Market Report.pdf") == "Subsea Market Report.pdf"

    def test_summary_highlights_from_bullets(self):
        summary = "Intro\n- Subsea capex rises in Norway\n- ok\n* Tree awards stay strong in Brazil"
        assert extract_summary_highlights(summary) == [
            "Subsea capex rises in Norway", "Tree awards stay strong in Brazil",
        ]

    def test_summary_highlights_from_paragraphs(self):
        summary = ("Short one.\n\n"
                   "Spending in Europe rises again this year. More detail follows here.\n\n"
                   "A paragraph with no sentence end that is long enough to count")
        assert extract_summary_highlights(summary) == [
            "Spending in Europe rises again this year.",
            "A paragraph with no sentence end that is long enough to count…",
        ]

    def test_summary_markdown_layout_and_key_figure_roundtrip(self):
        figures = {"total_subsea_capex_usd_bn": 54.3, "brent_avg_usd_per_bbl": None}
        md = build_market_summary_markdown("Q1 2026", "Subsea Market Report", "Summary text.",
                                           ["Growth continues in Brazil"], figures)
        assert md.startswith("## Q1 2026\n\n### Report\nSubsea Market Report")
        assert "### Highlights\n- Growth continues in Brazil" in md
        assert "### Executive Summary\nSummary text." in md
        assert parse_key_figures_block(md) == figures

    def test_key_figures_block_missing(self):
        assert parse_key_figures_block("## Heading only") == {}
        assert parse_key_figures_block(None) == {}


class TestForecasts:
    def test_normalize_skips_invalid_rows(self):
        raw = [
            {"year": "2026", "metric": "Subsea Capex USD Bn", "value": "54.3", "unit": "USD billion"},
            {"year": 2026, "metric": "xmt", "value": None},
            {"year": 1700, "metric": "surf km", "value": 1},
            {"metric": "surf km", "value": 1},
            "junk",
        ]
        assert normalize_forecasts(raw) == [Forecast(2026, "subsea_spend_usd_bn", 54.3, "USD bn")]

    def test_later_duplicate_wins(self):
        forecasts = [
            Forecast(2026, "surf_km", 100.0, "km"),
            Forecast(2027, "surf_km", 120.0, "km"),
            Forecast(2026, "surf_km", 110.0, "km"),
        ]
        deduped = dedupe_forecasts(forecasts)
        assert len(deduped) == 2
        assert {f.year: f.value for f in deduped} == {2026: 110.0, 2027: 120.0}

    def test_fallback_from_key_figures(self):
        figures = {"Total Subsea Capex USD Bn": 54.3, "xmt_forecast_units": "1,120", "yoy_growth_pct": "n/a"}
        forecasts = fallback_forecasts(figures, 2026)
        assert [(f.metric, f.value, f.unit) for f in forecasts] == [
            ("subsea_spend_usd_bn", 54.3, "USD bn"),
            ("xmt_installations", 1120.0, "units"),
        ]

    def test_report_forecasts_falls_back_to_heading_year(self):
        report = MarketReport(report_period="Q2 2025", key_figures={"surf_km": 900})
        assert report_forecasts(report, "r.pdf") == [Forecast(2025, "surf_km", 900.0, "km")]

    def test_report_forecasts_without_year_is_empty(self):
        report = MarketReport(key_figures={"surf_km": 900})
        assert report_forecasts(report, "market.pdf") == []

    @pytest.mark.asyncio
    async def test_extract_market_report(self):
        llm = _llm("```json\n" + json.dumps({
            "report_title": "Subsea Market Report",
            "summary": "Capex keeps growing.",
            "forecasts": [{"year": 2026, "metric": "XMT Installations", "value": 1100, "unit": "units"}],
        }) + "\n```")
        report = await extract_market_report(llm, b"%PDF", "report.pdf")
        assert report.report_title == "Subsea Market Report"
        assert report_forecasts(report, "report.pdf") == [Forecast(2026, "xmt_installations", 1100.0, "units")]
