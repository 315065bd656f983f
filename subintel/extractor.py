"""Structured extraction from PDF reports via a multimodal LLM.

Two document kinds are supported: contract-award tables (a list of award
rows) and subsea market reports (summary, highlights, key figures and yearly
forecasts).  Model replies are treated as untrusted text: JSON is recovered
with :func:`subintel.utils.parse_json_object` and every field is coerced on
the way into the typed records below.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from subintel.llm import LLMClient
from subintel.metrics import (
    KEY_FIGURE_FALLBACKS,
    normalize_forecast_metric,
    normalize_forecast_unit,
    normalize_metric_key,
)
from subintel.utils import (
    as_number,
    as_record,
    as_string,
    as_year,
    json_parse,
    parse_json_array,
    parse_json_object,
    strip_code_fences,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

CONTRACT_AWARDS_PROMPT = """\
Extract ALL contract rows from this PDF table. The table has columns: Leverandør (supplier), \
Operatør (operator), Verdi (value), Omfang (scope), Region/Prosjekt (region/project), Segment, \
and Varighet (duration/contract period).

Return a JSON array of objects with these exact fields:
- supplier: string
- operator: string
- value: string (keep original format, e.g. "NOK 500M" or "USD 1.2B")
- scope: string (full description)
- region: string
- segment: string
- duration: string (contract duration/period, e.g. "2025-2028", "3 years", "36 months". Empty string if not found)

Extract EVERY row from ALL pages. Return ONLY the JSON array, no other text."""

MARKET_REPORT_PROMPT = """\
Analyze this Subsea Market Report and return ONE valid JSON object with this schema:
{
  "report_period": "Q1 2026" | null,
  "report_title": "string" | null,
  "summary": "executive summary text",
  "highlights": ["bullet", "bullet"],
  "key_figures": {
    "total_subsea_capex_usd_bn": number | null,
    "xmt_forecast_units": number | null,
    "surf_km_forecast": number | null,
    "yoy_growth_pct": number | null,
    "brent_avg_usd_per_bbl": number | null
  },
  "forecasts": [
    { "year": 2026, "metric": "subsea_spend_usd_bn", "value": 54.3, "unit": "USD bn" },
    { "year": 2026, "metric": "xmt_installations", "value": 1120, "unit": "units" }
  ]
}

Rules:
- Extract as many yearly forecast datapoints as possible from charts/tables/text.
- Prefer these canonical metric names when possible:
  subsea_spend_usd_bn, xmt_installations, surf_km, subsea_capex_growth_yoy_pct, brent_avg_usd_per_bbl, pipeline_km
- Regional spend should use:
  europe_subsea_spend_total_usd_bn, south_america_subsea_spend_total_usd_bn, north_america_subsea_spend_total_usd_bn,
  africa_subsea_spend_total_usd_bn, asia_australia_subsea_spend_total_usd_bn, middle_east_russia_subsea_spend_total_usd_bn
- No markdown. No prose outside JSON."""

NO_SUMMARY = "No summary generated"

_YEAR_IN_TEXT_RE = re.compile(r"\b(19|20)\d{2}\b")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+\.)\s+(.+)$", re.MULTILINE)
_FIRST_SENTENCE_RE = re.compile(r"^[^.!?]+[.!?]")


async def extract_structured(llm: LLMClient, pdf_bytes: bytes, file_name: str, prompt: str) -> dict[str, Any]:
    """Ask the model to read ``pdf_bytes``; returns the recovered JSON object or ``{}``."""
    content = await llm.complete_with_document(pdf_bytes, file_name, prompt, temperature=0, max_tokens=16000)
    return parse_json_object(content or "{}")


# ---------------------------------------------------------------------------
# Contract awards
# ---------------------------------------------------------------------------


def map_segment(segment: str | None) -> str:
    if not segment:
        return "Other"
    s = segment.lower()
    if "epci" in s:
        return "EPCI"
    if "subsea" in s or "sps" in s:
        return "SPS"
    if "surf" in s:
        return "SURF"
    return "Other"


def parse_value(value: str | None) -> int | None:
    """Parse a money string such as ``"USD 1.2B"`` into whole units."""
    if not value:
        return None
    match = re.match(r"\d*\.?\d*", re.sub(r"[^0-9.]", "", value))
    digits = match.group(0) if match else ""
    try:
        n = float(digits)
    except ValueError:
        return None
    lower = value.lower()
    if "b" in lower:
        n *= 1_000_000_000
    elif "m" in lower:
        n *= 1_000_000
    elif "k" in lower:
        n *= 1_000
    return round(n)


def contract_hash(supplier: str, operator: str, scope: str) -> str:
    digest = hashlib.sha1(f"{supplier}{operator}{scope[:100]}".encode("utf-8")).hexdigest()
    return digest[:16]


@dataclass
class ExtractedContract:
    supplier: str = ""
    operator: str = ""
    value: str = ""
    scope: str = ""
    region: str = ""
    segment: str = ""
    duration: str = ""

    @classmethod
    def from_json(cls, raw: Any) -> ExtractedContract | None:
        record = as_record(raw)
        if not record:
            return None
        return cls(**{name: as_string(record.get(name)) for name in cls.__dataclass_fields__})

    def as_row(self, today: date) -> dict[str, Any]:
        description = " | ".join(
            part for part in (self.scope, f"Varighet: {self.duration}" if self.duration else "") if part
        )
        return {
            "date": today,
            "supplier": self.supplier or "Unknown",
            "operator": self.operator or "Unknown",
            "project_name": self.region or "Unknown",
            "description": description,
            "contract_type": map_segment(self.segment),
            "region": self.region or None,
            "source": "rystad_awards",
            "pipeline_phase": "awarded",
            "external_id": f"rystad-pdf-{contract_hash(self.supplier, self.operator, self.scope)}",
            "estimated_value_usd": parse_value(self.value),
        }


def parse_contract_reply(content: str) -> list[ExtractedContract]:
    """Contract rows from a reply that is either a JSON array or an object wrapping one."""
    cleaned = strip_code_fences(content or "")
    items: list[Any]
    if cleaned.startswith("{"):
        wrapper = parse_json_object(cleaned)
        items = wrapper.get("contracts") or wrapper.get("rows") or []
        if not isinstance(items, list):
            items = []
    else:
        items = parse_json_array(cleaned)
    return [c for c in (ExtractedContract.from_json(item) for item in items) if c is not None]


async def extract_contracts(llm: LLMClient, pdf_bytes: bytes, file_name: str) -> list[ExtractedContract]:
    content = await llm.complete_with_document(
        pdf_bytes, file_name, CONTRACT_AWARDS_PROMPT, temperature=0, max_tokens=16000,
    )
    rows = parse_contract_reply(content or "[]")
    log.info("Extracted %d contract rows from %s", len(rows), file_name)
    return rows


# ---------------------------------------------------------------------------
# Market reports
# ---------------------------------------------------------------------------


@dataclass
class Forecast:
    year: int
    metric: str
    value: float
    unit: str
    source: str = "rystad_report"

    def as_row(self) -> dict[str, Any]:
        return {"year": self.year, "metric": self.metric, "value": self.value,
                "unit": self.unit, "source": self.source}


@dataclass
class MarketReport:
    summary: str = NO_SUMMARY
    report_period: str | None = None
    report_title: str | None = None
    key_figures: dict[str, Any] = field(default_factory=dict)
    highlights: list[str] = field(default_factory=list)
    raw_forecasts: list[Any] = field(default_factory=list)

    @classmethod
    def from_json(cls, parsed: dict[str, Any]) -> MarketReport:
        highlights = parsed.get("highlights")
        model_highlights = []
        if isinstance(highlights, list):
            model_highlights = [
                line.strip() for line in highlights
                if isinstance(line, str) and len(line.strip()) > 10
            ][:6]
        forecasts = parsed.get("forecasts")
        return cls(
            summary=_optional_text(parsed.get("summary")) or NO_SUMMARY,
            report_period=_optional_text(parsed.get("report_period")),
            report_title=_optional_text(parsed.get("report_title")),
            key_figures=as_record(parsed.get("key_figures")),
            highlights=model_highlights,
            raw_forecasts=forecasts if isinstance(forecasts, list) else [],
        )

    def heading(self, file_name: str) -> str:
        return self.report_period or self.report_title or file_name

    def summary_highlights(self) -> list[str]:
        return self.highlights or extract_summary_highlights(self.summary)


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_summary_highlights(summary: str) -> list[str]:
    """Bullet lines from the summary, else first sentences of its longer paragraphs."""
    bullets = [m.group(1).strip() for m in _BULLET_RE.finditer(summary)]
    bullets = [line for line in bullets if len(line) > 16][:6]
    if bullets:
        return bullets

    highlights = []
    for paragraph in re.split(r"\n\n+", summary):
        paragraph = paragraph.strip()
        if len(paragraph) <= 32:
            continue
        sentence = _FIRST_SENTENCE_RE.match(paragraph)
        highlights.append(sentence.group(0).strip() if sentence else f"{paragraph[:160].strip()}…")
    return highlights[:5]


def build_market_summary_markdown(
    heading: str,
    title: str | None,
    summary: str,
    highlights: list[str],
    key_figures: dict[str, Any],
) -> str:
    """Markdown stored as ``documents.ai_summary``; the dashboard parses this layout."""
    sections = [f"## {heading}"]
    if title and title != heading:
        sections.append(f"### Report\n{title}")
    if highlights:
        sections.append("### Highlights\n" + "\n".join(f"- {line}" for line in highlights))
    if summary.strip():
        sections.append(f"### Executive Summary\n{summary.strip()}")
    sections.append(f"### Key Figures\n```json\n{json.dumps(key_figures, indent=2, ensure_ascii=False)}\n```")
    return "\n\n".join(sections)


def parse_key_figures_block(markdown: str | None) -> dict[str, Any]:
    """Read the ``### Key Figures`` JSON block back out of a stored summary."""
    if not markdown:
        return {}
    match = re.search(r"### Key Figures\s*```json\s*([\s\S]*?)```", markdown)
    if not match:
        return {}
    return as_record(json_parse(match.group(1), {}))


def normalize_forecasts(raw: list[Any]) -> list[Forecast]:
    forecasts = []
    for entry in raw:
        row = as_record(entry)
        if not row:
            continue
        year = as_year(row.get("year"))
        value = as_number(row.get("value"))
        metric = normalize_forecast_metric(row["metric"]) if isinstance(row.get("metric"), str) else ""
        if year is None or value is None or not metric:
            continue
        forecasts.append(Forecast(year, metric, value, normalize_forecast_unit(row.get("unit"))))
    return forecasts


def year_from_text(text: str) -> int | None:
    match = _YEAR_IN_TEXT_RE.search(text)
    return int(match.group(0)) if match else None


def fallback_forecasts(key_figures: dict[str, Any], year: int) -> list[Forecast]:
    """Forecast rows derived from headline key figures when a report has no series."""
    figures: dict[str, float] = {}
    for key, value in key_figures.items():
        number = as_number(value)
        if number is not None:
            figures[normalize_metric_key(key)] = number

    forecasts = []
    for key_options, metric, unit in KEY_FIGURE_FALLBACKS:
        value = next(
            (figures[normalize_metric_key(k)] for k in key_options if normalize_metric_key(k) in figures),
            None,
        )
        if value is not None:
            forecasts.append(Forecast(year, metric, value, unit))
    return forecasts


def dedupe_forecasts(forecasts: list[Forecast]) -> list[Forecast]:
    """One forecast per ``(year, metric)``; the last occurrence wins."""
    by_key: dict[tuple[int, str], Forecast] = {}
    for forecast in forecasts:
        by_key[(forecast.year, forecast.metric)] = forecast
    return list(by_key.values())


def report_forecasts(report: MarketReport, file_name: str) -> list[Forecast]:
    forecasts = normalize_forecasts(report.raw_forecasts)
    if not forecasts:
        year = year_from_text(report.heading(file_name))
        if year is not None:
            forecasts = fallback_forecasts(report.key_figures, year)
    return dedupe_forecasts(forecasts)


async def extract_market_report(llm: LLMClient, pdf_bytes: bytes, file_name: str) -> MarketReport:
    parsed = await extract_structured(llm, pdf_bytes, file_name, MARKET_REPORT_PROMPT)
    report = MarketReport.from_json(parsed)
    log.info("Market report %s: %d raw forecasts, %d key figures",
             file_name, len(report.raw_forecasts), len(report.key_figures))
    return report
