"""Build the data context the answer writer is allowed to use.

Every table the plan asks for is fetched concurrently, coerced into a typed
row, filtered by period / country / operator / keyword relevance, ranked and
capped.  The result is a compact JSON-able payload of highlights, totals and
per-year series.  A table that cannot be read becomes a warning and an empty
list; the rest of the context is still built.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Iterable, TypeVar

from subintel.metrics import normalize_metric_key
from subintel.schemas import AgentPlan
from subintel.store import RowStore, StoreError
from subintel.utils import as_iso_date, as_number, as_string, as_year, uniq_strings, year_from_date

log = logging.getLogger(__name__)

T = TypeVar("T")

# Per-table caps after ranking
ROW_CAPS = {
    "projects": 480,
    "contracts": 480,
    "forecasts": 600,
    "upcoming_awards": 420,
    "xmt_data": 900,
    "surf_data": 900,
    "subsea_unit_data": 900,
    "documents": 30,
}

HIGHLIGHT_LIMIT = 20
TOP_N = 8
EXCERPT_CHARS = 180


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------


@dataclass
class ProjectRow:
    development_project: str
    asset: str
    country: str
    continent: str
    operator: str
    surf_contractor: str
    facility_category: str
    field_type: str
    water_depth_category: str
    field_size_category: str
    xmt_count: float
    surf_km: float
    subsea_unit_count: float
    first_year: int | None
    last_year: int | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ProjectRow:
        return cls(
            development_project=as_string(row.get("development_project") or row.get("asset"), "Unknown project"),
            asset=as_string(row.get("asset")),
            country=as_string(row.get("country"), "Unknown"),
            continent=as_string(row.get("continent")),
            operator=as_string(row.get("operator")),
            surf_contractor=as_string(row.get("surf_contractor")),
            facility_category=as_string(row.get("facility_category")),
            field_type=as_string(row.get("field_type")),
            water_depth_category=as_string(row.get("water_depth_category")),
            field_size_category=as_string(row.get("field_size_category")),
            xmt_count=as_number(row.get("xmt_count")) or 0,
            surf_km=as_number(row.get("surf_km")) or 0,
            subsea_unit_count=as_number(row.get("subsea_unit_count")) or 0,
            first_year=as_year(row.get("first_year")),
            last_year=as_year(row.get("last_year")),
        )

    def haystack(self) -> str:
        return " ".join([self.development_project, self.asset, self.country, self.operator,
                         self.surf_contractor, self.facility_category])


@dataclass
class ContractRow:
    project_name: str
    supplier: str
    operator: str
    contract_type: str
    region: str
    country: str
    pipeline_phase: str
    date: str | None
    announced_at: str | None
    estimated_value_usd: float | None
    description: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ContractRow:
        return cls(
            project_name=as_string(row.get("project_name") or row.get("description"), "Unknown contract"),
            supplier=as_string(row.get("supplier")),
            operator=as_string(row.get("operator")),
            contract_type=as_string(row.get("contract_type")),
            region=as_string(row.get("region")),
            country=as_string(row.get("country"), "Unknown"),
            pipeline_phase=as_string(row.get("pipeline_phase")),
            date=as_iso_date(row.get("date")),
            announced_at=as_iso_date(row.get("announced_at")),
            estimated_value_usd=as_number(row.get("estimated_value_usd")),
            description=as_string(row.get("description")),
        )

    @property
    def year(self) -> int | None:
        return year_from_date(self.date) or year_from_date(self.announced_at)

    def haystack(self) -> str:
        return " ".join([self.project_name, self.description, self.country, self.operator,
                         self.supplier, self.contract_type])


@dataclass
class ForecastRow:
    year: int
    metric: str
    value: float
    unit: str
    source: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ForecastRow | None:
        year = as_year(row.get("year"))
        value = as_number(row.get("value"))
        metric = normalize_metric_key(as_string(row.get("metric")))
        if not year or value is None or not metric:
            return None
        return cls(year, metric, value, as_string(row.get("unit")), as_string(row.get("source")))

    def haystack(self) -> str:
        return f"{self.metric} {self.unit} {self.source}"


@dataclass
class AwardRow:
    year: int | None
    country: str
    development_project: str
    asset: str
    operator: str
    surf_contractor: str
    xmts_awarded: float

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AwardRow:
        return cls(
            year=as_year(row.get("year")),
            country=as_string(row.get("country")),
            development_project=as_string(row.get("development_project") or row.get("asset"), "Unknown"),
            asset=as_string(row.get("asset")),
            operator=as_string(row.get("operator")),
            surf_contractor=as_string(row.get("surf_contractor")),
            xmts_awarded=as_number(row.get("xmts_awarded")) or 0,
        )

    def haystack(self) -> str:
        return f"{self.development_project} {self.asset} {self.country} {self.operator}"


@dataclass
class FactRow:
    """A row of ``xmt_data`` / ``surf_data`` / ``subsea_unit_data`` with its one measure."""

    year: int | None
    country: str
    development_project: str
    operator: str
    surf_contractor: str
    value: float

    @classmethod
    def reader(cls, measure: str) -> Callable[[dict[str, Any]], FactRow]:
        def read(row: dict[str, Any]) -> FactRow:
            return cls(
                year=as_year(row.get("year")),
                country=as_string(row.get("country")),
                development_project=as_string(row.get("development_project") or row.get("asset"), "Unknown"),
                operator=as_string(row.get("operator")),
                surf_contractor=as_string(row.get("surf_contractor")),
                value=as_number(row.get(measure)) or 0,
            )
        return read

    def haystack(self) -> str:
        return f"{self.development_project} {self.country} {self.operator} {self.surf_contractor}"


@dataclass
class DocumentRow:
    file_name: str
    ai_summary: str
    created_at: str | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DocumentRow:
        return cls(
            file_name=as_string(row.get("file_name"), "Unknown file"),
            ai_summary=as_string(row.get("ai_summary")),
            created_at=as_iso_date(row.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Table fetch specs
# ---------------------------------------------------------------------------


@dataclass
class TableSpec:
    columns: tuple[str, ...]
    max_rows: int
    order_by: str | None = None
    descending: bool = False


_SITE = ("year", "country", "development_project", "operator", "surf_contractor")

TABLE_SPECS: dict[str, TableSpec] = {
    "projects": TableSpec((
        "development_project", "asset", "country", "continent", "operator", "surf_contractor",
        "facility_category", "field_type", "water_depth_category", "field_size_category",
        "xmt_count", "surf_km", "subsea_unit_count", "first_year", "last_year",
    ), 10000),
    "contracts": TableSpec((
        "project_name", "supplier", "operator", "contract_type", "region", "country",
        "pipeline_phase", "date", "announced_at", "estimated_value_usd", "description",
    ), 10000),
    "forecasts": TableSpec(("year", "metric", "value", "unit", "source"), 12000, order_by="year"),
    "upcoming_awards": TableSpec(
        ("year", "country", "development_project", "asset", "operator", "surf_contractor", "xmts_awarded"), 10000,
    ),
    "xmt_data": TableSpec((*_SITE, "xmt_count"), 12000),
    "surf_data": TableSpec((*_SITE, "km_surf_lines"), 12000),
    "subsea_unit_data": TableSpec((*_SITE, "unit_count"), 12000),
    "documents": TableSpec(("file_name", "ai_summary", "created_at"), 120, order_by="created_at", descending=True),
}


async def _fetch_table(store: RowStore, table: str, warnings: list[str]) -> list[dict[str, Any]]:
    spec = TABLE_SPECS[table]
    try:
        return await asyncio.to_thread(
            store.select_all, table, spec.columns,
            order_by=spec.order_by, descending=spec.descending, max_rows=spec.max_rows,
        )
    except StoreError as exc:
        log.warning("Context fetch failed for %s: %s", table, exc.message)
        warnings.append(f"{table}: {exc.message}")
        return []


async def fetch_tables(store: RowStore, tables: Iterable[str], warnings: list[str]) -> dict[str, list[dict[str, Any]]]:
    """Read every requested table concurrently; unknown or disabled tables come back empty."""
    wanted = [t for t in TABLE_SPECS if t in set(tables)]
    results = await asyncio.gather(*(_fetch_table(store, t, warnings) for t in wanted))
    fetched = {t: [] for t in TABLE_SPECS}
    fetched.update(zip(wanted, results))
    return fetched


# ---------------------------------------------------------------------------
# Filters and ranking
# ---------------------------------------------------------------------------


def keyword_score(haystack: str, keywords: list[str]) -> int:
    text = haystack.strip().lower()
    return sum(1 for k in keywords if k.strip() and k.strip().lower() in text)


def matches_filters(country: str, operator: str, countries: list[str], operators: list[str]) -> bool:
    country, operator = country.strip().lower(), operator.strip().lower()
    country_ok = not countries or any(c.strip().lower() in country for c in countries)
    operator_ok = not operators or any(o.strip().lower() in operator for o in operators)
    return country_ok and operator_ok


def row_within_year(year: int | None, from_year: int | None, to_year: int | None) -> bool:
    """Rows without a year are never excluded by the period."""
    if year is None:
        return True
    if from_year is not None and year < from_year:
        return False
    if to_year is not None and year > to_year:
        return False
    return True


def project_within_year(project: ProjectRow, from_year: int | None, to_year: int | None) -> bool:
    """A project matches when its first..last year range overlaps the period."""
    if from_year is None and to_year is None:
        return True
    first = project.first_year if project.first_year is not None else project.last_year
    last = project.last_year if project.last_year is not None else project.first_year
    if first is None or last is None:
        return True
    if from_year is not None and last < from_year:
        return False
    if to_year is not None and first > to_year:
        return False
    return True


def rank(
    rows: list[T],
    score: Callable[[T], int],
    year: Callable[[T], int | None],
    limit: int,
) -> list[T]:
    """Highest keyword score first, newest first on ties."""
    return sorted(rows, key=lambda r: (-score(r), -(year(r) or 0)))[:limit]


def top_counts(values: Iterable[str], limit: int = TOP_N) -> list[dict[str, Any]]:
    counts: OrderedDict[str, dict[str, Any]] = OrderedDict()
    for value in values:
        label = value.strip()
        if not label:
            continue
        entry = counts.setdefault(label.lower(), {"label": label, "count": 0})
        entry["count"] += 1
    return sorted(counts.values(), key=lambda e: -e["count"])[:limit]


def aggregate_by_year(rows: Iterable[T], year: Callable[[T], int | None], value: Callable[[T], float]) -> list[dict[str, Any]]:
    totals: dict[int, float] = {}
    for row in rows:
        y = year(row)
        if y is None:
            continue
        totals[y] = totals.get(y, 0) + value(row)
    return [{"year": y, "value": round(v, 2)} for y, v in sorted(totals.items())]


def summarize_documents(docs: list[DocumentRow]) -> list[dict[str, Any]]:
    return [
        {
            "file_name": doc.file_name,
            "created_at": doc.created_at,
            "excerpt": " ".join(doc.ai_summary.split())[:EXCERPT_CHARS],
        }
        for doc in docs[:HIGHLIGHT_LIMIT]
    ]


def forecast_highlights(forecasts: list[ForecastRow]) -> list[dict[str, Any]]:
    by_metric: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
    for row in forecasts:
        by_metric.setdefault(row.metric, []).append(
            {"year": row.year, "value": row.value, "unit": row.unit, "source": row.source}
        )
    highlights = []
    for metric, points in list(by_metric.items())[:HIGHLIGHT_LIMIT]:
        series = sorted(points, key=lambda p: p["year"])
        highlights.append({"metric": metric, "latest": series[-1] if series else None, "series": series[-12:]})
    return highlights


def _whole(value: float) -> int:
    return int(round(value))


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass
class DataSummary:
    from_year: int | None
    to_year: int | None
    counts: dict[str, int]
    warnings: list[str] = field(default_factory=list)
    context_payload: dict[str, Any] = field(default_factory=dict)


def _filter_rank(
    rows: list[T],
    table: str,
    keywords: list[str],
    within: Callable[[T], bool],
    haystack: Callable[[T], str],
    year: Callable[[T], int | None],
    location: Callable[[T], tuple[str, str]] | None,
    plan: AgentPlan,
) -> list[T]:
    kept = []
    for row in rows:
        if not within(row):
            continue
        if location is not None and not matches_filters(*location(row), plan.countries, plan.operators):
            continue
        if keywords and keyword_score(haystack(row), keywords) == 0:
            continue
        kept.append(row)
    return rank(kept, lambda r: keyword_score(haystack(r), keywords), year, ROW_CAPS[table])


async def build_context(plan: AgentPlan, store: RowStore, *, now: datetime | None = None) -> DataSummary:
    warnings: list[str] = []
    raw = await fetch_tables(store, plan.include_tables, warnings)
    fy, ty = plan.from_year, plan.to_year
    keywords = [k.strip().lower() for k in uniq_strings([*plan.project_keywords, *plan.focus_points])]

    projects = _filter_rank(
        [ProjectRow.from_row(r) for r in raw["projects"]], "projects", keywords,
        lambda p: project_within_year(p, fy, ty), ProjectRow.haystack,
        lambda p: p.last_year or p.first_year, lambda p: (p.country, p.operator), plan,
    )
    contracts = _filter_rank(
        [ContractRow.from_row(r) for r in raw["contracts"]], "contracts", keywords,
        lambda c: row_within_year(c.year, fy, ty), ContractRow.haystack,
        lambda c: c.year, lambda c: (c.country, c.operator), plan,
    )
    forecasts = _filter_rank(
        [f for f in (ForecastRow.from_row(r) for r in raw["forecasts"]) if f is not None], "forecasts", keywords,
        lambda f: row_within_year(f.year, fy, ty), ForecastRow.haystack,
        lambda f: f.year, None, plan,
    )
    awards = _filter_rank(
        [AwardRow.from_row(r) for r in raw["upcoming_awards"]], "upcoming_awards", keywords,
        lambda a: row_within_year(a.year, fy, ty), AwardRow.haystack,
        lambda a: a.year, lambda a: (a.country, a.operator), plan,
    )
    facts = {}
    for table, measure in (("xmt_data", "xmt_count"), ("surf_data", "km_surf_lines"), ("subsea_unit_data", "unit_count")):
        read = FactRow.reader(measure)
        facts[table] = _filter_rank(
            [read(r) for r in raw[table]], table, keywords,
            lambda f: row_within_year(f.year, fy, ty), FactRow.haystack,
            lambda f: f.year, lambda f: (f.country, f.operator), plan,
        )
    docs = [DocumentRow.from_row(r) for r in raw["documents"]]
    if keywords:
        docs = [d for d in docs if keyword_score(f"{d.file_name} {d.ai_summary}", keywords) > 0]
    docs = docs[:ROW_CAPS["documents"]]

    counts = {
        "projects": len(projects),
        "contracts": len(contracts),
        "forecasts": len(forecasts),
        "upcoming_awards": len(awards),
        "xmt_data": len(facts["xmt_data"]),
        "surf_data": len(facts["surf_data"]),
        "subsea_unit_data": len(facts["subsea_unit_data"]),
        "documents": len(docs),
    }

    inferred = [
        y for y in (
            *[y for p in projects for y in (p.first_year, p.last_year)],
            *[c.year for c in contracts],
            *[f.year for f in forecasts],
            *[a.year for a in awards],
        ) if y is not None
    ]
    from_year = fy if fy is not None else (min(inferred) if inferred else None)
    to_year = ty if ty is not None else (max(inferred) if inferred else None)

    payload: dict[str, Any] = {
        "generated_at": (now or datetime.now(UTC)).isoformat(),
        "requested_period": {"from_year": from_year, "to_year": to_year},
        "applied_filters": {"countries": plan.countries, "operators": plan.operators, "keywords": keywords},
        "counts": counts,
        "totals": {
            "project_xmt_count": _whole(sum(p.xmt_count for p in projects)),
            "project_surf_km": round(sum(p.surf_km for p in projects), 1),
            "project_subsea_units": _whole(sum(p.subsea_unit_count for p in projects)),
            "contract_estimated_value_usd": _whole(sum(c.estimated_value_usd or 0 for c in contracts)),
            "xmt_total_from_xmt_table": _whole(sum(f.value for f in facts["xmt_data"])),
            "surf_total_km_from_surf_table": round(sum(f.value for f in facts["surf_data"]), 1),
            "subsea_total_units_from_subsea_table": _whole(sum(f.value for f in facts["subsea_unit_data"])),
            "awards_total_xmts": _whole(sum(a.xmts_awarded for a in awards)),
        },
        "top_countries": top_counts([*(p.country for p in projects), *(c.country for c in contracts),
                                     *(a.country for a in awards)]),
        "top_operators": top_counts([*(p.operator for p in projects), *(c.operator for c in contracts),
                                     *(a.operator for a in awards)]),
        "project_highlights": [
            {
                "project": p.development_project,
                "country": p.country,
                "operator": p.operator,
                "contractor": p.surf_contractor,
                "period": f"{p.first_year or '?'}-{p.last_year or '?'}",
                "xmt_count": _whole(p.xmt_count),
                "surf_km": round(p.surf_km, 1),
                "subsea_units": _whole(p.subsea_unit_count),
            }
            for p in projects[:HIGHLIGHT_LIMIT]
        ],
        "contract_highlights": [
            {
                "project": c.project_name,
                "country": c.country,
                "operator": c.operator,
                "supplier": c.supplier,
                "contract_type": c.contract_type,
                "phase": c.pipeline_phase,
                "date": c.date or c.announced_at,
                "estimated_value_usd": c.estimated_value_usd,
            }
            for c in contracts[:HIGHLIGHT_LIMIT]
        ],
        "forecast_highlights": forecast_highlights(forecasts),
        "xmt_by_year": aggregate_by_year(facts["xmt_data"], lambda f: f.year, lambda f: f.value),
        "surf_by_year": aggregate_by_year(facts["surf_data"], lambda f: f.year, lambda f: f.value),
        "subsea_units_by_year": aggregate_by_year(facts["subsea_unit_data"], lambda f: f.year, lambda f: f.value),
        "awards_by_year": aggregate_by_year(awards, lambda a: a.year, lambda a: a.xmts_awarded),
        "latest_market_reports": summarize_documents(docs),
        "warnings": warnings,
    }
    log.info("Context built for %s-%s: %s", from_year, to_year, counts)
    return DataSummary(from_year, to_year, counts, warnings, payload)
