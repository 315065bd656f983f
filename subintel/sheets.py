"""Spreadsheet schema mapping for Rystad-style workbooks.

Every sheet is classified by its header row (``detect_sheet_type``) and each
data row is projected into one of four typed records.  Column lookup is fuzzy
(``fuzzy_col``) because header wording drifts between spreadsheet versions:
"XMTs installed (also future)", "XMTs (# Installed)" and plain "XMTs" all feed
the same field.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import Any, ClassVar

import openpyxl

log = logging.getLogger(__name__)

SHEET_TYPES = ("xmt", "surf", "subsea", "awards")

_SUBSEA_UNITS_RE = re.compile(r"subsea\s*units?\s*(\(|$)", re.IGNORECASE)
_XMTS_RE = re.compile(r"xmts?\s*(installed|\(#|$)", re.IGNORECASE)
_AWARDS_SHEET_RE = re.compile(r"awards?", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _s(value: object) -> str | None:
    """Cell value to stripped text, ``None`` when empty."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, datetime):
        value = value.date().isoformat()
    elif isinstance(value, date):
        value = value.isoformat()
    text = str(value).strip()
    return text or None


def _f(value: object) -> float | None:
    """Cell value to a finite float, ``None`` otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            n = float(text)
        except ValueError:
            return None
    return n if math.isfinite(n) else None


def _i(value: object) -> int | None:
    """Cell value rounded half-up to an int, ``None`` when not numeric."""
    n = _f(value)
    return math.floor(n + 0.5) if n is not None else None


# ---------------------------------------------------------------------------
# Column matching
# ---------------------------------------------------------------------------


def fuzzy_col(columns: list[str], *patterns: str) -> str | None:
    """Return the column whose lowercase name contains the first matching pattern.

    Patterns are tried in order.  Within a pattern an exact (case-insensitive)
    header wins over a longer header that merely contains it, so "Year" is not
    shadowed by "XMT Contract Award Year".
    """
    lowered = [(c, c.strip().lower()) for c in columns]
    for pattern in patterns:
        needle = pattern.lower()
        for col, low in lowered:
            if low == needle:
                return col
        for col, low in lowered:
            if needle in low:
                return col
    return None


def get_col(row: dict[str, Any], columns: list[str], *patterns: str) -> Any:
    col = fuzzy_col(columns, *patterns)
    return row.get(col) if col is not None else None


def detect_sheet_type(columns: list[str], sheet_name: str | None = None) -> str:
    """Classify a sheet by its headers: ``xmt``, ``surf``, ``subsea``, ``awards`` or ``none``."""
    lower = [c.lower() for c in columns if c]

    def has(fragment: str) -> bool:
        return any(fragment in c for c in lower)

    if has("xmts awarded"):
        return "awards"
    if has("subsea unit category") or any(_SUBSEA_UNITS_RE.search(c) for c in lower):
        return "subsea"
    if (
        has("surf line group") or has("surf line purpose")
        or has("km surf lines") or has("surf line design category")
    ):
        return "surf"
    if has("xmt purpose") or has("xmt state") or any(_XMTS_RE.search(c) for c in lower):
        return "xmt"
    if sheet_name and _AWARDS_SHEET_RE.search(sheet_name):
        return "awards"
    return "none"


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------


@dataclass
class SiteRow:
    """Fields every project-level sheet shares."""

    table: ClassVar[str] = ""
    conflict_columns: ClassVar[tuple[str, ...]] = ()
    # Columns the target table does not carry
    dropped: ClassVar[tuple[str, ...]] = ()

    development_project: str
    year: int | None = None
    continent: str | None = None
    country: str | None = None
    asset: str | None = None
    operator: str | None = None
    surf_contractor: str | None = None
    facility_category: str | None = None
    field_type: str | None = None
    water_depth_category: str | None = None
    distance_group: str | None = None

    def as_row(self, batch_id: str | None = None) -> dict[str, Any]:
        row = {k: v for k, v in asdict(self).items() if k not in self.dropped}
        row["import_batch_id"] = batch_id
        return row


@dataclass
class XmtRow(SiteRow):
    table: ClassVar[str] = "xmt_data"
    conflict_columns: ClassVar[tuple[str, ...]] = ("year", "development_project", "asset", "purpose", "state")

    contract_award_year: int | None = None
    contract_type: str | None = None
    purpose: str = ""
    state: str = ""
    xmt_count: int | None = None


@dataclass
class SurfRow(SiteRow):
    table: ClassVar[str] = "surf_data"
    conflict_columns: ClassVar[tuple[str, ...]] = ("year", "development_project", "asset", "design_category", "line_group")

    design_category: str = ""
    line_group: str = ""
    km_surf_lines: float | None = None


@dataclass
class SubseaRow(SiteRow):
    table: ClassVar[str] = "subsea_unit_data"
    conflict_columns: ClassVar[tuple[str, ...]] = ("year", "development_project", "asset", "unit_category")

    unit_category: str = ""
    unit_count: int | None = None


@dataclass
class AwardRow(SiteRow):
    table: ClassVar[str] = "upcoming_awards"
    conflict_columns: ClassVar[tuple[str, ...]] = ("year", "development_project", "asset")
    dropped: ClassVar[tuple[str, ...]] = ("continent", "distance_group")

    field_size_category: str | None = None
    xmts_awarded: int | None = None


def _common(row: dict[str, Any], columns: list[str]) -> dict[str, Any]:
    return {
        "year": _i(get_col(row, columns, "Year")),
        "continent": _s(get_col(row, columns, "Continent")),
        "country": _s(get_col(row, columns, "Country")),
        "development_project": _s(get_col(row, columns, "Development Project")),
        "asset": _s(get_col(row, columns, "Asset")),
        "operator": _s(get_col(row, columns, "Operator")),
        "surf_contractor": _s(get_col(row, columns, "SURF Installation Contractor")),
        "facility_category": _s(get_col(row, columns, "Facility Category")),
        "field_type": _s(get_col(row, columns, "Field Type Category")),
        "water_depth_category": _s(get_col(row, columns, "Water Depth Category")),
        "distance_group": _s(get_col(row, columns, "Distance To Tie In Group")),
    }


def map_xmt(row: dict[str, Any], columns: list[str]) -> XmtRow | None:
    base = _common(row, columns)
    if not base["development_project"]:
        return None
    return XmtRow(
        **base,
        contract_award_year=_i(get_col(row, columns, "XMT Contract Award Year")),
        contract_type=_s(get_col(row, columns, "XMT Contract Type")),
        purpose=_s(get_col(row, columns, "XMT Purpose")) or "",
        state=_s(get_col(row, columns, "XMT State")) or "",
        xmt_count=_i(get_col(row, columns, "XMTs installed", "XMTs (# Installed)", "XMTs")),
    )


def map_surf(row: dict[str, Any], columns: list[str]) -> SurfRow | None:
    base = _common(row, columns)
    if not base["development_project"]:
        return None
    return SurfRow(
        **base,
        design_category=_s(get_col(row, columns, "SURF Line Design Category")) or "",
        line_group=_s(get_col(row, columns, "SURF Line Group")) or "",
        km_surf_lines=_f(get_col(row, columns, "KM Surf Lines")),
    )


def map_subsea(row: dict[str, Any], columns: list[str]) -> SubseaRow | None:
    base = _common(row, columns)
    if not base["development_project"]:
        return None
    return SubseaRow(
        **base,
        unit_category=_s(get_col(row, columns, "Subsea Unit Category")) or "",
        unit_count=_i(get_col(row, columns, "Subsea units (# Installed)", "Subsea Units", "Subsea units")),
    )


def map_award(row: dict[str, Any], columns: list[str]) -> AwardRow | None:
    base = _common(row, columns)
    if not base["development_project"]:
        return None
    return AwardRow(
        **base,
        field_size_category=_s(get_col(row, columns, "Field Size Category")),
        xmts_awarded=_i(get_col(row, columns, "XMTs Awarded")),
    )


MAPPERS = {
    "xmt": map_xmt,
    "surf": map_surf,
    "subsea": map_subsea,
    "awards": map_award,
}


# ---------------------------------------------------------------------------
# Workbook reading
# ---------------------------------------------------------------------------


@dataclass
class Sheet:
    name: str
    columns: list[str]
    rows: list[dict[str, Any]]


@dataclass
class ParsedWorkbook:
    xmt: list[XmtRow] = field(default_factory=list)
    surf: list[SurfRow] = field(default_factory=list)
    subsea: list[SubseaRow] = field(default_factory=list)
    awards: list[AwardRow] = field(default_factory=list)
    skipped_sheets: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.xmt) + len(self.surf) + len(self.subsea) + len(self.awards)


def read_workbook(data: bytes) -> list[Sheet]:
    """Read every worksheet into header-keyed row dicts (first row = headers)."""
    wb = openpyxl.load_workbook(BytesIO(data), read_only=True, data_only=True)
    sheets: list[Sheet] = []
    try:
        for ws in wb.worksheets:
            rows_iter = ws.iter_rows(values_only=True)
            header = next(rows_iter, None)
            if not header:
                sheets.append(Sheet(ws.title, [], []))
                continue
            headers = [_s(h) for h in header]
            columns = [h for h in headers if h]
            rows: list[dict[str, Any]] = []
            for values in rows_iter:
                if not values or all(v is None for v in values):
                    continue
                rows.append({
                    h: values[idx] if idx < len(values) else None
                    for idx, h in enumerate(headers) if h
                })
            sheets.append(Sheet(ws.title, columns, rows))
    finally:
        wb.close()
    return sheets


def parse_sheets(sheets: list[Sheet]) -> ParsedWorkbook:
    parsed = ParsedWorkbook()
    for sheet in sheets:
        kind = detect_sheet_type(sheet.columns, sheet.name)
        if kind == "none":
            log.info("Skipping unrecognised sheet %r", sheet.name)
            parsed.skipped_sheets.append(sheet.name)
            continue
        mapper = MAPPERS[kind]
        mapped = [m for m in (mapper(r, sheet.columns) for r in sheet.rows) if m is not None]
        getattr(parsed, kind).extend(mapped)
        log.info("Sheet %r -> %s (%d rows, %d kept)", sheet.name, kind, len(sheet.rows), len(mapped))
    return parsed


def parse_workbook(data: bytes) -> ParsedWorkbook:
    return parse_sheets(read_workbook(data))
