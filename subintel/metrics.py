"""Canonical names for forecast metrics and units.

Market reports phrase the same series many ways ("Subsea Capex (USD Bn)",
"Total subsea spend", "capex_usd_billion").  Everything is slugged first and
then matched against pattern families, regional spend before the global ones
so a European figure is never booked as the world total.
"""
from __future__ import annotations

import re
from typing import Any

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

REGIONAL_SPEND_METRICS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(^|_)europe(_|$)"), "europe_subsea_spend_total_usd_bn"),
    (re.compile(r"(^|_)south_america(_|$)"), "south_america_subsea_spend_total_usd_bn"),
    (re.compile(r"(^|_)north_america(_|$)"), "north_america_subsea_spend_total_usd_bn"),
    (re.compile(r"(^|_)africa(_|$)"), "africa_subsea_spend_total_usd_bn"),
    (re.compile(r"(^|_)asia(_|$)|(^|_)australia(_|$)"), "asia_australia_subsea_spend_total_usd_bn"),
    (re.compile(r"(^|_)middle_east(_|$)|(^|_)russia(_|$)"), "middle_east_russia_subsea_spend_total_usd_bn"),
]

CANONICAL_METRICS = (
    "subsea_spend_usd_bn",
    "xmt_installations",
    "surf_km",
    "subsea_capex_growth_yoy_pct",
    "brent_avg_usd_per_bbl",
    "pipeline_km",
)

# Key-figure names that can stand in for a forecast when a report has no series.
KEY_FIGURE_FALLBACKS: list[tuple[tuple[str, ...], str, str]] = [
    (("total_subsea_capex_usd_bn", "subsea_spend_usd_bn", "subsea_capex_usd_bn"), "subsea_spend_usd_bn", "USD bn"),
    (("xmt_forecast_units", "xmt_installations"), "xmt_installations", "units"),
    (("surf_km_forecast", "surf_km"), "surf_km", "km"),
    (("yoy_growth_pct", "subsea_capex_growth_yoy_pct"), "subsea_capex_growth_yoy_pct", "%"),
    (("brent_avg_usd_per_bbl", "brent_price_usd"), "brent_avg_usd_per_bbl", "USD/bbl"),
]


def normalize_metric_key(metric: str) -> str:
    return _NON_ALNUM.sub("_", metric.lower()).strip("_")


def _has_any(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def normalize_forecast_metric(metric: str) -> str:
    normalized = normalize_metric_key(metric)
    if not normalized:
        return normalized

    if "subsea" in normalized and _has_any(normalized, "spend", "capex"):
        for pattern, regional in REGIONAL_SPEND_METRICS:
            if pattern.search(normalized):
                return regional

    if "subsea" in normalized and _has_any(normalized, "spend", "capex") and _has_any(normalized, "usd", "bn", "billion"):
        return "subsea_spend_usd_bn"
    if "xmt" in normalized and _has_any(normalized, "install", "unit", "count", "tree"):
        return "xmt_installations"
    if "surf" in normalized and _has_any(normalized, "km", "install", "line"):
        return "surf_km"
    if _has_any(normalized, "growth", "yoy") and _has_any(normalized, "subsea", "capex", "spend"):
        return "subsea_capex_growth_yoy_pct"
    if "brent" in normalized:
        return "brent_avg_usd_per_bbl"
    if "pipeline" in normalized and "km" in normalized:
        return "pipeline_km"
    return normalized


def normalize_forecast_unit(unit: Any) -> str:
    if not isinstance(unit, str):
        return ""
    cleaned = unit.strip()
    if not cleaned:
        return ""
    lowered = cleaned.lower()
    if "usd" in lowered and _has_any(lowered, "bn", "billion"):
        return "USD bn"
    if lowered == "%" or _has_any(lowered, "percent", "pct"):
        return "%"
    if "km" in lowered:
        return "km"
    if "unit" in lowered:
        return "units"
    if _has_any(lowered, "bbl", "barrel"):
        return "USD/bbl"
    return cleaned
