"""Shared parsing and coercion helpers used across subintel modules."""
from __future__ import annotations

import json
import math
import re
from datetime import date, datetime
from typing import Any

_MISSING = object()

_FENCE_START = re.compile(r"^```json\s*", re.IGNORECASE)
_FENCE_ANY_START = re.compile(r"^```\s*")
_FENCE_END = re.compile(r"\s*```$")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


# ---------------------------------------------------------------------------
# Model output recovery
# ---------------------------------------------------------------------------


def strip_code_fences(content: str) -> str:
    cleaned = _FENCE_START.sub("", content.strip())
    cleaned = _FENCE_ANY_START.sub("", cleaned)
    return _FENCE_END.sub("", cleaned).strip()


def extract_first_json_object(content: str) -> str | None:
    """Return the first balanced ``{...}`` block in *content*.

    Braces inside double-quoted strings are ignored, backslash escapes included.
    """
    start = content.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaping = False
    for index in range(start, len(content)):
        char = content[index]
        if in_string:
            if escaping:
                escaping = False
            elif char == "\\":
                escaping = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return content[start:index + 1]
    return None


def parse_json_object(content: str | None) -> dict[str, Any]:
    """Recover a JSON object from free-form model text; ``{}`` when there is none."""
    cleaned = strip_code_fences(content or "")
    candidate = cleaned if cleaned.startswith("{") else extract_first_json_object(cleaned)
    if not candidate:
        return {}
    parsed = json_parse(candidate, None)
    return parsed if isinstance(parsed, dict) else {}


def parse_json_array(content: str | None) -> list[Any]:
    """Recover a JSON array (first ``[`` to last ``]``) from model text."""
    cleaned = strip_code_fences(content or "")
    match = re.search(r"\[[\s\S]*\]", cleaned)
    if not match:
        return []
    parsed = json_parse(match.group(0), None)
    return parsed if isinstance(parsed, list) else []


# ---------------------------------------------------------------------------
# Loose value coercion
# ---------------------------------------------------------------------------


def as_record(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_string(value: Any, fallback: str = "") -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)) and math.isfinite(value):
        return str(value)
    return fallback


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = value.replace(",", "").strip()
        if not cleaned:
            return None
        try:
            parsed = float(cleaned)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def as_year(value: Any) -> int | None:
    """Round to an int year, ``None`` outside 1900..2200."""
    parsed = as_number(value)
    if parsed is None:
        return None
    year = int(round(parsed))
    return year if 1900 <= year <= 2200 else None


def as_iso_date(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return None


def year_from_date(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10]).year
    except ValueError:
        return None


def uniq_strings(values: list[str]) -> list[str]:
    """Trimmed, de-duplicated (case-insensitive) strings in first-seen order."""
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        key = value.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        output.append(value.strip())
    return output


def parse_string_array(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return uniq_strings([s for s in (as_string(v) for v in value) if s])
