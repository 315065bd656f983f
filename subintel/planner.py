"""Turn a chat conversation into an :class:`AgentPlan`.

The model is asked for a strict JSON plan; whatever it leaves out (or gets
wrong) is filled from heuristics over the latest user message, and if the
call fails the plan is built from heuristics alone.
"""
from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any

from subintel.llm import LLMCallError, LLMClient
from subintel.schemas import TABLE_NAMES, AgentMessage, AgentPlan
from subintel.utils import as_string, as_year, parse_json_object, parse_string_array, uniq_strings

log = logging.getLogger(__name__)

STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "into", "your", "you",
    "need", "about", "what", "which", "when", "where", "have", "will", "want",
    "please", "could", "would",
    "report", "rapport", "prosjekt", "project", "periode", "period", "show",
    "give", "lag", "lage", "hele", "all", "over", "year", "ar",
    "forrige", "neste", "kan", "hva", "hvordan", "som", "det", "jeg", "oss",
    "til", "fra", "på", "med", "og", "en", "et", "av",
})

# "for" is left out: it is just as common in English requests
_NORWEGIAN_RE = re.compile(r"\b(hva|hvordan|lag|rapport|prosjekt|periode|år|til|fra|oversikt|analyse|vis)\b")
_REPORT_RE = re.compile(r"\b(rapport|report|pdf|analysis report|årsrapport|annual report)\b")
_ALL_SCOPE_RE = re.compile(r"\b(alle|all|global|hele)\b")
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
_TOKEN_STRIP_RE = re.compile(r"[^a-z0-9æøå\s-]")
_HAS_LETTER_RE = re.compile(r"[a-zæøå]")

REPORT_SCOPES = ("project_period", "annual_all", "custom", "none")

PLANNER_PROMPT = """\
You are a strict JSON planner for a subsea intelligence AI agent.
Return one JSON object only.
Schema:
{
  "intent": "question" | "report",
  "report_scope": "project_period" | "annual_all" | "custom" | "none",
  "language": "no" | "en",
  "project_keywords": ["..."],
  "countries": ["..."],
  "operators": ["..."],
  "from_year": 2024 | null,
  "to_year": 2026 | null,
  "include_historical": true | false,
  "include_future": true | false,
  "include_tables": ["projects","contracts","forecasts","upcoming_awards","xmt_data","surf_data","subsea_unit_data","documents"],
  "focus_points": ["..."]
}
Rules:
- If user asks for a report, set intent="report".
- If user asks for annual/all-project report, use report_scope="annual_all".
- If user asks for one project in a period, use report_scope="project_period".
- Always include all relevant tables.
- Do not include commentary, markdown, or prose outside JSON.

Conversation:
{history}"""


# ---------------------------------------------------------------------------
# Heuristics over the latest user message
# ---------------------------------------------------------------------------


def is_norwegian(text: str) -> bool:
    return bool(_NORWEGIAN_RE.search(text.strip().lower()))


def extract_year_hints(text: str) -> tuple[int | None, int | None]:
    years = [int(m) for m in _YEAR_RE.findall(text)]
    if not years:
        return None, None
    return min(years), max(years)


def extract_keyword_hints(text: str) -> list[str]:
    """Lowercase content words of 3+ characters, stopwords and pure numbers removed."""
    cleaned = _TOKEN_STRIP_RE.sub(" ", text.lower())
    tokens = [
        token for token in cleaned.split()
        if len(token) >= 3 and token not in STOPWORDS and _HAS_LETTER_RE.search(token)
    ]
    return uniq_strings(tokens)


def wants_report(text: str) -> bool:
    return bool(_REPORT_RE.search(text.strip().lower()))


# ---------------------------------------------------------------------------
# Plan coercion
# ---------------------------------------------------------------------------


def _pick(raw: dict[str, Any], snake: str, camel: str) -> Any:
    value = raw.get(snake)
    return value if value is not None else raw.get(camel)


def _include_tables(value: Any) -> list[str]:
    tables = [t.lower() for t in parse_string_array(value) if t.lower() in TABLE_NAMES]
    return tables or list(TABLE_NAMES)


def coerce_plan(raw: dict[str, Any], latest_user_text: str, *, now_year: int | None = None) -> AgentPlan:
    """Validate a model-proposed plan, backfilling from the user's own words."""
    now_year = now_year or datetime.now(UTC).year
    lowered = latest_user_text.strip().lower()
    hint_from, hint_to = extract_year_hints(latest_user_text)
    keywords = extract_keyword_hints(latest_user_text)

    report_in_text = wants_report(latest_user_text)
    intent = "report" if as_string(raw.get("intent")).lower() == "report" or report_in_text else "question"

    scope = as_string(_pick(raw, "report_scope", "reportScope")).lower()
    if scope not in REPORT_SCOPES:
        if intent == "report":
            scope = "annual_all" if report_in_text and _ALL_SCOPE_RE.search(lowered) else "custom"
        else:
            scope = "none"

    language = as_string(raw.get("language")).lower()
    if language not in ("no", "en"):
        language = "no" if is_norwegian(latest_user_text) else "en"

    from_year = as_year(_pick(raw, "from_year", "fromYear")) or hint_from
    to_year = as_year(_pick(raw, "to_year", "toYear")) or hint_to
    if from_year is not None and not 1900 <= from_year <= now_year + 15:
        from_year = None
    if to_year is not None and not 1900 <= to_year <= now_year + 15:
        to_year = None
    if from_year is not None and to_year is not None and from_year > to_year:
        from_year, to_year = to_year, from_year

    project_keywords = uniq_strings([
        *parse_string_array(_pick(raw, "project_keywords", "projectKeywords")),
        *[k for k in keywords if len(k) > 3][:8],
    ])[:12]
    focus_points = uniq_strings([
        *parse_string_array(_pick(raw, "focus_points", "focusPoints")),
        *keywords[:12],
    ])[:14]

    return AgentPlan(
        intent=intent,
        report_scope=scope,
        language=language,
        project_keywords=project_keywords,
        countries=parse_string_array(raw.get("countries")),
        operators=parse_string_array(raw.get("operators")),
        from_year=from_year,
        to_year=to_year,
        include_historical=_pick(raw, "include_historical", "includeHistorical") is not False,
        include_future=_pick(raw, "include_future", "includeFuture") is not False,
        include_tables=_include_tables(_pick(raw, "include_tables", "includeTables")),
        focus_points=focus_points,
    )


def fallback_plan(latest_user_text: str) -> AgentPlan:
    return coerce_plan({}, latest_user_text)


def latest_user_message(messages: list[AgentMessage]) -> AgentMessage | None:
    return next((m for m in reversed(messages) if m.role == "user" and m.content), None)


def format_history(messages: list[AgentMessage], limit: int = 8) -> str:
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages[-limit:])


async def build_plan(messages: list[AgentMessage], llm: LLMClient | None) -> AgentPlan:
    latest = latest_user_message(messages)
    if latest is None:
        return fallback_plan("")
    if llm is None:
        return fallback_plan(latest.content)

    prompt = PLANNER_PROMPT.replace("{history}", format_history(messages))
    try:
        content = await llm.complete(prompt, temperature=0, max_tokens=1200)
    except LLMCallError as exc:
        log.warning("Planner call failed, using heuristic plan: %s", exc)
        return fallback_plan(latest.content)
    return coerce_plan(parse_json_object(content), latest.content)
