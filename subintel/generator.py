"""Answer and report writing on top of the built context."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from subintel.context import DataSummary
from subintel.llm import LLMCallError, LLMClient
from subintel.schemas import AgentMessage, AgentPlan
from subintel.utils import as_number, as_record, as_string, parse_json_object, parse_string_array

log = logging.getLogger(__name__)

WRITER_PROMPT = """\
You are Subintel's AI analyst for subsea projects and contracts.
Use ONLY the provided context JSON. Do not fabricate values.
Return exactly one JSON object with this schema:
{
  "answer_text": "string",
  "report_title": "string or null",
  "report_markdown": "string or null",
  "report_summary": "string or null",
  "follow_up_suggestions": ["string", "string"]
}
Rules:
- If context lacks requested data, explicitly state the gap.
- Use concrete dates/years in statements.
- answer_text must be plain text only. No markdown syntax such as **, #, _, backticks, or tables.
- If plan.intent=report, report_markdown must be a complete structured report with sections and bullet points.
- If plan.intent=question, keep report_markdown null unless user explicitly asks for PDF/report.
- Language must match plan.language (no = Norwegian Bokmal, en = English).
"""

MAX_FOLLOW_UPS = 4

# Applied in order; the bold/italic passes must run after code and link handling
_PLAIN_TEXT_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"```[a-z0-9_-]*\n?", re.IGNORECASE), ""),
    (re.compile(r"```"), ""),
    (re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE), ""),
    (re.compile(r"^>\s?", re.MULTILINE), ""),
    (re.compile(r"\[([^\]]+)\]\(([^)]+)\)"), r"\1 (\2)"),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"\*\*(.*?)\*\*"), r"\1"),
    (re.compile(r"__(.*?)__"), r"\1"),
    (re.compile(r"\*(.*?)\*"), r"\1"),
    (re.compile(r"_(.*?)_"), r"\1"),
    (re.compile(r"^\s*[-*]\s+", re.MULTILINE), "- "),
    (re.compile(r"\n{3,}"), "\n\n"),
]


def to_plain_chat_text(text: str) -> str:
    """Strip markdown syntax so the answer reads cleanly in a chat bubble."""
    output = text.replace("\r\n", "\n")
    for pattern, replacement in _PLAIN_TEXT_RULES:
        output = pattern.sub(replacement, output)
    return output.strip()


@dataclass
class AgentOutput:
    answer: str
    report_title: str | None = None
    report_markdown: str | None = None
    report_summary: str | None = None
    follow_ups: list[str] = field(default_factory=list)


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key):
            return raw[key]
    return None


def coerce_agent_output(raw: dict[str, Any], fallback_answer: str) -> AgentOutput:
    answer = to_plain_chat_text(
        as_string(_first(raw, "answer_text", "answer_markdown", "answerMarkdown"), fallback_answer)
    )
    follow_ups = [
        text for text in (
            to_plain_chat_text(v)
            for v in parse_string_array(_first(raw, "follow_up_suggestions", "followUps"))
        ) if text
    ][:MAX_FOLLOW_UPS]
    return AgentOutput(
        answer=answer or to_plain_chat_text(fallback_answer),
        report_title=as_string(_first(raw, "report_title", "reportTitle")) or None,
        report_markdown=as_string(_first(raw, "report_markdown", "reportMarkdown")) or None,
        report_summary=as_string(_first(raw, "report_summary", "reportSummary")) or None,
        follow_ups=follow_ups,
    )


# ---------------------------------------------------------------------------
# Deterministic fallbacks
# ---------------------------------------------------------------------------


def build_fallback_answer(plan: AgentPlan, data: DataSummary) -> str:
    counts = data.counts
    if plan.language == "no":
        lo = data.from_year if data.from_year is not None else "ukjent"
        hi = data.to_year if data.to_year is not None else "ukjent"
        return "\n\n".join([
            f"Jeg hentet data for perioden {lo}-{hi}.",
            f"Prosjekter: {counts.get('projects', 0)}, kontrakter: {counts.get('contracts', 0)}, "
            f"forecasts: {counts.get('forecasts', 0)}.",
            f"Merk: {' | '.join(data.warnings)}" if data.warnings
            else "Datauttrekket fullførte uten tabellfeil.",
        ])
    lo = data.from_year if data.from_year is not None else "unknown"
    hi = data.to_year if data.to_year is not None else "unknown"
    return "\n\n".join([
        f"I pulled data for period {lo}-{hi}.",
        f"Projects: {counts.get('projects', 0)}, contracts: {counts.get('contracts', 0)}, "
        f"forecasts: {counts.get('forecasts', 0)}.",
        f"Note: {' | '.join(data.warnings)}" if data.warnings
        else "The dataset query completed without table errors.",
    ])


def _fmt_number(value: float | None) -> str:
    if value is None:
        return "0"
    return str(int(value)) if float(value).is_integer() else str(value)


def build_fallback_report_markdown(
    title: str, user_request: str, answer: str, data: DataSummary, plan: AgentPlan,
) -> str:
    totals = as_record(data.context_payload.get("totals"))
    xmt_total = _fmt_number(as_number(totals.get("project_xmt_count")))
    surf_total = _fmt_number(as_number(totals.get("project_surf_km")))
    counts = data.counts

    if plan.language == "no":
        unknown, none_text = "ukjent", "ingen"
        warnings = "\n".join(f"- {w}" for w in data.warnings) or \
            "- Ingen tekniske datatilgangsfeil registrert i denne kjøringen."
        lines = [
            f"# {title}", "",
            "## Executive Summary", answer, "",
            "## Scope",
            f"- Forespørsel: {user_request}",
            f"- Periode: {data.from_year or unknown} til {data.to_year or unknown}",
            f"- Filtre: land={', '.join(plan.countries) or none_text}, "
            f"operatorer={', '.join(plan.operators) or none_text}", "",
            "## KPI Snapshot",
            f"- Prosjekter: {counts.get('projects', 0)}",
            f"- Kontrakter: {counts.get('contracts', 0)}",
            f"- Forecast-punkter: {counts.get('forecasts', 0)}",
            f"- XMT total: {xmt_total}",
            f"- SURF km total: {surf_total}", "",
            "## Datakvalitet", warnings, "",
            "## Anbefalte neste steg",
            "- Prioriter topp-prosjekter med høyest XMT/SURF i perioden.",
            "- Kryssjekk forecast-endringer mot nye kontrakter i samme region.",
            "- Kjør en ny prosjektspesifikk rapport for de 3 viktigste operatørene.",
        ]
        return "\n".join(lines)

    warnings = "\n".join(f"- {w}" for w in data.warnings) or "- No technical data access warnings for this run."
    lines = [
        f"# {title}", "",
        "## Executive Summary", answer, "",
        "## Scope",
        f"- Request: {user_request}",
        f"- Period: {data.from_year or 'unknown'} to {data.to_year or 'unknown'}",
        f"- Filters: countries={', '.join(plan.countries) or 'none'}, "
        f"operators={', '.join(plan.operators) or 'none'}", "",
        "## KPI Snapshot",
        f"- Projects: {counts.get('projects', 0)}",
        f"- Contracts: {counts.get('contracts', 0)}",
        f"- Forecast records: {counts.get('forecasts', 0)}",
        f"- XMT total: {xmt_total}",
        f"- SURF km total: {surf_total}", "",
        "## Data Quality", warnings, "",
        "## Recommended Actions",
        "- Prioritize highest XMT/SURF projects in this period.",
        "- Compare forecast changes against new contracts in the same regions.",
        "- Run a follow-up operator-specific report for the top 3 operators.",
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Model call
# ---------------------------------------------------------------------------


def build_writer_prompt(
    messages: list[AgentMessage], plan: AgentPlan, user_request: str, data: DataSummary,
) -> str:
    recent = [m.model_dump() for m in messages[-8:]]
    return "\n".join([
        WRITER_PROMPT,
        f"PLAN:\n{json.dumps(plan.model_dump(by_alias=True), indent=2, ensure_ascii=False)}",
        f"REQUEST:\n{user_request}",
        f"RECENT_CHAT:\n{json.dumps(recent, indent=2, ensure_ascii=False)}",
        f"CONTEXT_JSON:\n{json.dumps(data.context_payload, indent=2, ensure_ascii=False, default=str)}",
    ])


async def generate(
    messages: list[AgentMessage],
    plan: AgentPlan,
    user_request: str,
    data: DataSummary,
    llm: LLMClient | None,
) -> AgentOutput:
    fallback = build_fallback_answer(plan, data)
    if llm is None:
        return AgentOutput(answer=fallback)
    try:
        content = await llm.complete(
            build_writer_prompt(messages, plan, user_request, data), temperature=0.2, max_tokens=6400,
        )
    except LLMCallError as exc:
        log.warning("Writer call failed, using fallback answer: %s", exc)
        return AgentOutput(answer=fallback)
    return coerce_agent_output(parse_json_object(content), fallback)
