"""Tool-calling data agent.

Instead of the plan, context and write pipeline in :mod:`subintel.agent`, the
model gets a ``query_table`` tool over the market tables and runs its own
filtered queries (up to ``MAX_TOOL_ROUNDS`` rounds) before answering.  Reports
it writes as markdown are filed as PDFs through the same storage path as the
pipeline agent.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from subintel.agent import (
    no_prompt_response,
    run_agent_conversation,
    sanitize_messages,
    store_report,
)
from subintel.context import DataSummary
from subintel.generator import to_plain_chat_text
from subintel.llm import LLMCallError, LLMClient, ToolCall
from subintel.models import Base
from subintel.planner import fallback_plan, latest_user_message, wants_report
from subintel.schemas import AgentMessage, AgentResponse, DataCoverage
from subintel.services import to_jsonable
from subintel.storage import ObjectStorage
from subintel.store import FILTER_OPS, RowStore, StoreError
from subintel.utils import as_number, as_record, as_string

log = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 6
MAX_ROWS = 200
DEFAULT_ROWS = 100
MAX_FOLLOW_UPS = 4
REPORT_MIN_CHARS = 500
SUMMARY_MAX_LINES = 30

QUERY_TABLES = (
    "xmt_data", "surf_data", "subsea_unit_data", "projects",
    "forecasts", "contracts", "upcoming_awards", "documents",
)
_HIDDEN_COLUMNS = {"id", "import_batch_id"}

_FOLLOW_UP_RE = re.compile(r"^(vil du|would you|skal jeg|want me|ønsker du|trenger du)\b", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[-•*]\s*")
_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)

FINAL_ANSWER_PROMPT = "Provide your final comprehensive answer now based on all collected data."

QUERY_TOOL = {
    "name": "query_table",
    "description": f"Query a database table with filters, sorting and column selection. Returns up to {MAX_ROWS} rows.",
    "parameters": {
        "type": "object",
        "properties": {
            "table": {"type": "string", "description": f"Table name: {', '.join(QUERY_TABLES)}"},
            "select": {
                "type": "string",
                "description": 'Comma-separated columns to return. Default: all columns. '
                               'Example: "development_project,country,operator,xmt_count"',
            },
            "filters": {
                "type": "object",
                "description": "Keys are column names, values are {operator: value} objects. "
                               f"Operators: {', '.join(FILTER_OPS)}. Use * as wildcard in like/ilike. "
                               'Example: {"year": {"gte": 2026}, "country": {"ilike": "*norway*"}}',
            },
            "order": {
                "type": "string",
                "description": 'Column to sort by, prefixed with - for descending. Example: "-xmt_count"',
            },
            "limit": {"type": "integer", "description": f"Max rows (default {DEFAULT_ROWS}, max {MAX_ROWS})"},
            "purpose": {"type": "string", "description": "Brief note on why this query is run."},
        },
        "required": ["table"],
    },
}

SYSTEM_PROMPT = """\
You are the Subintel analyst: an expert in subsea market intelligence with \
direct read access to the database.

## Tables
{tables}

## Tool: query_table
Query one table per call with filters, ordering, column selection and a row \
limit (max {max_rows}). Aggregate by fetching the rows and computing totals \
yourself. You can run up to {max_rounds} rounds of queries.

## Strategy
1. Always query the data before answering. Never guess numbers.
2. Start broad, then drill down. Cross-check tables, e.g. xmt_data against projects.
3. For "top X" questions use order and limit. For year ranges use gte/lte on year.

## Answer rules
- Answer in the same language as the user (Norwegian or English).
- Be specific: project names, numbers, countries, operators.
- When asked for a report or PDF, write a full markdown report with a # title, \
## sections and markdown tables.
- Never mention table names, queries or tool limits in the answer.
- End with 2-3 follow-up questions, each on its own line starting with \
"Vil du" or "Ønsker du" in Norwegian, "Would you" or "Want me" in English.
"""


def describe_tables(tables: tuple[str, ...] = QUERY_TABLES) -> str:
    lines = []
    for name in tables:
        tbl = Base.metadata.tables[name]
        columns = ", ".join(
            f"{col.name} ({type(col.type).__name__.lower()})" for col in tbl.columns
            if col.name not in _HIDDEN_COLUMNS
        )
        lines.append(f"- {name}: {columns}")
    return "\n".join(lines)


def build_system_prompt() -> str:
    return SYSTEM_PROMPT.format(tables=describe_tables(), max_rows=MAX_ROWS, max_rounds=MAX_TOOL_ROUNDS)


# ---------------------------------------------------------------------------
# Tool execution
# ---------------------------------------------------------------------------


def clamp_limit(value: Any) -> int:
    limit = as_number(value)
    if limit is None or limit < 1:
        return DEFAULT_ROWS
    return min(int(limit), MAX_ROWS)


def query_table(store: RowStore, args: dict[str, Any]) -> dict[str, Any]:
    """Run one ``query_table`` call; failures come back in ``error`` for the model to read."""
    table = as_string(args.get("table"))
    if table not in QUERY_TABLES:
        return {"rowCount": 0, "error": f'Table "{table}" not found. Allowed: {", ".join(QUERY_TABLES)}', "rows": []}

    columns = [c.strip() for c in as_string(args.get("select")).split(",") if c.strip() and c.strip() != "*"]
    order = as_string(args.get("order"))
    try:
        rows = store.select(
            table, columns,
            filters=as_record(args.get("filters")) or None,
            order_by=order.lstrip("-") or None,
            descending=order.startswith("-"),
            limit=clamp_limit(args.get("limit")),
        )
    except StoreError as exc:
        return {"rowCount": 0, "error": exc.message, "rows": []}
    return {"rowCount": len(rows), "error": None, "rows": [to_jsonable(r) for r in rows]}


def run_tool_call(store: RowStore, call: ToolCall) -> dict[str, Any]:
    if call.name != QUERY_TOOL["name"]:
        return {"rowCount": 0, "error": f"Unknown tool: {call.name}", "rows": []}
    log.debug("query_table %s", call.arguments)
    return query_table(store, call.arguments)


# ---------------------------------------------------------------------------
# Answer shaping
# ---------------------------------------------------------------------------


def extract_follow_ups(answer: str) -> list[str]:
    """Lines that offer a next step ("Would you...", "Vil du..."), bullets removed."""
    follow_ups = []
    for line in answer.splitlines():
        text = _BULLET_RE.sub("", line.strip())
        if _FOLLOW_UP_RE.match(text):
            follow_ups.append(text)
    return follow_ups[:MAX_FOLLOW_UPS]


def looks_like_report(markdown: str) -> bool:
    return "# " in markdown and len(markdown) > REPORT_MIN_CHARS


def report_chat_summary(markdown: str, language: str) -> str:
    """Opening section of a filed report for the chat reply."""
    lines: list[str] = []
    in_section = False
    for line in markdown.splitlines():
        if line.startswith("# ") and in_section:
            break
        if line.startswith(("# ", "## ")):
            in_section = True
        lines.append(line)
        if len(lines) > SUMMARY_MAX_LINES:
            break
    note = "Full rapport tilgjengelig som PDF." if language == "no" else "Full report available as PDF."
    return "\n".join(lines) + "\n\n" + note


# ---------------------------------------------------------------------------
# Conversation turn
# ---------------------------------------------------------------------------


async def _tool_loop(history: list[AgentMessage], store: RowStore, llm: LLMClient) -> tuple[str, int]:
    system = build_system_prompt()
    chat: list[dict[str, Any]] = [{"role": m.role, "content": m.content} for m in history]
    queries = 0
    for _ in range(MAX_TOOL_ROUNDS):
        turn = await llm.complete_with_tools(chat, [QUERY_TOOL], system=system, temperature=0.1, max_tokens=12000)
        if not turn.tool_calls:
            return turn.text, queries
        chat.append({"role": "assistant", "content": turn.text, "tool_calls": turn.tool_calls})
        for call in turn.tool_calls:
            result = await asyncio.to_thread(run_tool_call, store, call)
            queries += 1
            chat.append({"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, default=str)})

    log.info("Tool rounds exhausted after %d queries, asking for a final answer", queries)
    chat.append({"role": "user", "content": FINAL_ANSWER_PROMPT})
    turn = await llm.complete_with_tools(
        chat, [QUERY_TOOL], system=system, allow_tools=False, temperature=0.1, max_tokens=12000,
    )
    return turn.text, queries


async def run_sql_agent(
    messages: list[AgentMessage | dict[str, Any]],
    user_id: str,
    user_email: str,
    *,
    store: RowStore,
    storage: ObjectStorage,
    llm: LLMClient,
) -> AgentResponse:
    """Answer the latest user message with model-driven table queries.

    A failing model call hands the turn to the pipeline agent without a model,
    so the user still gets a templated answer.
    """
    history = sanitize_messages(messages)
    latest = latest_user_message(history)
    if latest is None:
        return no_prompt_response()

    try:
        raw_answer, queries = await _tool_loop(history, store, llm)
    except LLMCallError as exc:
        log.warning("Tool agent failed, using the templated pipeline: %s", exc)
        return await run_agent_conversation(
            history, user_id, user_email, store=store, storage=storage, llm=None,
        )

    plan = fallback_plan(latest.content)
    language = plan.language
    if not raw_answer:
        raw_answer = "Kunne ikke generere svar." if language == "no" else "Could not generate an answer."
    data = DataSummary(from_year=plan.from_year, to_year=plan.to_year, counts={"sql_queries": queries})
    warnings: list[str] = []

    answer = raw_answer
    report = None
    if wants_report(latest.content) and looks_like_report(raw_answer):
        match = _TITLE_RE.search(raw_answer)
        title = match.group(1).strip() if match else (
            "Subintel AI Rapport" if language == "no" else "Subintel AI Report"
        )
        try:
            report, warning = await asyncio.to_thread(
                store_report, store, storage,
                user_id=user_id, user_email=user_email, request_text=latest.content,
                title=title, report_markdown=raw_answer, report_summary=None,
                plan=plan, data=data,
            )
        except Exception as exc:
            log.exception("Report generation failed")
            warnings.append(f"Report generation failed: {exc}")
        else:
            if warning:
                warnings.append(warning)
            answer = report_chat_summary(raw_answer, language)

    return AgentResponse(
        answer=to_plain_chat_text(answer),
        report=report,
        follow_ups=extract_follow_ups(raw_answer),
        plan=plan,
        data_coverage=DataCoverage(counts=data.counts, warnings=warnings),
    )
