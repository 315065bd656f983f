"""Agent conversation turn: plan, gather context, write, and optionally file a PDF report."""
from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
import uuid
from datetime import UTC, date, datetime
from typing import Any

from subintel.config import get_settings
from subintel.context import DataSummary, build_context
from subintel.generator import build_fallback_report_markdown, generate
from subintel.llm import LLMClient
from subintel.planner import build_plan, fallback_plan, latest_user_message
from subintel.report_pdf import build_report_pdf_buffer
from subintel.schemas import (
    AgentMessage,
    AgentPlan,
    AgentReportResult,
    AgentResponse,
    AiReportOut,
    DataCoverage,
)
from subintel.storage import ObjectStorage, StorageError
from subintel.store import RowStore, StoreError

log = logging.getLogger(__name__)

MAX_MESSAGES = 14
REPORTS_BUCKET = "imports"
DEFAULT_SLUG = "subintel-report"

_SLUG_STRIP_RE = re.compile(r"[^a-zA-Z0-9\s-]")

_REPORT_COLUMNS = (
    "id", "title", "summary", "request_text", "file_name", "storage_bucket",
    "storage_path", "period_start", "period_end", "created_at",
)


def to_slug(text: str) -> str:
    cleaned = _SLUG_STRIP_RE.sub("", unicodedata.normalize("NFKD", text)).strip()
    cleaned = re.sub(r"-+", "-", re.sub(r"\s+", "-", cleaned)).lower()
    return cleaned[:64] or DEFAULT_SLUG


def sanitize_messages(messages: list[AgentMessage | dict[str, Any]]) -> list[AgentMessage]:
    """Last ``MAX_MESSAGES`` non-empty turns; unknown roles are read as ``user``."""
    cleaned = [m if isinstance(m, AgentMessage) else AgentMessage.model_validate(m) for m in messages]
    return [m for m in cleaned if m.content][-MAX_MESSAGES:]


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


# ---------------------------------------------------------------------------
# Report storage
# ---------------------------------------------------------------------------


def store_report(
    store: RowStore,
    storage: ObjectStorage,
    *,
    user_id: str,
    user_email: str,
    request_text: str,
    title: str,
    report_markdown: str,
    report_summary: str | None,
    plan: AgentPlan,
    data: DataSummary,
    now: datetime | None = None,
) -> tuple[AgentReportResult, str | None]:
    """Render, upload and record a report.

    Upload or signing failures raise :class:`StorageError`.  A failed metadata
    insert only produces a warning: the PDF is already stored and still
    returned.
    """
    created_at = now or datetime.now(UTC)
    day = created_at.date().isoformat()
    file_name = f"{to_slug(title)}-{day}.pdf"
    storage_path = f"ai-reports/{day}/{uuid.uuid4()}-{file_name}"
    subtitle = "Skreddersydd prosjektanalyse" if plan.language == "no" else "Tailored project intelligence report"

    pdf = build_report_pdf_buffer(title, subtitle, request_text, report_markdown, day)
    storage.upload(REPORTS_BUCKET, storage_path, pdf, content_type="application/pdf", upsert=False)
    download_url = storage.create_signed_url(
        REPORTS_BUCKET, storage_path, get_settings().report_url_ttl_seconds,
    )

    warning = None
    report_id = None
    try:
        row = store.insert("ai_reports", {
            "created_by": user_id,
            "created_by_email": user_email,
            "request_text": request_text,
            "title": title,
            "summary": report_summary,
            "report_markdown": report_markdown,
            "report_json": {
                "plan": plan.model_dump(by_alias=True),
                "coverage": {"fromYear": data.from_year, "toYear": data.to_year, "counts": data.counts},
            },
            "period_start": date(data.from_year, 1, 1) if data.from_year else None,
            "period_end": date(data.to_year, 12, 31) if data.to_year else None,
            "filters": {
                "countries": plan.countries,
                "operators": plan.operators,
                "keywords": plan.project_keywords,
            },
            "storage_bucket": REPORTS_BUCKET,
            "storage_path": storage_path,
            "file_name": file_name,
        })
        report_id = row["id"]
    except StoreError as exc:
        warning = f"Could not persist ai_reports metadata: {exc.message}"
        log.warning(warning)

    log.info("Stored report %s at %s/%s", title, REPORTS_BUCKET, storage_path)
    report = AgentReportResult(
        id=report_id,
        title=title,
        file_name=file_name,
        storage_path=storage_path,
        download_url=download_url,
        created_at=created_at.isoformat(),
    )
    return report, warning


def list_reports(store: RowStore, storage: ObjectStorage, user_id: str, limit: int = 30) -> list[AiReportOut]:
    """A user's stored reports, newest first, each with a fresh signed URL."""
    rows = store.select("ai_reports", _REPORT_COLUMNS, filters={"created_by": user_id},
                        order_by="created_at", descending=True, limit=limit)
    ttl = get_settings().report_url_ttl_seconds
    reports = []
    for row in rows:
        try:
            url = storage.create_signed_url(row["storage_bucket"], row["storage_path"], ttl)
        except StorageError as exc:
            log.warning("No download URL for report %s: %s", row["id"], exc)
            url = None
        reports.append(AiReportOut(
            id=row["id"],
            title=row["title"],
            summary=row.get("summary"),
            request_text=row.get("request_text") or "",
            file_name=row["file_name"],
            storage_path=row["storage_path"],
            download_url=url,
            period_start=_iso(row.get("period_start")),
            period_end=_iso(row.get("period_end")),
            created_at=_iso(row.get("created_at")),
        ))
    return reports


# ---------------------------------------------------------------------------
# Conversation turn
# ---------------------------------------------------------------------------


def _coverage(data: DataSummary, warnings: list[str]) -> DataCoverage:
    return DataCoverage(from_year=data.from_year, to_year=data.to_year, counts=data.counts, warnings=warnings)


def no_prompt_response() -> AgentResponse:
    plan = fallback_plan("")
    answer = ("Jeg fikk ingen gyldig brukerforespørsel å jobbe med." if plan.language == "no"
              else "No valid user prompt was provided.")
    return AgentResponse(answer=answer, plan=plan, data_coverage=DataCoverage())


async def run_agent_conversation(
    messages: list[AgentMessage | dict[str, Any]],
    user_id: str,
    user_email: str,
    *,
    store: RowStore,
    storage: ObjectStorage,
    llm: LLMClient | None,
) -> AgentResponse:
    """Answer the latest user message, filing a PDF report when one is asked for.

    Model failures degrade to heuristic plans and templated answers, and a
    failed report only adds a warning, so a turn with a user message always
    returns an answer.
    """
    history = sanitize_messages(messages)
    latest = latest_user_message(history)
    if latest is None:
        return no_prompt_response()

    if llm is not None and not llm.configured:
        llm = None

    plan = await build_plan(history, llm)
    data = await build_context(plan, store)
    output = await generate(history, plan, latest.content, data, llm)
    warnings = list(data.warnings)

    report = None
    if plan.intent == "report" or (output.report_markdown or "").strip():
        title = output.report_title or ("Subintel AI Rapport" if plan.language == "no" else "Subintel AI Report")
        markdown = output.report_markdown or build_fallback_report_markdown(
            title, latest.content, output.answer, data, plan,
        )
        try:
            report, warning = await asyncio.to_thread(
                store_report, store, storage,
                user_id=user_id, user_email=user_email, request_text=latest.content,
                title=title, report_markdown=markdown, report_summary=output.report_summary,
                plan=plan, data=data,
            )
        except Exception as exc:
            log.exception("Report generation failed")
            warnings.append(f"Report generation failed: {exc}")
        else:
            if warning:
                warnings.append(warning)

    return AgentResponse(
        answer=output.answer,
        report=report,
        follow_ups=output.follow_ups,
        plan=plan,
        data_coverage=_coverage(data, warnings),
    )
