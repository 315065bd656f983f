"""Import job orchestration: spreadsheet, contract-award PDF and market-report PDF jobs.

A job moves ``pending -> processing -> completed | failed``.  Each run opens an
``import_batches`` row, dispatches on ``file_type`` and mirrors the final
batch counts back onto the job.  Upserts that already landed are kept when a
later step fails; the failure message is recorded and the exception re-raised
so the caller can report it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Callable

from subintel.extractor import (
    Forecast,
    build_market_summary_markdown,
    extract_contracts,
    extract_market_report,
    report_forecasts,
)
from subintel.jobs import JOB_TYPES
from subintel.llm import LLMClient, get_llm_client
from subintel.schemas import ProcessorStats
from subintel.sheets import AwardRow, ParsedWorkbook, SubseaRow, SurfRow, XmtRow, parse_workbook
from subintel.storage import ObjectStorage
from subintel.store import RowStore, StoreError
from subintel.upsert import UpsertResult, upsert_chunked

log = logging.getLogger(__name__)

SYSTEM_USER_EMAIL = "system@subintel.local"


class ImportJobError(Exception):
    """Import job could not be loaded or run."""


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Per-job context
# ---------------------------------------------------------------------------


@dataclass
class ImportContext:
    """Collaborators and per-job state handed to every processor."""

    store: RowStore
    storage: ObjectStorage
    job: dict[str, Any]
    llm_factory: Callable[[], LLMClient] = get_llm_client
    _llm: LLMClient | None = field(default=None, repr=False)
    _system_user_id: str | None = field(default=None, repr=False)

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = self.llm_factory()
        return self._llm

    def system_user_id(self) -> str:
        """Oldest user, or an admin system user created on first need."""
        if self._system_user_id:
            return self._system_user_id
        users = self.store.select("users", ["id"], order_by="created_at", limit=1)
        if users:
            self._system_user_id = users[0]["id"]
        else:
            created = self.store.insert("users", {
                "email": SYSTEM_USER_EMAIL, "full_name": "Subintel System", "role": "admin",
            })
            log.info("Created system user %s for document uploads", created["id"])
            self._system_user_id = created["id"]
        return self._system_user_id

    def download(self) -> bytes:
        return self.storage.download(self.job["storage_bucket"], self.job["storage_path"])


# ---------------------------------------------------------------------------
# Batch lifecycle
# ---------------------------------------------------------------------------


def start_batch(ctx: ImportContext, file_type: str) -> str:
    batch = ctx.store.insert("import_batches", {
        "file_name": ctx.job["file_name"],
        "file_type": file_type,
        "status": "processing",
    })
    ctx.store.update("import_jobs", {"import_batch_id": batch["id"], "started_at": _now()},
                     {"id": ctx.job["id"]})
    return batch["id"]


def complete_batch(store: RowStore, batch_id: str, total: int, imported: int, skipped: int) -> None:
    store.update("import_batches", {
        "status": "completed",
        "records_total": total,
        "records_imported": imported,
        "records_skipped": skipped,
        "completed_at": _now(),
    }, {"id": batch_id})


def fail_batch(store: RowStore, batch_id: str, message: str) -> None:
    store.update("import_batches", {
        "status": "failed",
        "error_message": message,
        "completed_at": _now(),
    }, {"id": batch_id})


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


# ---------------------------------------------------------------------------
# Spreadsheet stages
# ---------------------------------------------------------------------------


@dataclass
class Stage:
    """One upsert step of a spreadsheet import.

    ``requires`` names stages that must already have run; ``counted`` stages
    contribute to the batch record totals.
    """

    name: str
    table: str
    conflict_columns: tuple[str, ...]
    build: Callable[[ParsedWorkbook, str], list[dict[str, Any]]]
    requires: tuple[str, ...] = ()
    counted: bool = True


def _typed_rows(attr: str) -> Callable[[ParsedWorkbook, str], list[dict[str, Any]]]:
    def build(parsed: ParsedWorkbook, batch_id: str) -> list[dict[str, Any]]:
        return [row.as_row(batch_id) for row in getattr(parsed, attr)]
    return build


PROJECT_CATEGORICAL_FIELDS = (
    "continent", "operator", "surf_contractor", "facility_category",
    "field_type", "water_depth_category", "field_size_category",
)


def build_projects(parsed: ParsedWorkbook, batch_id: str | None = None) -> list[dict[str, Any]]:
    """Fold all typed rows into one record per (project, asset, country).

    Categorical fields keep the first non-null value seen, counts sum, and
    the year span widens to cover every row.
    """
    projects: dict[tuple, dict[str, Any]] = {}
    rows: list[XmtRow | SurfRow | SubseaRow | AwardRow] = [*parsed.xmt, *parsed.surf, *parsed.subsea, *parsed.awards]
    for row in rows:
        key = (row.development_project, row.asset, row.country)
        project = projects.get(key)
        if project is None:
            project = projects[key] = {
                "development_project": row.development_project,
                "asset": row.asset,
                "country": row.country,
                **dict.fromkeys(PROJECT_CATEGORICAL_FIELDS),
                "xmt_count": 0,
                "surf_km": 0.0,
                "subsea_unit_count": 0,
                "first_year": row.year,
                "last_year": row.year,
            }
        for name in PROJECT_CATEGORICAL_FIELDS:
            if project[name] is None:
                project[name] = getattr(row, name, None)
        if row.year:
            if not project["first_year"] or row.year < project["first_year"]:
                project["first_year"] = row.year
            if not project["last_year"] or row.year > project["last_year"]:
                project["last_year"] = row.year

        if isinstance(row, XmtRow):
            project["xmt_count"] += row.xmt_count or 0
        elif isinstance(row, SurfRow):
            project["surf_km"] += row.km_surf_lines or 0
        elif isinstance(row, SubseaRow):
            project["subsea_unit_count"] += row.unit_count or 0
    return list(projects.values())


def build_award_contracts(parsed: ParsedWorkbook, batch_id: str | None = None) -> list[dict[str, Any]]:
    """One feed-phase contract per upcoming award."""
    contracts = []
    for row in parsed.awards:
        contracts.append({
            "date": date(row.year, 1, 1) if row.year and 1900 <= row.year <= 2200 else None,
            "supplier": row.surf_contractor or "TBD",
            "operator": row.operator or "Unknown",
            "project_name": row.development_project,
            "description": f"{row.xmts_awarded or 0} XMTs awarded - {row.facility_category or 'N/A'}",
            "contract_type": "Subsea",
            "region": row.country,
            "country": row.country,
            "source": "rystad_forecast",
            "pipeline_phase": "feed",
            "external_id": f"rystad-award-{row.year}-{row.development_project}-{row.asset or ''}",
        })
    return contracts


SPREADSHEET_STAGES: tuple[Stage, ...] = (
    Stage("xmt", XmtRow.table, XmtRow.conflict_columns, _typed_rows("xmt")),
    Stage("surf", SurfRow.table, SurfRow.conflict_columns, _typed_rows("surf")),
    Stage("subsea", SubseaRow.table, SubseaRow.conflict_columns, _typed_rows("subsea")),
    Stage("awards", AwardRow.table, AwardRow.conflict_columns, _typed_rows("awards")),
    Stage("projects", "projects", ("development_project", "asset", "country"), build_projects,
          requires=("xmt", "surf", "subsea", "awards"), counted=False),
    Stage("contracts", "contracts", ("external_id",), build_award_contracts,
          requires=("awards",), counted=False),
)


def validate_stages(stages: tuple[Stage, ...] | list[Stage]) -> None:
    """Raise if a stage runs before a stage it depends on."""
    seen: set[str] = set()
    for stage in stages:
        missing = [name for name in stage.requires if name not in seen]
        if missing:
            raise ValueError(f"Stage {stage.name!r} runs before {', '.join(missing)}")
        seen.add(stage.name)


def run_stages(
    store: RowStore, parsed: ParsedWorkbook, batch_id: str,
    stages: tuple[Stage, ...] | list[Stage] = SPREADSHEET_STAGES,
) -> tuple[int, UpsertResult]:
    validate_stages(stages)
    total = 0
    counted = UpsertResult()
    for stage in stages:
        rows = stage.build(parsed, batch_id)
        if not rows:
            continue
        result = upsert_chunked(store, stage.table, rows, stage.conflict_columns)
        log.info("Stage %s: %d rows -> %s (imported=%d skipped=%d)",
                 stage.name, len(rows), stage.table, result.imported, result.skipped)
        if stage.counted:
            total += len(rows)
            counted += result
    return total, counted


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


async def process_spreadsheet_job(ctx: ImportContext) -> ProcessorStats:
    batch_id = start_batch(ctx, "excel_rystad")
    try:
        data = await asyncio.to_thread(ctx.download)
        parsed = await asyncio.to_thread(parse_workbook, data)
        total, result = await asyncio.to_thread(run_stages, ctx.store, parsed, batch_id)
        complete_batch(ctx.store, batch_id, total, result.imported, result.skipped)
        return ProcessorStats(batch_id=batch_id, records_total=total,
                              records_imported=result.imported, records_skipped=result.skipped)
    except Exception as exc:
        fail_batch(ctx.store, batch_id, _error_message(exc))
        raise


async def process_contract_pdf_job(ctx: ImportContext) -> ProcessorStats:
    batch_id = start_batch(ctx, "pdf_contract_awards")
    try:
        data = await asyncio.to_thread(ctx.download)
        extracted = await extract_contracts(ctx.llm, data, ctx.job["file_name"])
        today = _now().date()
        # Identical rows in one PDF hash to the same external id
        rows = list({r["external_id"]: r for r in (c.as_row(today) for c in extracted)}.values())
        result = await asyncio.to_thread(upsert_chunked, ctx.store, "contracts", rows, ["external_id"])
        complete_batch(ctx.store, batch_id, len(extracted), result.imported, result.skipped)
        return ProcessorStats(batch_id=batch_id, records_total=len(extracted),
                              records_imported=result.imported, records_skipped=result.skipped)
    except Exception as exc:
        fail_batch(ctx.store, batch_id, _error_message(exc))
        raise


def save_market_document(ctx: ImportContext, ai_summary: str, size: int) -> str:
    """Update the newest document with this file name, or insert one under the system user."""
    file_path = f"{ctx.job['storage_bucket']}/{ctx.job['storage_path']}"
    existing = ctx.store.select("documents", ["id"], filters={"file_name": ctx.job["file_name"]},
                                order_by="created_at", descending=True, limit=1)
    if existing:
        doc_id = existing[0]["id"]
        ctx.store.update("documents", {
            "ai_summary": ai_summary, "file_path": file_path, "file_size_bytes": size,
        }, {"id": doc_id})
        return doc_id
    doc = ctx.store.insert("documents", {
        "uploaded_by": ctx.system_user_id(),
        "file_name": ctx.job["file_name"],
        "file_path": file_path,
        "file_type": "application/pdf",
        "file_size_bytes": size,
        "ai_summary": ai_summary,
    })
    return doc["id"]


def store_forecasts(store: RowStore, forecasts: list[Forecast]) -> tuple[int, int]:
    """Upsert forecasts one by one so a bad row only skips itself."""
    imported = skipped = 0
    for forecast in forecasts:
        try:
            store.upsert("forecasts", [forecast.as_row()], ["year", "metric"])
            imported += 1
        except StoreError as exc:
            log.warning("Forecast %s/%s not stored: %s", forecast.year, forecast.metric, exc.message)
            skipped += 1
    return imported, skipped


async def process_market_report_job(ctx: ImportContext) -> ProcessorStats:
    batch_id = start_batch(ctx, "pdf_market_report")
    try:
        data = await asyncio.to_thread(ctx.download)
        file_name = ctx.job["file_name"]
        report = await extract_market_report(ctx.llm, data, file_name)
        ai_summary = build_market_summary_markdown(
            report.heading(file_name), report.report_title, report.summary,
            report.summary_highlights(), report.key_figures,
        )
        forecasts = report_forecasts(report, file_name)
        await asyncio.to_thread(save_market_document, ctx, ai_summary, len(data))
        imported, skipped = await asyncio.to_thread(store_forecasts, ctx.store, forecasts)

        # The document itself counts as one record
        total = len(forecasts) + 1
        complete_batch(ctx.store, batch_id, total, imported + 1, skipped)
        return ProcessorStats(batch_id=batch_id, records_total=total,
                              records_imported=imported + 1, records_skipped=skipped)
    except Exception as exc:
        fail_batch(ctx.store, batch_id, _error_message(exc))
        raise


PROCESSORS = {
    "excel_rystad": process_spreadsheet_job,
    "pdf_contract_awards": process_contract_pdf_job,
    "pdf_market_report": process_market_report_job,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def load_job(store: RowStore, job_id: str) -> dict[str, Any]:
    rows = store.select("import_jobs", filters={"id": job_id}, limit=1)
    if not rows:
        raise ImportJobError(f"Import job not found: {job_id}")
    job = rows[0]
    if job["file_type"] not in JOB_TYPES:
        message = f"Unsupported import job type: {job['file_type']}"
        store.update("import_jobs", {"status": "failed", "error_message": message,
                                     "completed_at": _now()}, {"id": job_id})
        raise ImportJobError(message)
    return job


async def process_import_job(
    job_id: str,
    *,
    store: RowStore | None = None,
    storage: ObjectStorage | None = None,
    llm_factory: Callable[[], LLMClient] | None = None,
) -> ProcessorStats:
    """Run one queued job to completion; a completed job is a no-op."""
    if store is None or storage is None:
        from subintel.services import get_storage, get_store
        store = store or get_store()
        storage = storage or get_storage()

    job = load_job(store, job_id)
    if job["status"] == "completed":
        return ProcessorStats(batch_id=job.get("import_batch_id") or "")

    store.update("import_jobs", {"status": "processing", "started_at": _now(), "error_message": None},
                 {"id": job_id})
    ctx = ImportContext(store=store, storage=storage, job=job,
                        llm_factory=llm_factory or get_llm_client)
    log.info("Processing %s job %s (%s)", job["file_type"], job_id, job["file_name"])
    try:
        result = await PROCESSORS[job["file_type"]](ctx)
    except Exception as exc:
        message = _error_message(exc)
        log.exception("Import job %s failed: %s", job_id, message)
        store.update("import_jobs", {"status": "failed", "error_message": message,
                                     "completed_at": _now()}, {"id": job_id})
        raise

    store.update("import_jobs", {
        "status": "completed",
        "import_batch_id": result.batch_id,
        "records_total": result.records_total,
        "records_imported": result.records_imported,
        "records_skipped": result.records_skipped,
        "completed_at": _now(),
    }, {"id": job_id})
    log.info("Import job %s completed: %d/%d imported, %d skipped", job_id,
             result.records_imported, result.records_total, result.records_skipped)
    return result
