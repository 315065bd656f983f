from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Callable

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import Response

from subintel import services
from subintel.agent import list_reports, run_agent_conversation
from subintel.config import Settings, get_settings
from subintel.importer import process_import_job
from subintel.jobs import (
    ALLOWED_BUCKET,
    JOB_TYPES,
    UploadRejected,
    allowed_extensions_for,
    detect_pdf_job_type,
    file_extension,
    get_import_job,
    list_import_batches,
    list_import_jobs,
    queue_import_job,
    validate_queued_upload,
)
from subintel.llm import LLMClient, get_llm_client
from subintel.schemas import AgentResponse, ChatRequest, ImportBatchOut, ImportJobOut, ProcessJobRequest
from subintel.sql_agent import run_sql_agent
from subintel.storage import ObjectStorage, StorageError
from subintel.store import RowStore

log = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


@asynccontextmanager
async def lifespan(app: FastAPI):
    services.get_store()
    yield


app = FastAPI(
    title="Subintel",
    version="0.1.0",
    description=(
        "Subsea sales intelligence API. Import Rystad spreadsheets and PDF reports, "
        "then ask the AI agent questions or request PDF reports over the imported data."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Import", "description": "Upload files and run import jobs."},
        {"name": "Agent", "description": "Conversational analysis and PDF reports."},
        {"name": "Storage", "description": "Signed downloads of stored objects."},
        {"name": "Health", "description": "Liveness and table health."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def store_dep() -> RowStore:
    return services.get_store()


def storage_dep() -> ObjectStorage:
    return services.get_storage()


def settings_dep() -> Settings:
    return get_settings()


def llm_factory_dep() -> Callable[[], LLMClient]:
    return get_llm_client


def _job_out(job: dict[str, Any]) -> ImportJobOut:
    return ImportJobOut.model_validate(services.to_jsonable(job))


async def _process_in_background(
    job_id: str, store: RowStore, storage: ObjectStorage, llm_factory: Callable[[], LLMClient],
) -> None:
    try:
        await process_import_job(job_id, store=store, storage=storage, llm_factory=llm_factory)
    except Exception as exc:
        # Already recorded on the job row
        log.warning("Background import job %s failed: %s", job_id, exc)


def _queue_and_schedule(
    background: BackgroundTasks,
    store: RowStore,
    storage: ObjectStorage,
    llm_factory: Callable[[], LLMClient],
    *,
    file_name: str,
    file_type: str,
    storage_bucket: str,
    storage_path: str,
    file_size_bytes: int,
) -> dict[str, Any]:
    job = queue_import_job(store, file_name, file_type, storage_bucket, storage_path, file_size_bytes)
    background.add_task(_process_in_background, job["id"], store, storage, llm_factory)
    return {"success": True, "job_id": job["id"], "status": job["status"], "file_type": file_type}


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import/upload", tags=["Import"], summary="Upload a spreadsheet or PDF and queue its import")
async def upload_file(
    background: BackgroundTasks,
    file: UploadFile = File(...),
    file_type: str | None = Form(None),
    store: RowStore = Depends(store_dep),
    storage: ObjectStorage = Depends(storage_dep),
    settings: Settings = Depends(settings_dep),
    llm_factory: Callable[[], LLMClient] = Depends(llm_factory_dep),
):
    file_name = (file.filename or "").strip()
    if not file_name:
        raise HTTPException(400, "No file provided")
    ext = file_extension(file_name)
    if file_type is None:
        file_type = "excel_rystad" if ext in settings.spreadsheet_extensions else detect_pdf_job_type(file_name)
    if file_type not in JOB_TYPES:
        raise HTTPException(400, f"Unsupported import job type: {file_type}")
    allowed = allowed_extensions_for(file_type, settings.spreadsheet_extensions, settings.pdf_extensions)
    if ext not in allowed:
        raise HTTPException(415, f"Invalid file type. Allowed: {', '.join(allowed)}")

    content = await file.read()
    if not content:
        raise HTTPException(400, "Uploaded file is empty")
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(413, f"File too large. Maximum allowed is {round(settings.max_upload_bytes / 1024 / 1024)}MB")

    day = datetime.now(UTC).date().isoformat()
    safe_name = _UNSAFE_NAME_RE.sub("_", file_name)[-200:]
    storage_path = f"uploads/{day}/{uuid.uuid4()}-{safe_name}"
    try:
        storage.upload(ALLOWED_BUCKET, storage_path, content, content_type=file.content_type or "")
    except StorageError as exc:
        raise HTTPException(500, f"Upload failed: {exc}") from exc

    return _queue_and_schedule(
        background, store, storage, llm_factory,
        file_name=file_name, file_type=file_type, storage_bucket=ALLOWED_BUCKET,
        storage_path=storage_path, file_size_bytes=len(content),
    )


@app.post("/api/import/queue", tags=["Import"], summary="Queue an import for an already-uploaded object")
async def queue_upload(
    body: dict[str, Any],
    background: BackgroundTasks,
    store: RowStore = Depends(store_dep),
    storage: ObjectStorage = Depends(storage_dep),
    settings: Settings = Depends(settings_dep),
    llm_factory: Callable[[], LLMClient] = Depends(llm_factory_dep),
):
    file_type = body.get("file_type") or "excel_rystad"
    if file_type not in JOB_TYPES:
        raise HTTPException(400, f"Unsupported import job type: {file_type}")
    allowed = allowed_extensions_for(file_type, settings.spreadsheet_extensions, settings.pdf_extensions)
    validated = validate_queued_upload(body, allowed, settings.max_upload_bytes)
    if isinstance(validated, UploadRejected):
        raise HTTPException(validated.status, validated.error)
    if not storage.exists(validated.storage_bucket, validated.storage_path):
        raise HTTPException(404, "Uploaded object not found")

    return _queue_and_schedule(
        background, store, storage, llm_factory,
        file_name=validated.file_name, file_type=file_type,
        storage_bucket=validated.storage_bucket, storage_path=validated.storage_path,
        file_size_bytes=validated.file_size_bytes,
    )


@app.post("/api/import/auto", tags=["Import"], summary="Queue an uploaded PDF, detecting its report type by name")
async def queue_pdf_auto(
    body: dict[str, Any],
    background: BackgroundTasks,
    store: RowStore = Depends(store_dep),
    storage: ObjectStorage = Depends(storage_dep),
    settings: Settings = Depends(settings_dep),
    llm_factory: Callable[[], LLMClient] = Depends(llm_factory_dep),
):
    validated = validate_queued_upload(body, settings.pdf_extensions, settings.max_upload_bytes)
    if isinstance(validated, UploadRejected):
        raise HTTPException(validated.status, validated.error)
    if not storage.exists(validated.storage_bucket, validated.storage_path):
        raise HTTPException(404, "Uploaded object not found")

    file_type = detect_pdf_job_type(validated.file_name)
    result = _queue_and_schedule(
        background, store, storage, llm_factory,
        file_name=validated.file_name, file_type=file_type,
        storage_bucket=validated.storage_bucket, storage_path=validated.storage_path,
        file_size_bytes=validated.file_size_bytes,
    )
    return {**result, "detected_type": file_type}


@app.post("/api/import/process", tags=["Import"], summary="Run a queued import job to completion")
async def process_job(
    body: ProcessJobRequest,
    x_import_secret: str | None = Header(None),
    store: RowStore = Depends(store_dep),
    storage: ObjectStorage = Depends(storage_dep),
    settings: Settings = Depends(settings_dep),
    llm_factory: Callable[[], LLMClient] = Depends(llm_factory_dep),
):
    if settings.import_secret and x_import_secret != settings.import_secret:
        raise HTTPException(401, "Invalid import secret")
    if get_import_job(store, body.job_id) is None:
        raise HTTPException(404, "Import job not found")
    try:
        stats = await process_import_job(body.job_id, store=store, storage=storage, llm_factory=llm_factory)
    except Exception as exc:
        job = get_import_job(store, body.job_id) or {}
        raise HTTPException(500, job.get("error_message") or str(exc)) from exc
    return {"success": True, "job_id": body.job_id, **stats.model_dump()}


@app.get("/api/import/status/{job_id}", response_model=ImportJobOut,
         tags=["Import"], summary="Get an import job's status and counts")
async def job_status(job_id: str, store: RowStore = Depends(store_dep)):
    job = get_import_job(store, job_id)
    if job is None:
        raise HTTPException(404, "Import job not found")
    return _job_out(job)


@app.get("/api/import/jobs", response_model=list[ImportJobOut],
         tags=["Import"], summary="List recent import jobs")
async def jobs(
    status: str | None = Query(None, description="pending, processing, completed or failed"),
    limit: int = Query(20, ge=1, le=200),
    store: RowStore = Depends(store_dep),
):
    return [_job_out(j) for j in list_import_jobs(store, limit=limit, status=status)]


@app.get("/api/import/batches", response_model=list[ImportBatchOut],
         tags=["Import"], summary="List recent import batches")
async def batches(limit: int = Query(20, ge=1, le=200), store: RowStore = Depends(store_dep)):
    return [ImportBatchOut.model_validate(services.to_jsonable(b)) for b in list_import_batches(store, limit)]


# ---------------------------------------------------------------------------
# Routes: Agent
# ---------------------------------------------------------------------------


@app.post("/api/agent/chat", response_model=AgentResponse,
          tags=["Agent"], summary="Answer a conversation turn, filing a PDF report when requested")
async def agent_chat(
    body: ChatRequest,
    store: RowStore = Depends(store_dep),
    storage: ObjectStorage = Depends(storage_dep),
    settings: Settings = Depends(settings_dep),
    llm_factory: Callable[[], LLMClient] = Depends(llm_factory_dep),
):
    llm = llm_factory()
    try:
        if settings.agent_mode == "tools" and llm.configured:
            return await run_sql_agent(
                body.messages, body.user_id, body.user_email,
                store=store, storage=storage, llm=llm,
            )
        return await run_agent_conversation(
            body.messages, body.user_id, body.user_email,
            store=store, storage=storage, llm=llm,
        )
    except Exception as exc:
        log.exception("Agent chat failed")
        raise HTTPException(500, f"Agent failed: {exc}") from exc


@app.get("/api/agent/reports", tags=["Agent"], summary="List a user's stored reports with fresh download links")
async def agent_reports(
    user_id: str = Query("local-user"),
    limit: int = Query(30, ge=1, le=100),
    store: RowStore = Depends(store_dep),
    storage: ObjectStorage = Depends(storage_dep),
):
    reports = list_reports(store, storage, user_id, limit)
    return {"reports": [r.model_dump() for r in reports]}


@app.get("/api/agent/health", tags=["Agent", "Health"], summary="Per-table row counts and latency")
async def agent_health(
    store: RowStore = Depends(store_dep),
    llm_factory: Callable[[], LLMClient] = Depends(llm_factory_dep),
):
    return services.agent_health(store, llm_factory().configured)


# ---------------------------------------------------------------------------
# Routes: Storage & Health
# ---------------------------------------------------------------------------


@app.get("/storage/{bucket}/{path:path}", tags=["Storage"], summary="Download an object through a signed URL")
async def signed_download(
    bucket: str,
    path: str,
    ttl: int = Query(..., ge=1),
    token: str = Query(...),
    storage: ObjectStorage = Depends(storage_dep),
):
    if not storage.verify_signature(bucket, path, ttl, token):
        raise HTTPException(403, "Invalid or expired signature")
    try:
        content = storage.download(bucket, path)
    except StorageError as exc:
        raise HTTPException(404, str(exc)) from exc
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    file_name = path.rsplit("/", 1)[-1]
    return Response(content, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{file_name}"'})


@app.get("/api/health", tags=["Health"], summary="Liveness check")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("subintel.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
