"""Import job queue and upload validation."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from subintel.storage import has_path_traversal
from subintel.store import RowStore

log = logging.getLogger(__name__)

JOB_TYPES = ("excel_rystad", "pdf_contract_awards", "pdf_market_report")
ALLOWED_BUCKET = "imports"

_JOB_COLUMNS = (
    "id", "file_name", "file_type", "status", "storage_bucket", "storage_path",
    "file_size_bytes", "import_batch_id", "records_total", "records_imported",
    "records_skipped", "error_message", "started_at", "created_at", "completed_at",
)


@dataclass
class QueuedUpload:
    file_name: str
    storage_path: str
    storage_bucket: str
    file_size_bytes: int


@dataclass
class UploadRejected:
    status: int
    error: str


def file_extension(file_name: str) -> str:
    parts = file_name.lower().split(".")
    if len(parts) < 2:
        return ""
    return f".{parts[-1]}"


def validate_queued_upload(
    payload: dict[str, Any],
    allowed_extensions: tuple[str, ...] | list[str],
    max_bytes: int,
) -> QueuedUpload | UploadRejected:
    """Check an already-uploaded object before it is queued for import."""
    file_name = (payload.get("file_name") or "").strip()
    storage_path = (payload.get("storage_path") or "").strip()
    storage_bucket = (payload.get("storage_bucket") or "").strip() or ALLOWED_BUCKET
    size = payload.get("file_size_bytes")

    if not file_name or not storage_path:
        return UploadRejected(400, "Missing file_name or storage_path")
    if len(file_name) > 255:
        return UploadRejected(400, "Invalid file_name: too long")
    if len(storage_path) > 1024 or has_path_traversal(storage_path):
        return UploadRejected(400, "Invalid storage_path")
    if storage_bucket != ALLOWED_BUCKET:
        return UploadRejected(400, "Invalid storage_bucket")
    if (
        isinstance(size, bool) or not isinstance(size, (int, float))
        or not math.isfinite(size) or size <= 0
    ):
        return UploadRejected(400, "Missing or invalid file_size_bytes")
    if size > max_bytes:
        return UploadRejected(413, f"File too large. Maximum allowed is {round(max_bytes / 1024 / 1024)}MB")

    allowed = [ext.lower() for ext in allowed_extensions]
    if file_extension(file_name) not in allowed:
        return UploadRejected(415, f"Invalid file type. Allowed: {', '.join(allowed)}")

    return QueuedUpload(file_name, storage_path, storage_bucket, int(size))


def queue_import_job(
    store: RowStore,
    file_name: str,
    file_type: str,
    storage_bucket: str,
    storage_path: str,
    file_size_bytes: int | None = None,
) -> dict[str, Any]:
    if file_type not in JOB_TYPES:
        raise ValueError(f"Unsupported import job type: {file_type}")
    row = store.insert("import_jobs", {
        "file_name": file_name,
        "file_type": file_type,
        "status": "pending",
        "storage_bucket": storage_bucket,
        "storage_path": storage_path,
        "file_size_bytes": file_size_bytes,
    })
    log.info("Queued %s job %s for %s/%s", file_type, row["id"], storage_bucket, storage_path)
    return get_import_job(store, row["id"]) or row


def get_import_job(store: RowStore, job_id: str) -> dict[str, Any] | None:
    rows = store.select("import_jobs", _JOB_COLUMNS, filters={"id": job_id}, limit=1)
    return rows[0] if rows else None


def list_import_jobs(store: RowStore, limit: int = 20, status: str | None = None) -> list[dict[str, Any]]:
    filters = {"status": status} if status else None
    return store.select("import_jobs", _JOB_COLUMNS, filters=filters,
                        order_by="created_at", descending=True, limit=limit)


def list_import_batches(store: RowStore, limit: int = 20) -> list[dict[str, Any]]:
    return store.select("import_batches", order_by="created_at", descending=True, limit=limit)


def detect_pdf_job_type(file_name: str) -> str:
    """Market reports are recognised by name; every other PDF is read as contract awards."""
    name = file_name.lower().replace("_", " ").replace("-", " ")
    if "market report" in name or "subsea market" in name:
        return "pdf_market_report"
    return "pdf_contract_awards"


def allowed_extensions_for(file_type: str, spreadsheet: tuple[str, ...], pdf: tuple[str, ...]) -> tuple[str, ...]:
    return spreadsheet if file_type == "excel_rystad" else pdf
