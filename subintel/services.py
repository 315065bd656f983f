"""Shared wiring and read models for the Subintel API and MCP server."""
from __future__ import annotations

import logging
import time
from datetime import UTC, date, datetime
from functools import lru_cache
from typing import Any

from subintel.config import get_settings
from subintel.db import init_db
from subintel.jobs import list_import_batches, list_import_jobs
from subintel.storage import ObjectStorage
from subintel.store import RowStore, StoreError

log = logging.getLogger(__name__)

DATA_TABLES = (
    "projects", "contracts", "xmt_data", "surf_data", "subsea_unit_data",
    "upcoming_awards", "forecasts", "documents", "ai_reports",
)

JOB_STATUSES = ("pending", "processing", "completed", "failed")

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_store() -> RowStore:
    """Row store over the configured database; creates tables on first use."""
    settings = get_settings()
    settings.ensure_directories()
    init_db()
    return RowStore()


@lru_cache(maxsize=1)
def get_storage() -> ObjectStorage:
    settings = get_settings()
    settings.ensure_directories()
    return ObjectStorage(settings.storage_dir, settings.storage_secret, settings.public_url)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def to_jsonable(row: dict[str, Any]) -> dict[str, Any]:
    """Row dict with dates and datetimes as ISO strings."""
    return {k: v.isoformat() if isinstance(v, (datetime, date)) else v for k, v in row.items()}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def table_health(store: RowStore, tables: tuple[str, ...] = DATA_TABLES) -> list[dict[str, Any]]:
    result = []
    for table in tables:
        started = time.perf_counter()
        try:
            count, error = store.count(table), None
        except StoreError as exc:
            count, error = None, exc.message
        result.append({
            "table": table,
            "count": count,
            "latency_ms": round((time.perf_counter() - started) * 1000),
            "error": error,
        })
    return result


def agent_health(store: RowStore, llm_configured: bool) -> dict[str, Any]:
    started = time.perf_counter()
    tables = table_health(store)
    return {
        "ok": True,
        "generated_at": datetime.now(UTC).isoformat(),
        "total_latency_ms": round((time.perf_counter() - started) * 1000),
        "llm_configured": llm_configured,
        "tables": tables,
    }


def data_overview(store: RowStore) -> dict[str, Any]:
    """Row counts per table, job counts per status and the latest batches."""
    counts = {entry["table"]: entry["count"] for entry in table_health(store)}
    jobs = {status: store.count("import_jobs", {"status": status}) for status in JOB_STATUSES}
    return {
        "tables": counts,
        "import_jobs": jobs,
        "latest_batches": [to_jsonable(b) for b in list_import_batches(store, limit=5)],
        "latest_jobs": [to_jsonable(j) for j in list_import_jobs(store, limit=5)],
    }
