"""Pydantic request/response schemas for the Subintel API, agent and import jobs."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TABLE_NAMES = (
    "projects",
    "contracts",
    "forecasts",
    "upcoming_awards",
    "xmt_data",
    "surf_data",
    "subsea_unit_data",
    "documents",
)


class _CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class AgentMessage(BaseModel):
    role: Literal["user", "assistant"] = "user"
    content: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, v: Any) -> str:
        return "assistant" if v == "assistant" else "user"

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""


class AgentPlan(_CamelModel):
    intent: Literal["question", "report"] = "question"
    report_scope: Literal["project_period", "annual_all", "custom", "none"] = "none"
    language: Literal["no", "en"] = "en"
    project_keywords: list[str] = []
    countries: list[str] = []
    operators: list[str] = []
    from_year: int | None = None
    to_year: int | None = None
    include_historical: bool = True
    include_future: bool = True
    include_tables: list[str] = list(TABLE_NAMES)
    focus_points: list[str] = []


class AgentReportResult(_CamelModel):
    id: str | None = None
    title: str
    file_name: str
    storage_path: str
    download_url: str
    created_at: str


class DataCoverage(_CamelModel):
    from_year: int | None = None
    to_year: int | None = None
    counts: dict[str, int] = {}
    warnings: list[str] = []


class AgentResponse(_CamelModel):
    answer: str
    report: AgentReportResult | None = None
    follow_ups: list[str] = []
    plan: AgentPlan
    data_coverage: DataCoverage


class ChatRequest(BaseModel):
    messages: list[AgentMessage] = []
    user_id: str = "local-user"
    user_email: str = "unknown@subintel.local"


class AiReportOut(_CamelModel):
    id: str
    title: str
    summary: str | None = None
    request_text: str
    file_name: str
    storage_path: str
    download_url: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Import jobs
# ---------------------------------------------------------------------------


class ProcessorStats(_CamelModel):
    batch_id: str
    records_total: int = 0
    records_imported: int = 0
    records_skipped: int = 0


class QueueUploadRequest(BaseModel):
    file_name: str | None = None
    file_type: Literal["excel_rystad", "pdf_contract_awards", "pdf_market_report"] = "excel_rystad"
    storage_bucket: str | None = None
    storage_path: str | None = None
    file_size_bytes: int | None = None


class ProcessJobRequest(BaseModel):
    job_id: str = Field(min_length=1)


class ImportJobOut(BaseModel):
    id: str
    file_name: str
    file_type: str
    status: str
    storage_bucket: str
    storage_path: str
    file_size_bytes: int | None = None
    import_batch_id: str | None = None
    records_total: int = 0
    records_imported: int = 0
    records_skipped: int = 0
    error_message: str | None = None
    started_at: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


class ImportBatchOut(BaseModel):
    id: str
    file_name: str
    file_type: str | None = None
    status: str
    records_total: int = 0
    records_imported: int = 0
    records_skipped: int = 0
    error_message: str | None = None
    created_at: str | None = None
    completed_at: str | None = None
