from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(300), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(300))
    role: Mapped[str] = mapped_column(String(20), default="seller")  # admin | seller | viewer
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ImportBatch(Base):
    __tablename__ = "import_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(40))  # excel_rystad | pdf_contract_awards | pdf_market_report
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | processing | completed | failed
    records_total: Mapped[int] = mapped_column(Integer, default=0)
    records_imported: Mapped[int] = mapped_column(Integer, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    storage_bucket: Mapped[str] = mapped_column(String(100), default="imports")
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    import_batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("import_batches.id"))
    records_total: Mapped[int] = mapped_column(Integer, default=0)
    records_imported: Mapped[int] = mapped_column(Integer, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)


# ---------------------------------------------------------------------------
# Raw fact rows (one table per spreadsheet record type)
# ---------------------------------------------------------------------------


class _SiteColumns:
    """Columns shared by every per-project spreadsheet row."""

    year: Mapped[int | None] = mapped_column(Integer)
    country: Mapped[str | None] = mapped_column(String(200))
    development_project: Mapped[str | None] = mapped_column(String(300))
    asset: Mapped[str | None] = mapped_column(String(300))
    operator: Mapped[str | None] = mapped_column(String(300))
    surf_contractor: Mapped[str | None] = mapped_column(String(300))
    facility_category: Mapped[str | None] = mapped_column(String(200))
    field_type: Mapped[str | None] = mapped_column(String(200))
    water_depth_category: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class XmtData(_SiteColumns, Base):
    __tablename__ = "xmt_data"
    __table_args__ = (UniqueConstraint("year", "development_project", "asset", "purpose", "state"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    import_batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("import_batches.id"))
    continent: Mapped[str | None] = mapped_column(String(100))
    distance_group: Mapped[str | None] = mapped_column(String(200))
    contract_award_year: Mapped[int | None] = mapped_column(Integer)
    contract_type: Mapped[str | None] = mapped_column(String(200))
    purpose: Mapped[str | None] = mapped_column(String(200))
    state: Mapped[str | None] = mapped_column(String(200))
    xmt_count: Mapped[int | None] = mapped_column(Integer, default=0)


class SurfData(_SiteColumns, Base):
    __tablename__ = "surf_data"
    __table_args__ = (UniqueConstraint("year", "development_project", "asset", "design_category", "line_group"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    import_batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("import_batches.id"))
    continent: Mapped[str | None] = mapped_column(String(100))
    distance_group: Mapped[str | None] = mapped_column(String(200))
    design_category: Mapped[str | None] = mapped_column(String(200))
    line_group: Mapped[str | None] = mapped_column(String(200))
    km_surf_lines: Mapped[float | None] = mapped_column(Float, default=0)


class SubseaUnitData(_SiteColumns, Base):
    __tablename__ = "subsea_unit_data"
    __table_args__ = (UniqueConstraint("year", "development_project", "asset", "unit_category"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    import_batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("import_batches.id"))
    continent: Mapped[str | None] = mapped_column(String(100))
    distance_group: Mapped[str | None] = mapped_column(String(200))
    unit_category: Mapped[str | None] = mapped_column(String(200))
    unit_count: Mapped[int | None] = mapped_column(Integer, default=0)


class UpcomingAward(_SiteColumns, Base):
    __tablename__ = "upcoming_awards"
    __table_args__ = (UniqueConstraint("year", "development_project", "asset"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    import_batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("import_batches.id"))
    field_size_category: Mapped[str | None] = mapped_column(String(200))
    xmts_awarded: Mapped[int | None] = mapped_column(Integer, default=0)


# ---------------------------------------------------------------------------
# Derived and extracted records
# ---------------------------------------------------------------------------


class ProjectRecord(Base):
    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("development_project", "asset", "country"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    development_project: Mapped[str] = mapped_column(String(300), nullable=False)
    asset: Mapped[str | None] = mapped_column(String(300))
    country: Mapped[str | None] = mapped_column(String(200))
    continent: Mapped[str | None] = mapped_column(String(100))
    operator: Mapped[str | None] = mapped_column(String(300))
    surf_contractor: Mapped[str | None] = mapped_column(String(300))
    facility_category: Mapped[str | None] = mapped_column(String(200))
    field_type: Mapped[str | None] = mapped_column(String(200))
    water_depth_category: Mapped[str | None] = mapped_column(String(200))
    field_size_category: Mapped[str | None] = mapped_column(String(200))
    xmt_count: Mapped[int | None] = mapped_column(Integer, default=0)
    surf_km: Mapped[float | None] = mapped_column(Float, default=0)
    subsea_unit_count: Mapped[int | None] = mapped_column(Integer, default=0)
    first_year: Mapped[int | None] = mapped_column(Integer)
    last_year: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ContractRecord(Base):
    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    external_id: Mapped[str | None] = mapped_column(String(500), unique=True)
    date: Mapped[date | None] = mapped_column(Date)
    supplier: Mapped[str] = mapped_column(String(300), default="")
    operator: Mapped[str] = mapped_column(String(300), default="")
    project_name: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str | None] = mapped_column(Text)
    contract_type: Mapped[str | None] = mapped_column(String(20))  # EPCI | SPS | SURF | Subsea | Other
    region: Mapped[str | None] = mapped_column(String(300))
    country: Mapped[str | None] = mapped_column(String(200))
    estimated_value_usd: Mapped[int | None] = mapped_column(BigInteger)
    source: Mapped[str | None] = mapped_column(String(40))
    pipeline_phase: Mapped[str | None] = mapped_column(String(40), default="feed")
    announced_at: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ForecastRecord(Base):
    __tablename__ = "forecasts"
    __table_args__ = (UniqueConstraint("year", "metric"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    metric: Mapped[str] = mapped_column(String(200), nullable=False)
    value: Mapped[float | None] = mapped_column(Float)
    unit: Mapped[str | None] = mapped_column(String(50))
    source: Mapped[str | None] = mapped_column(String(50), default="rystad")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ReportDocument(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    uploaded_by: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_type: Mapped[str | None] = mapped_column(String(100))
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    ai_summary: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class AiReport(Base):
    __tablename__ = "ai_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_by_email: Mapped[str] = mapped_column(String(300), nullable=False)
    request_text: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    report_markdown: Mapped[str] = mapped_column(Text, nullable=False)
    report_json: Mapped[dict] = mapped_column(JSON, default=dict)
    period_start: Mapped[date | None] = mapped_column(Date)
    period_end: Mapped[date | None] = mapped_column(Date)
    filters: Mapped[dict] = mapped_column(JSON, default=dict)
    storage_bucket: Mapped[str] = mapped_column(String(100), default="imports")
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
