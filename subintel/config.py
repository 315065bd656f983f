from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("SUBINTEL_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data"


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


class Settings(BaseModel):
    home_dir: Path = Field(default_factory=_resolve_home)
    database_url: str = Field(default_factory=lambda: _env("SUBINTEL_DATABASE_URL"))
    storage_dir: Path = Field(
        default_factory=lambda: Path(_env("SUBINTEL_STORAGE_DIR") or _resolve_home() / "storage")
    )
    storage_secret: str = Field(default_factory=lambda: _env("SUBINTEL_STORAGE_SECRET", "subintel-dev-secret"))
    public_url: str = Field(default_factory=lambda: _env("SUBINTEL_PUBLIC_URL", "http://127.0.0.1:8001"))
    import_secret: str = Field(default_factory=lambda: _env("SUBINTEL_IMPORT_SECRET"))

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "openai"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    # pipeline: plan, context, write | tools: the model queries tables itself
    agent_mode: str = Field(default_factory=lambda: _env("SUBINTEL_AGENT_MODE", "pipeline"))

    imports_bucket: str = "imports"
    max_upload_bytes: int = 25 * 1024 * 1024
    spreadsheet_extensions: tuple[str, ...] = (".xlsx", ".xlsm")
    pdf_extensions: tuple[str, ...] = (".pdf",)
    report_url_ttl_seconds: int = 60 * 60 * 24 * 14

    @property
    def sqlite_path(self) -> Path:
        return self.home_dir / "subintel.db"

    def ensure_directories(self) -> None:
        self.home_dir.mkdir(parents=True, exist_ok=True)
        self.storage_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
