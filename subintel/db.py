from __future__ import annotations

import threading
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from subintel.config import get_settings
from subintel.models import Base

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def _database_url(target: str | Path | None) -> str:
    if target is None:
        settings = get_settings()
        if settings.database_url:
            return settings.database_url
        target = settings.sqlite_path
    if isinstance(target, str) and "://" in target:
        return target
    db_path = Path(target)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def init_db(target: str | Path | None = None) -> Engine:
    """Create (or re-create) the engine and make sure all tables exist.

    ``target`` is either a SQLAlchemy URL or a path to a SQLite file. Without a
    target the configured database URL is used, falling back to
    ``subintel/data/subintel.db``.
    """
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = _database_url(target)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        return _engine


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]

